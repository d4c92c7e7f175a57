"""
Runtime settings loaded from the environment (.env supported).

Usage:
    from core.config import Settings

    settings = Settings.from_env()
    settings.pacing_min_ms  # 800
"""

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv

load_dotenv()

DEFAULT_DATA_DIR = Path(__file__).parent.parent / "data"


def _env_int(name: str, default: int) -> int:
    value = os.environ.get(name)
    if value is None or value.strip() == "":
        return default
    try:
        return int(value)
    except ValueError:
        raise ValueError(f"{name} must be an integer, got {value!r}") from None


def _env_float(name: str, default: float) -> float:
    value = os.environ.get(name)
    if value is None or value.strip() == "":
        return default
    try:
        return float(value)
    except ValueError:
        raise ValueError(f"{name} must be a number, got {value!r}") from None


@dataclass
class Settings:
    """Settings for one collection run."""
    data_dir: Path = DEFAULT_DATA_DIR

    # Pacing between units (milliseconds, inclusive range)
    pacing_min_ms: int = 800
    pacing_max_ms: int = 2000

    # Retries for transient collector errors
    retry_max_attempts: int = 3
    retry_base_ms: int = 1000
    retry_cap_ms: int = 10000

    # OCR
    anthropic_api_key: Optional[str] = None
    vision_model: Optional[str] = None
    ocr_review_threshold: float = 0.8

    # Downstream reporting API
    reporting_api_url: Optional[str] = None
    reporting_api_key: Optional[str] = None

    # Meeting schedule (date -> venues)
    schedule_file: Optional[Path] = None

    @classmethod
    def from_env(cls) -> "Settings":
        """
        Build settings from environment variables.

        Raises:
            ValueError: If a numeric variable cannot be parsed, the
                pacing range is inverted or the review threshold is
                outside 0..1
        """
        data_dir = os.environ.get("DATA_DIR")
        schedule = os.environ.get("SCHEDULE_FILE")
        settings = cls(
            data_dir=Path(data_dir) if data_dir else DEFAULT_DATA_DIR,
            pacing_min_ms=_env_int("PACING_MIN_MS", 800),
            pacing_max_ms=_env_int("PACING_MAX_MS", 2000),
            retry_max_attempts=_env_int("RETRY_MAX_ATTEMPTS", 3),
            retry_base_ms=_env_int("RETRY_BASE_MS", 1000),
            retry_cap_ms=_env_int("RETRY_CAP_MS", 10000),
            anthropic_api_key=os.environ.get("ANTHROPIC_API_KEY"),
            vision_model=os.environ.get("VISION_MODEL"),
            ocr_review_threshold=_env_float("OCR_REVIEW_THRESHOLD", 0.8),
            reporting_api_url=os.environ.get("REPORTING_API_URL"),
            reporting_api_key=os.environ.get("REPORTING_API_KEY"),
            schedule_file=Path(schedule) if schedule else None,
        )
        if settings.pacing_min_ms > settings.pacing_max_ms:
            raise ValueError("PACING_MIN_MS must not exceed PACING_MAX_MS")
        if not 0.0 <= settings.ocr_review_threshold <= 1.0:
            raise ValueError(
                f"OCR_REVIEW_THRESHOLD must be between 0 and 1, got {settings.ocr_review_threshold}"
            )
        return settings
