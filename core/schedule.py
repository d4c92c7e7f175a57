"""
Meeting schedule lookup: which venues race on a given day.

The schedule file is a JSON list of entries like:

    {"event_year": "2025", "event_date": "05-25", "racecourse_code": "05", ...}

Usage:
    from core.schedule import track_codes_from_schedule

    track_codes_from_schedule(Path("schedule.json"), "20250525")  # ["05", "08"]
"""

import json
from pathlib import Path
from typing import Optional

from core.tracks import normalize_date, normalize_track_code
from core.logging import get_logger

logger = get_logger(__name__)


def track_codes_from_schedule(path: Optional[Path], date: str) -> list[str]:
    """
    Venue codes racing on a date, sorted and deduplicated.

    A missing or unreadable schedule is logged and gives an empty list
    (the caller then needs explicit track codes).

    Args:
        path: Schedule JSON file
        date: Race date in any format normalize_date() accepts

    Returns:
        Sorted list of 2-digit venue codes
    """
    norm_date = normalize_date(date)
    if not norm_date:
        raise ValueError(f"Invalid date: {date!r}")

    if path is None or not Path(path).exists():
        logger.warning(f"Schedule file not found: {path}")
        return []

    try:
        entries = json.loads(Path(path).read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError) as e:
        logger.error(f"Could not read schedule {path}: {e}")
        return []

    year, event_date = norm_date[:4], f"{norm_date[4:6]}-{norm_date[6:]}"
    codes = set()
    for entry in entries:
        if str(entry.get("event_year")) != year or entry.get("event_date") != event_date:
            continue
        code = normalize_track_code(entry.get("racecourse_code"))
        if code:
            codes.add(code)

    return sorted(codes)
