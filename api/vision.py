"""
Vision client for reading prediction images.

Calls per image:
1. extract_metadata: date, venue name and race number printed at the top
2. extract_marks: the five prediction marks and their horse numbers
3. extract_index: the index table and its expectation grade (newspaper images)

Each returns the model's raw text; core.ocr_marks validates it.

Usage:
    from api.vision import VisionAPI

    vision = VisionAPI()
    raw_meta = vision.extract_metadata("images/20250525-05-1.png")
    raw_marks = vision.extract_marks("images/20250525-05-1.png")
"""

import base64
import mimetypes
import os
import time
from pathlib import Path
from typing import Optional

import anthropic
import requests
from dotenv import load_dotenv

from core.logging import get_logger

load_dotenv()

logger = get_logger(__name__)

DEFAULT_MODEL = "claude-sonnet-4-20250514"
DEFAULT_TIMEOUT = 15
MAX_RETRIES = 3

METADATA_SYSTEM_PROMPT = """画像上部に表示されている日付、競馬場名、レース番号を抽出してください。
Return only JSON of the form:
{"date": "2025年5月25日", "trackName": "東京", "raceNumber": 11}"""

MARKS_SYSTEM_PROMPT = """画像左側の ◎ 〇 ☆ ▲ △ と馬番を抽出して JSON で返してください。
- マークが画像に存在しない → horse_number は null
- マークはあるが数字が読めない／自信が無い → horse_number は 99、
  confidence を 0〜1 (1 が自信あり) で返し、可能性がある数字を candidates に入れてください
- 5 つのマークすべてについて必ず返してください

Return only JSON of the form:
{"horses": [{"mark": "◎", "horse_number": 7, "confidence": 0.95, "candidates": []}, ...]}"""

INDEX_SYSTEM_PROMPT = """競馬新聞の指数表から、順位順にすべての馬の馬番、馬名、得点、順位を抽出してください。
- 画像内に複数の表がある場合は、メインの完全な情報が含まれている表のみを対象にしてください
- 表の上部に「指数期待度」(A〜F) があればその値も返してください。無ければ null
- レース番号も返してください

Return only JSON of the form:
{"raceNumber": 11, "index_expectation": "A", "horses": [{"number": 7, "name": "ドウデュース", "rank": 1, "score": 85.5}, ...]}"""


class VisionError(Exception):
    """Vision call or image load failed."""


def _media_type(name: str, header: Optional[str] = None) -> str:
    if header and header.startswith("image/"):
        return header.split(";")[0]
    guessed, _ = mimetypes.guess_type(name)
    return guessed if guessed and guessed.startswith("image/") else "image/jpeg"


def load_image(location: str, timeout: int = DEFAULT_TIMEOUT) -> tuple[str, str]:
    """
    Load an image from a local path or URL.

    Returns:
        (media_type, base64 data)

    Raises:
        VisionError: If the image cannot be read or downloaded
    """
    if location.startswith(("http://", "https://")):
        try:
            response = requests.get(location, timeout=timeout)
            response.raise_for_status()
        except requests.exceptions.RequestException as e:
            raise VisionError(f"Could not download {location}: {e}") from e
        media_type = _media_type(location, response.headers.get("Content-Type"))
        return media_type, base64.b64encode(response.content).decode("ascii")

    path = Path(location)
    try:
        data = path.read_bytes()
    except OSError as e:
        raise VisionError(f"Could not read {path}: {e}") from e
    return _media_type(path.name), base64.b64encode(data).decode("ascii")


class VisionAPI:
    """
    Anthropic vision client.

    Retries connection errors, rate limits and 5xx responses with
    2**attempt seconds between attempts.
    """

    def __init__(
        self,
        api_key: Optional[str] = None,
        model: Optional[str] = None,
    ):
        """
        Initialize the client.

        Args:
            api_key: Anthropic API key (defaults to ANTHROPIC_API_KEY env var)
            model: Model to use (defaults to VISION_MODEL env var)
        """
        self.api_key = api_key or os.environ.get("ANTHROPIC_API_KEY")
        if not self.api_key:
            raise ValueError(
                "API key required. Set ANTHROPIC_API_KEY env var or pass api_key."
            )

        self.model = model or os.environ.get("VISION_MODEL") or DEFAULT_MODEL
        self.client = anthropic.Anthropic(api_key=self.api_key)

    def _call(self, location: str, system: str, instruction: str) -> str:
        """
        Send one image with an instruction and return the text response.

        Raises:
            VisionError: If the image cannot be loaded or every attempt fails
        """
        media_type, data = load_image(location)
        messages = [
            {
                "role": "user",
                "content": [
                    {
                        "type": "image",
                        "source": {"type": "base64", "media_type": media_type, "data": data},
                    },
                    {"type": "text", "text": instruction},
                ],
            }
        ]

        last_error = None
        for attempt in range(MAX_RETRIES):
            try:
                response = self.client.messages.create(
                    model=self.model,
                    max_tokens=1000,
                    temperature=0,
                    system=system,
                    messages=messages,
                )
                raw = response.content[0].text
                logger.debug(f"Raw vision response: {raw}")
                return raw

            except anthropic.APIConnectionError as e:
                last_error = e
                if attempt < MAX_RETRIES - 1:
                    wait_time = 2 ** attempt  # 1s, 2s, 4s
                    logger.warning(f"Connection error, retrying in {wait_time}s...")
                    time.sleep(wait_time)
                    continue
            except anthropic.RateLimitError as e:
                last_error = e
                if attempt < MAX_RETRIES - 1:
                    wait_time = 2 ** attempt
                    logger.warning(f"Rate limited, retrying in {wait_time}s...")
                    time.sleep(wait_time)
                    continue
            except anthropic.APIStatusError as e:
                last_error = e
                if e.status_code >= 500 and attempt < MAX_RETRIES - 1:
                    wait_time = 2 ** attempt
                    logger.warning(f"Server error {e.status_code}, retrying in {wait_time}s...")
                    time.sleep(wait_time)
                    continue
                break  # Don't retry client errors (4xx)

        raise VisionError(f"Vision call failed for {location}: {last_error}") from last_error

    def extract_metadata(self, image: str) -> str:
        """Read date, venue name and race number from the image header."""
        return self._call(
            image,
            METADATA_SYSTEM_PROMPT,
            "画像から日付、競馬場名、レース番号を抽出してください。",
        )

    def extract_marks(self, image: str) -> str:
        """Read the five prediction marks and their horse numbers."""
        return self._call(
            image,
            MARKS_SYSTEM_PROMPT,
            "画像から予想マーク（◎、〇、☆、▲、△）と対応する馬番を抽出してください。",
        )

    def extract_index(self, image: str) -> str:
        """Read the index table (rank per horse) and the expectation grade above it."""
        return self._call(
            image,
            INDEX_SYSTEM_PROMPT,
            "画像から指数表の馬番と順位、指数期待度、レース番号を抽出してください。",
        )
