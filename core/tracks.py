"""
Venue codes and name mapping.

The analytics site, the marks site and the published images all name venues
differently (two-digit codes, Japanese names, sometimes with a meeting
prefix like "2回東京"). This module maps between them and provides the
order races are listed in daily exports.

Usage:
    from core.tracks import get_track_code, get_track_name

    get_track_code("東京")      # '05'
    get_track_name("05")       # '東京'
"""

import re
from typing import Optional

TRACK_CODES = {
    "SAPPORO": "01",
    "HAKODATE": "02",
    "FUKUSHIMA": "03",
    "NIIGATA": "04",
    "TOKYO": "05",
    "NAKAYAMA": "06",
    "CHUKYO": "07",
    "KYOTO": "08",
    "HANSHIN": "09",
    "KOKURA": "10",
}

TRACK_NAMES = {
    "01": "札幌",
    "02": "函館",
    "03": "福島",
    "04": "新潟",
    "05": "東京",
    "06": "中山",
    "07": "中京",
    "08": "京都",
    "09": "阪神",
    "10": "小倉",
}

NAME_TO_CODE = {name: code for code, name in TRACK_NAMES.items()}

# Export order (index 0 is listed first)
TRACK_SORT_ORDER = (
    TRACK_CODES["KOKURA"],
    TRACK_CODES["CHUKYO"],
    TRACK_CODES["FUKUSHIMA"],
    TRACK_CODES["NIIGATA"],
    TRACK_CODES["SAPPORO"],
    TRACK_CODES["HAKODATE"],
    TRACK_CODES["KYOTO"],
    TRACK_CODES["HANSHIN"],
    TRACK_CODES["TOKYO"],
    TRACK_CODES["NAKAYAMA"],
)

UNKNOWN_TRACK_NAME = "不明"

_DATE_DIGITS = re.compile(r"\d+")


def is_track_code(code: Optional[str]) -> bool:
    """True if code is one of the known two-digit venue codes."""
    return code in TRACK_NAMES


def normalize_track_code(code) -> Optional[str]:
    """
    Normalize a venue code to its two-digit form.

    Examples:
        >>> normalize_track_code("5")
        '05'
        >>> normalize_track_code(10)
        '10'
        >>> normalize_track_code("99") is None
        True
    """
    if code is None:
        return None
    text = str(code).strip()
    if not text.isdigit():
        return None
    text = text.zfill(2)
    return text if is_track_code(text) else None


def get_track_name(code: str) -> str:
    """Venue name for a code, or '不明' when unknown."""
    return TRACK_NAMES.get(code, UNKNOWN_TRACK_NAME)


def get_track_code(name: Optional[str]) -> str:
    """
    Venue code for a venue name, or '' when it cannot be matched.

    Accepts names with a meeting prefix/suffix as printed on images,
    e.g. "2回東京8日" -> '05'.
    """
    if not name:
        return ""
    name = name.strip()
    if name in NAME_TO_CODE:
        return NAME_TO_CODE[name]

    # Substring match (e.g. "2回東京8日" contains "東京")
    for venue, code in NAME_TO_CODE.items():
        if venue in name:
            return code
    return ""


def track_sort_index(code: str) -> int:
    """Position of a venue in the export order; unknown codes sort last."""
    try:
        return TRACK_SORT_ORDER.index(code)
    except ValueError:
        return len(TRACK_SORT_ORDER)


def normalize_date(value) -> Optional[str]:
    """
    Normalize a date to the 8-digit YYYYMMDD form.

    Handles the formats sources actually produce:
    "20250525", "2025-05-25", "2025/5/25", "2025年5月25日".

    Examples:
        >>> normalize_date("2025年5月25日")
        '20250525'
        >>> normalize_date("2025-05-25")
        '20250525'
        >>> normalize_date("5月25日") is None
        True
    """
    if value is None:
        return None
    text = str(value).strip()
    if len(text) == 8 and text.isdigit():
        return text

    parts = _DATE_DIGITS.findall(text)
    if len(parts) != 3 or len(parts[0]) != 4:
        return None

    year, month, day = (int(p) for p in parts)
    if not (1 <= month <= 12 and 1 <= day <= 31):
        return None
    return f"{year:04d}{month:02d}{day:02d}"
