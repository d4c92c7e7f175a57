"""
Reconciliation of prediction marks read from published images.

The vision call returns, per image, a list of {mark, horse_number,
confidence, candidates}. Horse numbers can be:
- a number: read successfully
- 99 (UNKNOWN_SENTINEL): the mark is there but the number is unreadable
- null: the mark is not on the image

reconcile_marks() turns that into exactly five observations (one per mark,
in priority order), so downstream code never special-cases a missing mark.

Usage:
    from core.ocr_marks import parse_marks_extraction, reconcile_marks, marks_to_rank_array

    extraction = parse_marks_extraction(raw_json)
    observations = reconcile_marks(extraction)
    ai_ranks = marks_to_rank_array(observations)  # e.g. (7, None, 3, 12, 5)
"""

import json
import re
from dataclasses import dataclass, field
from typing import Optional, Any

from pydantic import BaseModel, ValidationError, field_validator

from core.records import RankArray, parse_horse_number
from core.logging import get_logger

logger = get_logger(__name__)

# Mark -> priority (1 = strongest)
MARK_PRIORITY = {
    "◎": 1,
    "〇": 2,
    "☆": 3,
    "▲": 4,
    "△": 5,
}

# Glyphs the vision model returns for the same printed mark
MARK_ALIASES = {
    "○": "〇",
    "◯": "〇",
    "O": "〇",
    "★": "☆",
}

UNKNOWN_SENTINEL = 99
DEFAULT_REVIEW_THRESHOLD = 0.8


class ExtractionParseError(ValueError):
    """The vision output does not have the expected structure."""


def canonical_mark(mark: Optional[str]) -> Optional[str]:
    """Canonical mark symbol, or None if the symbol is not one of the five."""
    if mark is None:
        return None
    mark = mark.strip()
    mark = MARK_ALIASES.get(mark, mark)
    return mark if mark in MARK_PRIORITY else None


# =============================================================================
# VISION PAYLOADS
# =============================================================================

class MarkItem(BaseModel):
    mark: str
    horse_number: Optional[int] = None
    confidence: Optional[float] = None
    candidates: Optional[list[int]] = None

    @field_validator("confidence")
    @classmethod
    def confidence_in_range(cls, v: Optional[float]) -> Optional[float]:
        if v is not None and not 0.0 <= v <= 1.0:
            raise ValueError("confidence must be between 0 and 1")
        return v


class MarksExtraction(BaseModel):
    horses: list[MarkItem]


class RaceMetadata(BaseModel):
    date: str
    trackName: str
    raceNumber: int

    @field_validator("raceNumber")
    @classmethod
    def race_number_valid(cls, v: int) -> int:
        if v < 1:
            raise ValueError("raceNumber must be positive")
        return v


EXPECTATION_GRADES = ("A", "B", "C", "D", "E", "F")


class IndexHorse(BaseModel):
    number: int
    rank: float
    name: Optional[str] = None
    score: Optional[float] = None


class IndexExtraction(BaseModel):
    """Index table read from a newspaper image: per-horse rank plus the grade above it."""
    raceNumber: int
    index_expectation: Optional[str] = None
    horses: list[IndexHorse]

    @field_validator("raceNumber")
    @classmethod
    def race_number_valid(cls, v: int) -> int:
        if v < 1:
            raise ValueError("raceNumber must be positive")
        return v

    @field_validator("index_expectation")
    @classmethod
    def grade_valid(cls, v: Optional[str]) -> Optional[str]:
        if v is None or not v.strip():
            return None
        grade = v.strip().upper()
        if grade not in EXPECTATION_GRADES:
            raise ValueError(f"index_expectation must be one of A-F, got {v!r}")
        return grade


_JSON_OBJECT = re.compile(r"\{[\s\S]*\}")


def _load_json(raw: Any) -> Any:
    """Accept a dict, or text with a JSON object somewhere in it."""
    if isinstance(raw, dict):
        return raw
    if not isinstance(raw, str):
        raise ExtractionParseError(f"Unexpected extraction type: {type(raw).__name__}")

    # Handle case where response has text or code fences around the JSON
    match = _JSON_OBJECT.search(raw)
    if not match:
        raise ExtractionParseError("No JSON found in extraction")
    try:
        return json.loads(match.group())
    except json.JSONDecodeError as e:
        raise ExtractionParseError(f"Malformed JSON: {e}") from e


def parse_marks_extraction(raw: Any) -> MarksExtraction:
    """
    Validate the marks call output.

    Raises:
        ExtractionParseError: If the output cannot be read as {"horses": [...]}
    """
    data = _load_json(raw)
    try:
        return MarksExtraction.model_validate(data)
    except ValidationError as e:
        raise ExtractionParseError(f"Invalid marks extraction: {e.error_count()} errors") from e


def parse_race_metadata(raw: Any) -> RaceMetadata:
    """
    Validate the race-metadata call output.

    Raises:
        ExtractionParseError: If date / trackName / raceNumber are missing
    """
    data = _load_json(raw)
    try:
        return RaceMetadata.model_validate(data)
    except ValidationError as e:
        raise ExtractionParseError(f"Invalid race metadata: {e.error_count()} errors") from e


def parse_index_extraction(raw: Any) -> IndexExtraction:
    """
    Validate the index-table call output.

    Raises:
        ExtractionParseError: If raceNumber / horses are missing or the grade is not A-F
    """
    data = _load_json(raw)
    try:
        return IndexExtraction.model_validate(data)
    except ValidationError as e:
        raise ExtractionParseError(f"Invalid index extraction: {e.error_count()} errors") from e


# =============================================================================
# OBSERVATIONS
# =============================================================================

@dataclass
class OCRMarkObservation:
    """One mark on one image after reconciliation."""
    mark: str
    priority: int
    horse_number: Optional[int] = None  # resolved number, None if absent/unreadable
    raw_number: Optional[int] = None  # as reported, keeps the 99 sentinel
    confidence: Optional[float] = None
    candidates: list[int] = field(default_factory=list)
    needs_review: bool = False

    @property
    def is_unknown(self) -> bool:
        return self.raw_number == UNKNOWN_SENTINEL

    def to_dict(self) -> dict:
        return {
            "mark": self.mark,
            "priority": self.priority,
            "horse_number": self.horse_number,
            "raw_number": self.raw_number,
            "confidence": self.confidence,
            "candidates": list(self.candidates),
            "needs_review": self.needs_review,
        }


def _needs_review(raw_number: Optional[int], confidence: Optional[float], threshold: float) -> bool:
    if raw_number == UNKNOWN_SENTINEL:
        return True
    return confidence is not None and confidence < threshold


def reconcile_marks(
    extraction: MarksExtraction,
    review_threshold: float = DEFAULT_REVIEW_THRESHOLD,
) -> list[OCRMarkObservation]:
    """
    Reconcile one image's marks into exactly five observations.

    Args:
        extraction: Validated marks call output
        review_threshold: Confidence below this flags the observation

    Returns:
        Five observations sorted by mark priority
    """
    by_mark: dict[str, OCRMarkObservation] = {}

    for item in extraction.horses:
        mark = canonical_mark(item.mark)
        if mark is None:
            logger.warning(f"Ignoring unknown mark {item.mark!r}")
            continue
        if mark in by_mark:
            logger.warning(f"Mark {mark} reported twice, keeping the first")
            continue

        raw = item.horse_number
        number = None if raw == UNKNOWN_SENTINEL else parse_horse_number(raw)
        candidates = [c for c in (item.candidates or []) if parse_horse_number(c) is not None]

        by_mark[mark] = OCRMarkObservation(
            mark=mark,
            priority=MARK_PRIORITY[mark],
            horse_number=number,
            raw_number=raw,
            confidence=item.confidence,
            candidates=candidates,
            needs_review=_needs_review(raw, item.confidence, review_threshold),
        )

    # Fill in marks the vision call did not return
    for mark, priority in MARK_PRIORITY.items():
        if mark not in by_mark:
            by_mark[mark] = OCRMarkObservation(mark=mark, priority=priority)

    observations = sorted(by_mark.values(), key=lambda o: o.priority)

    # A horse can only carry one mark; a repeat on a weaker mark is unresolved
    used = set()
    for obs in observations:
        if obs.horse_number is None:
            continue
        if obs.horse_number in used:
            logger.warning(f"Horse {obs.horse_number} read under two marks, clearing {obs.mark}")
            obs.horse_number = None
            obs.needs_review = True
            continue
        used.add(obs.horse_number)

    return observations


def marks_to_rank_array(observations: list[OCRMarkObservation]) -> RankArray:
    """Project observations to the 5-slot ai_ranks array (None stays in its slot)."""
    ordered = sorted(observations, key=lambda o: o.priority)
    return tuple(o.horse_number for o in ordered)


def flagged_observations(observations: list[OCRMarkObservation]) -> list[OCRMarkObservation]:
    """Observations that need a manual look."""
    return [o for o in observations if o.needs_review]


def lowest_confidence(observations: list[OCRMarkObservation]) -> Optional[float]:
    """Lowest reported confidence, or None if no observation reported one."""
    values = [o.confidence for o in observations if o.confidence is not None]
    return min(values) if values else None
