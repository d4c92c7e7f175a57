"""
Rank-array derivation from per-horse signal tables.

Each prediction category is described by a SortPolicy: which raw table(s)
feed it, an ordered list of sort keys, and how long the output may be.
derive_ranks() applies the keys as a cascade (first key decides, ties fall
through to the next key, full ties keep source order) and shapes the result
into the category's rank array.

Usage:
    from core.ranking import HorseSignalRow, derive_rank_fields

    tables = {
        "best_time": [HorseSignalRow("7", {"rank": 1}), HorseSignalRow("3", {"rank": 2})],
    }
    derive_rank_fields(tables)
    # {"time_ranks": (7, 3, None)}
"""

import math
from dataclasses import dataclass, field
from typing import Any, Optional, Iterable, Mapping, Sequence

from core.records import RANK_FIELDS, RankArray, parse_horse_number
from core.logging import get_logger

logger = get_logger(__name__)


def parse_signal(value: Any) -> Optional[float]:
    """
    Parse a numeric signal from a source cell.

    Numbers pass through; numeric strings ("1", " 34.5 ") are converted.
    Returns None for text, booleans and non-finite values.
    """
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return value if math.isfinite(value) else None
    if not isinstance(value, str):
        return None
    try:
        number = float(value.strip())
    except ValueError:
        return None
    if not math.isfinite(number):
        return None
    return int(number) if number.is_integer() else number


@dataclass
class HorseSignalRow:
    """One horse in one raw signal table."""
    horse_number: object  # as scraped; parsed with parse_horse_number
    signals: dict[str, float] = field(default_factory=dict)
    horse_name: str = ""

    @classmethod
    def from_dict(cls, data: dict, number_key: str = "horseNumber") -> "HorseSignalRow":
        """
        Build a row from a scraped dict.

        Every numeric value (or numeric string) other than the horse
        number becomes a signal.
        """
        signals = {}
        for key, value in data.items():
            if key in (number_key, "horseName", "horseId", "frameNumber"):
                continue
            number = parse_signal(value)
            if number is not None:
                signals[key] = number
        return cls(
            horse_number=data.get(number_key),
            signals=signals,
            horse_name=data.get("horseName", "") or "",
        )


@dataclass(frozen=True)
class SortKey:
    """One comparison step in a cascade."""
    name: str
    descending: bool = False


@dataclass(frozen=True)
class SortPolicy:
    """
    Declarative ranking rule for one rank-array field.

    Attributes:
        field: Target AnalysisRecord field
        tables: Raw tables in preference order; the first non-empty one is used
        keys: Cascade of sort keys
        max_len: Truncation length (the field's rank-array length)
        min_len: Fewer resolved horses than this -> field omitted
        pad: Pad short results with None; if False, a short result is dropped
    """
    field: str
    tables: tuple[str, ...]
    keys: tuple[SortKey, ...]
    max_len: int
    min_len: int = 1
    pad: bool = True

    def __post_init__(self):
        rank_field = RANK_FIELDS.get(self.field)
        if rank_field is None:
            raise ValueError(f"Unknown rank field: {self.field}")
        if self.max_len != rank_field.length:
            raise ValueError(f"{self.field} has length {rank_field.length}, policy says {self.max_len}")
        if not 1 <= self.min_len <= self.max_len:
            raise ValueError(f"{self.field}: min_len must be within 1..{self.max_len}")
        if not self.keys:
            raise ValueError(f"{self.field}: at least one sort key is required")


# =============================================================================
# POLICIES
# =============================================================================

_MARKS = ("honmei", "taikou", "tanana", "renka")  # ◎ ○ ▲ △

WIN_PREDICTION_POLICY = SortPolicy(
    field="win_prediction_ranks",
    tables=("marks",),
    keys=tuple(SortKey(f"{m}Rank") for m in _MARKS)
    + tuple(SortKey(f"{m}Count", descending=True) for m in _MARKS),
    max_len=8,
    min_len=3,
)

TIME_POLICY = SortPolicy(
    field="time_ranks",
    tables=("best_time",),
    keys=(SortKey("rank"),),
    max_len=3,
)

LAST_3F_POLICY = SortPolicy(
    field="last_3f_ranks",
    tables=("last_3f",),
    keys=(SortKey("rank"),),
    max_len=3,
)

HORSE_TRAIT_POLICY = SortPolicy(
    field="horse_trait_ranks",
    tables=("right_handed", "left_handed"),
    keys=(SortKey("rank"),),
    max_len=3,
    min_len=3,
    pad=False,
)

# Index tables read from newspaper images (lower rank is better)
INDEX_POLICY = SortPolicy(
    field="index_ranks",
    tables=("index",),
    keys=(SortKey("rank"),),
    max_len=8,
)

DEFAULT_POLICIES: tuple[SortPolicy, ...] = (
    WIN_PREDICTION_POLICY,
    TIME_POLICY,
    LAST_3F_POLICY,
    HORSE_TRAIT_POLICY,
)


# =============================================================================
# DERIVATION
# =============================================================================

def _sort_value(row: HorseSignalRow, key: SortKey) -> tuple[int, float]:
    """Sort tuple for one key; missing signals always sort last."""
    value = row.signals.get(key.name)
    if value is None:
        return (1, 0.0)
    value = float(value)
    return (0, -value if key.descending else value)


def cascade_sort(rows: Iterable[HorseSignalRow], keys: Sequence[SortKey]) -> list[HorseSignalRow]:
    """Sort rows by the key cascade. Python's sort is stable, so full ties keep input order."""
    return sorted(rows, key=lambda row: tuple(_sort_value(row, k) for k in keys))


def select_table(
    tables: Mapping[str, Sequence[HorseSignalRow]],
    names: Sequence[str],
) -> list[HorseSignalRow]:
    """First non-empty table in preference order (empty list if none)."""
    for name in names:
        rows = tables.get(name)
        if rows:
            return list(rows)
    return []


def derive_ranks(rows: Iterable[HorseSignalRow], policy: SortPolicy) -> Optional[RankArray]:
    """
    Derive one rank array from a signal table.

    Args:
        rows: Signal rows for one category
        policy: Ranking rule (keys, truncation, minimum, padding)

    Returns:
        Fixed-length tuple of horse numbers (None for absent slots),
        or None if the result does not meet the policy's minimum
    """
    resolved = []
    seen = set()
    for row in rows:
        number = parse_horse_number(row.horse_number)
        if number is None or number in seen:
            continue
        seen.add(number)
        resolved.append((number, row))

    ordered = cascade_sort((row for _, row in resolved), policy.keys)
    numbers = [parse_horse_number(row.horse_number) for row in ordered][: policy.max_len]

    if len(numbers) < policy.min_len:
        return None
    if len(numbers) < policy.max_len:
        if not policy.pad:
            return None
        numbers.extend([None] * (policy.max_len - len(numbers)))
    return tuple(numbers)


def derive_rank_fields(
    tables: Mapping[str, Sequence[HorseSignalRow]],
    policies: Sequence[SortPolicy] = DEFAULT_POLICIES,
) -> dict[str, RankArray]:
    """
    Apply every policy to the raw tables of one race.

    Returns:
        Dict of field -> rank array for the categories that resolved.
        Categories below their minimum are left out (no opinion).
    """
    derived = {}
    for policy in policies:
        rows = select_table(tables, policy.tables)
        ranks = derive_ranks(rows, policy)
        if ranks is None:
            logger.debug(f"No {policy.field}: {len(rows)} rows below minimum {policy.min_len}")
            continue
        derived[policy.field] = ranks
    return derived
