"""
Race keys and the canonical per-race analysis record.

Every collector produces partial records for a race. They are keyed by
RaceKey (date, venue code, race number) and merged into one AnalysisRecord
by the EntityStore.

Rank arrays are fixed-length tuples of horse numbers where None marks an
absent slot (never 0):

    (7, 3, 12, None, None)   # 5-slot array with only three horses resolved

Usage:
    from core.records import RaceKey, AnalysisRecord, normalize_rank_array

    key = RaceKey.parse("20250525", "5", "11")
    record = AnalysisRecord(key=key, time_ranks=normalize_rank_array("time_ranks", [4]))
    record.time_ranks  # (4, None, None)
"""

from dataclasses import dataclass, field, fields, replace
from typing import Optional, Any

from core.tracks import normalize_date, normalize_track_code


RankArray = tuple[Optional[int], ...]


class OrphanRecordError(ValueError):
    """A record is missing part of its race key and cannot be merged."""


class RankArrayError(ValueError):
    """A rank array breaks the horse-number / length invariants."""


# =============================================================================
# RACE KEY
# =============================================================================

@dataclass(frozen=True, order=True)
class RaceKey:
    """Identity of one race across every source."""
    date: str  # YYYYMMDD
    track_code: str  # "01".."10"
    race_number: int  # 1..12

    @classmethod
    def parse(cls, date: Any, track_code: Any, race_number: Any) -> "RaceKey":
        """
        Build a key from loosely typed source fields.

        Raises:
            OrphanRecordError: If any component is missing or malformed
        """
        norm_date = normalize_date(date)
        if not norm_date:
            raise OrphanRecordError(f"Invalid or missing date: {date!r}")

        norm_track = normalize_track_code(track_code)
        if not norm_track:
            raise OrphanRecordError(f"Invalid or missing track code: {track_code!r}")

        try:
            number = int(str(race_number).strip())
        except (TypeError, ValueError):
            raise OrphanRecordError(f"Invalid or missing race number: {race_number!r}") from None
        if number < 1:
            raise OrphanRecordError(f"Race number must be positive: {race_number!r}")

        return cls(date=norm_date, track_code=norm_track, race_number=number)

    @property
    def label(self) -> str:
        """Short label for logs and file names, e.g. 20250525-05-11."""
        return f"{self.date}-{self.track_code}-{self.race_number:02d}"

    def to_dict(self) -> dict:
        return {
            "date": self.date,
            "trackCode": self.track_code,
            "raceNumber": self.race_number,
        }


# =============================================================================
# RANK ARRAYS
# =============================================================================

@dataclass(frozen=True)
class RankField:
    """Declared shape of one rank-array field on AnalysisRecord."""
    name: str
    length: int
    label: str  # column prefix in tabular exports


RANK_FIELDS: dict[str, RankField] = {
    f.name: f for f in (
        RankField("win_prediction_ranks", 8, "win_prediction"),
        RankField("index_ranks", 8, "index"),
        RankField("jravan_prediction_ranks", 6, "jravan"),
        RankField("ai_ranks", 5, "ai"),
        RankField("cp_ranks", 4, "cp"),
        RankField("data_analysis_ranks", 3, "data_analysis"),
        RankField("time_ranks", 3, "time"),
        RankField("last_3f_ranks", 3, "last_3f"),
        RankField("horse_trait_ranks", 3, "horse_trait"),
    )
}


def parse_horse_number(value: Any) -> Optional[int]:
    """
    Parse a horse number from a source cell.

    Returns None for anything that is not a positive integer
    ("", "取消", 0, None, 3.5).
    """
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, float):
        if not value.is_integer():
            return None
        value = int(value)
    try:
        number = int(str(value).strip())
    except ValueError:
        return None
    return number if number > 0 else None


def normalize_rank_array(name: str, values) -> RankArray:
    """
    Validate a rank array and right-pad it with None to its field length.

    Absent slots may appear anywhere (OCR can miss the second mark but
    read the third); they are kept in place.

    Raises:
        RankArrayError: Unknown field, too many entries, a non-positive
            number, or a duplicate horse
    """
    rank_field = RANK_FIELDS.get(name)
    if rank_field is None:
        raise RankArrayError(f"Unknown rank field: {name}")

    values = list(values)
    if len(values) > rank_field.length:
        raise RankArrayError(f"{name} holds at most {rank_field.length} horses, got {len(values)}")

    ranks: list[Optional[int]] = []
    seen = set()
    for value in values:
        if value is None:
            ranks.append(None)
            continue
        number = parse_horse_number(value)
        if number is None:
            raise RankArrayError(f"{name}: invalid horse number {value!r}")
        if number in seen:
            raise RankArrayError(f"{name}: horse {number} appears twice")
        seen.add(number)
        ranks.append(number)

    ranks.extend([None] * (rank_field.length - len(ranks)))
    return tuple(ranks)


def resolved_count(ranks: Optional[RankArray]) -> int:
    """Number of slots holding a horse."""
    return sum(1 for r in ranks or () if r is not None)


# =============================================================================
# THIRD-PARTY PREDICTION
# =============================================================================

@dataclass
class ThirdPartyPrediction:
    """Prediction object from the third-party engine, stored as one field."""
    focused_horse_numbers: list[int] = field(default_factory=list)
    time_deviation_top3: list[int] = field(default_factory=list)
    last_spurt_deviation_top3: list[int] = field(default_factory=list)
    sp_value_top5: list[int] = field(default_factory=list)
    ag_value_top5: list[int] = field(default_factory=list)
    sa_value_top5: list[int] = field(default_factory=list)
    ki_value_top3: list[int] = field(default_factory=list)

    # Source payloads use camelCase
    _ALIASES = {
        "focusedHorseNumbers": "focused_horse_numbers",
        "timeDeviationTop3": "time_deviation_top3",
        "lastSpurtDeviationTop3": "last_spurt_deviation_top3",
        "spValueTop5": "sp_value_top5",
        "agValueTop5": "ag_value_top5",
        "saValueTop5": "sa_value_top5",
        "kiValueTop3": "ki_value_top3",
    }

    @classmethod
    def from_dict(cls, data: dict) -> "ThirdPartyPrediction":
        kwargs = {}
        names = {f.name for f in fields(cls)}
        for key, value in data.items():
            name = cls._ALIASES.get(key, key)
            if name in names:
                numbers = [parse_horse_number(v) for v in value or []]
                kwargs[name] = [n for n in numbers if n is not None]
        return cls(**kwargs)

    def to_dict(self) -> dict:
        return {f.name: list(getattr(self, f.name)) for f in fields(self)}


# =============================================================================
# ANALYSIS RECORD
# =============================================================================

@dataclass
class AnalysisRecord:
    """Canonical merged record for one race."""
    key: RaceKey

    # Metadata
    race_name: Optional[str] = None
    track_type: Optional[str] = None  # 芝 / ダート / 障害
    distance: Optional[int] = None
    netkeiba_race_id: Optional[int] = None

    # Rank arrays (see RANK_FIELDS)
    win_prediction_ranks: Optional[RankArray] = None
    index_ranks: Optional[RankArray] = None
    jravan_prediction_ranks: Optional[RankArray] = None
    ai_ranks: Optional[RankArray] = None
    cp_ranks: Optional[RankArray] = None
    data_analysis_ranks: Optional[RankArray] = None
    time_ranks: Optional[RankArray] = None
    last_3f_ranks: Optional[RankArray] = None
    horse_trait_ranks: Optional[RankArray] = None

    # Image-derived annotations
    index_expectation: Optional[str] = None  # A..F
    ai_confidence: Optional[float] = None  # lowest confidence across marks
    ai_needs_review: Optional[bool] = None

    # Wholesale fields
    umax_prediction: Optional[ThirdPartyPrediction] = None
    race_result: Optional[dict] = None

    created_at: Optional[str] = None
    updated_at: Optional[str] = None

    @classmethod
    def field_names(cls) -> tuple[str, ...]:
        """Mergeable field names (everything except the key)."""
        return tuple(f.name for f in fields(cls) if f.name != "key")

    def with_fields(self, **changes) -> "AnalysisRecord":
        """Return a copy with the given fields replaced."""
        return replace(self, **changes)

    def without_timestamps(self) -> "AnalysisRecord":
        return replace(self, created_at=None, updated_at=None)

    def to_dict(self) -> dict:
        """Serialize for JSON. Absent fields are omitted, absent slots are null."""
        data = self.key.to_dict()
        for name in self.field_names():
            value = getattr(self, name)
            if value is None:
                continue
            if name in RANK_FIELDS:
                value = list(value)
            elif isinstance(value, ThirdPartyPrediction):
                value = value.to_dict()
            data[name] = value
        return data

    @classmethod
    def from_dict(cls, data: dict) -> "AnalysisRecord":
        """
        Rebuild a record from to_dict() output.

        Raises:
            OrphanRecordError: If the key fields are missing
            RankArrayError: If a stored rank array is invalid
        """
        key = RaceKey.parse(data.get("date"), data.get("trackCode"), data.get("raceNumber"))
        kwargs: dict[str, Any] = {}
        for name in cls.field_names():
            value = data.get(name)
            if value is None:
                continue
            if name in RANK_FIELDS:
                value = normalize_rank_array(name, value)
            elif name == "umax_prediction":
                value = ThirdPartyPrediction.from_dict(value)
            kwargs[name] = value
        return cls(key=key, **kwargs)
