"""
Entity store and merge protocol for per-race analysis records.

Collectors never touch records directly. They call EntityStore.upsert()
with a race key and the fields they produced:

    store = EntityStore(repository=RecordRepository(Path("data")))
    store.upsert(key, {"time_ranks": [7, 3]}, source="winkeiba")
    store.upsert(key, {"cp_ranks": [1, 2, 3, 4]}, source="netkeiba")

Merge rules:
- Fields present in the partial replace the stored value (arrays wholesale).
- Fields absent from the partial (or None) are left untouched.
- A field set to CLEAR is emptied; sources use it for annotations that
  must not outlive the value they describe.
- Overlapping writes: last writer wins, unless a FieldPriority table ranks
  the current writer of that field higher than the new source.

Every upsert also writes the affected record to disk (one JSON file per
race). A failed write is logged and the in-memory store stays authoritative.
"""

import csv
import json
import threading
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Optional, Iterable, Mapping, Any

from core.records import (
    AnalysisRecord,
    RaceKey,
    RANK_FIELDS,
    ThirdPartyPrediction,
    normalize_rank_array,
)
from core.tracks import get_track_name, normalize_date, normalize_track_code, track_sort_index
from core.logging import get_logger

logger = get_logger(__name__)

# Fields a collector may not write (managed by the store)
_MANAGED_FIELDS = {"created_at", "updated_at"}
_KEY_FIELDS = ("date", "trackCode", "raceNumber")


class _Clear:
    """Partial value that empties a field (None means "no opinion")."""

    def __repr__(self) -> str:
        return "CLEAR"


CLEAR = _Clear()


@dataclass
class FieldPriority:
    """
    Source priority for overlapping fields.

    Higher wins. Sources not listed have priority 0, so with an empty table
    the last writer wins everywhere.

    Usage:
        FieldPriority(sources={"netkeiba": 2, "winkeiba": 1})
        FieldPriority(sources={"winkeiba": 1}, fields={"ai_ranks": {"note": 5}})
    """
    sources: dict[str, int] = field(default_factory=dict)
    fields: dict[str, dict[str, int]] = field(default_factory=dict)

    def priority(self, field_name: str, source: Optional[str]) -> int:
        if source is None:
            return 0
        per_field = self.fields.get(field_name, {})
        if source in per_field:
            return per_field[source]
        return self.sources.get(source, 0)

    def allows(self, field_name: str, current: Optional[str], new: Optional[str]) -> bool:
        """True if `new` may overwrite a field last written by `current`."""
        return self.priority(field_name, new) >= self.priority(field_name, current)


def _sort_key(record: AnalysisRecord) -> tuple:
    return (record.key.date, track_sort_index(record.key.track_code), record.key.race_number)


def _matches_key(key: RaceKey, name: str, value: Any) -> bool:
    """True if a key field carried inside a partial names the same race."""
    if name == "key":
        return value == key
    if name == "date":
        return normalize_date(value) == key.date
    if name == "trackCode":
        return normalize_track_code(value) == key.track_code
    try:
        return int(str(value).strip()) == key.race_number
    except ValueError:
        return False


def _now() -> str:
    return datetime.now().isoformat(timespec="seconds")


# =============================================================================
# PERSISTENCE
# =============================================================================

class RecordRepository:
    """
    JSON persistence for analysis records.

    Layout:
        <root>/analysis/analysis_<date>_<track>_<NN>.json   one file per race
        <root>/analysis_<date>.json                        day aggregate
        <root>/analysis_<date>.csv                         day aggregate, tabular
    """

    def __init__(self, root: Path):
        self.root = Path(root)
        self.race_dir = self.root / "analysis"

    def path_for(self, key: RaceKey) -> Path:
        return self.race_dir / f"analysis_{key.date}_{key.track_code}_{key.race_number:02d}.json"

    def save(self, record: AnalysisRecord) -> Path:
        """Write one race's record. Raises OSError on failure."""
        path = self.path_for(record.key)
        path.parent.mkdir(parents=True, exist_ok=True)
        tmp = path.with_suffix(".json.tmp")
        tmp.write_text(json.dumps(record.to_dict(), ensure_ascii=False, indent=2), encoding="utf-8")
        tmp.replace(path)
        return path

    def load(self, key: RaceKey) -> Optional[AnalysisRecord]:
        """Load one race's record, or None if it was never saved."""
        path = self.path_for(key)
        if not path.exists():
            return None
        return AnalysisRecord.from_dict(json.loads(path.read_text(encoding="utf-8")))

    def load_day(self, date: str) -> list[AnalysisRecord]:
        """Load every saved race of a day. Unreadable files are logged and skipped."""
        records = []
        if not self.race_dir.exists():
            return records
        for path in sorted(self.race_dir.glob(f"analysis_{date}_*.json")):
            try:
                records.append(AnalysisRecord.from_dict(json.loads(path.read_text(encoding="utf-8"))))
            except (OSError, ValueError) as e:
                logger.warning(f"Could not load {path.name}: {e}")
        return sorted(records, key=_sort_key)

    def save_day(self, date: str, records: Iterable[AnalysisRecord]) -> tuple[Path, Path]:
        """Write the day aggregate as JSON and CSV."""
        records = sorted((r for r in records if r.key.date == date), key=_sort_key)
        self.root.mkdir(parents=True, exist_ok=True)

        json_path = self.root / f"analysis_{date}.json"
        json_path.write_text(
            json.dumps([r.to_dict() for r in records], ensure_ascii=False, indent=2),
            encoding="utf-8",
        )

        csv_path = self.root / f"analysis_{date}.csv"
        with open(csv_path, "w", newline="", encoding="utf-8-sig") as f:
            writer = csv.DictWriter(f, fieldnames=export_columns())
            writer.writeheader()
            for record in records:
                writer.writerow(export_row(record))

        logger.info(f"Saved {len(records)} races for {date}", extra={"json": str(json_path), "csv": str(csv_path)})
        return json_path, csv_path


def export_columns() -> list[str]:
    """Column order of the tabular day export."""
    columns = ["date", "venue", "race_number", "race_name", "track_type", "distance"]
    for rank_field in RANK_FIELDS.values():
        columns.extend(f"{rank_field.label}_{i}" for i in range(1, rank_field.length + 1))
    columns.extend(["index_expectation", "ai_confidence", "ai_needs_review"])
    return columns


def export_row(record: AnalysisRecord) -> dict:
    """Flatten one record into a tabular row (absent slots are empty cells)."""
    key = record.key
    row: dict[str, Any] = {
        "date": f"{key.date[:4]}/{key.date[4:6]}/{key.date[6:]}",
        "venue": get_track_name(key.track_code),
        "race_number": key.race_number,
        "race_name": record.race_name or "",
        "track_type": record.track_type or "",
        "distance": record.distance or "",
    }
    for rank_field in RANK_FIELDS.values():
        ranks = getattr(record, rank_field.name) or ()
        for i in range(rank_field.length):
            value = ranks[i] if i < len(ranks) else None
            row[f"{rank_field.label}_{i + 1}"] = "" if value is None else value
    row["index_expectation"] = record.index_expectation or ""
    row["ai_confidence"] = "" if record.ai_confidence is None else record.ai_confidence
    row["ai_needs_review"] = "" if record.ai_needs_review is None else record.ai_needs_review
    return row


# =============================================================================
# ENTITY STORE
# =============================================================================

class EntityStore:
    """
    In-memory map of RaceKey -> AnalysisRecord with field-level upserts.

    One store is created per run and passed to every collector pipeline.
    Upserts are serialized by a lock (single writer at a time).
    """

    def __init__(
        self,
        repository: Optional[RecordRepository] = None,
        priority: Optional[FieldPriority] = None,
    ):
        self.repository = repository
        self.priority = priority or FieldPriority()
        self._records: dict[RaceKey, AnalysisRecord] = {}
        self._provenance: dict[RaceKey, dict[str, Optional[str]]] = {}
        self._lock = threading.Lock()

    def __len__(self) -> int:
        return len(self._records)

    def __contains__(self, key: RaceKey) -> bool:
        return key in self._records

    def get(self, key: RaceKey) -> Optional[AnalysisRecord]:
        return self._records.get(key)

    def provenance(self, key: RaceKey) -> dict[str, Optional[str]]:
        """Which source last wrote each field of a record."""
        return dict(self._provenance.get(key, {}))

    def records(self, date: Optional[str] = None) -> list[AnalysisRecord]:
        """All records (optionally for one day) in export order."""
        records = [r for r in self._records.values() if date is None or r.key.date == date]
        return sorted(records, key=_sort_key)

    def normalize_partial(self, key: RaceKey, partial: Mapping[str, Any]) -> dict[str, Any]:
        """
        Validate a partial and coerce its values to record types.

        Raises:
            ValueError: Unknown field, or key fields that disagree with `key`
            RankArrayError: Invalid rank array
        """
        allowed = set(AnalysisRecord.field_names()) - _MANAGED_FIELDS
        changes: dict[str, Any] = {}

        for name, value in partial.items():
            if name in _KEY_FIELDS or name == "key":
                if value is not None and not _matches_key(key, name, value):
                    raise ValueError(f"{key.label}: partial {name}={value!r} does not match key")
                continue
            if name not in allowed:
                raise ValueError(f"{key.label}: unknown field {name!r}")
            if value is None:
                continue
            if value is CLEAR:
                changes[name] = None
                continue
            if name in RANK_FIELDS:
                value = normalize_rank_array(name, value)
            elif name == "umax_prediction" and isinstance(value, dict):
                value = ThirdPartyPrediction.from_dict(value)
            changes[name] = value

        return changes

    def upsert(
        self,
        key: RaceKey,
        partial: Mapping[str, Any],
        source: Optional[str] = None,
    ) -> AnalysisRecord:
        """
        Merge a partial record into the store.

        Args:
            key: Race identity
            partial: Field name -> value; None values are ignored,
                CLEAR empties the field
            source: Collector name, used for provenance and priority

        Returns:
            The merged record now held by the store
        """
        changes = self.normalize_partial(key, partial)

        with self._lock:
            existing = self._records.get(key)
            provenance = self._provenance.setdefault(key, {})

            accepted = {}
            for name, value in changes.items():
                if existing is not None and not self.priority.allows(name, provenance.get(name), source):
                    logger.debug(
                        f"{key.label}: keeping {name} from {provenance.get(name)}, "
                        f"{source} has lower priority"
                    )
                    continue
                accepted[name] = value

            now = _now()
            if existing is None:
                record = AnalysisRecord(key=key, created_at=now, updated_at=now, **accepted)
            elif accepted:
                record = existing.with_fields(updated_at=now, **accepted)
            else:
                record = existing

            for name in accepted:
                provenance[name] = source
            self._records[key] = record
            self._persist(record)

        return record

    def _persist(self, record: AnalysisRecord) -> None:
        if self.repository is None:
            return
        try:
            self.repository.save(record)
        except (OSError, TypeError, ValueError) as e:
            logger.error(
                f"Failed to persist {record.key.label}: {e}",
                extra={"race": record.key.label, "error_type": type(e).__name__},
            )

    def load_day(self, date: str) -> int:
        """
        Seed the store from records saved by an earlier run.

        Records already in memory are not replaced.

        Returns:
            Number of records loaded
        """
        if self.repository is None:
            return 0
        loaded = 0
        with self._lock:
            for record in self.repository.load_day(date):
                if record.key in self._records:
                    continue
                self._records[record.key] = record
                self._provenance[record.key] = {
                    name: None for name in AnalysisRecord.field_names()
                    if getattr(record, name) is not None
                }
                loaded += 1
        logger.info(f"Loaded {loaded} saved races for {date}")
        return loaded

    def save_day(self, date: str) -> Optional[tuple[Path, Path]]:
        """Write the day aggregate through the repository."""
        if self.repository is None:
            return None
        return self.repository.save_day(date, self.records(date))
