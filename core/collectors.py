"""
Collector boundaries and the collection pipelines.

Sources are reached through small structural interfaces, so a browser
scraper, a JSON dump on disk, or a test fake can stand behind them:

    RaceListingCollector  list_races(date, track_codes) / fetch_signals(key)
    MarksCollector        same shape, returns the marks / time / course tables
    PredictionCollector   fetch_predictions(date) -> third-party objects
    ResultCollector       fetch_results(date) -> settled results
    VisionExtractor       extract_metadata(image) / extract_marks(image)
    IndexExtractor        extract_metadata(image) / extract_index(image)

Each pipeline acquires its work set (failure there is fatal), then hands
the units to a CollectionRun which isolates per-unit failures:

    store = EntityStore(repository=RecordRepository(Path("data")))
    collector = JsonDumpCollector(Path("dumps/netkeiba"))
    summary = collect_analytics(store, collector, "20250525", ["05", "08"])
"""

import json
import re
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Iterable, Optional, Protocol, Sequence, Union
from urllib.parse import urlparse

from core.ranking import HorseSignalRow, derive_ranks, derive_rank_fields, DEFAULT_POLICIES, INDEX_POLICY, SortPolicy
from core.records import RaceKey, ThirdPartyPrediction, OrphanRecordError, RANK_FIELDS, resolved_count
from core.ocr_marks import (
    DEFAULT_REVIEW_THRESHOLD,
    parse_index_extraction,
    parse_marks_extraction,
    parse_race_metadata,
    reconcile_marks,
    marks_to_rank_array,
    flagged_observations,
    lowest_confidence,
)
from core.orchestrator import AcquisitionError, CollectionRun, CollectorError, PacingPolicy
from core.results import UnitResult, UnitStatus, RunSummary
from core.store import CLEAR, EntityStore
from core.tracks import get_track_code, normalize_date, normalize_track_code
from core.logging import get_logger, log_collector_call, log_uncertain_marks

logger = get_logger(__name__)

# Default pacing per work-set kind
RACE_PACING = PacingPolicy(min_delay_ms=800, max_delay_ms=1500)
IMAGE_PACING = PacingPolicy(min_delay_ms=1000, max_delay_ms=2000)

# Metadata fields an analytics source may carry
METADATA_FIELDS = ("race_name", "track_type", "distance", "netkeiba_race_id", "index_expectation")

# Scraped table names -> signal table names used by the ranking policies
TABLE_ALIASES = {
    "bestTime": "best_time",
    "last3F": "last_3f",
    "rightHandedTrack": "right_handed",
    "leftHandedTrack": "left_handed",
}

IMAGE_EXTENSIONS = (".png", ".jpg", ".jpeg", ".webp", ".gif")


# =============================================================================
# WORK UNITS
# =============================================================================

@dataclass
class RaceSignals:
    """Everything one source returned for one race."""
    key: RaceKey
    metadata: dict[str, Any] = field(default_factory=dict)
    tables: dict[str, list[HorseSignalRow]] = field(default_factory=dict)
    ranks: dict[str, list] = field(default_factory=dict)  # pre-ranked arrays

    @classmethod
    def from_dict(cls, data: dict, key: Optional[RaceKey] = None) -> "RaceSignals":
        """
        Build from a scraped race dump.

        Expected shape:
            {"date": ..., "trackCode": ..., "raceNumber": ...,
             "race_name": ..., "distance": ..., "index_expectation": "A",
             "tables": {"marks": [{"horseNumber": "7", "honmeiRank": 1, ...}], ...},
             "ranks": {"cp_ranks": [7, 3, 12, 1], ...}}

        Raises:
            OrphanRecordError: If no key is given and the dump's key is incomplete
        """
        if key is None:
            key = RaceKey.parse(data.get("date"), data.get("trackCode"), data.get("raceNumber"))

        metadata = {name: data[name] for name in METADATA_FIELDS if data.get(name) is not None}

        tables = {}
        for name, rows in (data.get("tables") or {}).items():
            tables[TABLE_ALIASES.get(name, name)] = [HorseSignalRow.from_dict(row) for row in rows or []]

        ranks = {
            name: list(values)
            for name, values in (data.get("ranks") or {}).items()
            if name in RANK_FIELDS and values
        }
        return cls(key=key, metadata=metadata, tables=tables, ranks=ranks)


_IMAGE_NAME = re.compile(r"^(\d{8})-(\d{1,2})-(\d+)$")


@dataclass(frozen=True)
class ImageSource:
    """
    One published image to read marks from.

    Date and venue come from the file name when it follows
    <YYYYMMDD>-<track>-<index>.<ext>; otherwise they are read from the
    image itself.
    """
    location: str  # local path or URL
    date: Optional[str] = None
    track_code: Optional[str] = None
    index: Optional[int] = None

    @classmethod
    def parse(cls, location: Union[str, Path]) -> "ImageSource":
        location = str(location)
        name = Path(urlparse(location).path).stem
        match = _IMAGE_NAME.match(name)
        if not match:
            return cls(location=location)
        return cls(
            location=location,
            date=normalize_date(match.group(1)),
            track_code=normalize_track_code(match.group(2)),
            index=int(match.group(3)),
        )

    @property
    def label(self) -> str:
        return Path(urlparse(self.location).path).name or self.location


def images_in(directory: Path) -> list[ImageSource]:
    """Image work units from a directory, in file-name order."""
    directory = Path(directory)
    if not directory.is_dir():
        raise AcquisitionError(f"Image directory not found: {directory}")
    return [
        ImageSource.parse(path)
        for path in sorted(directory.iterdir())
        if path.suffix.lower() in IMAGE_EXTENSIONS
    ]


# =============================================================================
# COLLECTOR INTERFACES
# =============================================================================

class RaceListingCollector(Protocol):
    def list_races(self, date: str, track_codes: Sequence[str]) -> list[RaceKey]: ...

    def fetch_signals(self, key: RaceKey) -> RaceSignals: ...


class MarksCollector(RaceListingCollector, Protocol):
    """Returns the marks, best_time, last_3f and course-direction tables."""


class PredictionCollector(Protocol):
    def fetch_predictions(self, date: str) -> list[dict]: ...


class ResultCollector(Protocol):
    def fetch_results(self, date: str) -> list[dict]: ...


class VisionExtractor(Protocol):
    def extract_metadata(self, image: str) -> Union[str, dict]: ...

    def extract_marks(self, image: str) -> Union[str, dict]: ...


class IndexExtractor(Protocol):
    def extract_metadata(self, image: str) -> Union[str, dict]: ...

    def extract_index(self, image: str) -> Union[str, dict]: ...


class JsonDumpCollector:
    """
    Collector over JSON dumps written by a scraper.

    Layout:
        <root>/<date>_<track>_<NN>.json   one race (see RaceSignals.from_dict)
        <root>/predictions_<date>.json    list of third-party predictions
        <root>/results_<date>.json        list of settled results
    """

    def __init__(self, root: Path, name: str = "dump"):
        self.root = Path(root)
        self.name = name

    def _race_path(self, key: RaceKey) -> Path:
        return self.root / f"{key.date}_{key.track_code}_{key.race_number:02d}.json"

    def list_races(self, date: str, track_codes: Sequence[str]) -> list[RaceKey]:
        """
        Races available for a day.

        Raises:
            AcquisitionError: If the dump directory does not exist
        """
        if not self.root.is_dir():
            raise AcquisitionError(f"{self.name}: dump directory not found: {self.root}")

        codes = {normalize_track_code(c) for c in track_codes}
        keys = []
        for path in self.root.glob(f"{date}_*_*.json"):
            _, track, number = path.stem.split("_", 2)
            if normalize_track_code(track) not in codes:
                continue
            try:
                keys.append(RaceKey.parse(date, track, number))
            except OrphanRecordError:
                logger.warning(f"{self.name}: ignoring {path.name}")
        return sorted(keys)

    def fetch_signals(self, key: RaceKey) -> RaceSignals:
        path = self._race_path(key)
        try:
            data = json.loads(path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as e:
            raise CollectorError(f"{self.name}: cannot read {path.name}: {e}") from e
        return RaceSignals.from_dict(data, key=key)

    def _read_list(self, path: Path) -> list[dict]:
        if not path.exists():
            raise AcquisitionError(f"{self.name}: {path.name} not found")
        try:
            data = json.loads(path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as e:
            raise AcquisitionError(f"{self.name}: cannot read {path.name}: {e}") from e
        if not isinstance(data, list):
            raise AcquisitionError(f"{self.name}: {path.name} is not a list")
        return data

    def fetch_predictions(self, date: str) -> list[dict]:
        return self._read_list(self.root / f"predictions_{date}.json")

    def fetch_results(self, date: str) -> list[dict]:
        return self._read_list(self.root / f"results_{date}.json")


# =============================================================================
# PIPELINES
# =============================================================================

def _call(source: str, unit: str, fn, *args):
    """Call a collector, logging its outcome and duration."""
    start = time.perf_counter()
    try:
        result = fn(*args)
    except Exception as e:
        log_collector_call(logger, source, unit, False, (time.perf_counter() - start) * 1000, str(e))
        raise
    log_collector_call(logger, source, unit, True, (time.perf_counter() - start) * 1000)
    return result


def _acquire(source: str, fetch, *args) -> list:
    """Obtain a work set; any failure is run-fatal."""
    try:
        return list(fetch(*args))
    except AcquisitionError:
        raise
    except Exception as e:
        raise AcquisitionError(f"{source}: could not obtain work set: {e}") from e


def _collect_races(
    store: EntityStore,
    collector: RaceListingCollector,
    date: str,
    track_codes: Sequence[str],
    run: CollectionRun,
    source: str,
    build_partial,
) -> RunSummary:
    keys = _acquire(source, collector.list_races, date, track_codes)
    logger.info(f"[{source}] {len(keys)} races for {date}", extra={"tracks": ",".join(track_codes)})

    def process(key: RaceKey) -> UnitResult:
        signals = _call(source, key.label, collector.fetch_signals, key)
        partial = build_partial(signals)
        if not partial:
            return UnitResult.skipped(key.label, UnitStatus.NO_DATA)
        record = store.upsert(key, partial, source=source)
        return UnitResult.success(key.label, record, fields=sorted(partial))

    return run.run(keys, process, describe=lambda k: k.label)


def collect_analytics(
    store: EntityStore,
    collector: RaceListingCollector,
    date: str,
    track_codes: Sequence[str],
    run: Optional[CollectionRun] = None,
    source: str = "netkeiba",
    policies: Sequence[SortPolicy] = DEFAULT_POLICIES,
) -> RunSummary:
    """
    Merge race metadata and pre-ranked arrays (cp, data analysis, ...)
    from the analytics site. Raw tables, if the dump has any, are ranked too.

    Raises:
        AcquisitionError: If the race list cannot be obtained
    """
    def build(signals: RaceSignals) -> dict:
        partial = dict(signals.metadata)
        partial.update(signals.ranks)
        partial.update(derive_rank_fields(signals.tables, policies))
        return partial

    run = run or CollectionRun(source, RACE_PACING)
    return _collect_races(store, collector, date, track_codes, run, source, build)


def collect_marks(
    store: EntityStore,
    collector: MarksCollector,
    date: str,
    track_codes: Sequence[str],
    run: Optional[CollectionRun] = None,
    source: str = "winkeiba",
    policies: Sequence[SortPolicy] = DEFAULT_POLICIES,
) -> RunSummary:
    """
    Rank the marks / best time / last 3F / course-direction tables and
    merge the derived arrays.

    Raises:
        AcquisitionError: If the race list cannot be obtained
    """
    def build(signals: RaceSignals) -> dict:
        return derive_rank_fields(signals.tables, policies)

    run = run or CollectionRun(source, RACE_PACING)
    return _collect_races(store, collector, date, track_codes, run, source, build)


def _describe_item(item: dict) -> str:
    return f"{item.get('date')}-{item.get('trackCode')}-{item.get('raceNumber')}"


def collect_third_party(
    store: EntityStore,
    collector: PredictionCollector,
    date: str,
    run: Optional[CollectionRun] = None,
    source: str = "umax",
) -> RunSummary:
    """
    Merge third-party prediction objects wholesale as umax_prediction.

    Raises:
        AcquisitionError: If the predictions cannot be obtained
    """
    items = _acquire(source, collector.fetch_predictions, date)

    def process(item: dict) -> UnitResult:
        key = RaceKey.parse(item.get("date"), item.get("trackCode"), item.get("raceNumber"))
        prediction = ThirdPartyPrediction.from_dict(item)
        if not any(prediction.to_dict().values()):
            return UnitResult.skipped(key.label, UnitStatus.NO_DATA, "Empty prediction")
        record = store.upsert(key, {"umax_prediction": prediction}, source=source)
        return UnitResult.success(key.label, record)

    run = run or CollectionRun(source, RACE_PACING)
    return run.run(items, process, describe=_describe_item)


def collect_results(
    store: EntityStore,
    collector: ResultCollector,
    date: str,
    run: Optional[CollectionRun] = None,
    source: str = "results",
) -> RunSummary:
    """
    Merge settled results wholesale as race_result.

    Raises:
        AcquisitionError: If the results cannot be obtained
    """
    items = _acquire(source, collector.fetch_results, date)

    def process(item: dict) -> UnitResult:
        key = RaceKey.parse(item.get("date"), item.get("trackCode"), item.get("raceNumber"))
        result = {k: v for k, v in item.items() if k not in ("date", "trackCode", "raceNumber")}
        if not result:
            return UnitResult.skipped(key.label, UnitStatus.NO_DATA, "Empty result")
        record = store.upsert(key, {"race_result": result}, source=source)
        return UnitResult.success(key.label, record)

    run = run or CollectionRun(source, RACE_PACING)
    return run.run(items, process, describe=_describe_item)


def _image_key(image: ImageSource, metadata) -> RaceKey:
    """Race key from the work unit, with the image's own header as fallback."""
    date = image.date or metadata.date
    track_code = image.track_code or get_track_code(metadata.trackName)
    return RaceKey.parse(date, track_code, metadata.raceNumber)


def collect_ai_marks(
    store: EntityStore,
    vision: VisionExtractor,
    images: Iterable[ImageSource],
    run: Optional[CollectionRun] = None,
    source: str = "note-ai",
    review_threshold: float = DEFAULT_REVIEW_THRESHOLD,
) -> RunSummary:
    """
    Read marks from published images and merge them as ai_ranks.

    Two vision calls per image: race metadata (for the key), then marks.
    A parse failure in either abstains the whole image.

    Raises:
        AcquisitionError: If the image list cannot be obtained
    """
    units = _acquire(source, lambda: images)

    def process(image: ImageSource) -> UnitResult:
        metadata = parse_race_metadata(_call(source, image.label, vision.extract_metadata, image.location))
        key = _image_key(image, metadata)

        extraction = parse_marks_extraction(_call(source, image.label, vision.extract_marks, image.location))
        observations = reconcile_marks(extraction, review_threshold)
        ai_ranks = marks_to_rank_array(observations)
        if not resolved_count(ai_ranks):
            return UnitResult.skipped(key.label, UnitStatus.NO_DATA, "No marks resolved", image=image.label)

        flagged = flagged_observations(observations)
        if flagged:
            log_uncertain_marks(logger, key.label, [o.to_dict() for o in flagged])

        # The three annotations describe one image; none may outlive a rewrite
        confidence = lowest_confidence(observations)
        record = store.upsert(
            key,
            {
                "ai_ranks": ai_ranks,
                "ai_confidence": CLEAR if confidence is None else confidence,
                "ai_needs_review": bool(flagged),
            },
            source=source,
        )
        return UnitResult.success(key.label, record, image=image.label, flagged=len(flagged))

    run = run or CollectionRun(source, IMAGE_PACING)
    return run.run(units, process, describe=lambda image: image.label)


def collect_index_images(
    store: EntityStore,
    vision: IndexExtractor,
    images: Iterable[ImageSource],
    run: Optional[CollectionRun] = None,
    source: str = "index-ocr",
    policy: SortPolicy = INDEX_POLICY,
) -> RunSummary:
    """
    Read index tables from newspaper images and merge them as index_ranks
    plus the index_expectation grade printed above the table.

    The race number comes from the index call. Date and venue come from
    the file name, or from a metadata call when the name carries no key.

    Raises:
        AcquisitionError: If the image list cannot be obtained
    """
    units = _acquire(source, lambda: images)

    def process(image: ImageSource) -> UnitResult:
        extraction = parse_index_extraction(_call(source, image.label, vision.extract_index, image.location))
        if image.date and image.track_code:
            key = RaceKey.parse(image.date, image.track_code, extraction.raceNumber)
        else:
            metadata = parse_race_metadata(_call(source, image.label, vision.extract_metadata, image.location))
            key = _image_key(image, metadata)

        rows = [
            HorseSignalRow(horse.number, {"rank": horse.rank}, horse.name or "")
            for horse in extraction.horses
        ]
        index_ranks = derive_ranks(rows, policy)
        if index_ranks is None or not resolved_count(index_ranks):
            return UnitResult.skipped(key.label, UnitStatus.NO_DATA, "No index rows", image=image.label)

        grade = extraction.index_expectation
        record = store.upsert(
            key,
            {
                policy.field: index_ranks,
                "index_expectation": CLEAR if grade is None else grade,
            },
            source=source,
        )
        return UnitResult.success(key.label, record, image=image.label)

    run = run or CollectionRun(source, IMAGE_PACING)
    return run.run(units, process, describe=lambda image: image.label)
