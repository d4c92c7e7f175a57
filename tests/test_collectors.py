"""
Tests for collectors and the collection pipelines.

Run with: python -m pytest tests/test_collectors.py -v
"""

import json
import random

import pytest
from unittest.mock import Mock

from core.collectors import (
    ImageSource,
    JsonDumpCollector,
    RaceSignals,
    collect_analytics,
    collect_marks,
    collect_third_party,
    collect_results,
    collect_ai_marks,
    collect_index_images,
    images_in,
)
from core.orchestrator import AcquisitionError, CollectionRun, CollectorError, PacingPolicy
from core.ranking import HorseSignalRow
from core.records import RaceKey
from core.results import UnitStatus
from core.store import EntityStore, RecordRepository


DATE = "20250525"


def quiet_run(name="test"):
    return CollectionRun(name, PacingPolicy(), sleep=Mock(), rng=random.Random(0))


def race_dump(race_number, **extra):
    data = {"date": DATE, "trackCode": "05", "raceNumber": race_number}
    data.update(extra)
    return data


def write_dump(root, race_number, data):
    root.mkdir(parents=True, exist_ok=True)
    path = root / f"{DATE}_05_{race_number:02d}.json"
    path.write_text(json.dumps(data, ensure_ascii=False), encoding="utf-8")
    return path


class FakeListing:
    """In-memory race listing collector."""

    def __init__(self, signals, fail=()):
        self.signals = {s.key: s for s in signals}
        self.fail = {RaceKey(DATE, "05", n) for n in fail}

    def list_races(self, date, track_codes):
        return sorted(self.signals)

    def fetch_signals(self, key):
        if key in self.fail:
            raise CollectorError("page layout changed")
        return self.signals[key]


class TestRaceSignals:
    """Tests for RaceSignals.from_dict()."""

    def test_from_dump(self):
        signals = RaceSignals.from_dict(race_dump(
            11,
            race_name="日本ダービー",
            distance=2400,
            tables={"bestTime": [{"horseNumber": "7", "horseName": "A", "rank": 1}]},
            ranks={"cp_ranks": [7, 3], "unknown_ranks": [1], "data_analysis_ranks": []},
        ))
        assert signals.key == RaceKey(DATE, "05", 11)
        assert signals.metadata == {"race_name": "日本ダービー", "distance": 2400}
        assert signals.tables["best_time"][0].signals == {"rank": 1}
        assert signals.ranks == {"cp_ranks": [7, 3]}

    def test_index_grade_and_ranks(self):
        signals = RaceSignals.from_dict(race_dump(
            11,
            index_expectation="A",
            ranks={"index_ranks": [1, 2, 3]},
        ))
        assert signals.metadata == {"index_expectation": "A"}
        assert signals.ranks == {"index_ranks": [1, 2, 3]}


class TestImageSource:
    """Tests for ImageSource.parse()."""

    def test_keyed_file_name(self):
        image = ImageSource.parse("images/20250525-5-3.png")
        assert image.date == DATE
        assert image.track_code == "05"
        assert image.index == 3

    def test_url(self):
        image = ImageSource.parse("https://example.com/img/20250525-05-1.jpg?w=800")
        assert image.track_code == "05"
        assert image.label == "20250525-05-1.jpg"

    def test_unkeyed_name(self):
        image = ImageSource.parse("images/note_header.png")
        assert image.date is None
        assert image.track_code is None

    def test_images_in(self, tmp_path):
        for name in ("20250525-05-2.png", "20250525-05-1.jpg", "notes.txt"):
            (tmp_path / name).write_bytes(b"")
        images = images_in(tmp_path)
        assert [i.index for i in images] == [1, 2]

    def test_images_in_missing(self, tmp_path):
        with pytest.raises(AcquisitionError):
            images_in(tmp_path / "missing")


class TestJsonDumpCollector:
    """Tests for JsonDumpCollector."""

    def test_list_races(self, tmp_path):
        write_dump(tmp_path, 2, race_dump(2))
        write_dump(tmp_path, 1, race_dump(1))
        (tmp_path / f"{DATE}_08_01.json").write_text("{}", encoding="utf-8")

        collector = JsonDumpCollector(tmp_path)
        assert collector.list_races(DATE, ["5"]) == [RaceKey(DATE, "05", 1), RaceKey(DATE, "05", 2)]

    def test_missing_directory(self, tmp_path):
        with pytest.raises(AcquisitionError):
            JsonDumpCollector(tmp_path / "missing").list_races(DATE, ["05"])

    def test_unreadable_race(self, tmp_path):
        tmp_path.joinpath(f"{DATE}_05_01.json").write_text("{oops", encoding="utf-8")
        with pytest.raises(CollectorError):
            JsonDumpCollector(tmp_path).fetch_signals(RaceKey(DATE, "05", 1))

    def test_missing_predictions(self, tmp_path):
        with pytest.raises(AcquisitionError):
            JsonDumpCollector(tmp_path).fetch_predictions(DATE)


class TestCollectAnalytics:
    """Tests for collect_analytics()."""

    def test_merges_metadata_and_ranks(self, tmp_path):
        dumps = tmp_path / "netkeiba"
        write_dump(dumps, 11, race_dump(
            11,
            race_name="日本ダービー",
            track_type="芝",
            distance=2400,
            netkeiba_race_id=202505021211,
            ranks={"cp_ranks": [7, 3, 12, 1], "data_analysis_ranks": [3, 7]},
        ))
        store = EntityStore(repository=RecordRepository(tmp_path / "data"))

        summary = collect_analytics(store, JsonDumpCollector(dumps), DATE, ["05"], run=quiet_run())

        assert summary.ok_count == 1
        record = store.get(RaceKey(DATE, "05", 11))
        assert record.race_name == "日本ダービー"
        assert record.cp_ranks == (7, 3, 12, 1)
        assert record.data_analysis_ranks == (3, 7, None)
        assert store.provenance(record.key)["cp_ranks"] == "netkeiba"

    def test_unit_failure_isolated(self, tmp_path):
        """Five races where race 3 fails still persist races 1, 2, 4 and 5."""
        signals = [
            RaceSignals(RaceKey(DATE, "05", n), metadata={"distance": 1600 + n})
            for n in range(1, 6)
        ]
        repository = RecordRepository(tmp_path)
        store = EntityStore(repository=repository)

        summary = collect_analytics(store, FakeListing(signals, fail=[3]), DATE, ["05"], run=quiet_run())

        assert summary.ok_count == 4
        assert summary.failed[0].unit == f"{DATE}-05-03"
        for n in (1, 2, 4, 5):
            assert repository.load(RaceKey(DATE, "05", n)).distance == 1600 + n
        assert repository.load(RaceKey(DATE, "05", 3)) is None

    def test_invalid_rank_array_isolated(self, tmp_path):
        signals = [
            RaceSignals(RaceKey(DATE, "05", 1), ranks={"cp_ranks": [1, 1]}),
            RaceSignals(RaceKey(DATE, "05", 2), ranks={"cp_ranks": [1, 2]}),
        ]
        store = EntityStore()
        summary = collect_analytics(store, FakeListing(signals), DATE, ["05"], run=quiet_run())
        assert summary.ok_count == 1
        assert RaceKey(DATE, "05", 1) not in store

    def test_no_data(self):
        store = EntityStore()
        signals = [RaceSignals(RaceKey(DATE, "05", 1))]
        summary = collect_analytics(store, FakeListing(signals), DATE, ["05"], run=quiet_run())
        assert summary.results[0].status == UnitStatus.NO_DATA
        assert len(store) == 0

    def test_listing_failure_is_fatal(self):
        collector = Mock()
        collector.list_races.side_effect = ConnectionError("login failed")
        with pytest.raises(AcquisitionError, match="login failed"):
            collect_analytics(EntityStore(), collector, DATE, ["05"], run=quiet_run())


class TestCollectMarks:
    """Tests for collect_marks()."""

    def test_derives_rank_fields(self, tmp_path):
        dumps = tmp_path / "winkeiba"
        write_dump(dumps, 11, race_dump(11, tables={
            "marks": [
                {"horseNumber": "1", "honmeiRank": 2, "honmeiCount": 5},
                {"horseNumber": "2", "honmeiRank": 1, "honmeiCount": 9},
                {"horseNumber": "3", "honmeiRank": 3, "honmeiCount": 1},
                {"horseNumber": "4", "honmeiRank": 1, "honmeiCount": 9},
            ],
            "bestTime": [{"horseNumber": "7", "rank": 1}],
            "last3F": [],
            "rightHandedTrack": [],
            "leftHandedTrack": [
                {"horseNumber": "3", "rank": 2},
                {"horseNumber": "8", "rank": 1},
                {"horseNumber": "1", "rank": 3},
            ],
        }))
        store = EntityStore()

        collect_marks(store, JsonDumpCollector(dumps), DATE, ["05"], run=quiet_run())

        record = store.get(RaceKey(DATE, "05", 11))
        assert record.win_prediction_ranks == (2, 4, 1, 3, None, None, None, None)
        assert record.time_ranks == (7, None, None)
        assert record.last_3f_ranks is None
        assert record.horse_trait_ranks == (8, 3, 1)

    def test_merges_with_analytics(self):
        """Sources writing disjoint fields build one record."""
        key = RaceKey(DATE, "05", 11)
        store = EntityStore()
        collect_analytics(store, FakeListing([RaceSignals(key, metadata={"distance": 2400})]), DATE, ["05"], run=quiet_run())
        marks = RaceSignals(key, tables={"best_time": [HorseSignalRow("9", {"rank": 1})]})
        collect_marks(store, FakeListing([marks]), DATE, ["05"], run=quiet_run())

        record = store.get(key)
        assert record.distance == 2400
        assert record.time_ranks == (9, None, None)


class TestCollectThirdParty:
    """Tests for collect_third_party() and collect_results()."""

    def test_predictions_merged_wholesale(self):
        collector = Mock()
        collector.fetch_predictions.return_value = [
            {"date": DATE, "trackCode": "05", "raceNumber": "11", "focusedHorseNumbers": [3, 7], "spValueTop5": [1, 2]},
            {"date": DATE, "trackCode": None, "raceNumber": "12", "focusedHorseNumbers": [1]},
            {"date": DATE, "trackCode": "05", "raceNumber": "10"},
        ]
        store = EntityStore()

        summary = collect_third_party(store, collector, DATE, run=quiet_run())

        record = store.get(RaceKey(DATE, "05", 11))
        assert record.umax_prediction.focused_horse_numbers == [3, 7]
        assert record.umax_prediction.sp_value_top5 == [1, 2]
        statuses = [r.status for r in summary.results]
        assert statuses == [UnitStatus.OK, UnitStatus.ORPHAN, UnitStatus.NO_DATA]

    def test_results_merged(self):
        collector = Mock()
        collector.fetch_results.return_value = [
            {"date": DATE, "trackCode": "05", "raceNumber": 11, "order": [7, 3, 12], "payouts": {"win": 350}},
        ]
        store = EntityStore()

        collect_results(store, collector, DATE, run=quiet_run())

        assert store.get(RaceKey(DATE, "05", 11)).race_result == {"order": [7, 3, 12], "payouts": {"win": 350}}

    def test_fetch_failure_is_fatal(self):
        collector = Mock()
        collector.fetch_predictions.side_effect = TimeoutError("no response")
        with pytest.raises(AcquisitionError):
            collect_third_party(EntityStore(), collector, DATE, run=quiet_run())


class FakeVision:
    """Vision extractor returning canned responses per image."""

    def __init__(self, metadata, marks):
        self.metadata = metadata
        self.marks = marks

    def extract_metadata(self, image):
        return self.metadata[image]

    def extract_marks(self, image):
        return self.marks[image]


class TestCollectAiMarks:
    """Tests for collect_ai_marks()."""

    META = '{"date": "2025年5月25日", "trackName": "東京", "raceNumber": 11}'

    def test_marks_merged(self):
        image = ImageSource.parse("20250525-05-1.png")
        vision = FakeVision(
            {image.location: self.META},
            {image.location: {"horses": [
                {"mark": "◎", "horse_number": 7, "confidence": 0.95},
                {"mark": "〇", "horse_number": 99, "confidence": 0.3, "candidates": [1, 4]},
                {"mark": "△", "horse_number": 12, "confidence": 0.9},
            ]}},
        )
        store = EntityStore()

        summary = collect_ai_marks(store, vision, [image], run=quiet_run())

        assert summary.ok_count == 1
        record = store.get(RaceKey(DATE, "05", 11))
        assert record.ai_ranks == (7, None, None, None, 12)
        assert record.ai_confidence == 0.3
        assert record.ai_needs_review is True

    def test_key_from_image_header(self):
        """Without a keyed file name the date and venue come from the image."""
        image = ImageSource.parse("note_header.png")
        vision = FakeVision(
            {image.location: self.META},
            {image.location: {"horses": [{"mark": "◎", "horse_number": 7, "confidence": 0.95}]}},
        )
        store = EntityStore()

        collect_ai_marks(store, vision, [image], run=quiet_run())

        record = store.get(RaceKey(DATE, "05", 11))
        assert record.ai_ranks == (7, None, None, None, None)
        assert record.ai_needs_review is False

    def test_bad_images_abstain(self):
        """Unparseable output and unknown venues skip the image, not the run."""
        images = [ImageSource.parse(name) for name in ("a.png", "b.png", "c.png")]
        vision = FakeVision(
            {
                "a.png": "sorry, I cannot read this",
                "b.png": '{"date": "2025年5月25日", "trackName": "ロンシャン", "raceNumber": 1}',
                "c.png": self.META,
            },
            {
                "a.png": {"horses": []},
                "b.png": {"horses": []},
                "c.png": {"horses": [{"mark": "◎", "horse_number": 7}]},
            },
        )
        store = EntityStore()

        summary = collect_ai_marks(store, vision, images, run=quiet_run())

        statuses = [r.status for r in summary.results]
        assert statuses == [UnitStatus.PARSE_FAILED, UnitStatus.ORPHAN, UnitStatus.OK]
        assert len(store) == 1

    def test_nothing_resolved(self):
        image = ImageSource.parse("20250525-05-1.png")
        vision = FakeVision({image.location: self.META}, {image.location: {"horses": []}})
        store = EntityStore()

        summary = collect_ai_marks(store, vision, [image], run=quiet_run())

        assert summary.results[0].status == UnitStatus.NO_DATA
        assert len(store) == 0

    def test_rewrite_drops_stale_confidence(self):
        """A re-read image replaces all three annotations together."""
        image = ImageSource.parse("20250525-05-1.png")
        store = EntityStore()

        first = FakeVision(
            {image.location: self.META},
            {image.location: {"horses": [{"mark": "◎", "horse_number": 7, "confidence": 0.5}]}},
        )
        collect_ai_marks(store, first, [image], run=quiet_run())
        record = store.get(RaceKey(DATE, "05", 11))
        assert record.ai_confidence == 0.5
        assert record.ai_needs_review is True

        second = FakeVision(
            {image.location: self.META},
            {image.location: {"horses": [{"mark": "◎", "horse_number": 3}]}},
        )
        collect_ai_marks(store, second, [image], run=quiet_run())

        record = store.get(RaceKey(DATE, "05", 11))
        assert record.ai_ranks == (3, None, None, None, None)
        assert record.ai_confidence is None
        assert record.ai_needs_review is False


class FakeIndexVision:
    """Index extractor returning canned responses per image."""

    def __init__(self, index, metadata=None):
        self.index = index
        self.metadata = metadata or {}
        self.metadata_calls = []

    def extract_metadata(self, image):
        self.metadata_calls.append(image)
        return self.metadata[image]

    def extract_index(self, image):
        return self.index[image]


class TestCollectIndexImages:
    """Tests for collect_index_images()."""

    def index(self, race_number, ranked, grade="A"):
        horses = [{"number": n, "name": f"H{n}", "rank": r, "score": 100 - r} for n, r in ranked]
        return {"raceNumber": race_number, "index_expectation": grade, "horses": horses}

    def test_top_eight_and_grade(self):
        image = ImageSource.parse("20250525-05-2.jpg")
        ranked = [(n, 11 - n) for n in range(1, 11)]
        vision = FakeIndexVision({image.location: self.index(11, ranked)})
        store = EntityStore()

        summary = collect_index_images(store, vision, [image], run=quiet_run())

        assert summary.ok_count == 1
        record = store.get(RaceKey(DATE, "05", 11))
        assert record.index_ranks == (10, 9, 8, 7, 6, 5, 4, 3)
        assert record.index_expectation == "A"
        assert vision.metadata_calls == []

    def test_key_from_image_header(self):
        image = ImageSource.parse("paper.jpg")
        vision = FakeIndexVision(
            {image.location: self.index(11, [(4, 1), (6, 2)])},
            {image.location: TestCollectAiMarks.META},
        )
        store = EntityStore()

        collect_index_images(store, vision, [image], run=quiet_run())

        record = store.get(RaceKey(DATE, "05", 11))
        assert record.index_ranks == (4, 6, None, None, None, None, None, None)

    def test_missing_grade_clears_previous(self):
        image = ImageSource.parse("20250525-05-2.jpg")
        store = EntityStore()
        collect_index_images(
            store, FakeIndexVision({image.location: self.index(11, [(4, 1)], grade="B")}), [image], run=quiet_run(),
        )

        collect_index_images(
            store, FakeIndexVision({image.location: self.index(11, [(6, 1)], grade=None)}), [image], run=quiet_run(),
        )

        record = store.get(RaceKey(DATE, "05", 11))
        assert record.index_ranks[0] == 6
        assert record.index_expectation is None

    def test_bad_images_abstain(self):
        images = [ImageSource.parse(f"20250525-05-{i}.jpg") for i in (1, 2, 3)]
        vision = FakeIndexVision({
            images[0].location: "no table here",
            images[1].location: self.index(5, []),
            images[2].location: self.index(6, [(2, 1)]),
        })
        store = EntityStore()

        summary = collect_index_images(store, vision, images, run=quiet_run())

        statuses = [r.status for r in summary.results]
        assert statuses == [UnitStatus.PARSE_FAILED, UnitStatus.NO_DATA, UnitStatus.OK]
        assert len(store) == 1
        assert store.get(RaceKey(DATE, "05", 6)).index_ranks[0] == 2
