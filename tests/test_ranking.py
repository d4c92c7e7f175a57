"""
Tests for rank-array derivation.

Run with: python -m pytest tests/test_ranking.py -v
"""

import pytest
from core.ranking import (
    HorseSignalRow,
    SortKey,
    SortPolicy,
    WIN_PREDICTION_POLICY,
    TIME_POLICY,
    LAST_3F_POLICY,
    HORSE_TRAIT_POLICY,
    INDEX_POLICY,
    cascade_sort,
    parse_signal,
    derive_ranks,
    derive_rank_fields,
)


def rows(*ranked):
    """Rows from (horse_number, rank) pairs."""
    return [HorseSignalRow(number, {"rank": rank}) for number, rank in ranked]


def mark_row(number, honmei_rank, honmei_count, **signals):
    return HorseSignalRow(number, {"honmeiRank": honmei_rank, "honmeiCount": honmei_count, **signals})


class TestConsensusMarks:
    """Tests for the win prediction cascade."""

    def test_rank_ties_keep_order(self):
        """Ranks [2,1,3,1], counts [5,9,1,9] for A..D give B, D, A, C."""
        a, b, c, d = 1, 2, 3, 4
        table = [
            mark_row(a, 2, 5),
            mark_row(b, 1, 9),
            mark_row(c, 3, 1),
            mark_row(d, 1, 9),
        ]
        result = derive_ranks(table, WIN_PREDICTION_POLICY)
        assert result == (b, d, a, c, None, None, None, None)

    def test_count_breaks_rank_tie(self):
        """Equal rank falls through to the count, higher count first."""
        table = [
            mark_row(1, 1, 3),
            mark_row(2, 1, 8),
            mark_row(3, 2, 10),
        ]
        assert derive_ranks(table, WIN_PREDICTION_POLICY)[:3] == (2, 1, 3)

    def test_secondary_mark_rank(self):
        """Horses without a honmei rank are ordered by taikou rank."""
        table = [
            HorseSignalRow(5, {"taikouRank": 2}),
            HorseSignalRow(6, {"taikouRank": 1}),
            mark_row(7, 1, 4),
        ]
        assert derive_ranks(table, WIN_PREDICTION_POLICY)[:3] == (7, 6, 5)

    def test_truncates_to_eight(self):
        table = [mark_row(n, n, 0) for n in range(1, 13)]
        assert derive_ranks(table, WIN_PREDICTION_POLICY) == (1, 2, 3, 4, 5, 6, 7, 8)

    def test_below_minimum(self):
        """Fewer than three marked horses gives no win prediction."""
        table = [mark_row(1, 1, 5), mark_row(2, 2, 3)]
        assert derive_ranks(table, WIN_PREDICTION_POLICY) is None


class TestTimeRanks:
    """Tests for best time / last 3F ranking."""

    def test_single_row_is_padded(self):
        """One row gives a length-3 array with two absent slots."""
        assert derive_ranks(rows(("7", 1)), TIME_POLICY) == (7, None, None)

    def test_sorted_by_rank(self):
        table = rows(("4", 3), ("9", 1), ("2", 2), ("11", 4))
        assert derive_ranks(table, LAST_3F_POLICY) == (9, 2, 4)

    def test_empty_table(self):
        assert derive_ranks([], TIME_POLICY) is None

    def test_unresolved_numbers_dropped(self):
        """Scratched horses (no number) never take a slot."""
        table = rows(("", 1), ("取消", 2), ("5", 3))
        assert derive_ranks(table, TIME_POLICY) == (5, None, None)

    def test_duplicate_number_dropped(self):
        table = rows(("5", 1), ("5", 2), ("6", 3))
        assert derive_ranks(table, TIME_POLICY) == (5, 6, None)

    def test_missing_signal_sorts_last(self):
        table = [HorseSignalRow(1, {}), HorseSignalRow(2, {"rank": 5})]
        assert derive_ranks(table, TIME_POLICY) == (2, 1, None)


class TestHorseTrait:
    """Tests for the course-direction ranking."""

    def test_falls_back_to_left_handed(self):
        tables = {
            "right_handed": [],
            "left_handed": rows(("3", 2), ("8", 1), ("1", 3)),
        }
        assert derive_rank_fields(tables, [HORSE_TRAIT_POLICY]) == {"horse_trait_ranks": (8, 3, 1)}

    def test_prefers_right_handed(self):
        tables = {
            "right_handed": rows(("4", 1), ("5", 2), ("6", 3)),
            "left_handed": rows(("3", 1), ("8", 2), ("1", 3)),
        }
        assert derive_rank_fields(tables, [HORSE_TRAIT_POLICY]) == {"horse_trait_ranks": (4, 5, 6)}

    def test_partial_is_discarded(self):
        """Two resolved horses is not padded; the field is left out."""
        tables = {
            "right_handed": rows(("4", 1), ("5", 2)),
            "left_handed": rows(("3", 1), ("8", 2)),
        }
        assert derive_rank_fields(tables, [HORSE_TRAIT_POLICY]) == {}


class TestCascadeSort:
    """Tests for cascade_sort()."""

    def test_descending_key(self):
        table = [HorseSignalRow(1, {"score": 3}), HorseSignalRow(2, {"score": 9})]
        ordered = cascade_sort(table, [SortKey("score", descending=True)])
        assert [r.horse_number for r in ordered] == [2, 1]

    def test_missing_signal_last_when_descending(self):
        table = [HorseSignalRow(1, {}), HorseSignalRow(2, {"score": -5})]
        ordered = cascade_sort(table, [SortKey("score", descending=True)])
        assert [r.horse_number for r in ordered] == [2, 1]


class TestSortPolicy:
    """Tests for SortPolicy validation."""

    def test_length_must_match_field(self):
        with pytest.raises(ValueError, match="length 3"):
            SortPolicy("time_ranks", ("best_time",), (SortKey("rank"),), max_len=5)

    def test_min_within_max(self):
        with pytest.raises(ValueError, match="min_len"):
            SortPolicy("time_ranks", ("best_time",), (SortKey("rank"),), max_len=3, min_len=4)

    def test_keys_required(self):
        with pytest.raises(ValueError, match="sort key"):
            SortPolicy("time_ranks", ("best_time",), (), max_len=3)


class TestHorseSignalRow:
    """Tests for HorseSignalRow.from_dict()."""

    def test_numeric_fields_become_signals(self):
        row = HorseSignalRow.from_dict({
            "horseNumber": "7",
            "horseName": "ドウデュース",
            "rank": 1,
            "time": "1:58.3",
            "honmeiCount": 4,
            "isFavorite": True,
        })
        assert row.horse_number == "7"
        assert row.horse_name == "ドウデュース"
        assert row.signals == {"rank": 1, "honmeiCount": 4}

    def test_numeric_strings_become_signals(self):
        """Scraped cells are often text; numeric text still ranks."""
        row = HorseSignalRow.from_dict({"horseNumber": "7", "rank": "1", "last3F": " 34.5 ", "odds": "取消"})
        assert row.signals == {"rank": 1, "last3F": 34.5}

    def test_string_ranks_sort_like_numbers(self):
        table = [
            HorseSignalRow.from_dict({"horseNumber": "4", "rank": "2"}),
            HorseSignalRow.from_dict({"horseNumber": "9", "rank": "1"}),
            HorseSignalRow.from_dict({"horseNumber": "2", "rank": "3"}),
        ]
        assert derive_ranks(table, TIME_POLICY) == (9, 4, 2)


class TestParseSignal:
    """Tests for parse_signal()."""

    def test_values(self):
        assert parse_signal(3) == 3
        assert parse_signal("12") == 12
        assert parse_signal("0.85") == 0.85
        assert parse_signal("1:58.3") is None
        assert parse_signal(True) is None
        assert parse_signal("nan") is None
        assert parse_signal(None) is None


class TestIndexPolicy:
    """Tests for INDEX_POLICY."""

    def test_top_eight_by_rank(self):
        table = rows(*[(str(n), 11 - n) for n in range(1, 11)])
        assert derive_ranks(table, INDEX_POLICY) == (10, 9, 8, 7, 6, 5, 4, 3)

    def test_short_table_padded(self):
        assert derive_ranks(rows(("3", 2), ("5", 1)), INDEX_POLICY) == (5, 3, None, None, None, None, None, None)


class TestDeriveRankFields:
    """Tests for derive_rank_fields()."""

    def test_only_resolved_fields(self):
        tables = {
            "best_time": rows(("7", 1)),
            "last_3f": [],
            "marks": [mark_row(1, 1, 2)],
        }
        assert derive_rank_fields(tables) == {"time_ranks": (7, None, None)}
