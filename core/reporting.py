"""
Downstream predictions payload.

Maps one venue's records into the request body of the reporting API:
every rank array padded with null to its fixed length, except the win
predictions, which are sent compacted (resolved horses only).

Usage:
    from core.reporting import to_predictions_request

    payload = to_predictions_request("20250525", "05", store.records("20250525"))
"""

from typing import Iterable, Optional, Sequence

from core.records import AnalysisRecord, RANK_FIELDS
from core.tracks import normalize_track_code

# Fields sent padded to their RankField length
PADDED_FIELDS = (
    "jravan_prediction_ranks",
    "cp_ranks",
    "data_analysis_ranks",
    "time_ranks",
    "last_3f_ranks",
    "horse_trait_ranks",
    "index_ranks",
    "ai_ranks",
)

UMAX_LENGTH = 5


def format_date(date: str) -> str:
    """YYYYMMDD -> YYYY-MM-DD (anything else is returned unchanged)."""
    if len(date) != 8:
        return date
    return f"{date[:4]}-{date[4:6]}-{date[6:]}"


def pad(values: Optional[Sequence], length: int) -> list:
    """Right-pad with None to `length`, truncating longer input."""
    values = list(values or [])
    return (values + [None] * length)[:length]


def _prediction(record: AnalysisRecord) -> dict:
    item = {
        "raceNumber": record.key.race_number,
        "win_prediction_ranks": [n for n in record.win_prediction_ranks or () if n is not None],
    }
    for name in PADDED_FIELDS:
        item[name] = pad(getattr(record, name), RANK_FIELDS[name].length)

    umax = record.umax_prediction
    item["umax_ranks"] = pad(umax.focused_horse_numbers if umax else None, UMAX_LENGTH)
    item["umax_sp_values"] = pad(umax.sp_value_top5 if umax else None, UMAX_LENGTH)
    item["umax_ag_values"] = pad(umax.ag_value_top5 if umax else None, UMAX_LENGTH)
    item["umax_sa_values"] = pad(umax.sa_value_top5 if umax else None, UMAX_LENGTH)
    item["umax_ki_values"] = pad(umax.ki_value_top3 if umax else None, UMAX_LENGTH)
    return item


def to_predictions_request(date: str, track_code: str, records: Iterable[AnalysisRecord]) -> dict:
    """
    Build the predictions payload for one venue and day.

    Records of other venues or days are ignored.
    """
    code = normalize_track_code(track_code)
    if not code:
        raise ValueError(f"Unknown track code: {track_code!r}")

    selected = sorted(
        (r for r in records if r.key.date == date and r.key.track_code == code),
        key=lambda r: r.key.race_number,
    )
    return {
        "date": format_date(date),
        "trackCode": code,
        "predictions": [_prediction(r) for r in selected],
    }
