"""
Per-unit results and run summaries.

Every unit of work (one race, one image) ends in a UnitResult: either OK
with the merged record, or not OK with a clear reason. A RunSummary
collects them so a run can report what was skipped and why.

Usage:
    from core.results import UnitResult, UnitStatus, RunSummary

    result = UnitResult.success("20250525-05-11", record)
    result = UnitResult.skipped("20250525-05-11", UnitStatus.NO_DATA, "No marks table")

    summary = RunSummary(run="marks")
    summary.add(result)
    print(summary.summary())
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Optional
from datetime import datetime

from core.records import AnalysisRecord


class UnitStatus(Enum):
    """Outcome of one unit of work."""

    # Success
    OK = "ok"  # Record merged

    # Nothing to merge (expected outcomes)
    NO_DATA = "no_data"  # Source had nothing usable for this race
    ORPHAN = "orphan"  # Race key incomplete, record rejected

    # Recovered failures
    EXTRACTION_FAILED = "extraction_failed"  # Collector call raised
    PARSE_FAILED = "parse_failed"  # Collector output had the wrong shape


STATUS_MESSAGES = {
    UnitStatus.OK: "Record merged",
    UnitStatus.NO_DATA: "Source returned nothing usable",
    UnitStatus.ORPHAN: "Race key incomplete, record not merged",
    UnitStatus.EXTRACTION_FAILED: "Collector failed for this unit",
    UnitStatus.PARSE_FAILED: "Collector output could not be parsed",
}


@dataclass
class UnitResult:
    """
    Result of processing one unit.

    Ok(record) when status is OK, Skipped(reason) otherwise.
    """

    unit: str
    status: UnitStatus
    message: str
    record: Optional[AnalysisRecord] = None
    attempts: int = 1
    details: dict = field(default_factory=dict)
    timestamp: datetime = field(default_factory=datetime.now)

    @property
    def ok(self) -> bool:
        return self.status == UnitStatus.OK

    @property
    def failed(self) -> bool:
        """True for recovered failures (as opposed to expected skips)."""
        return self.status in (UnitStatus.EXTRACTION_FAILED, UnitStatus.PARSE_FAILED)

    @classmethod
    def success(cls, unit: str, record: AnalysisRecord, **details) -> "UnitResult":
        """Create a result for a merged record."""
        return cls(
            unit=unit,
            status=UnitStatus.OK,
            message=STATUS_MESSAGES[UnitStatus.OK],
            record=record,
            details=details,
        )

    @classmethod
    def skipped(
        cls,
        unit: str,
        status: UnitStatus,
        reason: Optional[str] = None,
        **details,
    ) -> "UnitResult":
        """Create a result for a unit that produced nothing to merge."""
        if status == UnitStatus.OK:
            raise ValueError("A skipped unit cannot have status OK")
        return cls(
            unit=unit,
            status=status,
            message=reason or STATUS_MESSAGES[status],
            details=details,
        )

    def to_dict(self) -> dict:
        """Convert to dictionary for JSON serialization."""
        return {
            "unit": self.unit,
            "status": self.status.value,
            "message": self.message,
            "ok": self.ok,
            "attempts": self.attempts,
            "record": self.record.to_dict() if self.record else None,
            "details": self.details,
            "timestamp": self.timestamp.isoformat(),
        }


@dataclass
class RunSummary:
    """
    Result of one collection run (all races or images of a batch).
    """

    run: str
    results: list[UnitResult] = field(default_factory=list)
    started_at: datetime = field(default_factory=datetime.now)
    finished_at: Optional[datetime] = None

    def add(self, result: UnitResult) -> None:
        self.results.append(result)

    def finish(self) -> None:
        self.finished_at = datetime.now()

    @property
    def ok_count(self) -> int:
        return sum(1 for r in self.results if r.ok)

    @property
    def failed(self) -> list[UnitResult]:
        return [r for r in self.results if r.failed]

    @property
    def skipped(self) -> list[UnitResult]:
        """Units that ended without a record for any reason."""
        return [r for r in self.results if not r.ok]

    @property
    def records(self) -> list[AnalysisRecord]:
        return [r.record for r in self.results if r.ok and r.record is not None]

    def merge(self, other: "RunSummary") -> "RunSummary":
        """Combine two runs (e.g. several venues of one day)."""
        combined = RunSummary(run=self.run, started_at=min(self.started_at, other.started_at))
        combined.results = self.results + other.results
        combined.finished_at = other.finished_at or self.finished_at
        return combined

    def summary(self) -> str:
        """Get a summary string."""
        return (
            f"{self.run}: {self.ok_count}/{len(self.results)} units merged, "
            f"{len(self.failed)} failed, {len(self.skipped) - len(self.failed)} skipped"
        )

    def to_dict(self) -> dict:
        """Convert to dictionary for JSON serialization."""
        return {
            "run": self.run,
            "total": len(self.results),
            "ok": self.ok_count,
            "skipped_units": [
                {"unit": r.unit, "status": r.status.value, "reason": r.message}
                for r in self.skipped
            ],
            "started_at": self.started_at.isoformat(),
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
        }
