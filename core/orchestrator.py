"""
Collection run orchestrator.

Drives one collector over a work set (races of a day, images of a batch)
strictly one unit at a time:

    run = CollectionRun("marks", PacingPolicy(800, 2000))
    summary = run.run(race_keys, process=handle_race, describe=lambda k: k.label)

For each unit:
- process(unit) returns a UnitResult (Ok(record) or Skipped(reason))
- TransientCollectorError is retried with exponential backoff
- any other exception is logged with the unit's key and the run moves on
- AcquisitionError is run-fatal and propagates

Between units, after a successful one, a random delay in the pacing range
keeps upstream sources from seeing bursts.
"""

import random
import time
from dataclasses import dataclass
from typing import Callable, Iterable, Optional, TypeVar

from core.ocr_marks import ExtractionParseError
from core.records import OrphanRecordError
from core.results import UnitResult, UnitStatus, RunSummary
from core.logging import get_logger, log_unit_failure, log_unit_skip

logger = get_logger(__name__)

T = TypeVar("T")


class AcquisitionError(RuntimeError):
    """The work set cannot be obtained (listing failed, login failed). Fatal."""


class CollectorError(RuntimeError):
    """A collector failed for one unit."""


class TransientCollectorError(CollectorError):
    """A collector failure worth retrying (timeouts, rate limits, 5xx)."""


@dataclass(frozen=True)
class PacingPolicy:
    """
    Delay and retry policy for a run. All times in milliseconds.

    Attributes:
        min_delay_ms: Lower bound of the delay between units (inclusive)
        max_delay_ms: Upper bound of the delay between units (inclusive)
        max_attempts: Attempts per unit for transient errors
        backoff_base_ms: First retry delay; doubled on each attempt
        backoff_cap_ms: Largest retry delay
    """
    min_delay_ms: int = 800
    max_delay_ms: int = 2000
    max_attempts: int = 3
    backoff_base_ms: int = 1000
    backoff_cap_ms: int = 10000

    def __post_init__(self):
        if self.min_delay_ms < 0 or self.min_delay_ms > self.max_delay_ms:
            raise ValueError("Pacing range must satisfy 0 <= min_delay_ms <= max_delay_ms")
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")

    @classmethod
    def from_settings(cls, settings) -> "PacingPolicy":
        return cls(
            min_delay_ms=settings.pacing_min_ms,
            max_delay_ms=settings.pacing_max_ms,
            max_attempts=settings.retry_max_attempts,
            backoff_base_ms=settings.retry_base_ms,
            backoff_cap_ms=settings.retry_cap_ms,
        )

    def delay_ms(self, rng: random.Random) -> int:
        """Random pacing delay in [min_delay_ms, max_delay_ms]."""
        return rng.randint(self.min_delay_ms, self.max_delay_ms)

    def backoff_ms(self, attempt: int) -> int:
        """Retry delay after the given 0-based failed attempt."""
        return min(self.backoff_base_ms * (2 ** attempt), self.backoff_cap_ms)


class CollectionRun:
    """
    Sequential, failure-isolated iteration over one work set.

    Args:
        name: Run name used in logs (e.g. "netkeiba", "note-ai")
        pacing: Delay and retry policy
        sleep: Sleep function taking seconds (injected in tests)
        rng: Random source for pacing delays
    """

    def __init__(
        self,
        name: str,
        pacing: Optional[PacingPolicy] = None,
        sleep: Callable[[float], None] = time.sleep,
        rng: Optional[random.Random] = None,
    ):
        self.name = name
        self.pacing = pacing or PacingPolicy()
        self._sleep = sleep
        self._rng = rng or random.Random()

    def _pause(self, ms: int) -> None:
        if ms > 0:
            self._sleep(ms / 1000)

    def run(
        self,
        units: Iterable[T],
        process: Callable[[T], UnitResult],
        describe: Callable[[T], str] = str,
    ) -> RunSummary:
        """
        Process every unit, isolating failures.

        Raises:
            AcquisitionError: Propagated from the unit iterator or a unit
        """
        summary = RunSummary(run=self.name)
        pace_next = False

        for unit in units:
            label = describe(unit)

            if pace_next:
                self._pause(self.pacing.delay_ms(self._rng))

            result = self._process_unit(unit, label, process)

            summary.add(result)
            pace_next = result.ok

        summary.finish()
        logger.info(summary.summary())
        return summary

    def _process_unit(
        self,
        unit: T,
        label: str,
        process: Callable[[T], UnitResult],
    ) -> UnitResult:
        attempt = 0
        while True:
            try:
                result = process(unit)
                result.attempts = attempt + 1
                if not result.ok:
                    log_unit_skip(logger, self.name, label, result.message, status=result.status.value)
                return result

            except AcquisitionError:
                raise

            except TransientCollectorError as e:
                if attempt + 1 < self.pacing.max_attempts:
                    wait_ms = self.pacing.backoff_ms(attempt)
                    logger.warning(f"[{self.name}] {label}: {e}, retrying in {wait_ms}ms")
                    self._pause(wait_ms)
                    attempt += 1
                    continue
                log_unit_failure(logger, self.name, label, e)
                return self._failed(label, UnitStatus.EXTRACTION_FAILED, e, attempt + 1)

            except ExtractionParseError as e:
                log_unit_failure(logger, self.name, label, e)
                return self._failed(label, UnitStatus.PARSE_FAILED, e, attempt + 1)

            except OrphanRecordError as e:
                log_unit_skip(logger, self.name, label, str(e), status=UnitStatus.ORPHAN.value)
                return self._failed(label, UnitStatus.ORPHAN, e, attempt + 1)

            except Exception as e:
                log_unit_failure(logger, self.name, label, e)
                return self._failed(label, UnitStatus.EXTRACTION_FAILED, e, attempt + 1)

    @staticmethod
    def _failed(label: str, status: UnitStatus, error: Exception, attempts: int) -> UnitResult:
        result = UnitResult.skipped(label, status, str(error), error_type=type(error).__name__)
        result.attempts = attempts
        return result
