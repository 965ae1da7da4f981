"""Per-file outcomes and batch reporting.

Every public file operation returns an :class:`Outcome` instead of raising,
so a batch can log one file's failure and carry on with the next.
"""

import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Callable, Iterable, Optional

from dicom_deid.utils import relative_to_any, safe_copy2

logger = logging.getLogger(__name__)


class Status(str, Enum):
    OK = "ok"
    EXCEPTIONS = "exceptions"
    QUARANTINE = "quarantine"
    ERROR = "error"


@dataclass
class Outcome:
    """Result of one file operation.

    ``exceptions`` lists element tags (as ``(gggg,eeee)`` strings) that could
    not be processed; the output was still written.  ``reason`` explains a
    quarantine or error, or notes why nothing needed doing.
    """

    source: Path
    status: Status
    output: Optional[Path] = None
    exceptions: list[str] = field(default_factory=list)
    reason: Optional[str] = None
    duration_s: float = 0.0

    @classmethod
    def ok(cls, source, output=None, exceptions=(), reason=None) -> "Outcome":
        exceptions = list(exceptions)
        status = Status.EXCEPTIONS if exceptions else Status.OK
        return cls(Path(source), status, Path(output) if output else None, exceptions, reason)

    @classmethod
    def quarantine(cls, source, reason: str) -> "Outcome":
        return cls(Path(source), Status.QUARANTINE, reason=reason)

    @classmethod
    def error(cls, source, reason: str) -> "Outcome":
        return cls(Path(source), Status.ERROR, reason=reason)

    @property
    def succeeded(self) -> bool:
        return self.status in (Status.OK, Status.EXCEPTIONS)

    def describe(self) -> str:
        """One line of user-facing text for this outcome."""
        if self.status is Status.OK:
            text = f"OK: {self.source}"
            if self.output and self.output != self.source:
                text += f" -> {self.output}"
            if self.reason:
                text += f" ({self.reason})"
            return text
        if self.status is Status.EXCEPTIONS:
            return f"EXCEPTIONS: {self.source} [{', '.join(self.exceptions)}]"
        return f"{self.status.value.upper()}: {self.source}: {self.reason}"


@dataclass
class BatchReport:
    """Aggregated outcomes for a batch."""

    outcomes: list[Outcome] = field(default_factory=list)
    quarantined_to: list[Path] = field(default_factory=list)

    def add(self, outcome: Outcome) -> None:
        self.outcomes.append(outcome)

    def count(self, status: Status) -> int:
        return sum(1 for o in self.outcomes if o.status is status)

    @property
    def failed(self) -> bool:
        return any(o.status in (Status.ERROR, Status.QUARANTINE) for o in self.outcomes)

    def summary(self) -> str:
        total = len(self.outcomes)
        return (
            f"{total} file(s): {self.count(Status.OK)} ok, "
            f"{self.count(Status.EXCEPTIONS)} with exceptions, "
            f"{self.count(Status.QUARANTINE)} quarantined, "
            f"{self.count(Status.ERROR)} errors"
        )


def run_batch(
    files: Iterable[Path],
    operation: Callable[[Path], Outcome],
    quarantine_dir: Optional[Path] = None,
    roots: Iterable[Path] = (),
) -> BatchReport:
    """Apply *operation* to every file and collect the outcomes.

    Quarantined sources are copied into *quarantine_dir*, keeping their path
    relative to whichever of *roots* contains them.
    """
    report = BatchReport()
    roots = list(roots)
    for path in files:
        start = time.monotonic()
        outcome = operation(Path(path))
        outcome.duration_s = time.monotonic() - start
        report.add(outcome)

        if outcome.status is Status.ERROR:
            logger.error("%s", outcome.describe())
        elif outcome.status is Status.OK:
            logger.info("%s", outcome.describe())
        else:
            logger.warning("%s", outcome.describe())

        if outcome.status is Status.QUARANTINE and quarantine_dir is not None:
            relative = relative_to_any(path, roots) or Path(path).name
            destination = Path(quarantine_dir) / relative
            if safe_copy2(path, destination):
                report.quarantined_to.append(destination)
                logger.info("Quarantined %s -> %s", path, destination)

    logger.info("Batch complete: %s", report.summary())
    return report
