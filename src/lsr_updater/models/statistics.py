"""
Update run statistics and phase enumeration.
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional


class UpdatePhase(Enum):
    """Phases of an update run."""

    IDLE = "idle"
    INITIALIZING = "initializing"
    GATHERING_INFO = "gathering_info"
    ANALYZING = "analyzing"
    UPDATING = "updating"
    RESTORING = "restoring"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    ERROR = "error"

    @property
    def is_terminal(self) -> bool:
        return self in (UpdatePhase.COMPLETED, UpdatePhase.CANCELLED, UpdatePhase.ERROR)


@dataclass
class UpdateStatistics:
    """
    Counters and messages for one update run.

    Attributes:
        start_time: When the run started
        end_time: When the run reached a terminal phase (None while running)
        total: Number of devices considered
        successful: Devices updated
        failed: Devices whose update failed
        skipped: Devices already running the target firmware
        unavailable: Devices reported without a usable version
        errors: Error strings in the order they happened
        warnings: Warning strings in the order they happened
        phase: Current phase
        progress: Completion percentage (0-100, never decreases)
        current_operation: Description of what is happening now
    """

    start_time: datetime = field(default_factory=datetime.now)
    end_time: Optional[datetime] = None
    total: int = 0
    successful: int = 0
    failed: int = 0
    skipped: int = 0
    unavailable: int = 0
    errors: List[str] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)
    phase: UpdatePhase = UpdatePhase.IDLE
    progress: float = 0.0
    current_operation: str = ""

    def add_error(self, message: str) -> None:
        self.errors.append(message)

    def add_warning(self, message: str) -> None:
        self.warnings.append(message)

    def set_progress(self, percentage: float, operation: Optional[str] = None) -> None:
        """Raise progress to ``percentage`` (clamped to 0-100, never lowered)."""
        value = min(100.0, max(0.0, float(percentage)))
        self.progress = max(self.progress, value)
        if operation is not None:
            self.current_operation = operation

    def finish(self, phase: UpdatePhase) -> None:
        self.phase = phase
        self.end_time = datetime.now()
        if phase == UpdatePhase.COMPLETED:
            self.set_progress(100.0)

    @property
    def accounted(self) -> int:
        return self.successful + self.failed + self.skipped + self.unavailable

    @property
    def completed_with_errors(self) -> bool:
        return self.phase == UpdatePhase.COMPLETED and (self.failed > 0 or bool(self.errors))

    def duration(self) -> str:
        """Elapsed time as HH:MM:SS."""
        end = self.end_time or datetime.now()
        seconds = int((end - self.start_time).total_seconds())
        hours, rest = divmod(seconds, 3600)
        minutes, secs = divmod(rest, 60)
        return f"{hours:02d}:{minutes:02d}:{secs:02d}"

    def success_percentage(self) -> float:
        if self.total == 0:
            return 0.0
        return self.successful / self.total * 100

    def summary(self) -> str:
        return (
            f"Total: {self.total} | updated: {self.successful} | failed: {self.failed} | "
            f"skipped: {self.skipped} | unavailable: {self.unavailable}"
        )

    def __str__(self) -> str:
        return self.summary()

    def to_dict(self) -> Dict[str, Any]:
        return {
            "start_time": self.start_time.isoformat(),
            "end_time": self.end_time.isoformat() if self.end_time else None,
            "duration": self.duration(),
            "total": self.total,
            "successful": self.successful,
            "failed": self.failed,
            "skipped": self.skipped,
            "unavailable": self.unavailable,
            "errors": list(self.errors),
            "warnings": list(self.warnings),
            "phase": self.phase.value,
            "progress": self.progress,
            "current_operation": self.current_operation,
        }
