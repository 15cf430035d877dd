"""
Outcomes of single-shot operations.

Update runs report through UpdateStatistics. Anything that touches one target
once (a TFTP transfer, a raw concentrator command, a reader rollback) returns
an OperationResult whose payload records what happened on the wire: the
transfer counters, the command reply, or which rollback steps the reader
confirmed.
"""

from dataclasses import asdict, dataclass, field
from typing import Any, Dict, List, Optional

OP_SEND = "tftp_send"
OP_FETCH = "tftp_fetch"
OP_COMMAND = "command"
OP_ROLLBACK = "rollback"


@dataclass
class TransferReport:
    """Counters for one completed TFTP transfer."""
    remote_name: str
    local_path: str
    size: int = 0
    packets: int = 0
    retransmissions: int = 0
    md5: str = ""

    def describe(self, direction: str) -> List[str]:
        arrow = "->" if direction == OP_SEND else "<-"
        lines = [
            f"  {self.local_path} {arrow} {self.remote_name}",
            f"  {self.size:,} bytes, {self.packets} DATA packets, "
            f"{self.retransmissions} retransmitted",
        ]
        if self.md5:
            lines.append(f"  MD5: {self.md5}")
        return lines


@dataclass
class RollbackSteps:
    """
    Which rollback steps the reader acknowledged.

    ``watchdog_enabled`` is the window watchdog state read after the first
    reset (None when the query failed); ``ip_address`` is empty when the
    reader never answered.
    """
    guard_set: bool = False
    ip_address: str = ""
    watchdog_enabled: Optional[bool] = None
    watchdog_disabled: bool = False
    flash_erased: bool = False
    guard_cleared: bool = False
    final_reset: bool = False

    def describe(self) -> List[str]:
        checks = [
            ("watchdog guard armed", self.guard_set),
            (f"reader answered ({self.ip_address or 'no reply'})", bool(self.ip_address)),
            ("flash erased", self.flash_erased),
            ("watchdog guard cleared", self.guard_cleared),
            ("final reset", self.final_reset),
        ]
        if self.watchdog_enabled:
            checks.insert(2, ("window watchdog disabled", self.watchdog_disabled))
        return [f"  [{'x' if done else ' '}] {label}" for label, done in checks]


@dataclass
class OperationResult:
    """
    Result of one single-shot operation against ``target``.

    ``target`` is the reader id for rollbacks, the reader IP for transfers
    and "host:port" for raw commands. A result is ok while it has no errors.
    Exactly one of ``reply``, ``transfer`` and ``rollback`` is filled,
    matching ``operation``.
    """
    operation: str
    target: str
    reply: Optional[str] = None
    transfer: Optional[TransferReport] = None
    rollback: Optional[RollbackSteps] = None
    warnings: List[str] = field(default_factory=list)
    errors: List[str] = field(default_factory=list)
    logs: List[str] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.errors

    def add_warning(self, message: str) -> None:
        if message not in self.warnings:
            self.warnings.append(message)

    def add_error(self, message: str) -> None:
        self.errors.append(message)

    def to_summary(self) -> str:
        """Human-readable summary for CLI output."""
        lines = [f"{self.operation} {self.target}: {'ok' if self.ok else 'FAILED'}"]
        if self.transfer is not None:
            lines.extend(self.transfer.describe(self.operation))
        if self.rollback is not None:
            lines.extend(self.rollback.describe())
        lines.extend(f"  warning: {w}" for w in self.warnings)
        lines.extend(f"  error: {e}" for e in self.errors)
        return "\n".join(lines)

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["ok"] = self.ok
        return data
