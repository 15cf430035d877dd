"""
Structured warnings for LSR update runs.

Provides warning items with stable codes that the CLI (or any other front
end) can display consistently, plus converters from run statistics and
operation results.
"""

import re
from dataclasses import dataclass, replace
from enum import Enum
from typing import List, Dict, Any, TYPE_CHECKING

if TYPE_CHECKING:
    from lsr_updater.core.results import OperationResult
    from lsr_updater.models.statistics import UpdateStatistics


class MessageLevel(Enum):
    """Severity level for messages."""
    INFO = "info"
    WARN = "warn"
    ERROR = "error"


class WarningCode(Enum):
    """Stable warning codes for known conditions."""
    # Concentrator
    W_CONNECTION_FAILED = "W_CONNECTION_FAILED"
    W_COMMAND_TIMEOUT = "W_COMMAND_TIMEOUT"
    W_COLLECTION_TIMEOUT = "W_COLLECTION_TIMEOUT"
    W_NO_DEVICES = "W_NO_DEVICES"
    W_RESTORE_INCOMPLETE = "W_RESTORE_INCOMPLETE"

    # Readers
    W_DEVICE_UNAVAILABLE = "W_DEVICE_UNAVAILABLE"
    W_TARGET_UNKNOWN = "W_TARGET_UNKNOWN"
    W_WATCHDOG_UNCONFIRMED = "W_WATCHDOG_UNCONFIRMED"

    # Transfer
    W_TRANSFER_FAILED = "W_TRANSFER_FAILED"
    W_ERASE_FAILED = "W_ERASE_FAILED"

    # Run outcome
    W_CANCELLED = "W_CANCELLED"
    W_PARTIAL_SUCCESS = "W_PARTIAL_SUCCESS"

    # Generic
    W_UNKNOWN = "W_UNKNOWN"


WARNING_REMEDIATIONS: Dict[WarningCode, str] = {
    WarningCode.W_CONNECTION_FAILED:
        "Check the concentrator address (--host/--port or LSR_BKR_HOST) and network route.",
    WarningCode.W_COMMAND_TIMEOUT:
        "The concentrator did not answer in time. Increase --timeout or check the link.",
    WarningCode.W_COLLECTION_TIMEOUT:
        "Inventory may be incomplete. Re-run 'inventory' once the concentrator is idle.",
    WarningCode.W_NO_DEVICES:
        "No readers were reported. Check that readers are powered and polled by the concentrator.",
    WarningCode.W_RESTORE_INCOMPLETE:
        "Run 'command \"eth promiscuous 0\"' and 'command \"phy start\"' to restore the concentrator.",
    WarningCode.W_DEVICE_UNAVAILABLE:
        "Reader did not answer after reset. Check power and retry with --target.",
    WarningCode.W_TARGET_UNKNOWN:
        "Use 'inventory' to list reader ids known to the concentrator.",
    WarningCode.W_WATCHDOG_UNCONFIRMED:
        "The reader may reboot during transfer. Retry the update for this reader.",
    WarningCode.W_TRANSFER_FAILED:
        "TFTP transfer failed. Check the reader's IP route and retry with --target.",
    WarningCode.W_ERASE_FAILED:
        "Flash erase was rejected. Retry 'rollback' for this reader.",
    WarningCode.W_CANCELLED:
        "Run was cancelled. Readers not yet contacted keep their firmware.",
    WarningCode.W_PARTIAL_SUCCESS:
        "Some readers failed. Check individual errors below.",
    WarningCode.W_UNKNOWN:
        "Check logs for more details (--verbose).",
}


_READER_IN_MESSAGE = re.compile(r"\[([0-9A-Fa-f]{1,4})\]|\b(?:device|reader|target)\s+([0-9A-Fa-f]{1,4})\b", re.IGNORECASE)


def reader_in_message(message: str) -> str:
    """Return the reader id a message names ("[2561] ..." or "Device 2561: ..."), or ""."""
    match = _READER_IN_MESSAGE.search(message)
    if not match:
        return ""
    return (match.group(1) or match.group(2)).upper()


@dataclass(frozen=True)
class WarningItem:
    """
    One classified warning or error line.

    ``reader`` is the reader id the message names, empty for concentrator
    or run-level messages. Remediation text follows from the code.
    """
    level: MessageLevel
    code: WarningCode
    title: str
    reader: str = ""

    @classmethod
    def from_message(cls, message: str, level: MessageLevel = MessageLevel.WARN) -> "WarningItem":
        return cls(level, classify_message(message), message, reader_in_message(message))

    @property
    def remediation(self) -> str:
        return WARNING_REMEDIATIONS.get(self.code, "")

    def to_dict(self) -> Dict[str, Any]:
        return {
            "level": self.level.value,
            "code": self.code.value,
            "reader": self.reader or None,
            "title": self.title,
            "remediation": self.remediation,
        }


def classify_message(message: str) -> WarningCode:
    """Map a plain warning/error string to the closest warning code."""
    msg_lower = message.lower()

    if "restore incomplete" in msg_lower:
        return WarningCode.W_RESTORE_INCOMPLETE
    if "collection job" in msg_lower:
        return WarningCode.W_COLLECTION_TIMEOUT
    if "no readers" in msg_lower:
        return WarningCode.W_NO_DEVICES
    if "cancelled" in msg_lower:
        return WarningCode.W_CANCELLED
    if "not in inventory" in msg_lower or "ignoring target" in msg_lower:
        return WarningCode.W_TARGET_UNKNOWN
    if "no response after reset" in msg_lower or "did not answer" in msg_lower:
        return WarningCode.W_DEVICE_UNAVAILABLE
    if "transfer" in msg_lower or "tftp" in msg_lower:
        return WarningCode.W_TRANSFER_FAILED
    if "erase" in msg_lower:
        return WarningCode.W_ERASE_FAILED
    if "watchdog" in msg_lower:
        return WarningCode.W_WATCHDOG_UNCONFIRMED
    if "connect" in msg_lower:
        return WarningCode.W_CONNECTION_FAILED
    if "timeout" in msg_lower:
        return WarningCode.W_COMMAND_TIMEOUT
    return WarningCode.W_UNKNOWN


def warnings_from_strings(
    warning_strings: List[str],
    default_level: MessageLevel = MessageLevel.WARN,
    reader: str = "",
) -> List[WarningItem]:
    """
    Convert plain warning strings to WarningItem list.

    Args:
        warning_strings: List of plain warning message strings
        default_level: Severity level for every item
        reader: Reader id for messages that do not name one themselves

    Returns:
        List of WarningItem objects
    """
    items = []
    for msg in warning_strings:
        item = WarningItem.from_message(msg, default_level)
        if reader and not item.reader:
            item = replace(item, reader=reader.upper())
        items.append(item)
    return items


def result_to_warnings(result: "OperationResult") -> List[WarningItem]:
    """
    Convert an OperationResult's warnings and errors to WarningItem list.

    Rollback messages are attributed to the rolled-back reader.
    """
    reader = result.target if result.rollback is not None else ""
    items = warnings_from_strings(result.warnings, MessageLevel.WARN, reader)
    items.extend(warnings_from_strings(result.errors, MessageLevel.ERROR, reader))
    return items


def statistics_to_warnings(stats: "UpdateStatistics") -> List[WarningItem]:
    """
    Convert run statistics to WarningItem list.

    Adds a W_PARTIAL_SUCCESS summary item when some readers were updated and
    others failed.
    """
    items = warnings_from_strings(stats.warnings, MessageLevel.WARN)
    items.extend(warnings_from_strings(stats.errors, MessageLevel.ERROR))
    if stats.failed and stats.successful:
        items.append(WarningItem(
            MessageLevel.WARN,
            WarningCode.W_PARTIAL_SUCCESS,
            f"{stats.failed} of {stats.successful + stats.failed} reader updates failed",
        ))
    return items


def readers_with_problems(items: List[WarningItem]) -> Dict[str, List[WarningItem]]:
    """Group reader-specific items by reader id, in first-seen order."""
    grouped: Dict[str, List[WarningItem]] = {}
    for item in items:
        if item.reader:
            grouped.setdefault(item.reader, []).append(item)
    return grouped
