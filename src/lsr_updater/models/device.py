"""
Reader (LSR) device model.

Devices are created from a concentrator inventory listing and mutated in place
as each update phase completes. They live only for one orchestration run.
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Dict, Optional

MAX_HANDLE = 0xFFFF
UNKNOWN_VERSION_MARK = "?"


class InventoryPolicy(Enum):
    """What to do with inventory lines whose version is unknown ("?")."""

    SKIP_UNKNOWN = "skip"
    FLAG_UNKNOWN = "flag"


def parse_handle(device_id: str) -> int:
    """
    Convert a device id as printed by the concentrator into its numeric handle.

    Ids are 16-bit unsigned integers written in hex without prefix ("2561").

    Raises:
        ValueError: If the id is not a hex number in 0..0xFFFF
    """
    text = device_id.strip()
    if text.lower().startswith("0x"):
        text = text[2:]
    try:
        handle = int(text, 16)
    except ValueError:
        raise ValueError(f"Invalid device id '{device_id}': expected hex number")
    if not 0 <= handle <= MAX_HANDLE:
        raise ValueError(f"Invalid device id '{device_id}': out of 16-bit range")
    return handle


def format_handle(handle: int) -> str:
    """Format a handle the way the wire protocol expects (uppercase hex, no prefix)."""
    return f"{handle:X}"


@dataclass
class Device:
    """
    A reader whose firmware may be updated.

    ``device_id`` cannot be rebound once set and ``attempts`` never decreases.
    """

    device_id: str
    ip_address: str = ""
    firmware_version: str = ""
    is_available: bool = True
    needs_update: bool = True
    watchdog_enabled: bool = False
    status: str = "discovered"
    attempts: int = 0
    last_error: Optional[str] = None
    last_status_at: datetime = field(default_factory=datetime.now)
    system_info: Dict[str, str] = field(default_factory=dict)

    def __post_init__(self):
        self._handle = parse_handle(self.device_id)

    def __setattr__(self, name, value):
        if name == "device_id" and "device_id" in self.__dict__:
            raise AttributeError("device_id is immutable")
        if name == "attempts" and value < self.__dict__.get("attempts", 0):
            raise ValueError("attempts can only increase")
        super().__setattr__(name, value)

    @classmethod
    def from_inventory(cls, device_id: str, ip_address: str, version: str) -> "Device":
        """Build a device from one inventory line; unknown versions are unavailable."""
        unknown = UNKNOWN_VERSION_MARK in version
        return cls(
            device_id=device_id,
            ip_address=ip_address,
            firmware_version=version,
            is_available=not unknown,
            needs_update=not unknown,
        )

    @property
    def handle(self) -> int:
        return self._handle

    @property
    def wire_id(self) -> str:
        return format_handle(self._handle)

    @property
    def version_known(self) -> bool:
        return bool(self.firmware_version) and UNKNOWN_VERSION_MARK not in self.firmware_version

    def record_attempt(self) -> None:
        self.attempts += 1
        self.last_status_at = datetime.now()

    def set_status(self, status: str, error: Optional[str] = None) -> None:
        self.status = status
        self.last_error = error
        self.last_status_at = datetime.now()

    def to_log_string(self) -> str:
        available = "+" if self.is_available else "-"
        update = "update" if self.needs_update else "current"
        return (
            f"[{available}] ID:{self.device_id} IP:{self.ip_address or '?'} "
            f"Ver:{self.firmware_version or '?'} {update} {self.status}"
        )

    def to_dict(self) -> Dict[str, object]:
        return {
            "device_id": self.device_id,
            "ip_address": self.ip_address,
            "firmware_version": self.firmware_version,
            "is_available": self.is_available,
            "needs_update": self.needs_update,
            "watchdog_enabled": self.watchdog_enabled,
            "status": self.status,
            "attempts": self.attempts,
            "last_error": self.last_error,
            "last_status_at": self.last_status_at.isoformat(),
        }
