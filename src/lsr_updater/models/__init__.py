"""Data models shared by the protocol and orchestration layers."""

from .device import (
    Device,
    InventoryPolicy,
    format_handle,
    parse_handle,
)
from .statistics import UpdatePhase, UpdateStatistics

__all__ = [
    "Device",
    "InventoryPolicy",
    "format_handle",
    "parse_handle",
    "UpdatePhase",
    "UpdateStatistics",
]
