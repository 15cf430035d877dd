"""
LSR Updater - firmware update engine for readers behind a BKR concentrator

Inventory collection, TFTP firmware delivery and rollback over the
concentrator's UDP text command protocol.
"""

__version__ = "0.1.0"

from lsr_updater.protocol import CommandChannel, ResponseParser, TftpClient
from lsr_updater.core import DeviceExecutor, UpdateOrchestrator, UpdaterConfig

__all__ = [
    "CommandChannel",
    "ResponseParser",
    "TftpClient",
    "DeviceExecutor",
    "UpdateOrchestrator",
    "UpdaterConfig",
    "__version__",
]
