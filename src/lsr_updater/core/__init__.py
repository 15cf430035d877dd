"""
Core module for the LSR update engine.

This module provides:
- Configuration (config.py)
- Event sinks re-exported from lsr_updater.events
- Firmware image lookup (firmware.py)
- "Needs update" policies (version_policy.py)
- Reader operations over the command channel (executor.py)
- Update/rollback orchestration (orchestrator.py)
- Result objects and structured warnings (results.py, messages.py)
- Single-shot workflows (actions.py)
"""

from .config import UpdaterConfig
from lsr_updater.events import EventSink, RecordingSink, CallbackSink, ensure_sink
from .firmware import FirmwareImage, FirmwareRepository, extract_date_version
from .version_policy import (
    VersionPolicy,
    DateCodeVersionPolicy,
    PrefixVersionPolicy,
    AlwaysUpdatePolicy,
    extract_date_code,
)
from .executor import DeviceExecutor
from .orchestrator import CancellationToken, UpdateContext, UpdateOrchestrator
from .results import OperationResult, RollbackSteps, TransferReport
from .messages import (
    MessageLevel,
    WarningCode,
    WarningItem,
    warnings_from_strings,
    readers_with_problems,
    result_to_warnings,
    statistics_to_warnings,
)
from .actions import (
    send_firmware,
    fetch_file,
    query_concentrator,
    rollback_device,
)

__all__ = [
    # Config
    "UpdaterConfig",
    # Events
    "EventSink",
    "RecordingSink",
    "CallbackSink",
    "ensure_sink",
    # Firmware
    "FirmwareImage",
    "FirmwareRepository",
    "extract_date_version",
    # Version policies
    "VersionPolicy",
    "DateCodeVersionPolicy",
    "PrefixVersionPolicy",
    "AlwaysUpdatePolicy",
    "extract_date_code",
    # Orchestration
    "DeviceExecutor",
    "CancellationToken",
    "UpdateContext",
    "UpdateOrchestrator",
    # Results
    "OperationResult",
    "RollbackSteps",
    "TransferReport",
    # Messages
    "MessageLevel",
    "WarningCode",
    "WarningItem",
    "warnings_from_strings",
    "readers_with_problems",
    "result_to_warnings",
    "statistics_to_warnings",
    # Actions
    "send_firmware",
    "fetch_file",
    "query_concentrator",
    "rollback_device",
]
