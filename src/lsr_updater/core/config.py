"""
Configuration for the LSR update engine.
"""

import os
from dataclasses import dataclass, field, fields, replace
from pathlib import Path
from typing import Any, Mapping, Optional

from lsr_updater.models.device import InventoryPolicy

DEFAULT_FIRMWARE_DIR = Path.home() / "firmware" / "lsr4"

ENV_PREFIX = "LSR_"


@dataclass
class UpdaterConfig:
    """Construction-time parameters for channel, TFTP and orchestration timing."""

    bkr_host: str = "10.0.1.89"
    bkr_port: int = 3456
    command_timeout: float = 3.0
    erase_timeout: float = 10.0
    tftp_port: int = 69
    tftp_timeout: float = 5.0
    tftp_retries: int = 3
    job_poll_iterations: int = 60
    job_poll_interval: float = 1.0
    settle_delay: float = 2.0
    pre_finalize_delay: float = 3.0
    inter_device_delay: float = 5.0
    watchdog_guard_seconds: int = 3600
    enrich_inventory: bool = False
    abort_on_collection_timeout: bool = False
    inventory_policy: InventoryPolicy = InventoryPolicy.FLAG_UNKNOWN
    firmware_dir: Path = field(default_factory=lambda: DEFAULT_FIRMWARE_DIR)

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "UpdaterConfig":
        """
        Create configuration from environment variables.

        Recognized: LSR_BKR_HOST, LSR_BKR_PORT, LSR_COMMAND_TIMEOUT,
        LSR_TFTP_TIMEOUT, LSR_FIRMWARE_DIR. Unset variables keep defaults.

        Raises:
            ValueError: If a numeric variable cannot be parsed
        """
        env = os.environ if environ is None else environ
        config = cls()

        host = env.get("LSR_BKR_HOST")
        port = env.get("LSR_BKR_PORT")
        command_timeout = env.get("LSR_COMMAND_TIMEOUT")
        tftp_timeout = env.get("LSR_TFTP_TIMEOUT")
        firmware_dir = env.get("LSR_FIRMWARE_DIR")

        try:
            config = config.with_overrides(
                bkr_host=host or None,
                bkr_port=int(port) if port else None,
                command_timeout=float(command_timeout) if command_timeout else None,
                tftp_timeout=float(tftp_timeout) if tftp_timeout else None,
                firmware_dir=Path(firmware_dir).expanduser() if firmware_dir else None,
            )
        except ValueError as e:
            raise ValueError(f"Invalid {ENV_PREFIX}* environment value: {e}") from e
        config.validate()
        return config

    def with_overrides(self, **overrides: Any) -> "UpdaterConfig":
        """
        Return a copy with the given fields replaced.

        ``None`` values are ignored so unset CLI options keep the current value.

        Raises:
            TypeError: If a name is not a configuration field
        """
        known = {f.name for f in fields(self)}
        unknown = set(overrides) - known
        if unknown:
            raise TypeError(f"Unknown configuration fields: {', '.join(sorted(unknown))}")
        changes = {name: value for name, value in overrides.items() if value is not None}
        if "firmware_dir" in changes:
            changes["firmware_dir"] = Path(changes["firmware_dir"]).expanduser()
        return replace(self, **changes)

    def validate(self) -> None:
        """
        Check value ranges.

        Raises:
            ValueError: On the first invalid value
        """
        if not self.bkr_host:
            raise ValueError("bkr_host must not be empty")
        for name in ("bkr_port", "tftp_port"):
            port = getattr(self, name)
            if not 0 < port <= 0xFFFF:
                raise ValueError(f"{name} must be in 1..65535, got {port}")
        for name in ("command_timeout", "erase_timeout", "tftp_timeout", "job_poll_interval"):
            if getattr(self, name) <= 0:
                raise ValueError(f"{name} must be positive")
        for name in ("settle_delay", "pre_finalize_delay", "inter_device_delay"):
            if getattr(self, name) < 0:
                raise ValueError(f"{name} must not be negative")
        if self.tftp_retries < 1:
            raise ValueError("tftp_retries must be >= 1")
        if self.job_poll_iterations < 1:
            raise ValueError("job_poll_iterations must be >= 1")
        if self.watchdog_guard_seconds < 1:
            raise ValueError("watchdog_guard_seconds must be >= 1")
