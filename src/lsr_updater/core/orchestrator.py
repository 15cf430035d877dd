"""
Update orchestration.

An update run walks the phases

    IDLE → INITIALIZING → GATHERING_INFO → ANALYZING → UPDATING → RESTORING
         → COMPLETED | CANCELLED | ERROR

Each reader needing an update goes through prepare (watchdog guard, reset,
IP check, watchdog disable), transfer (TFTP to the reader's IP) and finalize
(clear guard, reset). A failing reader is counted and the run moves on. The
concentrator is always restored (relay off, polling on) once initialization
succeeded, and the command channel is always released.

Cancellation is cooperative: the token is checked between phases and between
readers, never in the middle of a command or transfer.
"""

import logging
import threading
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Iterable, List, Optional, Set, Union

from lsr_updater.core.config import UpdaterConfig
from lsr_updater.events import EventSink, ensure_sink
from lsr_updater.core.executor import DeviceExecutor
from lsr_updater.core.firmware import FirmwareImage
from lsr_updater.core.results import OP_ROLLBACK, OperationResult, RollbackSteps
from lsr_updater.core.version_policy import DateCodeVersionPolicy, VersionPolicy
from lsr_updater.models.device import Device, parse_handle
from lsr_updater.models.statistics import UpdatePhase, UpdateStatistics
from lsr_updater.protocol.command_channel import CommandChannel
from lsr_updater.protocol.errors import (
    DeviceUnavailable,
    LsrUpdaterError,
    TransferError,
)
from lsr_updater.protocol.tftp import TftpClient

logger = logging.getLogger(__name__)

# Progress milestones (percent) at phase entry
PROGRESS_INITIALIZING = 0.0
PROGRESS_GATHERING = 5.0
PROGRESS_ANALYZING = 20.0
PROGRESS_UPDATING = 25.0
PROGRESS_RESTORING = 95.0

TftpFactory = Callable[[str], TftpClient]
ProgressCallback = Callable[[float, str], None]


class CancellationToken:
    """Thread-safe cancellation flag shared between a UI thread and a run."""

    def __init__(self):
        self._event = threading.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def is_cancelled(self) -> bool:
        return self._event.is_set()


@dataclass
class UpdateContext:
    """Mutable state of one run, threaded through every phase."""

    stats: UpdateStatistics
    image: Optional[FirmwareImage] = None
    devices: List[Device] = field(default_factory=list)
    targets: Optional[Set[int]] = None
    cancel_token: CancellationToken = field(default_factory=CancellationToken)

    @property
    def pending(self) -> List[Device]:
        return [d for d in self.devices if d.needs_update]


class RunAborted(Exception):
    """The run cannot proceed; ends in ERROR."""


class RunCancelled(Exception):
    """Cancellation observed at a checkpoint; ends in CANCELLED."""


class UpdateOrchestrator:
    """
    Drives firmware update runs against the readers behind one concentrator.

    Example:
        orchestrator = UpdateOrchestrator(config=UpdaterConfig())
        stats = orchestrator.run(FirmwareImage.from_path("lsr4-20221202.bin"))
        print(stats.summary())
    """

    def __init__(
        self,
        channel: Optional[CommandChannel] = None,
        executor: Optional[DeviceExecutor] = None,
        tftp_factory: Optional[TftpFactory] = None,
        config: Optional[UpdaterConfig] = None,
        sink: Optional[EventSink] = None,
        version_policy: Optional[VersionPolicy] = None,
        sleep: Callable[[float], None] = time.sleep,
        progress_cb: Optional[ProgressCallback] = None,
    ):
        """
        Initialize orchestrator.

        Args:
            channel: Command channel (built from config when omitted)
            executor: Device executor (built around ``channel`` when omitted)
            tftp_factory: Callable returning a TftpClient for a reader IP
            config: Timing and policy parameters
            sink: Event sink shared with the components built here
            version_policy: Decides which readers need the image
            sleep: Delay function (replaced by a no-op in tests)
            progress_cb: Called with (percent, operation) on every progress change
        """
        self.config = config or UpdaterConfig()
        self.sink = ensure_sink(sink)
        self.channel = channel or CommandChannel(
            self.config.bkr_host,
            self.config.bkr_port,
            timeout=self.config.command_timeout,
            sink=self.sink,
        )
        self.executor = executor or DeviceExecutor(
            self.channel, sink=self.sink, erase_timeout=self.config.erase_timeout
        )
        self.tftp_factory = tftp_factory or self._default_tftp_client
        self.version_policy = version_policy or DateCodeVersionPolicy()
        self.sleep = sleep
        self.progress_cb = progress_cb

        self.statistics = UpdateStatistics()
        self._cancel_token: Optional[CancellationToken] = None

    def _default_tftp_client(self, server_ip: str) -> TftpClient:
        return TftpClient(
            server_ip,
            port=self.config.tftp_port,
            timeout=self.config.tftp_timeout,
            retries=self.config.tftp_retries,
            sink=self.sink,
        )

    @property
    def phase(self) -> UpdatePhase:
        return self.statistics.phase

    def cancel(self) -> None:
        """Request cancellation of the run in progress (if any)."""
        if self._cancel_token is not None:
            self._cancel_token.cancel()

    # ------------------------------------------------------------------
    # Public workflows
    # ------------------------------------------------------------------

    def run(
        self,
        image: Union[FirmwareImage, str, Path],
        cancel_token: Optional[CancellationToken] = None,
        targets: Optional[Iterable[str]] = None,
    ) -> UpdateStatistics:
        """
        Execute a full update run.

        Args:
            image: Firmware image (or path to one) to install
            cancel_token: Token observed between phases and between readers
            targets: Reader ids to restrict the update to (all when None)

        Returns:
            Statistics of this run; ``phase`` holds the terminal phase

        Raises:
            FileNotFoundError: If the firmware file does not exist
        """
        if not isinstance(image, FirmwareImage):
            image = FirmwareImage.from_path(image)
        elif not image.path.is_file():
            raise FileNotFoundError(f"Firmware file not found: {image.path}")

        ctx = self._new_context(image, cancel_token)
        ctx.targets = self._resolve_targets(ctx, targets)

        self.sink.log_info(f"Update run started: {image}")
        logger.debug(f"Run configuration: {self.config}")

        try:
            self._checkpoint(ctx)
            self._initialize(ctx)
        except RunCancelled:
            return self._finish(ctx, UpdatePhase.CANCELLED)
        except (RunAborted, LsrUpdaterError) as e:
            self._record_error(ctx, f"Initialization failed: {e}")
            self._disconnect()
            return self._finish(ctx, UpdatePhase.ERROR)

        outcome = UpdatePhase.COMPLETED
        try:
            self._checkpoint(ctx)
            self._gather_info(ctx)
            self._checkpoint(ctx)
            self._analyze(ctx)
            self._checkpoint(ctx)
            self._update_devices(ctx)
        except RunCancelled:
            outcome = UpdatePhase.CANCELLED
        except RunAborted as e:
            self._record_error(ctx, str(e))
            outcome = UpdatePhase.ERROR
        except LsrUpdaterError as e:
            self._record_error(ctx, f"{ctx.stats.phase.value} failed: {e}")
            outcome = UpdatePhase.ERROR
        except Exception as e:
            logger.exception("Unexpected error during update run")
            self._record_error(ctx, f"Unexpected error: {e}")
            outcome = UpdatePhase.ERROR
        finally:
            self._restore(ctx)
            self._disconnect()

        return self._finish(ctx, outcome)

    def collect_inventory(
        self,
        image: Optional[Union[FirmwareImage, str, Path]] = None,
        cancel_token: Optional[CancellationToken] = None,
    ) -> List[Device]:
        """
        Survey readers without updating them.

        With an ``image`` the devices are also classified (needs_update set).
        Errors are recorded on ``self.statistics``; the list may be empty.
        """
        if image is not None and not isinstance(image, FirmwareImage):
            image = FirmwareImage.from_path(image)
        ctx = self._new_context(image, cancel_token)

        try:
            self._checkpoint(ctx)
            self._initialize(ctx)
        except RunCancelled:
            self._finish(ctx, UpdatePhase.CANCELLED)
            return []
        except (RunAborted, LsrUpdaterError) as e:
            self._record_error(ctx, f"Initialization failed: {e}")
            self._disconnect()
            self._finish(ctx, UpdatePhase.ERROR)
            return []

        outcome = UpdatePhase.COMPLETED
        try:
            self._gather_info(ctx)
            if image is not None:
                self._analyze(ctx)
        except (RunAborted, LsrUpdaterError) as e:
            self._record_error(ctx, str(e))
            outcome = UpdatePhase.ERROR
        finally:
            self._restore(ctx)
            self._disconnect()

        self._finish(ctx, outcome)
        return ctx.devices

    def rollback(self, device_id: str) -> OperationResult:
        """
        Erase a reader's uploaded firmware so it boots the factory image.

        Only the flash erase is critical; every other step that fails is
        recorded as a warning and the workflow continues so the reader is
        still reset into a bootable state.
        """
        steps = RollbackSteps()
        result = OperationResult(OP_ROLLBACK, device_id, rollback=steps)
        try:
            handle = parse_handle(device_id)
        except ValueError as e:
            result.add_error(str(e))
            return result

        ctx = self._new_context(None, None)
        cfg = self.config
        tag = f"[{device_id}]"
        self.sink.log_info(f"{tag} Rollback started")

        try:
            self._set_phase(ctx, UpdatePhase.INITIALIZING, PROGRESS_INITIALIZING, "Connecting")
            self.channel.connect()
        except LsrUpdaterError as e:
            result.add_error(f"Cannot connect: {e}")
            self._finish(ctx, UpdatePhase.ERROR)
            return result

        def step(ok: bool, message: str) -> bool:
            if not ok:
                result.add_warning(message)
                self.sink.log_error(f"{tag} {message}")
            return ok

        try:
            step(self.executor.stop_polling(), "Could not stop polling")
            step(self.executor.clear_poll_queue(), "Could not clear poll queue")

            self._set_phase(ctx, UpdatePhase.GATHERING_INFO, PROGRESS_GATHERING, "Collecting")
            step(self.executor.trigger_poll(), "Could not trigger poll")
            step(self._wait_for_collection(ctx), "Collection job did not finish")
            step(self.executor.set_relay_mode(True), "Could not enable relay mode")

            self._set_phase(ctx, UpdatePhase.UPDATING, PROGRESS_UPDATING, f"Rolling back {device_id}")
            steps.guard_set = step(
                self.executor.set_watchdog_guard(handle, cfg.watchdog_guard_seconds),
                "Could not set watchdog guard",
            )
            step(self.executor.reset_device(handle), "Reset rejected")
            self.sleep(cfg.settle_delay)

            ip_address = self.executor.query_ip(handle)
            if step(ip_address is not None, "Reader did not answer after reset"):
                steps.ip_address = ip_address

            watchdog = self.executor.query_watchdog(handle)
            steps.watchdog_enabled = watchdog
            if watchdog:
                steps.watchdog_disabled = step(
                    self.executor.disable_watchdog(handle), "Could not disable watchdog"
                )
                step(self.executor.reset_device(handle), "Reset after watchdog disable rejected")
                self.sleep(cfg.settle_delay)
            else:
                step(watchdog is not None, "Watchdog state unknown")

            steps.flash_erased = self.executor.erase_flash(handle)
            if steps.flash_erased:
                self.sink.log_info(f"{tag} Flash erased")
            else:
                result.add_error("Flash erase failed")

            steps.guard_cleared = step(
                self.executor.clear_watchdog_guard(handle), "Could not clear watchdog guard"
            )
            steps.final_reset = step(self.executor.reset_device(handle), "Final reset rejected")
            self.sleep(cfg.settle_delay)
        except LsrUpdaterError as e:
            result.add_error(f"Rollback aborted: {e}")
        finally:
            self._restore(ctx)
            self._disconnect()

        for warning in ctx.stats.warnings:
            result.add_warning(warning)
        self._finish(ctx, UpdatePhase.COMPLETED if result.ok else UpdatePhase.ERROR)
        self.sink.log_info(f"{tag} Rollback {'finished' if result.ok else 'failed'}")
        return result

    # ------------------------------------------------------------------
    # Phases
    # ------------------------------------------------------------------

    def _initialize(self, ctx: UpdateContext) -> None:
        self._set_phase(ctx, UpdatePhase.INITIALIZING, PROGRESS_INITIALIZING, "Connecting to concentrator")
        self.channel.connect()
        if not self.executor.stop_polling():
            raise RunAborted("Could not stop concentrator polling")
        if not self.executor.clear_poll_queue():
            raise RunAborted("Could not clear poll queue")

    def _gather_info(self, ctx: UpdateContext) -> None:
        self._set_phase(ctx, UpdatePhase.GATHERING_INFO, PROGRESS_GATHERING, "Collecting reader inventory")
        if not self.executor.trigger_poll():
            raise RunAborted("Could not start inventory poll")

        if not self._wait_for_collection(ctx):
            message = (
                f"Collection job did not finish after "
                f"{self.config.job_poll_iterations} status polls"
            )
            if self.config.abort_on_collection_timeout:
                raise RunAborted(message)
            self._record_warning(ctx, f"{message}; continuing with partial inventory")

        if not self.executor.set_relay_mode(True):
            raise RunAborted("Could not enable relay mode")

        ctx.devices = self.executor.list_devices(policy=self.config.inventory_policy)
        if not ctx.devices:
            raise RunAborted("No readers reported by the concentrator")

        if self.config.enrich_inventory:
            self._enrich(ctx)

    def _wait_for_collection(self, ctx: UpdateContext) -> bool:
        """Poll the job status until it reports 0 or the iteration bound is hit."""
        iterations = self.config.job_poll_iterations
        span = PROGRESS_ANALYZING - PROGRESS_GATHERING
        for i in range(iterations):
            if self.executor.query_job_status() == 0:
                self.sink.log_info("Collection job finished")
                return True
            if i % 5 == 0:
                self.sink.log_info(f"Waiting for collection job... {i}/{iterations}")
            self._set_progress(ctx, PROGRESS_GATHERING + span * (i + 1) / iterations / 2)
            self.sleep(self.config.job_poll_interval)
        self.sink.log_error(f"Collection job timeout ({iterations} polls)")
        return False

    def _enrich(self, ctx: UpdateContext) -> None:
        for device in ctx.devices:
            if not device.is_available:
                continue
            ip_address = self.executor.query_ip(device.handle)
            if ip_address:
                device.ip_address = ip_address
            device.system_info = self.executor.query_system_info(device.handle)

    def _analyze(self, ctx: UpdateContext) -> None:
        self._set_phase(ctx, UpdatePhase.ANALYZING, PROGRESS_ANALYZING, "Analyzing versions")
        stats = ctx.stats
        stats.total = len(ctx.devices)

        known = {d.handle for d in ctx.devices}
        if ctx.targets is not None:
            for handle in sorted(ctx.targets - known):
                self._record_warning(ctx, f"Target reader {handle:X} not in inventory")

        target_version = ctx.image.version if ctx.image else ""
        for device in ctx.devices:
            if not device.is_available:
                device.needs_update = False
                device.set_status("unavailable", "unknown firmware version")
                stats.unavailable += 1
            elif ctx.targets is not None and device.handle not in ctx.targets:
                device.needs_update = False
                device.set_status("not selected")
                stats.skipped += 1
            elif not self.version_policy.needs_update(device.firmware_version, ctx.image):
                device.needs_update = False
                device.set_status("current")
                stats.skipped += 1
            else:
                device.needs_update = True
                device.set_status("pending")
            self.sink.log_info(f"  {device.to_log_string()}")

        pending = len(ctx.pending)
        self.sink.log_info(
            f"Analysis ({self.version_policy.name}, target {target_version or 'undated'}): "
            f"{pending} to update, {stats.skipped} skipped, {stats.unavailable} unavailable"
        )

    def _update_devices(self, ctx: UpdateContext) -> None:
        self._set_phase(ctx, UpdatePhase.UPDATING, PROGRESS_UPDATING, "Updating readers")
        pending = ctx.pending
        if not pending:
            self.sink.log_info("No reader needs an update")
            return

        span = PROGRESS_RESTORING - PROGRESS_UPDATING
        for index, device in enumerate(pending):
            self._checkpoint(ctx)
            operation = f"Updating {device.device_id} ({index + 1}/{len(pending)})"
            self._set_progress(ctx, PROGRESS_UPDATING + span * index / len(pending), operation)

            self._update_device(ctx, device)

            self._set_progress(ctx, PROGRESS_UPDATING + span * (index + 1) / len(pending))
            if index < len(pending) - 1:
                self.sleep(self.config.inter_device_delay)

    def _update_device(self, ctx: UpdateContext, device: Device) -> bool:
        """Prepare, transfer and finalize one reader. Never raises LsrUpdaterError."""
        stats = ctx.stats
        device.record_attempt()
        device.set_status("updating")
        self.sink.log_info(f"[{device.device_id}] Update started (attempt {device.attempts})")

        try:
            self._prepare(ctx, device)
            self._transfer(ctx, device)
            self._finalize(ctx, device)
        except DeviceUnavailable as e:
            device.is_available = False
            device.set_status("unavailable", e.reason)
            stats.failed += 1
            self._record_error(ctx, str(e))
            return False
        except LsrUpdaterError as e:
            device.set_status("failed", str(e))
            stats.failed += 1
            self._record_error(ctx, f"Device {device.device_id}: {e}")
            return False

        device.needs_update = False
        device.set_status("updated")
        stats.successful += 1
        self.sink.log_info(f"[{device.device_id}] Updated successfully")
        return True

    def _prepare(self, ctx: UpdateContext, device: Device) -> None:
        cfg = self.config
        handle = device.handle
        tag = f"[{device.device_id}]"

        if not self.executor.set_watchdog_guard(handle, cfg.watchdog_guard_seconds):
            self._record_warning(ctx, f"{tag} Watchdog guard not confirmed")
        if not self.executor.reset_device(handle):
            self._record_warning(ctx, f"{tag} Reset not confirmed")
        self.sleep(cfg.settle_delay)

        ip_address = self.executor.query_ip(handle)
        if not ip_address:
            raise DeviceUnavailable(device.device_id)
        device.ip_address = ip_address

        watchdog = self.executor.query_watchdog(handle)
        if watchdog is None:
            self._record_warning(ctx, f"{tag} Watchdog state unknown")
        device.watchdog_enabled = bool(watchdog)
        if watchdog:
            if not self.executor.disable_watchdog(handle):
                self._record_warning(ctx, f"{tag} Watchdog disable not confirmed")
            self.executor.reset_device(handle)
            self.sleep(cfg.settle_delay)

    def _transfer(self, ctx: UpdateContext, device: Device) -> None:
        image = ctx.image
        self.sink.log_info(f"[{device.device_id}] Sending {image.name} to {device.ip_address}")
        client = self.tftp_factory(device.ip_address)
        if not client.send_file(str(image.path), image.name):
            raise TransferError("transfer failed")

    def _finalize(self, ctx: UpdateContext, device: Device) -> None:
        cfg = self.config
        handle = device.handle
        tag = f"[{device.device_id}]"

        self.sleep(cfg.pre_finalize_delay)
        if not self.executor.clear_watchdog_guard(handle):
            self._record_warning(ctx, f"{tag} Watchdog guard clear not confirmed")
        if not self.executor.reset_device(handle):
            self._record_warning(ctx, f"{tag} Final reset not confirmed")
        self.sleep(cfg.settle_delay)

    def _restore(self, ctx: UpdateContext) -> None:
        """Relay off and polling on, best effort."""
        self._set_phase(ctx, UpdatePhase.RESTORING, PROGRESS_RESTORING, "Restoring concentrator")
        steps = (
            ("disable relay mode", lambda: self.executor.set_relay_mode(False)),
            ("resume polling", self.executor.start_polling),
        )
        for name, action in steps:
            try:
                ok = action()
            except LsrUpdaterError as e:
                logger.warning(f"Restore step '{name}' raised: {e}")
                ok = False
            if not ok:
                self._record_warning(ctx, f"Restore incomplete: could not {name}")

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _new_context(
        self,
        image: Optional[FirmwareImage],
        cancel_token: Optional[CancellationToken],
    ) -> UpdateContext:
        token = cancel_token or CancellationToken()
        self._cancel_token = token
        self.statistics = UpdateStatistics()
        return UpdateContext(stats=self.statistics, image=image, cancel_token=token)

    def _resolve_targets(
        self, ctx: UpdateContext, targets: Optional[Iterable[str]]
    ) -> Optional[Set[int]]:
        if targets is None:
            return None
        handles: Set[int] = set()
        for device_id in targets:
            try:
                handles.add(parse_handle(device_id))
            except ValueError as e:
                self._record_warning(ctx, f"Ignoring target: {e}")
        return handles

    def _checkpoint(self, ctx: UpdateContext) -> None:
        if ctx.cancel_token.is_cancelled:
            self._record_warning(ctx, f"Run cancelled during {ctx.stats.phase.value}")
            raise RunCancelled()

    def _set_phase(self, ctx: UpdateContext, phase: UpdatePhase, progress: float, operation: str) -> None:
        ctx.stats.phase = phase
        logger.debug(f"Phase -> {phase.value}")
        self.sink.log_info(f"== {operation} ==")
        self._set_progress(ctx, progress, operation)

    def _set_progress(self, ctx: UpdateContext, progress: float, operation: Optional[str] = None) -> None:
        ctx.stats.set_progress(progress, operation)
        if self.progress_cb:
            self.progress_cb(ctx.stats.progress, ctx.stats.current_operation)

    def _record_error(self, ctx: UpdateContext, message: str) -> None:
        ctx.stats.add_error(message)
        self.sink.log_error(message)

    def _record_warning(self, ctx: UpdateContext, message: str) -> None:
        ctx.stats.add_warning(message)
        self.sink.log_info(f"Warning: {message}")

    def _disconnect(self) -> None:
        self.channel.disconnect()

    def _finish(self, ctx: UpdateContext, phase: UpdatePhase) -> UpdateStatistics:
        stats = ctx.stats
        stats.finish(phase)
        if self.progress_cb:
            self.progress_cb(stats.progress, stats.current_operation)
        self.sink.log_info(f"Run {phase.value} in {stats.duration()}: {stats.summary()}")
        for error in stats.errors:
            logger.debug(f"  error: {error}")
        return stats
