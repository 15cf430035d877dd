"""
Single-shot workflow actions.

These functions wrap one protocol operation each (TFTP send/fetch, raw
concentrator command, reader rollback) and return an OperationResult with the
log lines emitted while they ran.
"""

import logging
from contextlib import contextmanager
from pathlib import Path
from typing import Callable, Optional

from lsr_updater.core.config import UpdaterConfig
from lsr_updater.events import EventSink
from lsr_updater.core.firmware import file_md5
from lsr_updater.core.results import (
    OP_COMMAND,
    OP_FETCH,
    OP_SEND,
    OperationResult,
    TransferReport,
)
from lsr_updater.protocol.command_channel import CommandChannel
from lsr_updater.protocol.errors import LsrUpdaterError
from lsr_updater.protocol.response_parser import ResponseParser
from lsr_updater.protocol.tftp import BLOCK_SIZE, TftpClient

logger = logging.getLogger(__name__)


class _ListLogHandler(logging.Handler):
    """Capture log records into a list of formatted strings."""

    def __init__(self, level: int = logging.INFO) -> None:
        super().__init__(level)
        self.records = []
        self.setFormatter(logging.Formatter("%(levelname)s %(name)s: %(message)s"))

    def emit(self, record: logging.LogRecord) -> None:
        self.records.append(self.format(record))


@contextmanager
def _capture_logs(logger_name: str = "lsr_updater"):
    """Capture logs for core operations into a list."""
    target_logger = logging.getLogger(logger_name)
    handler = _ListLogHandler()
    previous_level = target_logger.level
    if previous_level in (logging.NOTSET, logging.WARNING, logging.ERROR, logging.CRITICAL):
        target_logger.setLevel(logging.INFO)
    target_logger.addHandler(handler)
    try:
        yield handler.records
    finally:
        target_logger.removeHandler(handler)
        target_logger.setLevel(previous_level)


def send_firmware(
    server_ip: str,
    local_path: str,
    remote_name: Optional[str] = None,
    config: Optional[UpdaterConfig] = None,
    progress_cb: Optional[Callable[[int, int], None]] = None,
    sink: Optional[EventSink] = None,
) -> OperationResult:
    """
    Upload a file to a reader over TFTP.

    Args:
        server_ip: Reader IP address
        local_path: File to send
        remote_name: Name on the reader (defaults to the local file name)
        config: TFTP port/timeout/retries source
        progress_cb: Optional progress callback(bytes_sent, total)
        sink: Event sink for transfer messages

    Returns:
        OperationResult whose ``transfer`` holds the size, MD5, DATA packet
        count and retransmissions
    """
    cfg = config or UpdaterConfig()
    result = OperationResult(OP_SEND, server_ip)
    with _capture_logs() as logs:
        try:
            path = Path(local_path).expanduser()
            client = TftpClient(
                server_ip,
                port=cfg.tftp_port,
                timeout=cfg.tftp_timeout,
                retries=cfg.tftp_retries,
                sink=sink,
            )
            packets = client.upload(str(path), remote_name, progress_cb=progress_cb)

            result.transfer = TransferReport(
                remote_name=remote_name or path.name,
                local_path=str(path),
                size=path.stat().st_size,
                packets=packets,
                retransmissions=client.retransmissions,
                md5=file_md5(path),
            )
        except (LsrUpdaterError, OSError) as e:
            logger.error(f"tftp_send to {server_ip} failed: {e}")
            result.add_error(str(e))
        result.logs = logs
    return result


def fetch_file(
    server_ip: str,
    remote_name: str,
    local_path: str,
    config: Optional[UpdaterConfig] = None,
    progress_cb: Optional[Callable[[int, int], None]] = None,
    sink: Optional[EventSink] = None,
) -> OperationResult:
    """Download a file from a reader over TFTP (``transfer.packets`` counts DATA blocks received)."""
    cfg = config or UpdaterConfig()
    result = OperationResult(OP_FETCH, server_ip)
    with _capture_logs() as logs:
        try:
            client = TftpClient(
                server_ip,
                port=cfg.tftp_port,
                timeout=cfg.tftp_timeout,
                retries=cfg.tftp_retries,
                sink=sink,
            )
            received = client.download(remote_name, local_path, progress_cb=progress_cb)

            result.transfer = TransferReport(
                remote_name=remote_name,
                local_path=str(local_path),
                size=received,
                packets=received // BLOCK_SIZE + 1,
                retransmissions=client.retransmissions,
                md5=file_md5(local_path),
            )
        except (LsrUpdaterError, OSError) as e:
            logger.error(f"tftp_fetch from {server_ip} failed: {e}")
            result.add_error(str(e))
        result.logs = logs
    return result


def query_concentrator(
    command: str,
    config: Optional[UpdaterConfig] = None,
    timeout: Optional[float] = None,
    sink: Optional[EventSink] = None,
) -> OperationResult:
    """
    Send one raw command to the concentrator and return its reply.

    Returns:
        OperationResult whose ``reply`` is the raw reply (None on timeout);
        a reply that signals an error marks the result failed
    """
    cfg = config or UpdaterConfig()
    parser = ResponseParser(sink)
    result = OperationResult(OP_COMMAND, f"{cfg.bkr_host}:{cfg.bkr_port}")
    with _capture_logs() as logs:
        try:
            with CommandChannel(cfg.bkr_host, cfg.bkr_port, timeout=cfg.command_timeout, sink=sink) as channel:
                response = channel.send_command(command, timeout=timeout)
        except LsrUpdaterError as e:
            logger.error(f"command '{command}' failed: {e}")
            result.add_error(str(e))
            result.logs = logs
            return result

        result.reply = response
        if response is None:
            result.add_error(f"No reply to '{command}'")
        elif parser.is_error_response(response):
            result.add_error(parser.extract_error_message(response))
        result.logs = logs
        return result


def rollback_device(
    device_id: str,
    config: Optional[UpdaterConfig] = None,
    sink: Optional[EventSink] = None,
) -> OperationResult:
    """Run the rollback workflow for one reader."""
    from lsr_updater.core.orchestrator import UpdateOrchestrator

    with _capture_logs() as logs:
        orchestrator = UpdateOrchestrator(config=config, sink=sink)
        result = orchestrator.rollback(device_id)
        result.logs = logs
        return result
