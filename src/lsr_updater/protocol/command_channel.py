"""
BKR Command Channel

Handles the UDP text-command link to the BKR concentrator.

This module provides:
- Socket setup fixed to the concentrator address:port
- One-command/one-datagram request/response exchange with timeout
- Fire-and-forget sends for control characters (Enter, Ctrl+C)
- Event reporting for every command sent and every reply or timeout

UDP loss is surfaced as a timeout (an empty response), never retried here.
Only one request may be in flight per channel; the wire protocol carries no
request identifiers.
"""

import logging
import socket
from typing import Optional

from lsr_updater.events import EventSink, ensure_sink
from lsr_updater.protocol.errors import (
    BkrConnectionError,
    CommandTimeoutError,
    TransportError,
)

logger = logging.getLogger(__name__)

DEFAULT_HOST = "10.0.1.89"
DEFAULT_PORT = 3456
DEFAULT_TIMEOUT = 3.0
MAX_DATAGRAM = 65507
PREVIEW_CHARS = 100
LINE_TERMINATOR = "\n"
CTRL_C = "\x03"


def preview(text: str, limit: int = PREVIEW_CHARS) -> str:
    """Shorten a reply for event output."""
    text = text.strip()
    if len(text) <= limit:
        return text
    return text[:limit] + "..."


class CommandChannel:
    """
    UDP request/response transport to the concentrator.

    Example:
        with CommandChannel("10.0.1.89", 3456) as channel:
            reply = channel.send_command("bkr")
            if reply is None:
                ...  # timed out

    Replies are decoded as UTF-8; ``None`` means no datagram arrived in time.
    """

    def __init__(
        self,
        host: str = DEFAULT_HOST,
        port: int = DEFAULT_PORT,
        timeout: float = DEFAULT_TIMEOUT,
        sink: Optional[EventSink] = None,
        strict: bool = False,
    ):
        """
        Initialize the channel (does not open the socket).

        Args:
            host: Concentrator IP address or hostname
            port: Concentrator UDP command port
            timeout: Default reply timeout in seconds
            sink: Event sink for sent/received/timeout events
            strict: Raise CommandTimeoutError instead of returning None
        """
        self.host = host
        self.port = port
        self.timeout = timeout
        self.sink = ensure_sink(sink)
        self.strict = strict
        self._sock: Optional[socket.socket] = None

    @property
    def address(self) -> str:
        return f"{self.host}:{self.port}"

    @property
    def is_connected(self) -> bool:
        return self._sock is not None

    def connect(self) -> None:
        """
        Open a UDP socket bound to the concentrator address.

        Raises:
            BkrConnectionError: If the address cannot be resolved or bound
        """
        self.disconnect()
        sock = None
        try:
            sock = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
            sock.connect((self.host, self.port))
        except OSError as e:
            if sock is not None:
                sock.close()
            self.sink.log_error(f"Cannot connect to BKR {self.address}: {e}")
            raise BkrConnectionError(f"Cannot connect to BKR {self.address}: {e}") from e

        self._sock = sock
        logger.debug(f"UDP socket fixed to {self.address}")
        self.sink.log_info(f"Connected to BKR {self.address}")

    def disconnect(self) -> None:
        """Release the socket. Safe to call repeatedly."""
        if self._sock is None:
            return
        sock, self._sock = self._sock, None
        try:
            sock.close()
        except OSError as e:
            logger.warning(f"Error while closing BKR socket: {e}")
        self.sink.log_info(f"Disconnected from BKR {self.address}")

    def __enter__(self) -> "CommandChannel":
        self.connect()
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.disconnect()

    def _require_socket(self) -> socket.socket:
        if self._sock is None:
            raise TransportError("BKR channel is not connected")
        return self._sock

    def _send(self, text: str) -> None:
        sock = self._require_socket()
        data = (text + LINE_TERMINATOR).encode("utf-8")
        try:
            sock.send(data)
        except OSError as e:
            self.sink.log_error(f"Send failed for '{text}': {e}")
            raise TransportError(f"Send failed for '{text}': {e}") from e
        logger.debug(f">>> {data!r}")

    def send_command(self, text: str, timeout: Optional[float] = None) -> Optional[str]:
        """
        Send one command line and wait for exactly one reply datagram.

        Args:
            text: Command without line terminator (e.g. "lsr llv")
            timeout: Reply timeout in seconds (defaults to channel timeout)

        Returns:
            Decoded reply text, or None on timeout

        Raises:
            TransportError: On socket errors or when not connected
            CommandTimeoutError: On timeout when the channel is strict
        """
        wait = self.timeout if timeout is None else timeout
        self._send(text)
        self.sink.log_info(f"-> {text}")

        sock = self._require_socket()
        try:
            sock.settimeout(wait)
            data = sock.recv(MAX_DATAGRAM)
        except socket.timeout:
            message = f"Timeout waiting for reply to '{text}' ({wait:.1f}s)"
            self.sink.log_error(message)
            if self.strict:
                raise CommandTimeoutError(message)
            return None
        except OSError as e:
            self.sink.log_error(f"Receive failed for '{text}': {e}")
            raise TransportError(f"Receive failed for '{text}': {e}") from e

        logger.debug(f"<<< {data!r}")
        response = data.decode("utf-8", errors="replace")
        self.sink.log_info(f"<- {preview(response)}")
        return response

    def send_fire_and_forget(self, text: str) -> None:
        """
        Send a line without waiting for any reply.

        Raises:
            TransportError: On socket errors or when not connected
        """
        self._send(text)
        self.sink.log_info(f"-> {text!r} (no reply expected)")

    def send_enter(self) -> None:
        """Send an empty line (Enter on the concentrator console)."""
        self.send_fire_and_forget("")

    def send_interrupt(self) -> None:
        """Send Ctrl+C to abort a running concentrator command."""
        self.send_fire_and_forget(CTRL_C)
