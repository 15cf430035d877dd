"""
TFTP Client (RFC 1350)

Octet-mode upload and download over a dedicated UDP socket per transfer.

Protocol sequence (upload):
1. Send WRQ (opcode 2, filename, "octet") to port 69 → expect ACK block 0
2. Lock onto the endpoint that answered (server-chosen ephemeral port)
3. Send DATA blocks 1..N of 512 bytes → expect ACK with the same block number
4. A DATA block shorter than 512 bytes ends the transfer; a file whose size
   is a multiple of 512 ends with an empty DATA block

Download mirrors this with RRQ (opcode 1): DATA blocks are written to disk and
acknowledged until a short block arrives.

Packet layout (2-byte big-endian fields):
    RRQ/WRQ: | opcode | filename | 0 | mode | 0 |
    DATA:    | 3 | block | payload (0-512 bytes) |
    ACK:     | 4 | block |
    ERROR:   | 5 | code | message | 0 |
"""

import logging
import socket
import struct
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Optional, Tuple

from lsr_updater.events import EventSink, ensure_sink
from lsr_updater.protocol.errors import (
    LsrUpdaterError,
    ProtocolError,
    TransferError,
    TransportError,
)

logger = logging.getLogger(__name__)

# Protocol constants
TFTP_PORT = 69
BLOCK_SIZE = 512
MAX_BLOCK = 0xFFFF
DEFAULT_TIMEOUT = 5.0
MAX_RETRIES = 3
MODE_OCTET = "octet"

OP_RRQ = 1
OP_WRQ = 2
OP_DATA = 3
OP_ACK = 4
OP_ERROR = 5

ERR_NOT_DEFINED = 0
ERR_UNKNOWN_TID = 5

ERROR_NAMES = {
    0: "not defined",
    1: "file not found",
    2: "access violation",
    3: "disk full",
    4: "illegal operation",
    5: "unknown transfer ID",
    6: "file already exists",
    7: "no such user",
}

Endpoint = Tuple[str, int]
ProgressCallback = Callable[[int, int], None]
SocketFactory = Callable[[], socket.socket]


@dataclass(frozen=True)
class TftpPacket:
    """Decoded TFTP packet; unused fields keep their defaults."""

    opcode: int
    block: int = 0
    payload: bytes = b""
    filename: str = ""
    mode: str = ""
    error_code: int = 0
    error_message: str = ""


def build_request(opcode: int, filename: str, mode: str = MODE_OCTET) -> bytes:
    """Build an RRQ or WRQ packet."""
    if opcode not in (OP_RRQ, OP_WRQ):
        raise ValueError(f"Not a request opcode: {opcode}")
    return (
        struct.pack(">H", opcode)
        + filename.encode("ascii") + b"\x00"
        + mode.encode("ascii") + b"\x00"
    )


def build_data(block: int, payload: bytes) -> bytes:
    """Build a DATA packet."""
    if not 0 < block <= MAX_BLOCK:
        raise ProtocolError(f"Block number {block} outside 1..{MAX_BLOCK}")
    if len(payload) > BLOCK_SIZE:
        raise ValueError(f"DATA payload too large: {len(payload)} bytes (max {BLOCK_SIZE})")
    return struct.pack(">HH", OP_DATA, block) + payload


def build_ack(block: int) -> bytes:
    """Build an ACK packet."""
    return struct.pack(">HH", OP_ACK, block & MAX_BLOCK)


def build_error(code: int, message: str) -> bytes:
    """Build an ERROR packet."""
    return struct.pack(">HH", OP_ERROR, code) + message.encode("ascii", errors="replace") + b"\x00"


def parse_packet(data: bytes) -> TftpPacket:
    """
    Decode a TFTP datagram.

    Raises:
        ProtocolError: If the datagram is truncated or has an unknown opcode
    """
    if len(data) < 2:
        raise ProtocolError(f"Truncated TFTP packet: {data.hex() if data else 'empty'}")

    (opcode,) = struct.unpack(">H", data[:2])

    if opcode in (OP_RRQ, OP_WRQ):
        parts = data[2:].split(b"\x00")
        if len(parts) < 3:
            raise ProtocolError("Malformed TFTP request packet")
        return TftpPacket(
            opcode=opcode,
            filename=parts[0].decode("ascii", errors="replace"),
            mode=parts[1].decode("ascii", errors="replace").lower(),
        )

    if len(data) < 4:
        raise ProtocolError(f"Truncated TFTP packet (opcode {opcode}): {data.hex()}")
    (number,) = struct.unpack(">H", data[2:4])

    if opcode == OP_DATA:
        return TftpPacket(opcode=opcode, block=number, payload=data[4:])
    if opcode == OP_ACK:
        return TftpPacket(opcode=opcode, block=number)
    if opcode == OP_ERROR:
        message = data[4:].split(b"\x00", 1)[0].decode("ascii", errors="replace")
        return TftpPacket(opcode=opcode, error_code=number, error_message=message)

    raise ProtocolError(f"Unknown TFTP opcode {opcode}")


def data_packet_count(size: int) -> int:
    """Number of DATA packets an upload of ``size`` bytes sends (incl. terminating block)."""
    return size // BLOCK_SIZE + 1


def _udp_socket() -> socket.socket:
    return socket.socket(socket.AF_INET, socket.SOCK_DGRAM)


class _Timeout(Exception):
    """No matching packet before the deadline (internal)."""


class TftpClient:
    """
    TFTP client bound to one server (a reader's IP address).

    Example:
        client = TftpClient("10.0.1.101")
        ok = client.send_file("/home/user/firmware/lsr4/lsr4-20221202.bin")
    """

    def __init__(
        self,
        server_ip: str,
        port: int = TFTP_PORT,
        timeout: float = DEFAULT_TIMEOUT,
        retries: int = MAX_RETRIES,
        sink: Optional[EventSink] = None,
        socket_factory: Optional[SocketFactory] = None,
    ):
        """
        Initialize client.

        Args:
            server_ip: Address of the TFTP server (the reader)
            port: Well-known port for the initial request
            timeout: Seconds to wait for each ACK/DATA packet
            retries: Send attempts per packet before giving up
            sink: Event sink for progress and error messages
            socket_factory: Callable returning a fresh UDP socket
        """
        if retries < 1:
            raise ValueError("retries must be >= 1")
        self.server_ip = server_ip
        self.port = port
        self.timeout = timeout
        self.retries = retries
        self.sink = ensure_sink(sink)
        self.socket_factory = socket_factory or _udp_socket
        self.retransmissions = 0

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def send_file(
        self,
        local_path: str,
        remote_name: Optional[str] = None,
        progress_cb: Optional[ProgressCallback] = None,
    ) -> bool:
        """
        Upload a file. Failures are reported through the sink.

        Returns:
            True when the server acknowledged the final block

        Raises:
            FileNotFoundError: If ``local_path`` does not exist
        """
        try:
            self.upload(local_path, remote_name, progress_cb=progress_cb)
        except LsrUpdaterError as e:
            self.sink.log_error(f"TFTP upload to {self.server_ip} failed: {e}")
            return False
        return True

    def receive_file(
        self,
        remote_name: str,
        local_path: str,
        progress_cb: Optional[ProgressCallback] = None,
    ) -> bool:
        """
        Download a file. Failures are reported through the sink.

        Returns:
            True when a final short DATA block was received and acknowledged
        """
        try:
            self.download(remote_name, local_path, progress_cb=progress_cb)
        except (LsrUpdaterError, OSError) as e:
            self.sink.log_error(f"TFTP download from {self.server_ip} failed: {e}")
            return False
        return True

    def upload(
        self,
        local_path: str,
        remote_name: Optional[str] = None,
        progress_cb: Optional[ProgressCallback] = None,
    ) -> int:
        """
        Upload a file, raising on failure.

        Returns:
            Number of DATA packets sent (first transmissions only). Resends
            of the current transfer are counted in ``retransmissions``.

        Raises:
            FileNotFoundError: If ``local_path`` does not exist
            ProtocolError: No ACK on WRQ, server ERROR, block mismatch or wrap
            TransferError: Retry ceiling exceeded for a block
            TransportError: Socket failure
        """
        path = Path(local_path)
        if not path.is_file():
            raise FileNotFoundError(f"Firmware file not found: {local_path}")
        total = path.stat().st_size
        remote_name = remote_name or path.name
        self.retransmissions = 0
        server: Endpoint = (self.server_ip, self.port)

        self.sink.log_info(f"TFTP: sending {remote_name} ({total} bytes) to {self.server_ip}:{self.port}")

        sock = self.socket_factory()
        try:
            self._send(sock, build_request(OP_WRQ, remote_name), server)
            try:
                _, endpoint = self._wait_for(sock, OP_ACK, 0, endpoint=None, server=server)
            except _Timeout:
                raise ProtocolError(f"No ack on write-request from {self.server_ip}")
            logger.debug(f"TFTP: transfer endpoint {endpoint[0]}:{endpoint[1]}")

            sent = 0
            packets = 0
            block = 0
            with open(path, "rb") as f:
                while True:
                    chunk = f.read(BLOCK_SIZE)
                    block += 1
                    if block > MAX_BLOCK:
                        raise ProtocolError(
                            f"File too large for TFTP: block number would wrap past {MAX_BLOCK}"
                        )
                    self._send_block(sock, endpoint, block, build_data(block, chunk))
                    packets += 1
                    sent += len(chunk)
                    self._progress(sent, total, progress_cb)
                    if len(chunk) < BLOCK_SIZE:
                        break
        finally:
            sock.close()

        self.sink.log_info(f"TFTP: {remote_name} delivered to {self.server_ip} ({total} bytes)")
        return packets

    def download(
        self,
        remote_name: str,
        local_path: str,
        progress_cb: Optional[ProgressCallback] = None,
    ) -> int:
        """
        Download a file, raising on failure.

        Returns:
            Number of bytes received

        Raises:
            ProtocolError: Server ERROR, out-of-sequence block or wrap
            TransferError: No DATA after all retransmissions
            TransportError: Socket failure
        """
        self.retransmissions = 0
        server: Endpoint = (self.server_ip, self.port)
        self.sink.log_info(f"TFTP: fetching {remote_name} from {self.server_ip}:{self.port}")

        sock = self.socket_factory()
        try:
            with open(local_path, "wb") as out:
                received = 0
                expected = 1
                endpoint: Optional[Endpoint] = None
                last_packet = build_request(OP_RRQ, remote_name)
                last_target: Endpoint = server
                self._send(sock, last_packet, last_target)

                while True:
                    packet = None
                    for attempt in range(1, self.retries + 1):
                        try:
                            packet, source = self._wait_for(
                                sock, OP_DATA, expected, endpoint=endpoint, server=server
                            )
                            break
                        except _Timeout:
                            if attempt >= self.retries:
                                break
                            logger.warning(
                                f"TFTP: timeout waiting for block {expected}, "
                                f"retransmitting ({attempt}/{self.retries - 1})"
                            )
                            self.retransmissions += 1
                            self._send(sock, last_packet, last_target)
                    if packet is None:
                        raise TransferError(
                            f"No DATA block {expected} after {self.retries} attempts"
                        )

                    if endpoint is None:
                        endpoint = source
                    out.write(packet.payload)
                    received += len(packet.payload)

                    last_packet = build_ack(packet.block)
                    last_target = endpoint
                    self._send(sock, last_packet, last_target)
                    self._progress(received, 0, progress_cb)

                    if len(packet.payload) < BLOCK_SIZE:
                        break
                    expected += 1
                    if expected > MAX_BLOCK:
                        raise ProtocolError(f"Block number would wrap past {MAX_BLOCK}")
        finally:
            sock.close()

        self.sink.log_info(f"TFTP: received {remote_name} ({received} bytes) -> {local_path}")
        return received

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _send(self, sock: socket.socket, packet: bytes, target: Endpoint) -> None:
        try:
            sock.sendto(packet, target)
        except OSError as e:
            raise TransportError(f"TFTP send to {target[0]}:{target[1]} failed: {e}") from e
        logger.debug(f">>> {packet[:4].hex()} ({len(packet)} bytes) to {target[0]}:{target[1]}")

    def _send_block(self, sock: socket.socket, endpoint: Endpoint, block: int, packet: bytes) -> None:
        """Send one DATA packet and wait for its ACK, retransmitting on timeout."""
        for attempt in range(1, self.retries + 1):
            self._send(sock, packet, endpoint)
            try:
                self._wait_for(sock, OP_ACK, block, endpoint=endpoint, server=endpoint)
                return
            except _Timeout:
                if attempt < self.retries:
                    logger.warning(
                        f"TFTP: no ack for block {block}, retransmitting "
                        f"({attempt}/{self.retries - 1})"
                    )
                    self.retransmissions += 1
        raise TransferError(f"No ack for block {block} after {self.retries} attempts")

    def _wait_for(
        self,
        sock: socket.socket,
        opcode: int,
        block: int,
        endpoint: Optional[Endpoint],
        server: Endpoint,
    ) -> Tuple[TftpPacket, Endpoint]:
        """
        Wait for an ACK/DATA packet carrying ``block``.

        Packets from a foreign endpoint get ERROR 5 and are ignored, duplicates
        of the previous block are ignored, anything else out of sequence is a
        protocol error.
        """
        deadline = time.monotonic() + self.timeout
        while True:
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                raise _Timeout()
            try:
                sock.settimeout(remaining)
                data, source = sock.recvfrom(BLOCK_SIZE + 4)
            except socket.timeout:
                raise _Timeout()
            except OSError as e:
                raise TransportError(f"TFTP receive failed: {e}") from e

            source = (source[0], source[1])
            if endpoint is not None and source != endpoint:
                logger.debug(f"TFTP: ignoring packet from foreign endpoint {source[0]}:{source[1]}")
                self._send(sock, build_error(ERR_UNKNOWN_TID, "Unknown transfer ID"), source)
                continue
            if endpoint is None and source[0] != server[0]:
                logger.debug(f"TFTP: ignoring packet from unexpected host {source[0]}")
                continue

            packet = parse_packet(data)
            logger.debug(f"<<< opcode={packet.opcode} block={packet.block} ({len(data)} bytes)")

            if packet.opcode == OP_ERROR:
                name = ERROR_NAMES.get(packet.error_code, "unknown error")
                raise ProtocolError(
                    f"Server error {packet.error_code} ({name}): {packet.error_message}"
                )
            if packet.opcode != opcode:
                raise ProtocolError(f"Unexpected opcode {packet.opcode} (expected {opcode})")
            if packet.block == block:
                return packet, source
            if packet.block == (block - 1) & MAX_BLOCK:
                logger.debug(f"TFTP: ignoring duplicate block {packet.block}")
                if opcode == OP_DATA and endpoint is not None:
                    self._send(sock, build_ack(packet.block), endpoint)
                continue
            raise ProtocolError(
                f"Block mismatch: expected {block}, got {packet.block} (transfer out of sync)"
            )

    def _progress(self, done: int, total: int, progress_cb: Optional[ProgressCallback]) -> None:
        if total > 0:
            percent = done / total * 100
            self.sink.log_info(f"TFTP: {percent:.1f}% ({done}/{total} bytes)")
        else:
            self.sink.log_info(f"TFTP: {done} bytes")
        if progress_cb:
            progress_cb(done, total)
