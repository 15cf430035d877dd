"""Shared fakes for channel, TFTP and socket-level tests."""

import socket
import struct
from typing import Callable, Dict, List, Optional, Tuple

import pytest

from lsr_updater.core.config import UpdaterConfig
from lsr_updater.core.executor import DeviceExecutor
from lsr_updater.core.orchestrator import UpdateOrchestrator
from lsr_updater.events import RecordingSink

TIMEOUT = object()

INVENTORY_3 = (
    "2561 10.0.1.101 2.11.3\n"
    "2562 10.0.1.102 2.11.3\n"
    "2563 10.0.1.103 2.11.3\n"
)


class FakeChannel:
    """
    Scripted stand-in for CommandChannel.

    ``responses`` maps a command to a reply string, None (timeout), a list of
    replies consumed in order (the last one repeats) or a callable.
    """

    def __init__(self, responses: Optional[Dict[str, object]] = None, default: Optional[str] = "OK"):
        self.responses = dict(responses or {})
        self.default = default
        self.sent: List[str] = []
        self.timeouts: List[Optional[float]] = []
        self.connected = False
        self.connect_calls = 0
        self.disconnect_calls = 0
        self.connect_error: Optional[Exception] = None

    @property
    def is_connected(self) -> bool:
        return self.connected

    def connect(self) -> None:
        self.connect_calls += 1
        if self.connect_error is not None:
            raise self.connect_error
        self.connected = True

    def disconnect(self) -> None:
        self.disconnect_calls += 1
        self.connected = False

    def send_command(self, text: str, timeout: Optional[float] = None) -> Optional[str]:
        self.sent.append(text)
        self.timeouts.append(timeout)
        reply = self.responses.get(text, self.default)
        if isinstance(reply, list):
            reply = reply.pop(0) if len(reply) > 1 else reply[0]
        if callable(reply):
            reply = reply()
        return reply

    def send_fire_and_forget(self, text: str) -> None:
        self.sent.append(text)

    def send_interrupt(self) -> None:
        self.sent.append("\x03")

    def commands_for(self, handle: str) -> List[str]:
        prefix = f"exe {handle} "
        return [c for c in self.sent if c.startswith(prefix)]


def reader_responses(inventory: str = INVENTORY_3) -> Dict[str, object]:
    """Replies for a healthy concentrator with readers answering their IP query."""
    responses: Dict[str, object] = {
        "bkr": "[0] 0",
        "lsr llv": inventory,
    }
    for line in inventory.splitlines():
        device_id, ip_address = line.split()[:2]
        responses[f"exe {device_id} phy ipaddr"] = f"ipaddr: {ip_address}"
        responses[f"exe {device_id} wwdg"] = "wwdg 0"
    return responses


class FakeTftpClient:
    def __init__(self, factory: "FakeTftpFactory", server_ip: str):
        self.factory = factory
        self.server_ip = server_ip

    def send_file(self, local_path, remote_name=None, progress_cb=None) -> bool:
        self.factory.calls.append((self.server_ip, local_path, remote_name))
        result = self.factory.results.get(self.server_ip, True)
        if callable(result):
            return result()
        return result


class FakeTftpFactory:
    """tftp_factory replacement recording every transfer."""

    def __init__(self, results: Optional[Dict[str, object]] = None):
        self.results = dict(results or {})
        self.calls: List[Tuple[str, str, Optional[str]]] = []

    def __call__(self, server_ip: str) -> FakeTftpClient:
        return FakeTftpClient(self, server_ip)

    @property
    def targets(self) -> List[str]:
        return [ip for ip, _, _ in self.calls]


Responder = Callable[[bytes, Tuple[str, int]], List[object]]


class FakeUdpSocket:
    """
    Socket double for TFTP tests.

    After every ``sendto`` the responder may queue datagrams ``(data, addr)``
    or TIMEOUT markers; ``recvfrom`` pops them in order and raises
    socket.timeout for TIMEOUT or an empty queue.
    """

    def __init__(self, responder: Optional[Responder] = None, script: Optional[List[object]] = None):
        self.responder = responder
        self.queue: List[object] = list(script or [])
        self.sent: List[Tuple[bytes, Tuple[str, int]]] = []
        self.closed = False

    def settimeout(self, value) -> None:
        self.timeout = value

    def sendto(self, data: bytes, addr) -> int:
        self.sent.append((bytes(data), addr))
        if self.responder is not None:
            self.queue.extend(self.responder(bytes(data), addr))
        return len(data)

    def recvfrom(self, bufsize: int):
        if not self.queue:
            raise socket.timeout("timed out")
        item = self.queue.pop(0)
        if item is TIMEOUT:
            raise socket.timeout("timed out")
        return item

    def close(self) -> None:
        self.closed = True

    def sent_opcodes(self) -> List[int]:
        return [struct.unpack(">H", data[:2])[0] for data, _ in self.sent]

    def sent_data_blocks(self) -> List[Tuple[int, int]]:
        """(block, payload length) of every DATA packet sent."""
        return [
            (struct.unpack(">H", data[2:4])[0], len(data) - 4)
            for data, _ in self.sent
            if struct.unpack(">H", data[:2])[0] == 3
        ]


def ack(block: int) -> bytes:
    return struct.pack(">HH", 4, block)


def data(block: int, payload: bytes) -> bytes:
    return struct.pack(">HH", 3, block) + payload


def acking_server(endpoint=("10.0.1.101", 50123), drop: Optional[Dict[int, int]] = None) -> Responder:
    """Responder acknowledging WRQ and every DATA block from ``endpoint``.

    ``drop`` maps a block number to how many of its acks are lost.
    """
    drop = dict(drop or {})

    def respond(packet: bytes, addr) -> List[object]:
        opcode, number = struct.unpack(">HH", packet[:4]) if len(packet) >= 4 else (0, 0)
        if opcode == 2:
            return [(ack(0), endpoint)]
        if opcode == 3:
            if drop.get(number, 0) > 0:
                drop[number] -= 1
                return [TIMEOUT]
            return [(ack(number), endpoint)]
        return []

    return respond


@pytest.fixture
def sink() -> RecordingSink:
    return RecordingSink()


@pytest.fixture
def fast_config() -> UpdaterConfig:
    return UpdaterConfig(job_poll_iterations=3)


@pytest.fixture
def firmware_file(tmp_path):
    path = tmp_path / "lsr4-20221202.bin"
    path.write_bytes(b"\xAA" * 1300)
    return path


@pytest.fixture
def make_orchestrator(sink, fast_config):
    """Build an orchestrator around a FakeChannel with no-op sleeps."""

    def build(channel: FakeChannel, tftp: Optional[FakeTftpFactory] = None, **kwargs):
        sleeps: List[float] = []
        orchestrator = UpdateOrchestrator(
            channel=channel,
            executor=DeviceExecutor(channel, sink=sink),
            tftp_factory=tftp or FakeTftpFactory(),
            config=kwargs.pop("config", fast_config),
            sink=sink,
            sleep=sleeps.append,
            **kwargs,
        )
        orchestrator.sleeps = sleeps
        return orchestrator

    return build
