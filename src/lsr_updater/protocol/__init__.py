"""Wire protocol layer - concentrator command channel, reply parsing and TFTP."""

from .errors import (
    LsrUpdaterError,
    TransportError,
    BkrConnectionError,
    CommandTimeoutError,
    ProtocolError,
    TransferError,
    DeviceUnavailable,
)
from .command_channel import CommandChannel, DEFAULT_HOST, DEFAULT_PORT
from .response_parser import ResponseParser, ERROR_VOCABULARY, EMPTY_RESPONSE
from .tftp import (
    TftpClient,
    TftpPacket,
    build_request,
    build_data,
    build_ack,
    build_error,
    parse_packet,
    data_packet_count,
    BLOCK_SIZE,
    TFTP_PORT,
)

__all__ = [
    # Errors
    "LsrUpdaterError",
    "TransportError",
    "BkrConnectionError",
    "CommandTimeoutError",
    "ProtocolError",
    "TransferError",
    "DeviceUnavailable",
    # Command channel
    "CommandChannel",
    "DEFAULT_HOST",
    "DEFAULT_PORT",
    # Parser
    "ResponseParser",
    "ERROR_VOCABULARY",
    "EMPTY_RESPONSE",
    # TFTP
    "TftpClient",
    "TftpPacket",
    "build_request",
    "build_data",
    "build_ack",
    "build_error",
    "parse_packet",
    "data_packet_count",
    "BLOCK_SIZE",
    "TFTP_PORT",
]
