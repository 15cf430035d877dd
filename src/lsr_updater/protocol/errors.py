"""
Exception taxonomy for the LSR update engine.

Transport-level failures, protocol violations and device conditions all derive
from LsrUpdaterError so callers can recover per device with a single except.
"""


class LsrUpdaterError(Exception):
    """Base exception for all update engine errors"""
    pass


class TransportError(LsrUpdaterError):
    """Socket-level failure (send/receive/bind)"""
    pass


class BkrConnectionError(TransportError, ConnectionError):
    """Concentrator address could not be resolved or bound"""
    pass


class CommandTimeoutError(LsrUpdaterError, TimeoutError):
    """No reply arrived within the command timeout"""
    pass


class ProtocolError(LsrUpdaterError):
    """Malformed or unexpected reply shape"""
    pass


class TransferError(LsrUpdaterError):
    """TFTP retry ceiling exceeded"""
    pass


class DeviceUnavailable(LsrUpdaterError):
    """Device did not answer after a reset"""

    def __init__(self, device_id: str, reason: str = "no response after reset"):
        self.device_id = device_id
        self.reason = reason
        super().__init__(f"Device {device_id}: {reason}")
