"""
Parsing of free-form concentrator replies.

The concentrator answers commands with human-oriented text. These helpers pull
out the facts the update engine needs:

- error indicators and messages ("ERROR: bad command")
- job status codes from "bkr" ("[0] 4" while collecting, "[0] 0" when idle)
- device inventory from "lsr llv" ("2561 10.0.1.101 2.11.3")
- IP addresses, watchdog flags and key/value system info

Parsing never raises for malformed input: bad lines are skipped and reported
as parse-error events.
"""

import logging
import re
from typing import Dict, List, Optional

from lsr_updater.events import EventSink, ensure_sink
from lsr_updater.models.device import Device, InventoryPolicy, UNKNOWN_VERSION_MARK

logger = logging.getLogger(__name__)

ERROR_VOCABULARY = ("error", "err", "fail", "unknown", "invalid")
EMPTY_RESPONSE = "<empty response>"

_ERROR_WORD = re.compile(r"\b(?:" + "|".join(ERROR_VOCABULARY) + r")", re.IGNORECASE)
_ERROR_MESSAGE = re.compile(r"\b(?:error|err|fail)\w*\s*:(.*)", re.IGNORECASE)
_STATUS_CODE = re.compile(r"\[\s*\d+\s*\]\s+(-?\d+)")
_IPV4 = re.compile(r"(?<!\d)(?<!\d\.)(\d{1,3}(?:\.\d{1,3}){3})(?!\d|\.\d)")
_IPV4_TOKEN = re.compile(r"\d{1,3}(?:\.\d{1,3}){3}")
_VERBOSE_INVENTORY = re.compile(r"lsr\s+([0-9A-Fa-fx]+)\s+\(([^)]+)\):\s*(\S.*?)\s*$", re.IGNORECASE)
_KEY_VALUE = re.compile(r"^\s*([^:=]+?)\s*[:=]\s*(.*?)\s*$")


def _lines(text: Optional[str]) -> List[str]:
    if not text:
        return []
    return text.splitlines()


class ResponseParser:
    """
    Stateless reply parser.

    The only side effect is reporting skipped lines through the event sink.
    """

    def __init__(self, sink: Optional[EventSink] = None):
        self.sink = ensure_sink(sink)

    def _parse_error(self, message: str) -> None:
        logger.debug(message)
        self.sink.log_error(message)

    def is_error_response(self, text: Optional[str]) -> bool:
        """
        Check whether a reply signals failure.

        A reply is an error when it contains one of ERROR_VOCABULARY at the
        start of a word (case-insensitive). Empty or absent replies also count
        as errors here; callers that accept a silent acknowledgement check for
        that before asking.
        """
        if not text or not text.strip():
            return True
        return _ERROR_WORD.search(text) is not None

    def extract_error_message(self, text: Optional[str]) -> str:
        """
        Extract a readable error message from a reply.

        Returns:
            Text after "error:"/"err:"/"fail:" on the first matching line,
            otherwise the first non-empty line, otherwise EMPTY_RESPONSE.
        """
        lines = _lines(text)
        for line in lines:
            match = _ERROR_MESSAGE.search(line)
            if match:
                return match.group(1).strip()
        for line in lines:
            if line.strip():
                return line.strip()
        return EMPTY_RESPONSE

    def parse_status_code(self, text: Optional[str]) -> int:
        """
        Parse a job status reply such as "[0] 4".

        Returns:
            The first status number found, or -1 when there is none.
            0 means the collection job has finished.
        """
        if not text:
            return -1
        match = _STATUS_CODE.search(text)
        if not match:
            return -1
        return int(match.group(1))

    def parse_device_inventory(
        self,
        text: Optional[str],
        policy: InventoryPolicy = InventoryPolicy.SKIP_UNKNOWN,
    ) -> List[Device]:
        """
        Parse an inventory listing into devices.

        Accepted line shapes:
            2561 10.0.1.101 2.11.3
            lsr 2561 (10.0.1.101): 2.11.3 (build 5)

        The verbose shape keeps the rest of the line as the version. Plain
        lines whose second column is not a dotted IPv4 address are banner or
        summary text and are ignored.

        Versions containing "?" are dropped (SKIP_UNKNOWN) or kept as
        unavailable devices that do not need an update (FLAG_UNKNOWN).
        Devices with a known version default to needs_update=True.
        """
        devices: List[Device] = []
        for line in _lines(text):
            if not line.strip():
                continue

            match = _VERBOSE_INVENTORY.search(line)
            if match:
                device_id, ip_address, version = (g.strip() for g in match.groups())
            else:
                tokens = line.split()
                if len(tokens) < 3:
                    continue
                device_id, ip_address, version = tokens[:3]
                if not _IPV4_TOKEN.fullmatch(ip_address):
                    logger.debug(f"Ignoring non-inventory line '{line.strip()}'")
                    continue

            if UNKNOWN_VERSION_MARK in version and policy == InventoryPolicy.SKIP_UNKNOWN:
                logger.debug(f"Skipping device {device_id}: unknown version '{version}'")
                continue

            try:
                device = Device.from_inventory(device_id, ip_address, version)
            except ValueError as e:
                self._parse_error(f"Skipping inventory line '{line.strip()}': {e}")
                continue
            devices.append(device)

        return devices

    def parse_ip_address(self, text: Optional[str]) -> Optional[str]:
        """Return the first IPv4-shaped token, or None."""
        if not text:
            return None
        match = _IPV4.search(text)
        return match.group(1) if match else None

    def parse_watchdog_enabled(self, text: Optional[str]) -> bool:
        """
        Interpret a watchdog query reply.

        "1" anywhere in the trimmed reply means enabled, otherwise disabled.
        """
        if not text:
            return False
        trimmed = text.strip()
        if "1" in trimmed:
            return True
        if "0" in trimmed:
            return False
        return False

    def parse_key_value_info(self, text: Optional[str]) -> Dict[str, str]:
        """
        Parse "key: value" / "key = value" lines.

        Later duplicate keys overwrite earlier ones.
        """
        info: Dict[str, str] = {}
        for line in _lines(text):
            if not line.strip():
                continue
            match = _KEY_VALUE.match(line)
            if not match or not match.group(1).strip():
                continue
            info[match.group(1)] = match.group(2)
        return info
