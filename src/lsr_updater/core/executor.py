"""
Device operations over the concentrator command channel.

Each operation sends exactly one command, classifies the reply and either
returns the extracted value or reports the error through the event sink and
returns a failure value (False / None / -1 / []). Nothing here retries or
sleeps; retry and settle timing belong to the orchestrator.
"""

import logging
from typing import Dict, List, Optional

from lsr_updater.events import EventSink, ensure_sink
from lsr_updater.models.device import Device, InventoryPolicy, format_handle
from lsr_updater.protocol.command_channel import CommandChannel
from lsr_updater.protocol.response_parser import ResponseParser

logger = logging.getLogger(__name__)

DEFAULT_ERASE_TIMEOUT = 10.0

# Concentrator commands
CMD_PHY_STOP = "phy stop"
CMD_PHY_START = "phy start"
CMD_POLL_CLEAR = "lsr poll clear"
CMD_POLL = "lsr poll"
CMD_LIST_VERSIONS = "lsr llv"
CMD_JOB_STATUS = "bkr"
CMD_PROMISCUOUS = "eth promiscuous {mode}"

# Per-device commands, keyed by uppercase hex handle
CMD_RESET = "exe {handle} reset"
CMD_IP_ADDRESS = "exe {handle} phy ipaddr"
CMD_WATCHDOG_STATUS = "exe {handle} wwdg"
CMD_WATCHDOG_DISABLE = "exe {handle} eeprom wwdg"
CMD_WATCHDOG_GUARD = "exe {handle} eeprom iwdg rst {seconds}"
CMD_SYSTEM_INFO = "exe {handle} sys info"
CMD_FLASH_ERASE = "exe {handle} flash erase1"


def device_command(template: str, handle: int, **kwargs) -> str:
    """Render a per-device command template for a numeric handle."""
    return template.format(handle=format_handle(handle), **kwargs)


class DeviceExecutor:
    """
    Maps device operations onto channel commands and parsed replies.

    Example:
        executor = DeviceExecutor(channel)
        if executor.stop_polling() and executor.clear_poll_queue():
            devices = executor.list_devices()
    """

    def __init__(
        self,
        channel: CommandChannel,
        parser: Optional[ResponseParser] = None,
        sink: Optional[EventSink] = None,
        erase_timeout: float = DEFAULT_ERASE_TIMEOUT,
    ):
        self.channel = channel
        self.sink = ensure_sink(sink)
        self.parser = parser or ResponseParser(self.sink)
        self.erase_timeout = erase_timeout

    def _execute(
        self,
        command: str,
        action: str,
        timeout: Optional[float] = None,
        expects_data: bool = True,
    ) -> Optional[str]:
        """
        Send ``command``; return the reply, or None when it signals an error.

        Control commands (``expects_data=False``) are often acknowledged with
        silence. For those a missing or blank reply counts as accepted and
        comes back as "", so only an error word in the reply fails them.
        """
        response = self.channel.send_command(command, timeout=timeout)
        if not expects_data and (response is None or not response.strip()):
            logger.debug(f"'{command}' accepted without a reply")
            return ""
        if self.parser.is_error_response(response):
            message = self.parser.extract_error_message(response)
            self.sink.log_error(f"{action} failed: {message}")
            logger.debug(f"'{command}' rejected: {response!r}")
            return None
        return response

    # ------------------------------------------------------------------
    # Concentrator operations
    # ------------------------------------------------------------------

    def stop_polling(self) -> bool:
        self.sink.log_info("Stopping concentrator polling")
        return self._execute(CMD_PHY_STOP, "Stop polling", expects_data=False) is not None

    def start_polling(self) -> bool:
        self.sink.log_info("Resuming concentrator polling")
        return self._execute(CMD_PHY_START, "Start polling", expects_data=False) is not None

    def clear_poll_queue(self) -> bool:
        self.sink.log_info("Clearing poll queue")
        return self._execute(CMD_POLL_CLEAR, "Clear poll queue", expects_data=False) is not None

    def trigger_poll(self) -> bool:
        self.sink.log_info("Triggering reader inventory poll")
        return self._execute(CMD_POLL, "Trigger poll", expects_data=False) is not None

    def query_job_status(self) -> int:
        """
        Query the collection job status.

        Returns:
            0 when the job has finished, another code while it runs, -1 when
            the reply carried no status
        """
        response = self.channel.send_command(CMD_JOB_STATUS)
        return self.parser.parse_status_code(response)

    def list_devices(self, policy: InventoryPolicy = InventoryPolicy.SKIP_UNKNOWN) -> List[Device]:
        """Fetch the reader inventory ("lsr llv")."""
        self.sink.log_info("Fetching reader inventory")
        response = self._execute(CMD_LIST_VERSIONS, "Inventory")
        if response is None:
            return []
        devices = self.parser.parse_device_inventory(response, policy=policy)
        self.sink.log_info(f"Inventory: {len(devices)} reader(s)")
        for device in devices:
            self.sink.log_info(f"  {device.to_log_string()}")
        return devices

    def set_relay_mode(self, enabled: bool) -> bool:
        """Enable or disable promiscuous relay mode."""
        state = "on" if enabled else "off"
        self.sink.log_info(f"Switching relay mode {state}")
        command = CMD_PROMISCUOUS.format(mode=1 if enabled else 0)
        return self._execute(command, f"Relay mode {state}", expects_data=False) is not None

    # ------------------------------------------------------------------
    # Reader operations
    # ------------------------------------------------------------------

    def set_watchdog_guard(self, handle: int, seconds: int) -> bool:
        """Arm the independent watchdog reset timer for ``seconds``."""
        self.sink.log_info(f"[{format_handle(handle)}] Setting watchdog guard to {seconds}s")
        command = device_command(CMD_WATCHDOG_GUARD, handle, seconds=seconds)
        return self._execute(command, f"[{format_handle(handle)}] Watchdog guard", expects_data=False) is not None

    def clear_watchdog_guard(self, handle: int) -> bool:
        self.sink.log_info(f"[{format_handle(handle)}] Clearing watchdog guard")
        command = device_command(CMD_WATCHDOG_GUARD, handle, seconds=0)
        return self._execute(command, f"[{format_handle(handle)}] Clear watchdog guard", expects_data=False) is not None

    def reset_device(self, handle: int) -> bool:
        self.sink.log_info(f"[{format_handle(handle)}] Resetting reader")
        command = device_command(CMD_RESET, handle)
        return self._execute(command, f"[{format_handle(handle)}] Reset", expects_data=False) is not None

    def query_ip(self, handle: int) -> Optional[str]:
        """Return the reader's IP address, or None if it did not answer."""
        command = device_command(CMD_IP_ADDRESS, handle)
        response = self._execute(command, f"[{format_handle(handle)}] IP query")
        if response is None:
            return None
        ip_address = self.parser.parse_ip_address(response)
        if ip_address:
            self.sink.log_info(f"[{format_handle(handle)}] IP address {ip_address}")
        else:
            self.sink.log_error(f"[{format_handle(handle)}] Could not parse IP address")
        return ip_address

    def query_watchdog(self, handle: int) -> Optional[bool]:
        """
        Query the window watchdog flag.

        Returns:
            True/False for enabled/disabled, None when the query failed
        """
        command = device_command(CMD_WATCHDOG_STATUS, handle)
        response = self._execute(command, f"[{format_handle(handle)}] Watchdog query")
        if response is None:
            return None
        enabled = self.parser.parse_watchdog_enabled(response)
        self.sink.log_info(
            f"[{format_handle(handle)}] Watchdog {'enabled' if enabled else 'disabled'}"
        )
        return enabled

    def disable_watchdog(self, handle: int) -> bool:
        """Disable the window watchdog (takes effect after the next reset)."""
        self.sink.log_info(f"[{format_handle(handle)}] Disabling watchdog")
        command = device_command(CMD_WATCHDOG_DISABLE, handle)
        return self._execute(command, f"[{format_handle(handle)}] Disable watchdog", expects_data=False) is not None

    def query_system_info(self, handle: int) -> Dict[str, str]:
        command = device_command(CMD_SYSTEM_INFO, handle)
        response = self._execute(command, f"[{format_handle(handle)}] System info")
        if response is None:
            return {}
        return self.parser.parse_key_value_info(response)

    def erase_flash(self, handle: int) -> bool:
        """Erase the uploaded image so the reader boots its factory image."""
        self.sink.log_info(f"[{format_handle(handle)}] Erasing flash")
        command = device_command(CMD_FLASH_ERASE, handle)
        return self._execute(
            command,
            f"[{format_handle(handle)}] Flash erase",
            timeout=self.erase_timeout,
            expects_data=False,
        ) is not None

    def interrupt(self) -> None:
        """Send Ctrl+C to abort a running console command."""
        self.channel.send_interrupt()
