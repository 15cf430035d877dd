"""Tests for concentrator reply parsing."""

from lsr_updater.models.device import InventoryPolicy
from lsr_updater.protocol.response_parser import EMPTY_RESPONSE, ResponseParser


class TestErrorDetection:
    def setup_method(self):
        self.parser = ResponseParser()

    def test_error_prefix_is_error(self):
        assert self.parser.is_error_response("ERROR: bad command") is True

    def test_ok_is_not_error(self):
        assert self.parser.is_error_response("OK") is False

    def test_empty_and_absent_are_errors(self):
        assert self.parser.is_error_response("") is True
        assert self.parser.is_error_response("   \n") is True
        assert self.parser.is_error_response(None) is True

    def test_vocabulary_is_case_insensitive(self):
        for text in ("Err 3", "command FAILED", "Unknown command", "invalid arg"):
            assert self.parser.is_error_response(text) is True, text

    def test_words_containing_vocabulary_mid_word_are_not_errors(self):
        # "interrupt" contains "err" but not at a word start
        assert self.parser.is_error_response("interrupt handled") is False

    def test_extract_message_after_error_colon(self):
        assert self.parser.extract_error_message("ERROR: bad command\nmore") == "bad command"
        assert self.parser.extract_error_message("line1\nfail:  no such reader ") == "no such reader"

    def test_extract_message_falls_back_to_first_line(self):
        assert self.parser.extract_error_message("\n  unknown command\nsecond") == "unknown command"

    def test_extract_message_empty_marker(self):
        assert self.parser.extract_error_message("") == EMPTY_RESPONSE
        assert self.parser.extract_error_message(None) == EMPTY_RESPONSE


class TestStatusCode:
    def test_running_and_idle(self):
        parser = ResponseParser()
        assert parser.parse_status_code("[0] 4") == 4
        assert parser.parse_status_code("[0] 0") == 0

    def test_absent(self):
        parser = ResponseParser()
        assert parser.parse_status_code("") == -1
        assert parser.parse_status_code(None) == -1
        assert parser.parse_status_code("busy") == -1

    def test_first_match_wins(self):
        assert ResponseParser().parse_status_code("bkr jobs\n[0] 7\n[1] 0") == 7


class TestInventory:
    def test_single_line(self):
        devices = ResponseParser().parse_device_inventory("2561 10.0.1.101 2.11.3")
        assert len(devices) == 1
        device = devices[0]
        assert device.device_id == "2561"
        assert device.ip_address == "10.0.1.101"
        assert device.firmware_version == "2.11.3"
        assert device.needs_update is True
        assert device.is_available is True

    def test_n_well_formed_lines_give_n_devices(self):
        text = "\n".join(f"{0x2560 + i:X} 10.0.1.{100 + i} 2.11.{i}" for i in range(1, 6))
        devices = ResponseParser().parse_device_inventory(text)
        assert [d.device_id for d in devices] == ["2561", "2562", "2563", "2564", "2565"]
        assert [d.firmware_version for d in devices] == [f"2.11.{i}" for i in range(1, 6)]

    def test_short_and_blank_lines_skipped(self):
        text = "header\n\n2561 10.0.1.101\n2562 10.0.1.102 2.11.3\n"
        devices = ResponseParser().parse_device_inventory(text)
        assert [d.device_id for d in devices] == ["2562"]

    def test_unknown_version_skipped_by_default(self):
        text = "2561 10.0.1.101 ?\n2562 10.0.1.102 2.11.3"
        devices = ResponseParser().parse_device_inventory(text)
        assert [d.device_id for d in devices] == ["2562"]

    def test_unknown_version_flagged_is_never_eligible(self):
        text = "2561 10.0.1.101 ?.?.?"
        devices = ResponseParser().parse_device_inventory(text, policy=InventoryPolicy.FLAG_UNKNOWN)
        assert len(devices) == 1
        assert devices[0].is_available is False
        assert devices[0].needs_update is False

    def test_verbose_listing(self):
        text = "lsr 2561 (10.0.1.101): 2022-12-02\nlsr 2562 (10.0.1.102): 2.11.3"
        devices = ResponseParser().parse_device_inventory(text)
        assert [(d.device_id, d.ip_address, d.firmware_version) for d in devices] == [
            ("2561", "10.0.1.101", "2022-12-02"),
            ("2562", "10.0.1.102", "2.11.3"),
        ]

    def test_verbose_version_keeps_build_suffix(self):
        devices = ResponseParser().parse_device_inventory("lsr 2561 (10.0.1.101): 2.11.3 (build 5)  \r\n")
        assert [(d.device_id, d.firmware_version) for d in devices] == [("2561", "2.11.3 (build 5)")]

    def test_summary_lines_are_not_devices(self, sink):
        text = "Add 5 devices\nTotal 3 readers\n2562 10.0.1.102 2.11.3"
        devices = ResponseParser(sink).parse_device_inventory(text)
        assert [d.device_id for d in devices] == ["2562"]
        assert sink.errors == []

    def test_invalid_id_reported_and_skipped(self, sink):
        parser = ResponseParser(sink)
        devices = parser.parse_device_inventory("zzzz 10.0.1.101 2.11.3\n2562 10.0.1.102 2.11.3")
        assert [d.device_id for d in devices] == ["2562"]
        assert len(sink.errors) == 1
        assert "zzzz" in sink.errors[0]

    def test_empty_input(self):
        assert ResponseParser().parse_device_inventory("") == []
        assert ResponseParser().parse_device_inventory(None) == []


def test_parse_ip_address():
    parser = ResponseParser()
    assert parser.parse_ip_address("phy ipaddr: 10.0.1.101 mask 255.255.255.0") == "10.0.1.101"
    assert parser.parse_ip_address("no address") is None
    assert parser.parse_ip_address(None) is None


def test_parse_ip_address_with_trailing_punctuation():
    parser = ResponseParser()
    assert parser.parse_ip_address("IP address is 10.0.1.101.") == "10.0.1.101"
    assert parser.parse_ip_address("ipaddr=10.0.1.101, gw 10.0.1.1") == "10.0.1.101"
    assert parser.parse_ip_address("serial 1.2.3.4.5") is None


def test_parse_watchdog_enabled():
    parser = ResponseParser()
    assert parser.parse_watchdog_enabled(" 1 \n") is True
    assert parser.parse_watchdog_enabled("wwdg: 0") is False
    assert parser.parse_watchdog_enabled("disabled") is False
    assert parser.parse_watchdog_enabled(None) is False


def test_parse_key_value_info():
    text = "version: 2.11.3\nuptime = 42s\n\nnoise line\nversion: 2.11.4\n: orphan"
    info = ResponseParser().parse_key_value_info(text)
    assert info == {"version": "2.11.4", "uptime": "42s"}
