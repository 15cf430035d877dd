"""Tests for update run orchestration."""

import pytest

from conftest import INVENTORY_3, FakeChannel, FakeTftpFactory, reader_responses

from lsr_updater.core.config import UpdaterConfig
from lsr_updater.core.firmware import FirmwareImage
from lsr_updater.core.orchestrator import CancellationToken
from lsr_updater.core.version_policy import AlwaysUpdatePolicy
from lsr_updater.models.statistics import UpdatePhase
from lsr_updater.protocol.errors import BkrConnectionError


@pytest.fixture
def image(firmware_file):
    return FirmwareImage.from_path(firmware_file)


class TestUpdateRun:
    def test_all_readers_updated(self, make_orchestrator, image):
        channel = FakeChannel(reader_responses())
        tftp = FakeTftpFactory()
        orchestrator = make_orchestrator(channel, tftp)

        stats = orchestrator.run(image)

        assert stats.phase == UpdatePhase.COMPLETED
        assert (stats.total, stats.successful, stats.failed) == (3, 3, 0)
        assert stats.progress == 100.0
        assert stats.end_time is not None
        assert tftp.targets == ["10.0.1.101", "10.0.1.102", "10.0.1.103"]
        assert all(remote == image.name for _, _, remote in tftp.calls)
        assert not channel.is_connected

    def test_command_sequence_for_one_reader(self, make_orchestrator, image):
        channel = FakeChannel(reader_responses("2561 10.0.1.101 2.11.3\n"))
        make_orchestrator(channel).run(image)

        assert channel.sent[:4] == ["phy stop", "lsr poll clear", "lsr poll", "bkr"]
        assert channel.sent[4:6] == ["eth promiscuous 1", "lsr llv"]
        assert channel.commands_for("2561") == [
            "exe 2561 eeprom iwdg rst 3600",
            "exe 2561 reset",
            "exe 2561 phy ipaddr",
            "exe 2561 wwdg",
            "exe 2561 eeprom iwdg rst 0",
            "exe 2561 reset",
        ]
        assert channel.sent[-2:] == ["eth promiscuous 0", "phy start"]

    def test_enabled_watchdog_is_disabled_and_reset(self, make_orchestrator, image):
        responses = reader_responses("2561 10.0.1.101 2.11.3\n")
        responses["exe 2561 wwdg"] = "1"
        channel = FakeChannel(responses)

        stats = make_orchestrator(channel).run(image)

        assert stats.successful == 1
        commands = channel.commands_for("2561")
        disable = commands.index("exe 2561 eeprom wwdg")
        assert commands[disable + 1] == "exe 2561 reset"

    def test_silently_acknowledged_commands_complete(self, make_orchestrator, image):
        responses = reader_responses("2561 10.0.1.101 2.11.3\n")
        for command in ("phy stop", "lsr poll clear", "exe 2561 reset", "phy start"):
            responses[command] = None
        channel = FakeChannel(responses)

        stats = make_orchestrator(channel).run(image)

        assert stats.phase == UpdatePhase.COMPLETED
        assert (stats.successful, stats.failed) == (1, 0)

    def test_failed_ip_query_is_isolated(self, make_orchestrator, image):
        responses = reader_responses()
        responses["exe 2562 phy ipaddr"] = None
        channel = FakeChannel(responses)
        tftp = FakeTftpFactory()
        orchestrator = make_orchestrator(channel, tftp)

        stats = orchestrator.run(image)

        assert stats.phase == UpdatePhase.COMPLETED
        assert (stats.successful, stats.failed) == (2, 1)
        assert stats.completed_with_errors
        assert tftp.targets == ["10.0.1.101", "10.0.1.103"]
        assert "exe 2563 phy ipaddr" in channel.sent
        assert any("2562" in e for e in stats.errors)

    def test_failed_transfer_is_isolated(self, make_orchestrator, image):
        channel = FakeChannel(reader_responses())
        tftp = FakeTftpFactory({"10.0.1.101": False})

        stats = make_orchestrator(channel, tftp).run(image)

        assert (stats.successful, stats.failed) == (2, 1)
        assert any("transfer failed" in e for e in stats.errors)
        # a failed reader is not finalized
        assert "exe 2561 eeprom iwdg rst 0" not in channel.sent

    def test_cancel_between_readers(self, make_orchestrator, image):
        channel = FakeChannel(reader_responses())
        token = CancellationToken()

        def first_transfer():
            token.cancel()
            return True

        tftp = FakeTftpFactory({"10.0.1.101": first_transfer})
        stats = make_orchestrator(channel, tftp).run(image, cancel_token=token)

        assert stats.phase == UpdatePhase.CANCELLED
        assert stats.successful == 1
        assert tftp.targets == ["10.0.1.101"]
        assert channel.commands_for("2562") == []
        # concentrator still restored
        assert channel.sent[-2:] == ["eth promiscuous 0", "phy start"]
        assert not channel.is_connected

    def test_cancel_before_start_never_connects(self, make_orchestrator, image):
        channel = FakeChannel(reader_responses())
        token = CancellationToken()
        token.cancel()

        stats = make_orchestrator(channel).run(image, cancel_token=token)

        assert stats.phase == UpdatePhase.CANCELLED
        assert channel.connect_calls == 0
        assert channel.sent == []

    def test_inter_device_and_settle_delays(self, make_orchestrator, image):
        channel = FakeChannel(reader_responses("2561 10.0.1.101 2.11.3\n2562 10.0.1.102 2.11.3\n"))
        orchestrator = make_orchestrator(channel)
        orchestrator.run(image)

        cfg = orchestrator.config
        # one pause between the two readers, none after the last
        assert orchestrator.sleeps.count(cfg.inter_device_delay) == 1
        assert orchestrator.sleeps.count(cfg.pre_finalize_delay) == 2

    def test_progress_never_decreases(self, make_orchestrator, image):
        seen = []
        channel = FakeChannel(reader_responses())
        orchestrator = make_orchestrator(channel, progress_cb=lambda pct, op: seen.append(pct))

        orchestrator.run(image)

        assert seen == sorted(seen)
        assert seen[-1] == 100.0


class TestRunErrors:
    def test_connect_failure_ends_in_error(self, make_orchestrator, image):
        channel = FakeChannel(reader_responses())
        channel.connect_error = BkrConnectionError("unreachable")

        stats = make_orchestrator(channel).run(image)

        assert stats.phase == UpdatePhase.ERROR
        assert "unreachable" in stats.errors[0]
        assert channel.sent == []

    def test_stop_polling_rejected_ends_in_error(self, make_orchestrator, image):
        responses = reader_responses()
        responses["phy stop"] = "ERROR: busy"
        channel = FakeChannel(responses)

        stats = make_orchestrator(channel).run(image)

        assert stats.phase == UpdatePhase.ERROR
        assert channel.disconnect_calls >= 1
        assert not channel.is_connected
        assert "lsr poll" not in channel.sent

    def test_no_readers_ends_in_error_after_restore(self, make_orchestrator, image):
        responses = reader_responses("")
        responses["lsr llv"] = "OK"
        channel = FakeChannel(responses)

        stats = make_orchestrator(channel).run(image)

        assert stats.phase == UpdatePhase.ERROR
        assert channel.sent[-2:] == ["eth promiscuous 0", "phy start"]

    def test_collection_timeout_continues_by_default(self, make_orchestrator, image):
        responses = reader_responses()
        responses["bkr"] = "[0] 4"
        channel = FakeChannel(responses)
        orchestrator = make_orchestrator(channel)

        stats = orchestrator.run(image)

        assert stats.phase == UpdatePhase.COMPLETED
        assert channel.sent.count("bkr") == orchestrator.config.job_poll_iterations
        assert any("Collection job" in w for w in stats.warnings)

    def test_collection_timeout_aborts_when_configured(self, make_orchestrator, image):
        responses = reader_responses()
        responses["bkr"] = "[0] 4"
        channel = FakeChannel(responses)
        config = UpdaterConfig(job_poll_iterations=2, abort_on_collection_timeout=True)

        stats = make_orchestrator(channel, config=config).run(image)

        assert stats.phase == UpdatePhase.ERROR
        assert "lsr llv" not in channel.sent

    def test_restore_failures_are_warnings(self, make_orchestrator, image):
        responses = reader_responses()
        responses["phy start"] = "ERROR: nope"
        channel = FakeChannel(responses)

        stats = make_orchestrator(channel).run(image)

        assert stats.phase == UpdatePhase.COMPLETED
        assert any("Restore incomplete" in w for w in stats.warnings)

    def test_missing_firmware_raises_before_connecting(self, make_orchestrator, tmp_path):
        channel = FakeChannel(reader_responses())
        with pytest.raises(FileNotFoundError):
            make_orchestrator(channel).run(tmp_path / "nope.bin")
        assert channel.connect_calls == 0


class TestAnalysis:
    def test_current_readers_are_skipped(self, make_orchestrator, image):
        inventory = "2561 10.0.1.101 2022-12-02\n2562 10.0.1.102 2021-01-15\n"
        channel = FakeChannel(reader_responses(inventory))
        tftp = FakeTftpFactory()

        stats = make_orchestrator(channel, tftp).run(image)

        assert (stats.total, stats.skipped, stats.successful) == (2, 1, 1)
        assert tftp.targets == ["10.0.1.102"]

    def test_unknown_versions_counted_unavailable(self, make_orchestrator, image):
        inventory = "2561 10.0.1.101 ?\n2562 10.0.1.102 2.11.3\n"
        channel = FakeChannel(reader_responses(inventory))

        stats = make_orchestrator(channel).run(image)

        assert (stats.total, stats.unavailable, stats.successful) == (2, 1, 1)
        assert channel.commands_for("2561") == []
        assert stats.accounted <= stats.total

    def test_targets_restrict_updates(self, make_orchestrator, image):
        channel = FakeChannel(reader_responses())
        tftp = FakeTftpFactory()

        stats = make_orchestrator(channel, tftp).run(image, targets=["2562", "FFFE", "xyz"])

        assert tftp.targets == ["10.0.1.102"]
        assert stats.skipped == 2
        assert any("FFFE" in w for w in stats.warnings)
        assert any("xyz" in w for w in stats.warnings)

    def test_version_policy_is_pluggable(self, make_orchestrator, image):
        inventory = "2561 10.0.1.101 2022-12-02\n"
        channel = FakeChannel(reader_responses(inventory))

        stats = make_orchestrator(channel, version_policy=AlwaysUpdatePolicy()).run(image)

        assert stats.successful == 1


class TestInventory:
    def test_collect_inventory_without_image(self, make_orchestrator):
        channel = FakeChannel(reader_responses(INVENTORY_3))
        orchestrator = make_orchestrator(channel)

        devices = orchestrator.collect_inventory()

        assert [d.device_id for d in devices] == ["2561", "2562", "2563"]
        assert orchestrator.statistics.phase == UpdatePhase.COMPLETED
        assert not any(c.startswith("exe ") for c in channel.sent)
        assert channel.sent[-2:] == ["eth promiscuous 0", "phy start"]

    def test_collect_inventory_enriches(self, make_orchestrator):
        responses = reader_responses("2561 10.0.1.101 2.11.3\n")
        responses["exe 2561 phy ipaddr"] = "ipaddr 10.0.9.9"
        responses["exe 2561 sys info"] = "serial: 42"
        channel = FakeChannel(responses)
        config = UpdaterConfig(job_poll_iterations=3, enrich_inventory=True)

        devices = make_orchestrator(channel, config=config).collect_inventory()

        assert devices[0].ip_address == "10.0.9.9"
        assert devices[0].system_info == {"serial": "42"}


class TestRollback:
    def test_rollback_sequence(self, make_orchestrator):
        channel = FakeChannel(reader_responses("2561 10.0.1.101 2.11.3\n"))

        result = make_orchestrator(channel).rollback("2561")

        assert result.ok
        steps = result.rollback
        assert steps.ip_address == "10.0.1.101"
        assert steps.flash_erased and steps.guard_cleared and steps.final_reset
        assert steps.watchdog_enabled is False
        commands = channel.commands_for("2561")
        assert commands == [
            "exe 2561 eeprom iwdg rst 3600",
            "exe 2561 reset",
            "exe 2561 phy ipaddr",
            "exe 2561 wwdg",
            "exe 2561 flash erase1",
            "exe 2561 eeprom iwdg rst 0",
            "exe 2561 reset",
        ]
        assert channel.timeouts[channel.sent.index("exe 2561 flash erase1")] == 10.0
        assert channel.sent[-2:] == ["eth promiscuous 0", "phy start"]
        assert not channel.is_connected

    def test_unresponsive_reader_still_erased(self, make_orchestrator):
        responses = reader_responses("2561 10.0.1.101 2.11.3\n")
        responses["exe 2561 phy ipaddr"] = None
        channel = FakeChannel(responses)

        result = make_orchestrator(channel).rollback("2561")

        assert result.ok
        assert result.warnings
        assert "exe 2561 flash erase1" in channel.sent

    def test_erase_failure_fails_rollback(self, make_orchestrator):
        responses = reader_responses("2561 10.0.1.101 2.11.3\n")
        responses["exe 2561 flash erase1"] = "ERROR: flash locked"
        channel = FakeChannel(responses)

        result = make_orchestrator(channel).rollback("2561")

        assert not result.ok
        assert "Flash erase failed" in result.errors
        # reader is still reset afterwards
        assert channel.commands_for("2561")[-1] == "exe 2561 reset"

    def test_invalid_device_id(self, make_orchestrator):
        channel = FakeChannel()
        result = make_orchestrator(channel).rollback("not-hex")
        assert not result.ok
        assert channel.connect_calls == 0
