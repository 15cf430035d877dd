"""
LSR Updater CLI

Command-line interface for reader inventory, firmware updates and rollback.
"""

import json
import logging
import sys
import threading
from pathlib import Path
from typing import List, Optional

import typer
from rich.console import Console
from rich.logging import RichHandler
from rich.panel import Panel
from rich.progress import BarColumn, Progress, TextColumn
from rich.table import Table
from rich.text import Text

from lsr_updater import __version__
from lsr_updater.core.actions import (
    fetch_file,
    query_concentrator,
    rollback_device,
    send_firmware,
)
from lsr_updater.core.config import UpdaterConfig
from lsr_updater.core.firmware import FirmwareImage, FirmwareRepository
from lsr_updater.core.messages import (
    MessageLevel,
    WarningItem,
    readers_with_problems,
    result_to_warnings,
    statistics_to_warnings,
)
from lsr_updater.core.orchestrator import CancellationToken, UpdateOrchestrator
from lsr_updater.core.results import OperationResult
from lsr_updater.core.version_policy import (
    AlwaysUpdatePolicy,
    DateCodeVersionPolicy,
    PrefixVersionPolicy,
    VersionPolicy,
)
from lsr_updater.models.device import Device
from lsr_updater.models.statistics import UpdatePhase, UpdateStatistics

logger = logging.getLogger("lsr_updater")

console = Console()

app = typer.Typer(help="LSR Updater - reader firmware updates through a BKR concentrator")

# Global options resolved by the callback
state = {"config": UpdaterConfig(), "verbose": False}


def setup_logging(verbose: bool) -> None:
    """Configure Rich logging; DEBUG shows wire traffic."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(message)s",
        handlers=[RichHandler(rich_tracebacks=True, console=console, show_path=False)],
        force=True,
    )


def print_header(text: str) -> None:
    console.print(Panel(text, expand=False, style="bold blue"))


def print_success(text: str) -> None:
    console.print(f"✓ {text}", style="green")


def print_warning(text: str) -> None:
    console.print(f"⚠️  {text}", style="yellow")


def print_error(text: str) -> None:
    console.print(f"❌ {text}", style="red")


def print_structured_warning(warning: WarningItem, verbose: bool = False) -> None:
    """Print a structured warning with optional remediation."""
    if warning.level == MessageLevel.ERROR:
        style = "red"
        icon = "❌"
    elif warning.level == MessageLevel.WARN:
        style = "yellow"
        icon = "⚠️"
    else:
        style = "blue"
        icon = "ℹ️"

    console.print(f"{icon} [{warning.code.value}] {warning.title}", style=style, markup=False)
    if verbose and warning.remediation:
        console.print(f"   → {warning.remediation}", style="cyan")


def problem_readers_table(items: List[WarningItem]) -> Optional[Table]:
    """Table of readers that raised warnings or errors, or None when there are none."""
    grouped = readers_with_problems(items)
    if not grouped:
        return None
    table = Table(title="Readers needing attention")
    table.add_column("Reader", style="cyan")
    table.add_column("Codes")
    table.add_column("Last message")
    for reader, reader_items in grouped.items():
        codes = sorted({item.code.value for item in reader_items})
        table.add_row(reader, ", ".join(codes), Text(reader_items[-1].title))
    return table


def print_warnings_from_result(result: OperationResult, verbose: bool = False) -> None:
    for warning in result_to_warnings(result):
        print_structured_warning(warning, verbose=verbose)


def build_policy(policy: str, prefix: Optional[str]) -> VersionPolicy:
    """Map the --policy option to a version policy."""
    name = policy.strip().lower()
    if name in ("date", "date-code"):
        return DateCodeVersionPolicy()
    if name == "always":
        return AlwaysUpdatePolicy()
    if name == "prefix":
        if not prefix:
            raise typer.BadParameter("--prefix is required with --policy prefix")
        return PrefixVersionPolicy(prefix)
    raise typer.BadParameter(f"Unknown policy '{policy}' (use date, prefix or always)")


def resolve_image(config: UpdaterConfig, firmware: str) -> FirmwareImage:
    repository = FirmwareRepository(config.firmware_dir)
    try:
        return repository.image(firmware)
    except FileNotFoundError as e:
        raise typer.BadParameter(str(e))


def devices_table(devices: List[Device], title: str = "Readers") -> Table:
    table = Table(title=title)
    table.add_column("ID", style="cyan")
    table.add_column("IP Address")
    table.add_column("Version")
    table.add_column("Available")
    table.add_column("Update")
    table.add_column("Status", style="green")

    for device in devices:
        table.add_row(
            device.device_id,
            device.ip_address or "-",
            device.firmware_version or "?",
            "yes" if device.is_available else "no",
            "yes" if device.needs_update else "no",
            device.status,
        )
    return table


def statistics_table(stats: UpdateStatistics) -> Table:
    table = Table(title="Update Summary")
    table.add_column("Property", style="cyan")
    table.add_column("Value", style="green")

    table.add_row("Result", stats.phase.value)
    table.add_row("Duration", stats.duration())
    table.add_row("Readers", str(stats.total))
    table.add_row("Updated", str(stats.successful))
    table.add_row("Failed", str(stats.failed))
    table.add_row("Skipped", str(stats.skipped))
    table.add_row("Unavailable", str(stats.unavailable))
    table.add_row("Success rate", f"{stats.success_percentage():.0f}%")
    return table


def _transfer_progress() -> Progress:
    return Progress(
        TextColumn("[{task.description}]"),
        BarColumn(),
        TextColumn("[{task.percentage:.0f}%]"),
        console=console,
    )


@app.callback()
def main_options(
    host: Optional[str] = typer.Option(None, "--host", "-H", help="Concentrator IP address"),
    port: Optional[int] = typer.Option(None, "--port", "-P", help="Concentrator UDP port"),
    timeout: Optional[float] = typer.Option(None, "--timeout", help="Command timeout in seconds"),
    firmware_dir: Optional[Path] = typer.Option(None, "--firmware-dir", help="Firmware directory"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Show wire traffic"),
) -> None:
    """Global options (environment: LSR_BKR_HOST, LSR_BKR_PORT, LSR_COMMAND_TIMEOUT, ...)."""
    setup_logging(verbose)
    try:
        config = UpdaterConfig.from_env().with_overrides(
            bkr_host=host,
            bkr_port=port,
            command_timeout=timeout,
            firmware_dir=firmware_dir,
        )
        config.validate()
    except ValueError as e:
        raise typer.BadParameter(str(e))
    state["config"] = config
    state["verbose"] = verbose


@app.command()
def version() -> None:
    """Show version."""
    console.print(f"lsr-updater {__version__}")


@app.command()
def update(
    firmware: str = typer.Argument(..., help="Firmware file name (in firmware dir) or path"),
    target: Optional[List[str]] = typer.Option(None, "--target", "-t", help="Reader id to update (repeatable)"),
    policy: str = typer.Option("date", "--policy", help="Version policy: date, prefix or always"),
    prefix: Optional[str] = typer.Option(None, "--prefix", help="Current-version prefix for --policy prefix"),
    enrich: bool = typer.Option(False, "--enrich", help="Query live IP and system info for each reader"),
    abort_on_timeout: bool = typer.Option(False, "--abort-on-timeout", help="Abort if inventory collection times out"),
) -> None:
    """Update reader firmware through the concentrator."""
    config = state["config"].with_overrides(
        enrich_inventory=enrich or None,
        abort_on_collection_timeout=abort_on_timeout or None,
    )
    image = resolve_image(config, firmware)
    version_policy = build_policy(policy, prefix)

    print_header("LSR Firmware Update")
    console.print(f"Concentrator: {config.bkr_host}:{config.bkr_port}")
    console.print(f"Firmware: {image}")
    console.print(f"MD5: {image.md5}")
    if target:
        console.print(f"Targets: {', '.join(target)}")

    token = CancellationToken()
    outcome = {}

    with _transfer_progress() as progress:
        task = progress.add_task("Starting...", total=100)

        def on_progress(percent: float, operation: str) -> None:
            progress.update(task, completed=percent, description=operation or "Working...")

        orchestrator = UpdateOrchestrator(
            config=config,
            version_policy=version_policy,
            progress_cb=on_progress,
        )

        def worker() -> None:
            outcome["stats"] = orchestrator.run(image, cancel_token=token, targets=target or None)

        thread = threading.Thread(target=worker, name="lsr-update", daemon=True)
        thread.start()
        try:
            while thread.is_alive():
                thread.join(0.2)
        except KeyboardInterrupt:
            print_warning("Cancelling after the current reader...")
            token.cancel()
            thread.join()

    stats: Optional[UpdateStatistics] = outcome.get("stats")
    if stats is None:
        print_error("Update run did not finish")
        raise typer.Exit(code=1)

    console.print(statistics_table(stats))
    items = statistics_to_warnings(stats)
    for warning in items:
        print_structured_warning(warning, verbose=state["verbose"])
    problems = problem_readers_table(items)
    if problems is not None:
        console.print(problems)

    if stats.phase != UpdatePhase.COMPLETED or stats.failed:
        print_error(f"Update {stats.phase.value}: {stats.summary()}")
        raise typer.Exit(code=1)
    print_success(f"Update completed: {stats.summary()}")


@app.command()
def inventory(
    firmware: Optional[str] = typer.Option(None, "--firmware", "-f", help="Classify readers against this image"),
    output_json: bool = typer.Option(False, "--json", "-j", help="Output as JSON for scripting"),
) -> None:
    """Collect and show the reader inventory without updating."""
    config = state["config"]
    image = resolve_image(config, firmware) if firmware else None

    orchestrator = UpdateOrchestrator(config=config)
    devices = orchestrator.collect_inventory(image)
    stats = orchestrator.statistics

    if output_json:
        print(json.dumps({
            "devices": [d.to_dict() for d in devices],
            "statistics": stats.to_dict(),
        }, indent=2))
    else:
        console.print(devices_table(devices, title=f"Readers ({len(devices)})"))
        for warning in statistics_to_warnings(stats):
            print_structured_warning(warning, verbose=state["verbose"])

    if stats.phase != UpdatePhase.COMPLETED:
        raise typer.Exit(code=1)


@app.command()
def rollback(
    device_id: str = typer.Argument(..., help="Reader id (hex, as listed by 'inventory')"),
    yes: bool = typer.Option(False, "--yes", "-y", help="Do not ask for confirmation"),
) -> None:
    """Erase a reader's uploaded firmware so it boots the factory image."""
    print_header(f"Rollback reader {device_id}")
    if not yes and not typer.confirm(f"Erase uploaded firmware on reader {device_id}?"):
        print_warning("Rollback cancelled")
        raise typer.Exit(code=1)

    result = rollback_device(device_id, config=state["config"])
    console.print(result.to_summary(), markup=False)
    print_warnings_from_result(result, verbose=state["verbose"])
    if not result.ok:
        raise typer.Exit(code=1)
    print_success("Rollback finished")


@app.command()
def send(
    ip_address: str = typer.Argument(..., help="Reader IP address"),
    file: Path = typer.Argument(..., help="File to send"),
    remote_name: Optional[str] = typer.Option(None, "--remote-name", "-r", help="Name on the reader"),
) -> None:
    """Send a file to a reader over TFTP."""
    config = state["config"]
    with _transfer_progress() as progress:
        task = progress.add_task(f"TFTP {file.name} -> {ip_address}", total=100)

        def on_progress(done: int, total: int) -> None:
            if total:
                progress.update(task, completed=done * 100 / total)

        result = send_firmware(ip_address, str(file), remote_name, config=config, progress_cb=on_progress)

    console.print(result.to_summary(), markup=False)
    if not result.ok:
        print_warnings_from_result(result, verbose=state["verbose"])
        raise typer.Exit(code=1)
    transfer = result.transfer
    print_success(f"Sent {transfer.size:,} bytes in {transfer.packets} packets")


@app.command()
def fetch(
    ip_address: str = typer.Argument(..., help="Reader IP address"),
    remote_name: str = typer.Argument(..., help="File name on the reader"),
    out: Optional[Path] = typer.Option(None, "--out", "-o", help="Local output path"),
) -> None:
    """Fetch a file from a reader over TFTP."""
    local_path = out or Path(remote_name).name
    result = fetch_file(ip_address, remote_name, str(local_path), config=state["config"])
    console.print(result.to_summary(), markup=False)
    if not result.ok:
        print_warnings_from_result(result, verbose=state["verbose"])
        raise typer.Exit(code=1)
    print_success(f"Saved to {local_path}")


@app.command()
def command(
    text: str = typer.Argument(..., help="Command line to send (e.g. 'lsr llv')"),
    timeout: Optional[float] = typer.Option(None, "--reply-timeout", help="Reply timeout in seconds"),
) -> None:
    """Send a raw command to the concentrator and print the reply."""
    result = query_concentrator(text, config=state["config"], timeout=timeout)
    if result.reply:
        console.print(Panel(Text(result.reply.rstrip()), title=text, expand=False))
    if not result.ok:
        print_warnings_from_result(result, verbose=state["verbose"])
        raise typer.Exit(code=1)


@app.command()
def firmware(
    output_json: bool = typer.Option(False, "--json", "-j", help="Output as JSON for scripting"),
) -> None:
    """List firmware images in the firmware directory."""
    repository = FirmwareRepository(state["config"].firmware_dir)
    images = repository.list_images()

    if output_json:
        print(json.dumps([
            {"name": img.name, "path": str(img.path), "size": img.size, "version": img.version, "md5": img.md5}
            for img in images
        ], indent=2))
        return

    if not images:
        print_warning(f"No firmware images in {repository.root}")
        return

    table = Table(title=f"Firmware ({repository.root})")
    table.add_column("File", style="cyan")
    table.add_column("Version", style="green")
    table.add_column("Size")
    table.add_column("MD5")
    for img in images:
        table.add_row(img.name, img.version or "-", f"{img.size:,}", img.md5)
    console.print(table)


def main() -> None:
    """Main entry point."""
    try:
        app()
    except KeyboardInterrupt:
        console.print("\n[yellow]Operation cancelled by user[/yellow]")
        sys.exit(1)


if __name__ == "__main__":
    main()
