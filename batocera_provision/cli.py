"""Thin CLI wrapper for batocera_provision.

This module provides the command-line interface using Typer.
All business logic is delegated to core modules.
"""

import json
from functools import partial
from pathlib import Path
from typing import Annotated, Any

import typer
from rich.console import Console
from rich.markup import escape

from batocera_provision import __version__
from batocera_provision.config import configure_logging, get_settings, print_settings_json
from batocera_provision.devices import (
    DiskBackend,
    UnsupportedPlatformError,
    get_backend,
    run_command,
)
from batocera_provision.errors import InputValidationError, ProvisionError
from batocera_provision.flash.service import FlashPlan
from batocera_provision.image.fetch import download_image
from batocera_provision.partitions.selectors import get_selector
from batocera_provision.pipeline import ProvisionReport, ProvisionRequest, Provisioner
from batocera_provision.types import (
    Stage,
    StageRecord,
    StageStatus,
    TargetDevice,
    VerificationMode,
)

app = typer.Typer(
    name="batocera-provision",
    help="Batocera SD card provisioning - flash, repair the SHARE partition, copy BIOS/ROMs",
    no_args_is_help=True,
)
console = Console()
err_console = Console(stderr=True)

EXIT_INTERRUPTED = 130
LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")

_STATUS_STYLE = {
    StageStatus.COMPLETED: ("green", "✓"),
    StageStatus.SKIPPED: ("yellow", "-"),
    StageStatus.DEGRADED: ("yellow", "!"),
    StageStatus.FAILED: ("red", "✗"),
}


def version_callback(value: bool) -> None:
    """Print version and exit."""
    if value:
        console.print(f"batocera-provision version {__version__}")
        raise typer.Exit()


def _print_json(data: Any) -> None:
    console.print(json.dumps(data, indent=2), soft_wrap=True, markup=False, highlight=False)


def _format_size(size_bytes: int | None) -> str:
    if size_bytes is None:
        return "?"
    size = float(size_bytes)
    for unit in ("B", "KiB", "MiB", "GiB"):
        if size < 1024:
            return f"{size:.1f} {unit}" if unit != "B" else f"{int(size)} B"
        size /= 1024
    return f"{size:.1f} TiB"


def _load_backend() -> DiskBackend:
    settings = get_settings()
    try:
        return get_backend(runner=partial(run_command, timeout=settings.command_timeout))
    except UnsupportedPlatformError as e:
        console.print(f"[red]{escape(str(e))}[/red]")
        raise typer.Exit(code=1) from None


@app.callback()
def main(
    version: Annotated[
        bool | None,
        typer.Option(
            "--version",
            "-V",
            help="Show version and exit",
            callback=version_callback,
            is_eager=True,
        ),
    ] = None,
    log_level: Annotated[
        str | None,
        typer.Option("--log-level", help="Console log level (default from settings)"),
    ] = None,
) -> None:
    """Batocera SD card provisioning - flash, repair the SHARE partition, copy BIOS/ROMs."""
    settings = get_settings()
    level = (log_level or settings.log_level).upper()
    if level not in LOG_LEVELS:
        raise typer.BadParameter(
            f"must be one of {', '.join(LOG_LEVELS)}", param_hint="--log-level"
        )
    configure_logging(
        level=level,
        log_file=settings.log_file,
    )


@app.command()
def config(
    json_output: Annotated[
        bool,
        typer.Option("--json", help="Output as JSON"),
    ] = False,
) -> None:
    """Show effective configuration."""
    settings = get_settings()
    if json_output:
        console.print(print_settings_json(settings), soft_wrap=True, markup=False)
        return

    designator = settings.mount_designator or "(platform default)"
    log_file = str(settings.log_file) if settings.log_file else "(none)"
    console.print("[bold]Effective Configuration:[/bold]")
    console.print()
    console.print("[bold]Paths:[/bold]")
    console.print(f"  Work directory:      {settings.work_dir}")
    console.print(f"  Clear work dir:      {settings.clear_work_dir}")
    console.print(f"  Log file:            {log_file}")
    console.print()
    console.print("[bold]Partitions:[/bold]")
    console.print(f"  Mount designator:    {designator}")
    console.print(f"  Share label:         {settings.share_label}")
    console.print(f"  Selector:            {settings.partition_selector}")
    console.print()
    console.print("[bold]Operational:[/bold]")
    console.print(f"  Log level:           {settings.log_level}")
    console.print(f"  Verification mode:   {settings.verification_mode}")
    console.print()
    console.print("[bold]Timeouts (seconds):[/bold]")
    console.print(f"  Download timeout:    {settings.download_timeout}")
    console.print(f"  Command timeout:     {settings.command_timeout}")


@app.command()
def disks(
    json_output: Annotated[
        bool,
        typer.Option("--json", help="Output as JSON"),
    ] = False,
) -> None:
    """List host disks with the numbers accepted by --disk."""
    backend = _load_backend()
    try:
        found = backend.list_disks()
    except ProvisionError as e:
        console.print(f"[red]Could not list disks: {escape(e.describe())}[/red]")
        raise typer.Exit(code=1) from None

    if json_output:
        _print_json(
            [
                {
                    "number": d.index,
                    "identifier": d.identifier,
                    "description": d.description,
                    "size_bytes": d.size_bytes,
                }
                for d in found
            ]
        )
        return

    if not found:
        console.print("[yellow]No disks found[/yellow]")
        return

    console.print(f"[bold]Found {len(found)} disk(s):[/bold]")
    for d in found:
        console.print(
            f"  {d.index:>2}  {d.identifier:<22} {_format_size(d.size_bytes):>10}  "
            f"{d.description or ''}",
            markup=False,
        )


@app.command()
def partitions(
    disk: Annotated[int, typer.Argument(help="Host disk number")],
    json_output: Annotated[
        bool,
        typer.Option("--json", help="Output as JSON"),
    ] = False,
) -> None:
    """List the partitions of one disk."""
    backend = _load_backend()
    try:
        found = backend.list_partitions(disk)
    except LookupError:
        console.print(f"[red]No disk found with number {disk}[/red]")
        raise typer.Exit(code=1) from None
    except ProvisionError as e:
        console.print(f"[red]Could not list partitions: {escape(e.describe())}[/red]")
        raise typer.Exit(code=1) from None

    if json_output:
        _print_json(
            [
                {
                    "disk_number": p.disk_number,
                    "partition_number": p.partition_number,
                    "mount_point": p.mount_point,
                    "label": p.label,
                    "size_bytes": p.size_bytes,
                    "fs_type": p.fs_type,
                }
                for p in found
            ]
        )
        return

    if not found:
        console.print(f"[yellow]No partitions on disk {disk}[/yellow]")
        return

    console.print(f"[bold]Disk {disk}: {len(found)} partition(s)[/bold]")
    for p in found:
        console.print(
            f"  {p.partition_number:>2}  {p.mount_point or '-':<20} "
            f"{p.label or '-':<12} {p.fs_type or '-':<8} {_format_size(p.size_bytes):>10}",
            markup=False,
        )


def _make_confirm(out: Console, assume_yes: bool):
    def confirm(plan: FlashPlan) -> bool:
        target = plan.target
        if assume_yes:
            out.print(f"[yellow]--yes given: writing disk {target.index} without asking[/yellow]")
            return True
        out.print(
            f"[bold red]WARNING:[/bold red] This will OVERWRITE disk {target.index} "
            f"({target.identifier})",
            highlight=False,
        )
        if target.description or target.size_bytes:
            out.print(
                f"  Device: {target.description or 'unknown'} "
                f"({_format_size(target.size_bytes)})",
                markup=False,
            )
        out.print(f"  Image:  {plan.image_path} ({_format_size(plan.image_size)})", markup=False)
        out.print("  All data on this disk will be irrecoverably lost.")
        return typer.confirm(
            "Are you sure you want to continue?", default=False, err=out.stderr
        )

    return confirm


def _make_wait_for_reinsert(out: Console):
    def wait_for_reinsert(target: TargetDevice) -> None:
        out.print()
        out.print(
            f"[bold]Eject the card on disk {target.index} and insert it again.[/bold]"
        )
        out.print("The system has to re-read the new partition table before continuing.")
        while not typer.confirm(
            "Card re-inserted and visible?", default=True, err=out.stderr
        ):
            out.print("[yellow]Waiting for the card...[/yellow]")

    return wait_for_reinsert


def _make_stage_printer(out: Console):
    def on_stage(record: StageRecord) -> None:
        color, mark = _STATUS_STYLE[record.status]
        out.print(
            f"[{color}]{mark} {record.stage.value}[/{color}] {escape(record.message)}",
            highlight=False,
        )
        if record.stage is Stage.FLASH and record.status is StageStatus.SKIPPED:
            out.print(
                "[yellow]Flash declined: repair and copies run against the card "
                "as it is now.[/yellow]"
            )

    return on_stage


def _print_summary(out: Console, report: ProvisionReport) -> None:
    out.print()
    if report.repair is not None and report.repair.volume is not None:
        out.print(f"  Volume root: {report.repair.volume.root_path}", markup=False)
    if report.sync is not None:
        for error in report.sync.failed:
            out.print(
                f"  [red]Copy failed:[/red] {escape(error.message)}",
                highlight=False,
                soft_wrap=True,
            )
    if report.success:
        out.print("[green]✓ Provisioning finished[/green]")
    else:
        out.print("[red]✗ Provisioning finished with copy failures[/red]")


@app.command()
def run(
    disk: Annotated[
        int,
        typer.Option("--disk", "-d", help="Host disk number of the SD card (1-99)"),
    ],
    image: Annotated[
        Path | None,
        typer.Option("--image", "-i", help="Local Batocera image archive"),
    ] = None,
    url: Annotated[
        str | None,
        typer.Option("--url", "-u", help="URL of a Batocera image archive"),
    ] = None,
    workdir: Annotated[
        Path | None,
        typer.Option("--workdir", help="Scratch directory (default from settings)"),
    ] = None,
    clear: Annotated[
        bool | None,
        typer.Option("--clear/--no-clear", help="Wipe the scratch directory first"),
    ] = None,
    bios: Annotated[
        Path | None,
        typer.Option("--bios", help="Personal BIOS folder to copy onto the card"),
    ] = None,
    roms: Annotated[
        Path | None,
        typer.Option("--roms", help="Personal ROM folder to copy onto the card"),
    ] = None,
    drive_letter: Annotated[
        str | None,
        typer.Option(
            "--drive-letter",
            help="Drive letter (Windows) or mount directory (Linux) for SHARE",
        ),
    ] = None,
    second_card: Annotated[
        Path | None,
        typer.Option("--second-card", help="Mounted second card to mirror bios/roms onto"),
    ] = None,
    sha256: Annotated[
        str | None,
        typer.Option("--sha256", help="Expected SHA-256 of the downloaded archive"),
    ] = None,
    verify: Annotated[
        VerificationMode | None,
        typer.Option("--verify", help="Read-back verification after writing"),
    ] = None,
    selector: Annotated[
        str | None,
        typer.Option("--selector", help="Data partition selector: last, largest or label"),
    ] = None,
    yes: Annotated[
        bool,
        typer.Option("--yes", "-y", help="Skip the flash confirmation prompt"),
    ] = False,
    json_output: Annotated[
        bool,
        typer.Option("--json", help="Print the run report as JSON"),
    ] = False,
) -> None:
    """Flash a Batocera image, repair the SHARE partition and copy BIOS/ROMs.

    The card on --disk is overwritten after confirmation. Declining the
    confirmation skips the write; repair and copies still run against the
    card as it is.
    """
    settings = get_settings()
    out = err_console if json_output else console

    selector_name = selector or settings.partition_selector
    try:
        data_selector = get_selector(selector_name, label=settings.share_label)
    except ValueError as e:
        out.print(f"[red]{escape(str(e))}[/red]")
        raise typer.Exit(code=2) from None

    backend = _load_backend()
    request = ProvisionRequest(
        disk_index=disk,
        work_dir=workdir or settings.work_dir,
        image_path=image,
        image_url=url,
        clear_work_dir=settings.clear_work_dir if clear is None else clear,
        bios_path=bios,
        rom_path=roms,
        mount_designator=drive_letter or settings.mount_designator,
        second_card=second_card,
        expected_checksum=sha256,
        verification_mode=verify or VerificationMode(settings.verification_mode),
        share_label=settings.share_label,
    )
    provisioner = Provisioner(
        backend,
        confirm=_make_confirm(out, yes),
        wait_for_reinsert=_make_wait_for_reinsert(out),
        downloader=partial(download_image, timeout=settings.download_timeout),
        selector=data_selector,
        on_stage=None if json_output else _make_stage_printer(out),
    )

    try:
        report = provisioner.run(request)
    except InputValidationError as e:
        out.print(
            f"[red]Invalid input: {escape(e.message)}[/red]", highlight=False, soft_wrap=True
        )
        raise typer.Exit(code=2) from None
    except ProvisionError as e:
        out.print(
            f"[red]Provisioning failed: {escape(e.describe())}[/red]",
            highlight=False,
            soft_wrap=True,
        )
        if json_output:
            _print_json(
                {
                    "success": False,
                    "stage": e.stage.value if e.stage else None,
                    "error_code": e.code,
                    "error_message": e.message,
                }
            )
        raise typer.Exit(code=1) from None
    except (KeyboardInterrupt, typer.Abort):
        out.print("[yellow]Interrupted; the card may be in an undefined state[/yellow]")
        raise typer.Exit(code=EXIT_INTERRUPTED) from None

    if json_output:
        _print_json(report.to_dict())
    else:
        _print_summary(out, report)

    if not report.success:
        raise typer.Exit(code=1)


if __name__ == "__main__":
    app()
