"""Command-line interface for bootprobe."""

import asyncio
import logging
import os
import shutil
import subprocess
import sys
from pathlib import Path
from typing import List, NoReturn, Optional

import typer
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from bootprobe.core.config import HarnessConfig, parse_features
from bootprobe.core.errors import HarnessError
from bootprobe.core.types import (
    CHECKPOINTS,
    BuildConfig,
    Checkpoint,
    LaunchConfig,
    get_profile,
)

app = typer.Typer(
    name="bootprobe",
    help="Build, boot and verify the kernel under QEMU/GDB",
)
console = Console()
err_console = Console(stderr=True)

logger = logging.getLogger(__name__)


# ============================================================================
# Helpers
# ============================================================================


def _setup_logging(verbose: bool) -> None:
    """Configure logging to stderr (stdout carries sentinels)."""
    log_level = logging.DEBUG if verbose else logging.INFO
    log_level_str = os.environ.get("BOOTPROBE_LOG_LEVEL", "").upper()
    if log_level_str in ("DEBUG", "INFO", "WARNING", "ERROR"):
        log_level = getattr(logging, log_level_str)

    log_file = os.environ.get("BOOTPROBE_LOG_FILE")
    if log_file:
        handler: logging.Handler = logging.FileHandler(log_file)
    else:
        handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(
        logging.Formatter("%(asctime)s - %(name)s - %(levelname)s - %(message)s")
    )
    root = logging.getLogger()
    root.handlers.clear()
    root.addHandler(handler)
    root.setLevel(log_level)


def _parse_checkpoint(value: str) -> Checkpoint:
    """Parse ``BOOT_COMPLETE`` or ``symbol=SENTINEL``."""
    if "=" in value:
        symbol, sentinel = value.split("=", 1)
        if not symbol or not sentinel:
            raise typer.BadParameter(f"Invalid checkpoint: {value}")
        return Checkpoint(symbol, sentinel)
    checkpoint = CHECKPOINTS.get(value.upper())
    if checkpoint is None:
        known = ", ".join(sorted(CHECKPOINTS))
        raise typer.BadParameter(
            f"Unknown checkpoint: {value}. Use one of {known} or symbol=SENTINEL"
        )
    return checkpoint


def _make_config(
    workspace: Path,
    features: Optional[str],
    release: bool,
    profile: str,
    memory: str,
    firmware: Path,
    qemu_path: str,
    gdb_path: str,
    gdb: bool,
    gdb_wait: bool,
    gdb_port: int,
    qemu_debug_log: bool,
    display: Optional[str],
    bootloader: Optional[Path] = None,
    checkpoints: Optional[List[str]] = None,
    terminate_on_exit: bool = False,
) -> HarnessConfig:
    try:
        machine = get_profile(profile)
    except ValueError as e:
        raise typer.BadParameter(str(e))

    build = BuildConfig(
        features=parse_features(features),
        profile="release" if release else "debug",
    )
    launch = LaunchConfig.for_profile(
        machine,
        qemu_path=qemu_path,
        memory=memory,
        firmware=firmware,
        gdb_stub=gdb,
        gdb_wait=gdb_wait,
        gdb_port=gdb_port,
        trace=qemu_debug_log,
        display=display,
    )
    config = HarnessConfig(
        workspace=workspace,
        build=build,
        launch=launch,
        bootloader=bootloader,
        gdb_path=gdb_path,
        terminate_on_exit=terminate_on_exit,
    )
    if checkpoints:
        config.checkpoints = [_parse_checkpoint(c) for c in checkpoints]
    return config


def _fail(e: HarnessError) -> NoReturn:
    err_console.print(f"[red]{type(e).__name__}: {e}[/red]")
    raise typer.Exit(e.exit_code)


# Options shared by several commands
WORKSPACE = typer.Option(Path("."), "--workspace", "-w", help="Kernel workspace root",
                         envvar="BOOTPROBE_WORKSPACE")
FEATURES = typer.Option(None, "--features", "-F", help="Comma-separated kernel features",
                        envvar="KERNEL_FEATURES")
RELEASE = typer.Option(False, "--release", help="Build and boot the release profile")
PROFILE = typer.Option("q35", "--profile", help="Machine profile (q35, pc)")
MEMORY = typer.Option("4G", "--memory", "-m", help="Guest memory size")
FIRMWARE = typer.Option(Path("/usr/share/ovmf/OVMF.fd"), "--firmware", help="UEFI firmware image",
                        envvar="BOOTPROBE_FIRMWARE")
QEMU_PATH = typer.Option("qemu-system-x86_64", "--qemu-path", help="Path to QEMU",
                         envvar="BOOTPROBE_QEMU_PATH")
GDB_PATH = typer.Option("gdb", "--gdb-path", help="Path to GDB executable",
                        envvar="BOOTPROBE_GDB_PATH")
GDB = typer.Option(False, "--gdb/--no-gdb", help="Enable the QEMU gdbstub", envvar="ENABLE_GDB")
GDB_WAIT = typer.Option(False, "--gdb-wait/--no-gdb-wait",
                        help="Hold at the first instruction until GDB attaches", envvar="GDB_WAIT")
GDB_PORT = typer.Option(1234, "--gdb-port", help="gdbstub TCP port")
QEMU_DEBUG_LOG = typer.Option(False, "--qemu-debug-log/--no-qemu-debug-log",
                              help="Write QEMU's interrupt/reset trace to qemu_debug.log",
                              envvar="QEMU_DEBUG_LOG")
DISPLAY = typer.Option(None, "--display", help="QEMU -display backend (e.g. none, gtk)")
BOOTLOADER = typer.Option(..., "--bootloader", "-b", help="Built EFI bootloader",
                          envvar="BOOTPROBE_BOOTLOADER")
CHECKPOINT = typer.Option(None, "--checkpoint", "-c",
                          help="Checkpoint to verify (BOOT_COMPLETE, TIMER_INTERRUPT, "
                               "TASK_SWITCH or symbol=SENTINEL); repeatable")
TIMEOUT = typer.Option(30.0, "--timeout", "-t", help="Seconds to wait for each checkpoint")
VERBOSE = typer.Option(False, "--verbose", "-v", help="Enable verbose logging")


# ============================================================================
# Pipeline Commands
# ============================================================================


@app.command()
def run(
    bootloader: Path = BOOTLOADER,
    workspace: Path = WORKSPACE,
    features: Optional[str] = FEATURES,
    release: bool = RELEASE,
    profile: str = PROFILE,
    memory: str = MEMORY,
    firmware: Path = FIRMWARE,
    qemu_path: str = QEMU_PATH,
    gdb_path: str = GDB_PATH,
    gdb: bool = GDB,
    gdb_wait: bool = GDB_WAIT,
    gdb_port: int = GDB_PORT,
    qemu_debug_log: bool = QEMU_DEBUG_LOG,
    display: Optional[str] = DISPLAY,
    checkpoint: Optional[List[str]] = CHECKPOINT,
    timeout: float = TIMEOUT,
    verbose: bool = VERBOSE,
) -> None:
    """Build the kernel, assemble boot media, launch QEMU and verify checkpoints.

    Verification runs only with --gdb. QEMU is left running afterwards;
    use `bootprobe stop` to terminate it.
    """
    from bootprobe.core.session import HarnessSession

    _setup_logging(verbose)
    config = _make_config(
        workspace, features, release, profile, memory, firmware, qemu_path,
        gdb_path, gdb, gdb_wait, gdb_port, qemu_debug_log, display,
        bootloader=bootloader, checkpoints=checkpoint,
    )

    async def run_pipeline() -> None:
        async with HarnessSession(config) as session:
            events = await session.run(timeout=timeout)
            pid = session.emulator.pid if session.emulator else None
        if events:
            table = Table(title="Verified checkpoints")
            table.add_column("Sentinel")
            table.add_column("Symbol")
            table.add_column("Address")
            for event in events:
                table.add_row(event.sentinel or "", event.symbol, f"0x{event.address:x}")
            err_console.print(table)
        err_console.print(f"[green]QEMU running (PID {pid})[/green]")

    try:
        asyncio.run(run_pipeline())
    except HarnessError as e:
        _fail(e)


@app.command()
def build(
    workspace: Path = WORKSPACE,
    features: Optional[str] = FEATURES,
    release: bool = RELEASE,
    verbose: bool = VERBOSE,
) -> None:
    """Build the kernel and print the artifact path."""
    from bootprobe.tools.build import BuildOrchestrator

    _setup_logging(verbose)
    config = BuildConfig(
        features=parse_features(features),
        profile="release" if release else "debug",
        workspace=workspace,
    )
    try:
        artifact = BuildOrchestrator(config).build()
    except HarnessError as e:
        _fail(e)
    console.print(str(artifact.path))


@app.command()
def assemble(
    bootloader: Path = BOOTLOADER,
    kernel: Path = typer.Option(..., "--kernel", "-k", help="Built kernel binary"),
    media_dir: Path = typer.Option(Path("mnt"), "--media-dir", help="Boot media root"),
    verbose: bool = VERBOSE,
) -> None:
    """Rebuild the boot media tree from a bootloader and kernel."""
    from bootprobe.tools.media import BootMediaAssembler

    _setup_logging(verbose)
    assembler = BootMediaAssembler(media_dir)
    try:
        media = assembler.assemble(bootloader, kernel)
    except HarnessError as e:
        _fail(e)
    console.print(f"{media.root} sha256={assembler.digest()}")


@app.command()
def verify(
    kernel: Path = typer.Option(..., "--kernel", "-k", help="Kernel binary for symbols"),
    workspace: Path = WORKSPACE,
    qemu_path: str = QEMU_PATH,
    gdb_path: str = GDB_PATH,
    gdb_port: int = GDB_PORT,
    checkpoint: Optional[List[str]] = CHECKPOINT,
    timeout: float = TIMEOUT,
    verbose: bool = VERBOSE,
) -> None:
    """Attach to an already running QEMU and verify checkpoints."""
    from bootprobe.core.session import HarnessSession

    _setup_logging(verbose)
    config = HarnessConfig(
        workspace=workspace,
        gdb_path=gdb_path,
        launch=LaunchConfig(qemu_path=qemu_path, gdb_stub=True, gdb_port=gdb_port),
    )
    checkpoints = [_parse_checkpoint(c) for c in checkpoint] if checkpoint else config.checkpoints

    async def run_verify() -> None:
        async with HarnessSession(config) as session:
            session.use_artifact(kernel)
            if session.adopt_emulator() is None:
                logger.info("No QEMU pid marker in workspace; exits only show up as a lost GDB link")
            await session.verify_all(checkpoints, timeout=timeout)

    try:
        asyncio.run(run_verify())
    except HarnessError as e:
        _fail(e)


@app.command()
def stop(
    workspace: Path = WORKSPACE,
    qemu_path: str = QEMU_PATH,
    verbose: bool = VERBOSE,
) -> None:
    """Terminate the QEMU instance recorded in the pid marker."""
    from bootprobe.tools.qemu_control import QEMUController

    _setup_logging(verbose)
    config = HarnessConfig(workspace=workspace, launch=LaunchConfig(qemu_path=qemu_path))
    pid = asyncio.run(QEMUController(config.launch).terminate_stale())
    if pid is None:
        console.print("[dim]No running QEMU instance[/dim]")
    else:
        console.print(f"[green]Stopped QEMU (PID {pid})[/green]")


# ============================================================================
# Diagnostics
# ============================================================================


@app.command()
def doctor(
    firmware: Path = FIRMWARE,
    qemu_path: str = QEMU_PATH,
    gdb_path: str = GDB_PATH,
) -> None:
    """Check system dependencies."""
    console.print(Panel(
        "[bold]Checking dependencies...[/bold]",
        title="[bold blue]bootprobe doctor[/bold blue]",
    ))

    all_ok = True
    for name, path in (("cargo", "cargo"), ("QEMU", qemu_path), ("GDB", gdb_path)):
        found = shutil.which(path)
        if not found:
            console.print(f"[red]✗[/red] {name} not found ({path})")
            all_ok = False
            continue
        try:
            result = subprocess.run(
                [found, "--version"],
                capture_output=True, text=True, timeout=5
            )
            version_line = result.stdout.split("\n")[0] if result.stdout else "unknown"
            console.print(f"[green]✓[/green] {name} ({version_line})")
        except (OSError, subprocess.TimeoutExpired):
            console.print(f"[green]✓[/green] {name} (at {found})")

    if firmware.is_file():
        console.print(f"[green]✓[/green] UEFI firmware ({firmware})")
    else:
        console.print(f"[red]✗[/red] UEFI firmware not found at {firmware}")
        console.print("    [dim]Install: sudo apt install ovmf[/dim]")
        all_ok = False

    console.print()
    if all_ok:
        console.print("[bold green]All required checks passed![/bold green]")
    else:
        console.print("[bold yellow]Some checks failed. See above for details.[/bold yellow]")
        raise typer.Exit(1)


@app.command()
def version() -> None:
    """Show version information."""
    from bootprobe import __version__
    console.print(f"[bold blue]bootprobe[/bold blue] v{__version__}")


if __name__ == "__main__":
    app()
