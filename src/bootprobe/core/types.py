"""Shared data types for the boot harness."""

from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, FrozenSet, List, Optional

from bootprobe.core.symbols import SymbolTable


@dataclass
class BuildConfig:
    """Kernel build configuration.

    Attributes:
        target: Target triple passed to cargo
        features: Enabled cargo feature flags
        package: Cargo package (also the artifact file name)
        toolchain: rustup toolchain channel, or None for the default
        profile: Cargo profile directory ("debug" or "release")
        workspace: Directory cargo runs in
    """
    target: str = "x86_64-unknown-none"
    features: FrozenSet[str] = frozenset()
    package: str = "vitros-kernel"
    toolchain: Optional[str] = "nightly"
    profile: str = "debug"
    workspace: Path = field(default_factory=Path.cwd)

    @property
    def artifact_path(self) -> Path:
        """Predictable location of the built binary."""
        return self.workspace / "target" / self.target / self.profile / self.package


@dataclass
class BuildArtifact:
    """Kernel binary produced by a build, with its symbol table."""
    path: Path
    config: Optional[BuildConfig] = None
    symbol_table: Optional[SymbolTable] = field(default=None, repr=False)

    @property
    def symbols(self) -> SymbolTable:
        """Symbol table, read from the ELF on first use."""
        if self.symbol_table is None:
            self.symbol_table = SymbolTable.from_elf(self.path)
        return self.symbol_table


@dataclass(frozen=True)
class StatusExitDevice:
    """isa-debug-exit wiring.

    A guest write of ``code`` to ``iobase`` terminates QEMU with host exit
    status ``(code << 1) | 1``.
    """
    iobase: int = 0xF4
    iosize: int = 0x01

    def device_arg(self) -> str:
        return f"isa-debug-exit,iobase=0x{self.iobase:x},iosize=0x{self.iosize:02x}"

    @staticmethod
    def decode(returncode: int) -> Optional[int]:
        """Recover the guest-reported code from a QEMU exit status.

        Returns None for statuses the device cannot produce (even values,
        including a normal 0 exit).
        """
        if returncode <= 0 or returncode % 2 == 0:
            return None
        return returncode >> 1


@dataclass(frozen=True)
class MachineProfile:
    """Named QEMU machine variant."""
    name: str
    machine: str
    status_exit: StatusExitDevice = StatusExitDevice()


# Machine profile registry
MACHINE_PROFILES: Dict[str, MachineProfile] = {
    "q35": MachineProfile("q35", "q35", StatusExitDevice(0xF4, 0x01)),
    "pc": MachineProfile("pc", "pc", StatusExitDevice(0xF4, 0x04)),
}


def get_profile(name: str) -> MachineProfile:
    """Get a machine profile by name.

    Raises:
        ValueError: If the profile is not registered
    """
    profile = MACHINE_PROFILES.get(name.lower())
    if profile is None:
        supported = ", ".join(sorted(MACHINE_PROFILES))
        raise ValueError(f"Unknown machine profile: {name}. Supported profiles: {supported}")
    return profile


@dataclass
class LaunchConfig:
    """QEMU launch configuration.

    Attributes:
        qemu_path: QEMU executable
        memory: Guest memory size
        machine: QEMU machine type
        firmware: UEFI firmware image passed to -bios
        status_exit: isa-debug-exit device wiring
        gdb_stub: Enable the gdbstub
        gdb_wait: Hold at the first instruction until a debugger attaches
        gdb_port: gdbstub TCP port
        trace: Enable QEMU's own interrupt/reset trace log
        trace_events: Categories passed to -d
        serial_log: Transcript of the multiplexed serial/monitor chardev
        trace_log: Destination of the -d trace
        stderr_log: QEMU's own stderr
        pid_file: Marker recording the running instance
        no_reboot: Pass -no-reboot
        no_shutdown: Pass -no-shutdown
        display: Value for -display (QEMU default if None)
        extra_args: Additional QEMU arguments
    """
    qemu_path: str = "qemu-system-x86_64"
    memory: str = "4G"
    machine: str = "q35"
    firmware: Path = Path("/usr/share/ovmf/OVMF.fd")
    status_exit: StatusExitDevice = StatusExitDevice()
    gdb_stub: bool = False
    gdb_wait: bool = False
    gdb_port: int = 1234
    trace: bool = False
    trace_events: str = "int,cpu_reset"
    serial_log: Path = Path("serial.log")
    trace_log: Path = Path("qemu_debug.log")
    stderr_log: Path = Path("qemu.stderr.log")
    pid_file: Path = Path("qemu.pid")
    no_reboot: bool = True
    no_shutdown: bool = True
    display: Optional[str] = None
    extra_args: List[str] = field(default_factory=list)

    @classmethod
    def for_profile(cls, profile: MachineProfile, **kwargs: object) -> "LaunchConfig":
        """Build a launch config from a machine profile."""
        return cls(machine=profile.machine, status_exit=profile.status_exit, **kwargs)  # type: ignore[arg-type]


@dataclass
class BootMedia:
    """Assembled FAT boot tree."""
    root: Path
    loader: Path
    kernel: Path


@dataclass
class BreakpointEvent:
    """A symbol breakpoint installed during a verification session."""
    symbol: str
    address: int
    sentinel: Optional[str] = None
    number: Optional[int] = None
    hits: int = 0


@dataclass(frozen=True)
class Checkpoint:
    """Kernel lifecycle event verified by breaking on a symbol."""
    symbol: str
    sentinel: str


BOOT_COMPLETE = Checkpoint("boot_complete", "BOOT_COMPLETE")
TIMER_INTERRUPT = Checkpoint("timer_handler_inner", "TIMER_INTERRUPT")
TASK_SWITCH = Checkpoint("switch_context", "TASK_SWITCH")

CHECKPOINTS: Dict[str, Checkpoint] = {
    c.sentinel: c for c in (BOOT_COMPLETE, TIMER_INTERRUPT, TASK_SWITCH)
}
