"""Harness configuration.

Built once at startup, either from the environment (the same variables the
kernel's launch script understands) or from CLI flags.
"""

import os
from dataclasses import dataclass, field, replace
from enum import Enum
from pathlib import Path
from typing import FrozenSet, Iterable, List, Mapping, Optional

from bootprobe.core.types import (
    BOOT_COMPLETE,
    BuildConfig,
    Checkpoint,
    LaunchConfig,
    get_profile,
)


class HarnessOption(Enum):
    """Recognized environment options."""
    ENABLE_GDB = "ENABLE_GDB"
    GDB_WAIT = "GDB_WAIT"
    QEMU_DEBUG_LOG = "QEMU_DEBUG_LOG"
    KERNEL_FEATURES = "KERNEL_FEATURES"


def parse_flag(value: Optional[str]) -> bool:
    """Interpret an environment toggle. Only ``1``/``true``/``yes``/``on`` enable it."""
    if value is None:
        return False
    return value.strip().lower() in ("1", "true", "yes", "on")


def parse_features(value: Optional[str]) -> FrozenSet[str]:
    """Split a comma/space separated feature list."""
    if not value:
        return frozenset()
    return frozenset(f for f in value.replace(",", " ").split() if f)


@dataclass
class HarnessConfig:
    """Top-level configuration for one harness run.

    Attributes:
        workspace: Kernel workspace root; relative paths resolve against it
        build: Kernel build settings
        launch: QEMU launch settings
        media_dir: Boot media root
        bootloader: Built EFI bootloader to install
        gdb_path: GDB executable used for the remote session
        checkpoints: Checkpoints verified by a full run
        terminate_on_exit: Kill QEMU when the session closes
    """
    workspace: Path = field(default_factory=Path.cwd)
    build: BuildConfig = field(default_factory=BuildConfig)
    launch: LaunchConfig = field(default_factory=LaunchConfig)
    media_dir: Path = Path("mnt")
    bootloader: Optional[Path] = None
    gdb_path: str = "gdb"
    checkpoints: List[Checkpoint] = field(default_factory=lambda: [BOOT_COMPLETE])
    terminate_on_exit: bool = False

    def __post_init__(self) -> None:
        self.workspace = Path(self.workspace)
        self.media_dir = self._resolve(self.media_dir)
        if self.bootloader is not None:
            self.bootloader = Path(self.bootloader)
        self.build = replace(self.build, workspace=self.workspace)
        self.launch = replace(
            self.launch,
            serial_log=self._resolve(self.launch.serial_log),
            trace_log=self._resolve(self.launch.trace_log),
            stderr_log=self._resolve(self.launch.stderr_log),
            pid_file=self._resolve(self.launch.pid_file),
        )

    def _resolve(self, path: Path) -> Path:
        path = Path(path)
        return path if path.is_absolute() else self.workspace / path

    @classmethod
    def from_env(
        cls,
        environ: Optional[Mapping[str, str]] = None,
        workspace: Optional[Path] = None,
        profile: str = "q35",
        checkpoints: Optional[Iterable[Checkpoint]] = None,
    ) -> "HarnessConfig":
        """Build a config from the recognized environment options.

        Unset options take their defaults: stub off, no wait, no trace,
        no features.
        """
        env = os.environ if environ is None else environ
        machine = get_profile(profile)
        launch = LaunchConfig.for_profile(
            machine,
            gdb_stub=parse_flag(env.get(HarnessOption.ENABLE_GDB.value)),
            gdb_wait=parse_flag(env.get(HarnessOption.GDB_WAIT.value)),
            trace=parse_flag(env.get(HarnessOption.QEMU_DEBUG_LOG.value)),
        )
        build = BuildConfig(
            features=parse_features(env.get(HarnessOption.KERNEL_FEATURES.value)),
        )
        config = cls(
            workspace=workspace or Path.cwd(),
            build=build,
            launch=launch,
        )
        if checkpoints is not None:
            config.checkpoints = list(checkpoints)
        return config
