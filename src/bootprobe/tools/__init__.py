"""Pipeline stages: build, media assembly, QEMU launch, GDB control, logs."""

from bootprobe.tools.build import BuildOrchestrator
from bootprobe.tools.gdb_bridge import (
    GDBBridge,
    DebugState,
    StopReason,
    StopInfo,
    SENTINEL_FORMAT,
)
from bootprobe.tools.logs import LogCollector
from bootprobe.tools.media import BootMediaAssembler
from bootprobe.tools.qemu_control import (
    QEMUController,
    EmulatorProcess,
)

__all__ = [
    # Build
    "BuildOrchestrator",
    # Boot media
    "BootMediaAssembler",
    # GDB Bridge
    "GDBBridge",
    "DebugState",
    "StopReason",
    "StopInfo",
    "SENTINEL_FORMAT",
    # QEMU Controller
    "QEMUController",
    "EmulatorProcess",
    # Logs
    "LogCollector",
]
