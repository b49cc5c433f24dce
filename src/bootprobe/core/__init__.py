"""Core components: configuration, data types, errors and symbols.

The pipeline session lives in :mod:`bootprobe.core.session` and is imported
from there directly.
"""

from bootprobe.core.config import HarnessConfig, HarnessOption
from bootprobe.core.errors import (
    BuildFailure,
    ConnectionLost,
    HarnessError,
    LaunchError,
    MediaAssemblyError,
    ProtocolError,
    StubConnectionError,
    SymbolNotFound,
    VerificationTimeout,
)
from bootprobe.core.symbols import SymbolTable
from bootprobe.core.types import (
    BootMedia,
    BreakpointEvent,
    BuildArtifact,
    BuildConfig,
    Checkpoint,
    LaunchConfig,
    MachineProfile,
    StatusExitDevice,
)

__all__ = [
    "HarnessConfig",
    "HarnessOption",
    "BuildFailure",
    "ConnectionLost",
    "HarnessError",
    "LaunchError",
    "MediaAssemblyError",
    "ProtocolError",
    "StubConnectionError",
    "SymbolNotFound",
    "VerificationTimeout",
    "SymbolTable",
    "BootMedia",
    "BreakpointEvent",
    "BuildArtifact",
    "BuildConfig",
    "Checkpoint",
    "LaunchConfig",
    "MachineProfile",
    "StatusExitDevice",
]
