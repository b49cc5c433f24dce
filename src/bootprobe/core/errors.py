"""Error taxonomy for the harness pipeline.

Each stage raises its own error type so callers can tell failures apart
and the CLI can map them onto distinct exit codes.
"""

from typing import Optional


class HarnessError(Exception):
    """Base class for all harness failures."""

    exit_code: int = 1

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class BuildFailure(HarnessError):
    """Toolchain exited non-zero or the artifact is missing."""

    exit_code = 2

    def __init__(self, message: str, output: str = "") -> None:
        super().__init__(message)
        self.output = output

    def __str__(self) -> str:
        if self.output:
            return f"{self.message}\n{self.output}"
        return self.message


class MediaAssemblyError(HarnessError):
    """Boot media could not be assembled (missing source or I/O error)."""

    exit_code = 3


class LaunchError(HarnessError):
    """QEMU binary missing or the emulator exited immediately."""

    exit_code = 4

    def __init__(self, message: str, stderr: str = "") -> None:
        super().__init__(message)
        self.stderr = stderr

    def __str__(self) -> str:
        if self.stderr:
            return f"{self.message}\n{self.stderr}"
        return self.message


class VerificationTimeout(HarnessError):
    """Breakpoint was not reached within the caller-imposed bound."""

    exit_code = 5

    def __init__(self, symbol: str, timeout: Optional[float]) -> None:
        super().__init__(f"Breakpoint '{symbol}' not reached within {timeout}s")
        self.symbol = symbol
        self.timeout = timeout


class StubConnectionError(HarnessError, ConnectionError):
    """Debug stub is not listening yet.

    Usually a startup race; callers may retry with backoff.
    """

    exit_code = 6


class ProtocolError(HarnessError):
    """GDB returned an error or a malformed record."""

    exit_code = 7


class ConnectionLost(HarnessError):
    """Target went away while a debug session was active."""

    exit_code = 8


class SymbolNotFound(HarnessError, KeyError):
    """Symbol is absent from (or ambiguous in) the kernel symbol table."""

    exit_code = 9

    def __str__(self) -> str:
        return self.message
