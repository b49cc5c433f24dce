"""Pytest fixtures for bootprobe tests."""

import re
import shutil
import subprocess
from collections import deque
from pathlib import Path
from typing import Any, Deque, Dict, List, Optional, Tuple
from unittest.mock import Mock, patch

import pytest

from bootprobe.core.symbols import SymbolTable
from bootprobe.core.types import BuildArtifact

# Addresses used by the fake kernel symbol table
BOOT_COMPLETE_ADDR = 0x200000
TIMER_ADDR = 0x201000
SWITCH_ADDR = 0x202000

KERNEL_SYMBOLS = {
    "boot_complete": BOOT_COMPLETE_ADDR,
    "_ZN13vitros_kernel3idt19timer_handler_inner17h0123456789abcdefE": TIMER_ADDR,
    "_ZN13vitros_kernel5sched7context14switch_context17hfedcba9876543210E": SWITCH_ADDR,
    "kernel_main": 0x203000,
}

# Minimal C stand-in for the kernel: one no_mangle entry point, one function
# under a legacy Rust symbol name, and a data object
KERNEL_SOURCE = """\
void boot_complete(void) {}

void timer_handler_inner(void)
    __asm__("_ZN13vitros_kernel3idt19timer_handler_inner17h0123456789abcdefE");
void timer_handler_inner(void) {}

int tick_count = 1;

int main(void)
{
    boot_complete();
    timer_handler_inner();
    return tick_count;
}
"""


def _compile_kernel(workdir: Path) -> Optional[Path]:
    """Compile KERNEL_SOURCE with the host C compiler. Returns the ELF, or None."""
    compiler = shutil.which("cc") or shutil.which("gcc") or shutil.which("clang")
    if compiler is None:
        return None
    source = workdir / "kernel.c"
    source.write_text(KERNEL_SOURCE)
    output = workdir / "kernel"
    try:
        result = subprocess.run(
            [compiler, "-O0", "-o", str(output), str(source)],
            capture_output=True,
            timeout=60,
        )
    except (subprocess.TimeoutExpired, OSError):
        return None
    if result.returncode != 0 or not output.exists():
        return None
    if output.read_bytes()[:4] != b"\x7fELF":
        return None
    return output


def stopped_record(
    address: int,
    bkptno: Optional[int] = None,
    reason: str = "breakpoint-hit",
    func: str = "??",
) -> Dict[str, Any]:
    """Build an MI ``*stopped`` notification as pygdbmi returns it."""
    payload: Dict[str, Any] = {
        "reason": reason,
        "frame": {"addr": f"0x{address:016x}", "func": func},
    }
    if bkptno is not None:
        payload["bkptno"] = str(bkptno)
    return {"type": "notify", "message": "stopped", "payload": payload,
            "token": None, "stream": "stdout"}


def console_record(text: str) -> Dict[str, Any]:
    return {"type": "console", "message": None, "payload": text,
            "token": None, "stream": "stdout"}


class FakeGdb:
    """Scripted stand-in for pygdbmi's GdbController.

    Every command gets a token-matched result record. Default results can be
    overridden once per command with ``respond``; records that GDB would print
    later (stop notifications) are queued with ``push``.
    """

    def __init__(self) -> None:
        self.written: List[str] = []
        self.pending: Deque[List[Dict[str, Any]]] = deque()
        self.overrides: Dict[str, Deque[Tuple[str, Any, List[Dict[str, Any]]]]] = {}
        self.gdb_process = Mock()
        self.gdb_process.poll.return_value = None
        self.exit = Mock()
        self._bkpt = 0

    def respond(self, command: str, message: str = "done", payload: Any = None,
                after: Optional[List[Dict[str, Any]]] = None) -> None:
        self.overrides.setdefault(command, deque()).append((message, payload, after or []))

    def push(self, *records: Dict[str, Any]) -> None:
        self.pending.append(list(records))

    def commands(self, name: str) -> List[str]:
        return [c for c in self.written if c.split()[0] == name]

    def _default(self, name: str) -> Tuple[str, Any, List[Dict[str, Any]]]:
        if name == "-target-select":
            return "connected", None, []
        if name == "-break-insert":
            self._bkpt += 1
            return "done", {"bkpt": {"number": str(self._bkpt), "type": "hw breakpoint"}}, []
        if name == "-exec-continue":
            return "running", None, []
        if name == "-exec-interrupt":
            return "done", None, [stopped_record(0x1000, reason="signal-received")]
        return "done", None, []

    def write(self, command: str, read_response: bool = True, **kwargs: Any) -> None:
        match = re.match(r"(\d+)(.*)", command)
        assert match, f"untokenized command: {command}"
        token, body = int(match.group(1)), match.group(2)
        self.written.append(body)

        name = body.split()[0]
        queue = self.overrides.get(name)
        if queue:
            message, payload, after = queue.popleft()
        else:
            message, payload, after = self._default(name)
        result = {"type": "result", "message": message, "payload": payload,
                  "token": token, "stream": "stdout"}
        self.pending.append([result] + list(after))

    def get_gdb_response(self, timeout_sec: float = 1, raise_error_on_timeout: bool = True,
                         **kwargs: Any) -> List[Dict[str, Any]]:
        if self.pending:
            return self.pending.popleft()
        return []


@pytest.fixture
def fake_gdb():
    """Patch GdbController so every bridge talks to one FakeGdb."""
    fake = FakeGdb()
    with patch("bootprobe.tools.gdb_bridge.GdbController", return_value=fake) as ctor:
        fake.controller = ctor
        yield fake


@pytest.fixture
def symbol_table() -> SymbolTable:
    return SymbolTable(KERNEL_SYMBOLS)


@pytest.fixture
def kernel_artifact(tmp_path: Path, symbol_table: SymbolTable) -> BuildArtifact:
    """Kernel artifact on disk with a preloaded symbol table."""
    path = tmp_path / "vitros-kernel"
    path.write_bytes(b"\x7fELF kernel")
    return BuildArtifact(path=path, symbol_table=symbol_table)


@pytest.fixture
def bootloader(tmp_path: Path) -> Path:
    path = tmp_path / "vitros.efi"
    path.write_bytes(b"MZ bootloader")
    return path


@pytest.fixture(scope="session")
def compiled_kernel(tmp_path_factory) -> Path:
    """ELF built from KERNEL_SOURCE.

    Skips the test if no C compiler producing ELF is available.
    """
    path = _compile_kernel(tmp_path_factory.mktemp("kernel"))
    if path is None:
        pytest.skip("No C compiler producing ELF binaries available")
    return path
