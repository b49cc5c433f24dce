"""GDB Machine Interface bridge to QEMU's gdbstub."""

import asyncio
import logging
import sys
import time
from collections import deque
from dataclasses import dataclass
from enum import Enum
from typing import Any, Deque, Dict, List, Optional, Set, TextIO

from pygdbmi.gdbcontroller import GdbController

from bootprobe.core.errors import (
    ConnectionLost,
    HarnessError,
    ProtocolError,
    StubConnectionError,
)
from bootprobe.core.types import BreakpointEvent, BuildArtifact
from bootprobe.tools.qemu_control import EmulatorProcess

logger = logging.getLogger(__name__)

SENTINEL_FORMAT = "[SENTINEL] {label}"

# Stream output GDB prints when the remote side goes away
_LOST_MARKERS = (
    "Remote connection closed",
    "Remote communication error",
    "Connection reset by peer",
)


class DebugState(Enum):
    """Connection state of a debug session."""
    DISCONNECTED = "disconnected"
    CONNECTED = "connected"
    RUNNING = "running"
    HALTED = "halted"


class StopReason(Enum):
    """Reasons why execution stopped."""
    BREAKPOINT = "breakpoint-hit"
    SIGNAL = "signal"
    STEP = "end-stepping-range"
    EXITED = "exited"
    EXITED_NORMALLY = "exited-normally"
    EXITED_SIGNALLED = "exited-signalled"


@dataclass
class StopInfo:
    """Information about why execution stopped."""
    reason: StopReason
    address: int
    symbol: Optional[str] = None
    signal_name: Optional[str] = None
    breakpoint_number: Optional[int] = None


class GDBBridge:
    """Remote debug controller speaking GDB/MI.

    One bridge covers one attach cycle: connect, install hardware
    breakpoints, resume, await halts, emit sentinels, detach. Detaching
    leaves QEMU running, so several bridges can attach one after another.

    Example:
        gdb = GDBBridge(artifact, gdb_path="gdb")
        await gdb.connect(port=1234)
        await gdb.set_breakpoint("boot_complete", sentinel="BOOT_COMPLETE")
        await gdb.resume()
        stop = await gdb.await_halt()
        gdb.emit_sentinel("BOOT_COMPLETE")
        await gdb.disconnect()
    """

    def __init__(
        self,
        artifact: BuildArtifact,
        gdb_path: str = "gdb",
        emulator: Optional[EmulatorProcess] = None,
        sentinel_stream: Optional[TextIO] = None,
        poll_interval: float = 0.05,
        command_timeout: float = 10.0,
    ) -> None:
        """Initialize GDB bridge.

        Args:
            artifact: Kernel artifact providing symbols
            gdb_path: Path to GDB executable
            emulator: Emulator to watch while waiting for halts
            sentinel_stream: Where sentinels are written (default: stdout)
            poll_interval: Seconds between polls while the target runs
            command_timeout: Seconds to wait for a command's result record
        """
        self.artifact = artifact
        self.gdb_path = gdb_path
        self.emulator = emulator
        self.sentinel_stream = sentinel_stream or sys.stdout
        self.poll_interval = poll_interval
        self.command_timeout = command_timeout

        self.gdb: Optional[GdbController] = None
        self.state = DebugState.DISCONNECTED
        self.breakpoints: Dict[int, BreakpointEvent] = {}
        self.halts: List[StopInfo] = []
        self.last_halt_address: Optional[int] = None
        self._records: Deque[Dict[str, Any]] = deque()
        self._emitted: Set[str] = set()
        self._token = 0

    # === Lifecycle Methods ===

    async def connect(self, host: str = "localhost", port: int = 1234) -> None:
        """Attach to the remote target.

        Raises:
            StubConnectionError: If the stub is not listening
            ProtocolError: If symbols cannot be loaded
        """
        if self.state is not DebugState.DISCONNECTED:
            raise ProtocolError(f"Cannot connect while {self.state.value}")

        try:
            self.gdb = GdbController([self.gdb_path, "--nx", "--quiet", "--interpreter=mi3"])
        except ValueError as e:
            raise HarnessError(f"GDB not found at '{self.gdb_path}': {e}")

        self._records.clear()
        self.breakpoints.clear()
        self.halts.clear()
        self._emitted.clear()
        self.last_halt_address = None

        try:
            record = await self._command(f"-file-exec-and-symbols {self.artifact.path}")
            if record.get("message") == "error":
                raise ProtocolError(f"Failed to load symbols: {self._error_text(record)}")

            record = await self._command(f"-target-select remote {host}:{port}")
            if record.get("message") == "error":
                raise StubConnectionError(
                    f"Debug stub not reachable at {host}:{port}: {self._error_text(record)}"
                )
        except HarnessError:
            self._exit_gdb()
            raise

        # The halt reported while attaching is not a breakpoint notification
        self._records.clear()
        self.state = DebugState.CONNECTED
        logger.info(f"Connected to {host}:{port}")

    async def disconnect(self) -> None:
        """Detach from the target without stopping QEMU."""
        if self.gdb is None:
            self.state = DebugState.DISCONNECTED
            return

        try:
            if self.state is DebugState.RUNNING:
                await self._command("-exec-interrupt")
                await self._wait_stopped(self.command_timeout)
            if self.state is not DebugState.DISCONNECTED:
                await self._command("-target-detach")
                logger.info("Detached from target")
        except ConnectionLost:
            logger.debug("Target already gone while detaching")
        except ProtocolError as e:
            logger.warning(f"Error while detaching: {e}")
        finally:
            self._exit_gdb()
            self.state = DebugState.DISCONNECTED
            self.breakpoints.clear()
            self._records.clear()

    @property
    def connected(self) -> bool:
        return self.state is not DebugState.DISCONNECTED

    # === Breakpoints ===

    async def set_breakpoint(self, symbol: str, sentinel: Optional[str] = None) -> BreakpointEvent:
        """Install a hardware breakpoint on a symbol.

        Hardware breakpoints trap on instruction fetch, so they work before
        the kernel's pages are mapped.

        Args:
            symbol: Kernel symbol to break on
            sentinel: Sentinel label associated with this breakpoint

        Returns:
            BreakpointEvent for the installed breakpoint

        Raises:
            SymbolNotFound: If the symbol is not in the artifact
            ProtocolError: If GDB rejects the breakpoint
        """
        self._ensure_halted()
        address = self.artifact.symbols.resolve(symbol)
        record = await self._command(f"-break-insert -h *0x{address:x}")
        if record.get("message") != "done":
            raise ProtocolError(
                f"Failed to set breakpoint at {symbol}: {self._error_text(record)}"
            )

        bkpt = (record.get("payload") or {}).get("bkpt")
        if not bkpt or "number" not in bkpt:
            raise ProtocolError(f"Malformed breakpoint record: {record}")

        event = BreakpointEvent(
            symbol=symbol,
            address=address,
            sentinel=sentinel,
            number=int(bkpt["number"]),
        )
        self.breakpoints[event.number] = event
        logger.info(f"Hardware breakpoint {event.number} at {symbol} (0x{address:x})")
        return event

    # === Execution Control ===

    async def resume(self) -> None:
        """Continue execution. Returns once GDB acknowledges."""
        self._ensure_halted()
        record = await self._command("-exec-continue")
        if record.get("message") != "running":
            raise ProtocolError(f"Failed to resume: {self._error_text(record)}")
        self.state = DebugState.RUNNING
        logger.debug("Target running")

    async def await_halt(self) -> StopInfo:
        """Wait until the target traps.

        Blocks indefinitely; wrap in ``asyncio.wait_for`` for a bound.
        Each halt is returned exactly once, in the order it happened.

        Raises:
            ConnectionLost: If the target or GDB goes away
            ProtocolError: On error results or malformed stop records
        """
        if self.state is not DebugState.RUNNING:
            raise ProtocolError(f"Cannot await halt while {self.state.value}")

        while True:
            while self._records:
                stop = self._handle_async(self._records.popleft())
                if stop is not None:
                    return stop
            self._ensure_alive()
            self._records.extend(self._read(0))
            if not self._records:
                await asyncio.sleep(self.poll_interval)

    # === Sentinels ===

    def emit_sentinel(self, label: str) -> bool:
        """Write a greppable marker for ``label``.

        At most once per label per attach cycle.

        Returns:
            True if the sentinel was written
        """
        if label in self._emitted:
            logger.debug(f"Sentinel {label} already emitted in this session")
            return False
        self._emitted.add(label)
        self.sentinel_stream.write(SENTINEL_FORMAT.format(label=label) + "\n")
        self.sentinel_stream.flush()
        logger.info(f"Sentinel {label}")
        return True

    # === Internal Methods ===

    async def _command(self, command: str, timeout: Optional[float] = None) -> Dict[str, Any]:
        """Send a tokenized command and return its result record.

        Other records read meanwhile are queued for ``await_halt``. Polls
        without blocking so the event loop keeps running.
        """
        if not self.gdb:
            raise ProtocolError("GDB not started")
        self._token += 1
        token = self._token
        self.gdb.write(f"{token}{command}", read_response=False)

        deadline = time.monotonic() + (timeout or self.command_timeout)
        while True:
            records = self._read(0)
            for i, record in enumerate(records):
                if record.get("type") == "result" and record.get("token") == token:
                    self._records.extend(records[i + 1:])
                    self._check_lost(record)
                    return record
                self._records.append(record)
            self._ensure_alive()
            if time.monotonic() >= deadline:
                raise ProtocolError(f"No response to '{command}'")
            if not records:
                await asyncio.sleep(self.poll_interval)

    def _read(self, timeout: float) -> List[Dict[str, Any]]:
        assert self.gdb is not None
        return self.gdb.get_gdb_response(timeout_sec=timeout, raise_error_on_timeout=False)

    async def _wait_stopped(self, timeout: float) -> None:
        """Consume records until a stop arrives (used when interrupting)."""
        deadline = time.monotonic() + timeout
        while time.monotonic() < deadline:
            while self._records:
                record = self._records.popleft()
                self._check_lost(record)
                if record.get("type") == "notify" and record.get("message") == "stopped":
                    self.state = DebugState.HALTED
                    return
            records = self._read(0)
            if not records:
                await asyncio.sleep(self.poll_interval)
            self._records.extend(records)
        raise ProtocolError("Target did not stop after interrupt")

    def _handle_async(self, record: Dict[str, Any]) -> Optional[StopInfo]:
        self._check_lost(record)
        kind = record.get("type")
        message = record.get("message")

        if kind == "result" and message == "error":
            raise ProtocolError(self._error_text(record))
        if kind != "notify" or message != "stopped":
            return None

        payload = record.get("payload") or {}
        reason_str = payload.get("reason", "signal")
        if reason_str.startswith("exited"):
            self.state = DebugState.DISCONNECTED
            raise ConnectionLost(f"Target exited ({reason_str})")
        try:
            reason = StopReason(reason_str)
        except ValueError:
            reason = StopReason.SIGNAL

        frame = payload.get("frame") or {}
        if "addr" not in frame:
            raise ProtocolError(f"Malformed stop record: {record}")
        address = self._parse_int(frame["addr"])

        number = None
        symbol = frame.get("func") if frame.get("func") != "??" else None
        if payload.get("bkptno") is not None:
            number = int(payload["bkptno"])
            event = self.breakpoints.get(number)
            if event is not None:
                event.hits += 1
                symbol = event.symbol
        if symbol is None:
            symbol = self.artifact.symbols.lookup(address)

        stop = StopInfo(
            reason=reason,
            address=address,
            symbol=symbol,
            signal_name=payload.get("signal-name"),
            breakpoint_number=number,
        )
        self.state = DebugState.HALTED
        self.last_halt_address = address
        self.halts.append(stop)
        logger.info(f"Halted: {reason.value} at 0x{address:x} ({symbol or '??'})")
        return stop

    def _check_lost(self, record: Dict[str, Any]) -> None:
        kind = record.get("type")
        payload = record.get("payload")
        text = ""
        if kind in ("console", "log", "target") and isinstance(payload, str):
            text = payload
        elif kind == "result" and record.get("message") == "error":
            text = self._error_text(record)
        lost = any(marker in text for marker in _LOST_MARKERS)
        if kind == "notify" and record.get("message") == "thread-group-exited":
            lost = True
        if lost:
            self.state = DebugState.DISCONNECTED
            raise ConnectionLost(f"Connection to target lost: {text.strip() or 'target exited'}")

    def _ensure_alive(self) -> None:
        if self.emulator is not None and not self.emulator.running:
            self.state = DebugState.DISCONNECTED
            status = self.emulator.returncode
            detail = f" with status {status}" if status is not None else ""
            raise ConnectionLost(f"QEMU (PID {self.emulator.pid}) exited{detail}")
        if self.gdb is not None and self.gdb.gdb_process.poll() is not None:
            self.state = DebugState.DISCONNECTED
            raise ConnectionLost("GDB exited")

    def _ensure_halted(self) -> None:
        if self.state not in (DebugState.CONNECTED, DebugState.HALTED):
            raise ProtocolError(f"Target must be halted (currently {self.state.value})")

    def _exit_gdb(self) -> None:
        if self.gdb:
            try:
                self.gdb.exit()
            except OSError as e:
                logger.debug(f"Error stopping GDB: {e}")
            self.gdb = None

    def _error_text(self, record: Dict[str, Any]) -> str:
        payload = record.get("payload") or {}
        if isinstance(payload, dict):
            return str(payload.get("msg", payload))
        return str(payload)

    def _parse_int(self, value: str) -> int:
        """Parse integer from GDB response (handles 0x prefix and annotations)."""
        if not value:
            return 0
        value = value.strip()
        # Handle values like "0x452 <boot_complete+4>"
        if " " in value:
            value = value.split()[0]
        try:
            if value.startswith("0x") or value.startswith("0X"):
                return int(value, 16)
            return int(value)
        except ValueError:
            raise ProtocolError(f"Malformed address: {value}")

    # === Context Manager ===

    async def __aenter__(self) -> "GDBBridge":
        return self

    async def __aexit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        await self.disconnect()
