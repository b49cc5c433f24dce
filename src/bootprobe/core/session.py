"""Harness session combining build, boot media, QEMU and GDB."""

import asyncio
import logging
import sys
from dataclasses import dataclass, field
from pathlib import Path
from typing import Iterable, List, Optional, TextIO

from bootprobe.core.config import HarnessConfig
from bootprobe.core.errors import (
    HarnessError,
    MediaAssemblyError,
    ProtocolError,
    StubConnectionError,
    VerificationTimeout,
)
from bootprobe.core.types import BootMedia, BreakpointEvent, BuildArtifact, Checkpoint
from bootprobe.tools.build import BuildOrchestrator
from bootprobe.tools.gdb_bridge import GDBBridge
from bootprobe.tools.logs import LogCollector
from bootprobe.tools.media import BootMediaAssembler
from bootprobe.tools.qemu_control import EmulatorProcess, QEMUController

logger = logging.getLogger(__name__)


@dataclass
class HarnessSession:
    """One build → assemble → launch → verify run.

    Owns the emulator process and hands references to each GDB attach
    cycle and to the log collector. Stages fail fast: an error in one
    stage prevents all later ones.

    Example:
        async with HarnessSession(HarnessConfig.from_env()) as session:
            session.build()
            session.assemble(Path("target/x86_64-unknown-uefi/debug/vitros.efi"))
            await session.launch()
            event = await session.verify(BOOT_COMPLETE, timeout=30)
    """

    config: HarnessConfig
    sentinel_stream: TextIO = field(default_factory=lambda: sys.stdout)
    attach_retries: int = 20
    attach_backoff: float = 0.1
    attach_max_backoff: float = 2.0

    # Internal state (not init params)
    artifact: Optional[BuildArtifact] = field(default=None, init=False)
    media: Optional[BootMedia] = field(default=None, init=False)
    qemu: Optional[QEMUController] = field(default=None, init=False)
    collector: LogCollector = field(init=False)

    def __post_init__(self) -> None:
        self.collector = LogCollector(self.config.launch)

    # === Pipeline Stages ===

    def build(self) -> BuildArtifact:
        """Build the kernel.

        Raises:
            BuildFailure: If the build fails
        """
        self.artifact = BuildOrchestrator(self.config.build).build()
        return self.artifact

    def use_artifact(self, path: Path) -> BuildArtifact:
        """Use an already-built kernel instead of building."""
        self.artifact = BuildArtifact(path=Path(path), config=self.config.build)
        return self.artifact

    def assemble(self, bootloader: Optional[Path] = None) -> BootMedia:
        """Assemble boot media from the bootloader and the built kernel.

        Raises:
            MediaAssemblyError: If an input is missing or a copy fails
        """
        bootloader = bootloader or self.config.bootloader
        if bootloader is None:
            raise MediaAssemblyError("No bootloader given")
        if self.artifact is None:
            raise MediaAssemblyError("No kernel artifact; build first")
        assembler = BootMediaAssembler(self.config.media_dir)
        self.media = assembler.assemble(bootloader, self.artifact.path)
        return self.media

    async def launch(self) -> EmulatorProcess:
        """Launch QEMU on the assembled media.

        Raises:
            LaunchError: If QEMU is missing or exits immediately
        """
        if self.media is None:
            raise HarnessError("No boot media; assemble first")
        self.qemu = QEMUController(self.config.launch, collector=self.collector)
        return await self.qemu.start(self.media.root)

    @property
    def emulator(self) -> Optional[EmulatorProcess]:
        return self.qemu.emulator if self.qemu else None

    def adopt_emulator(self) -> Optional[EmulatorProcess]:
        """Watch the QEMU instance recorded in the pid marker.

        For verifying against an instance launched by an earlier run.
        """
        self.qemu = QEMUController(self.config.launch, collector=self.collector)
        return self.qemu.adopt()

    # === Verification ===

    async def attach(self) -> GDBBridge:
        """Open a debug session, retrying while the stub starts up.

        Raises:
            StubConnectionError: If the stub never becomes reachable
        """
        if self.artifact is None:
            raise HarnessError("No kernel artifact to load symbols from")

        delay = self.attach_backoff
        for attempt in range(1, self.attach_retries + 1):
            bridge = GDBBridge(
                self.artifact,
                gdb_path=self.config.gdb_path,
                emulator=self.emulator,
                sentinel_stream=self.sentinel_stream,
            )
            try:
                await bridge.connect(port=self.config.launch.gdb_port)
                return bridge
            except StubConnectionError as e:
                if attempt == self.attach_retries:
                    raise
                logger.debug(f"Attach attempt {attempt} failed: {e}; retrying in {delay:.2f}s")
                await asyncio.sleep(delay)
                delay = min(delay * 2, self.attach_max_backoff)
        raise StubConnectionError("No attach attempts made")

    async def verify(self, checkpoint: Checkpoint, timeout: Optional[float] = None) -> BreakpointEvent:
        """Verify one checkpoint in its own attach cycle.

        Breaks on the checkpoint symbol, resumes, waits for the halt, emits
        the sentinel and detaches. QEMU keeps running in every outcome.

        A symbol absent from the kernel (its code compiled out by a disabled
        feature) can never be reached: with a ``timeout`` the target runs for
        the bound without a breakpoint and the result is a timeout.

        Raises:
            VerificationTimeout: If the symbol is not reached within ``timeout``
            SymbolNotFound: If the symbol is ambiguous, or absent with no
                ``timeout`` to bound the wait
            ConnectionLost: If QEMU goes away while waiting
        """
        bridge = await self.attach()
        try:
            event: Optional[BreakpointEvent] = None
            if timeout is not None and not bridge.artifact.symbols.candidates(checkpoint.symbol):
                logger.warning(
                    f"{checkpoint.symbol} is not in the kernel (feature disabled?); "
                    f"running for {timeout}s without a breakpoint"
                )
            else:
                event = await bridge.set_breakpoint(checkpoint.symbol, checkpoint.sentinel)
            await bridge.resume()
            try:
                stop = await asyncio.wait_for(bridge.await_halt(), timeout)
            except asyncio.TimeoutError:
                raise VerificationTimeout(checkpoint.symbol, timeout)
            if event is None or stop.address != event.address:
                raise ProtocolError(
                    f"Unexpected halt at 0x{stop.address:x} ({stop.reason.value}) "
                    f"while waiting for {checkpoint.symbol}"
                )
            bridge.emit_sentinel(checkpoint.sentinel)
            return event
        finally:
            await bridge.disconnect()

    async def verify_all(
        self,
        checkpoints: Optional[Iterable[Checkpoint]] = None,
        timeout: Optional[float] = None,
    ) -> List[BreakpointEvent]:
        """Verify checkpoints in order, one attach cycle each."""
        if checkpoints is None:
            checkpoints = self.config.checkpoints
        return [await self.verify(c, timeout) for c in checkpoints]

    async def run(self, timeout: Optional[float] = None) -> List[BreakpointEvent]:
        """Run the whole pipeline.

        Verification only happens when the gdbstub is enabled; otherwise the
        kernel is just booted.
        """
        self.build()
        self.assemble()
        await self.launch()
        if not self.config.launch.gdb_stub:
            logger.info("GDB stub disabled; skipping verification")
            return []
        return await self.verify_all(timeout=timeout)

    # === Lifecycle ===

    async def close(self) -> None:
        """Release the session.

        QEMU is left running for manual follow-up unless
        ``terminate_on_exit`` is set.
        """
        if self.qemu is None:
            return
        if self.config.terminate_on_exit:
            await self.qemu.stop()
        else:
            self.qemu.release()
        self.qemu = None

    # === Context Manager ===

    async def __aenter__(self) -> "HarnessSession":
        return self

    async def __aexit__(self, exc_type: object, exc_val: object, exc_tb: object) -> None:
        await self.close()
