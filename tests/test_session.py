"""Tests for HarnessSession."""

import io
from pathlib import Path
from unittest.mock import Mock, patch

import pytest

from bootprobe.core.config import HarnessConfig
from bootprobe.core.errors import (
    BuildFailure,
    ConnectionLost,
    HarnessError,
    MediaAssemblyError,
    StubConnectionError,
    SymbolNotFound,
    VerificationTimeout,
)
from bootprobe.core.session import HarnessSession
from bootprobe.core.symbols import SymbolTable
from bootprobe.core.types import (
    BOOT_COMPLETE,
    TASK_SWITCH,
    TIMER_INTERRUPT,
    Checkpoint,
    LaunchConfig,
)

from conftest import BOOT_COMPLETE_ADDR, SWITCH_ADDR, TIMER_ADDR, stopped_record


def _popen(pid: int = 4242) -> Mock:
    process = Mock()
    process.pid = pid
    process.returncode = None
    process.poll.return_value = None
    process.terminate.side_effect = lambda: setattr(process.poll, "return_value", -15)
    return process


@pytest.fixture
def config(tmp_path: Path, bootloader: Path) -> HarnessConfig:
    """Stub on, wait on, 4G: the usual verification setup."""
    return HarnessConfig(
        workspace=tmp_path / "ws",
        launch=LaunchConfig(memory="4G", gdb_stub=True, gdb_wait=True),
        bootloader=bootloader,
    )


@pytest.fixture
def stream() -> io.StringIO:
    return io.StringIO()


@pytest.fixture
def session(config, stream, kernel_artifact):
    """Session whose kernel is already built."""
    config.workspace.mkdir()
    session = HarnessSession(config, sentinel_stream=stream, attach_backoff=0.01)
    session.artifact = kernel_artifact
    return session


@pytest.fixture
def popen():
    process = _popen()
    with patch("bootprobe.tools.qemu_control.subprocess.Popen", return_value=process):
        yield process


class TestSessionInstantiation:
    """Test session creation."""

    def test_initial_state(self, config) -> None:
        """Test a new session owns nothing yet."""
        session = HarnessSession(config)
        assert session.artifact is None
        assert session.media is None
        assert session.emulator is None
        assert session.collector.config is config.launch


class TestPipelineStages:
    """Test build, assembly and launch stages."""

    def test_build(self, config, kernel_artifact) -> None:
        """Test the build stage records the artifact."""
        with patch("bootprobe.core.session.BuildOrchestrator") as orchestrator:
            orchestrator.return_value.build.return_value = kernel_artifact
            session = HarnessSession(config)
            assert session.build() is kernel_artifact

        orchestrator.assert_called_once_with(config.build)
        assert session.artifact is kernel_artifact

    def test_assemble(self, session, config) -> None:
        """Test the media tree lands in the workspace."""
        media = session.assemble()
        assert media.root == config.workspace / "mnt"
        assert (media.root / "EFI" / "BOOT" / "BOOTX64.EFI").is_file()
        assert (media.root / "kernel.elf").read_bytes() == b"\x7fELF kernel"

    @pytest.mark.asyncio
    async def test_missing_kernel_stops_pipeline(self, session, kernel_artifact) -> None:
        """Test an absent kernel fails assembly and nothing is launched."""
        kernel_artifact.path.unlink()
        with patch("bootprobe.tools.qemu_control.subprocess.Popen") as popen:
            with pytest.raises(MediaAssemblyError, match="Kernel binary not found"):
                session.assemble()
            with pytest.raises(HarnessError, match="assemble first"):
                await session.launch()
        popen.assert_not_called()

    @pytest.mark.asyncio
    async def test_run_stops_after_build_failure(self, config) -> None:
        """Test a failed build prevents every later stage."""
        with patch("bootprobe.core.session.BuildOrchestrator") as orchestrator, \
             patch("bootprobe.core.session.BootMediaAssembler") as assembler, \
             patch("bootprobe.core.session.QEMUController") as controller:
            orchestrator.return_value.build.side_effect = BuildFailure("Build failed")
            with pytest.raises(BuildFailure):
                await HarnessSession(config).run()

        assembler.assert_not_called()
        controller.assert_not_called()

    def test_assemble_without_bootloader(self, config, kernel_artifact) -> None:
        """Test assembly requires a bootloader."""
        config.bootloader = None
        session = HarnessSession(config)
        session.artifact = kernel_artifact
        with pytest.raises(MediaAssemblyError):
            session.assemble()


class TestAttach:
    """Test attach retry."""

    @pytest.mark.asyncio
    async def test_retries_until_stub_listens(self, session, fake_gdb) -> None:
        """Test early connection refusals are retried with backoff."""
        for _ in range(2):
            fake_gdb.respond("-target-select", "error", {"msg": "Connection refused."})

        bridge = await session.attach()

        assert bridge.connected is True
        assert len(fake_gdb.commands("-target-select")) == 3
        await bridge.disconnect()

    @pytest.mark.asyncio
    async def test_gives_up(self, session, fake_gdb) -> None:
        """Test the last refusal propagates."""
        session.attach_retries = 2
        for _ in range(2):
            fake_gdb.respond("-target-select", "error", {"msg": "Connection refused."})

        with pytest.raises(StubConnectionError):
            await session.attach()

    def test_adopt_emulator(self, session, config) -> None:
        """Test an instance from an earlier launch is watched through its pid marker."""
        config.launch.pid_file.write_text("31337\n")
        with patch("bootprobe.tools.qemu_control.is_process_running", return_value=True), \
             patch("bootprobe.tools.qemu_control.process_matches", return_value=True):
            emulator = session.adopt_emulator()

        assert session.emulator is emulator
        assert emulator.pid == 31337

    def test_adopt_without_marker(self, session) -> None:
        assert session.adopt_emulator() is None
        assert session.emulator is None


class TestVerify:
    """Test checkpoint verification."""

    @pytest.mark.asyncio
    async def test_boot_complete(self, session, stream, fake_gdb, popen) -> None:
        """Test a boot-completion halt emits BOOT_COMPLETE exactly once."""
        session.assemble()
        await session.launch()
        fake_gdb.respond("-exec-continue", "running",
                         after=[stopped_record(BOOT_COMPLETE_ADDR, bkptno=1)])

        event = await session.verify(BOOT_COMPLETE, timeout=5)

        assert event.symbol == "boot_complete"
        assert event.hits == 1
        assert stream.getvalue() == "[SENTINEL] BOOT_COMPLETE\n"
        assert fake_gdb.written[-1] == "-target-detach"
        assert fake_gdb.commands("-break-insert") == [
            f"-break-insert -h *0x{BOOT_COMPLETE_ADDR:x}"
        ]
        popen.terminate.assert_not_called()

    @pytest.mark.asyncio
    async def test_timeout_leaves_emulator_running(self, session, stream, fake_gdb, popen) -> None:
        """Test a symbol that is never reached times out without killing QEMU."""
        session.assemble()
        await session.launch()
        never_reached = Checkpoint("switch_context", "TASK_SWITCH")

        with pytest.raises(VerificationTimeout) as exc_info:
            await session.verify(never_reached, timeout=0.2)

        assert exc_info.value.exit_code == 5
        assert exc_info.value.symbol == "switch_context"
        assert stream.getvalue() == ""
        assert fake_gdb.commands("-break-insert") == [f"-break-insert -h *0x{SWITCH_ADDR:x}"]
        assert fake_gdb.written[-2:] == ["-exec-interrupt", "-target-detach"]
        popen.terminate.assert_not_called()
        popen.kill.assert_not_called()
        assert session.emulator.running is True

    @pytest.mark.asyncio
    async def test_compiled_out_symbol_times_out(self, session, stream, fake_gdb, popen) -> None:
        """Test a checkpoint whose feature is disabled in the build times out."""
        session.artifact.symbol_table = SymbolTable({"boot_complete": BOOT_COMPLETE_ADDR})
        session.assemble()
        await session.launch()
        allocator_tests = Checkpoint("run_visualization_tests", "ALLOC_VIS")

        with pytest.raises(VerificationTimeout) as exc_info:
            await session.verify(allocator_tests, timeout=0.2)

        assert exc_info.value.exit_code == 5
        assert exc_info.value.symbol == "run_visualization_tests"
        assert stream.getvalue() == ""
        assert fake_gdb.commands("-break-insert") == []
        assert fake_gdb.written[-2:] == ["-exec-interrupt", "-target-detach"]
        popen.terminate.assert_not_called()
        assert session.emulator.running is True

    @pytest.mark.asyncio
    async def test_absent_symbol_without_timeout(self, session, fake_gdb) -> None:
        """Test an absent symbol fails fast when nothing bounds the wait."""
        with pytest.raises(SymbolNotFound) as exc_info:
            await session.verify(Checkpoint("run_visualization_tests", "ALLOC_VIS"))

        assert exc_info.value.exit_code == 9
        assert fake_gdb.commands("-exec-continue") == []

    @pytest.mark.asyncio
    async def test_ambiguous_symbol(self, session, fake_gdb) -> None:
        """Test a name matching several functions is still refused."""
        session.artifact.symbol_table = SymbolTable({
            "_ZN13vitros_kernel3idt4init17h0000000000000001E": 0x210000,
            "_ZN13vitros_kernel3gdt4init17h0000000000000002E": 0x211000,
        })

        with pytest.raises(SymbolNotFound, match="ambiguous"):
            await session.verify(Checkpoint("init", "INIT"), timeout=0.2)
        assert fake_gdb.commands("-exec-continue") == []

    @pytest.mark.asyncio
    async def test_unexpected_halt(self, session, stream, fake_gdb) -> None:
        """Test halting somewhere else is not reported as success."""
        fake_gdb.respond("-exec-continue", "running",
                         after=[stopped_record(0xDEAD0, reason="signal-received")])

        with pytest.raises(HarnessError, match="Unexpected halt"):
            await session.verify(BOOT_COMPLETE, timeout=5)
        assert stream.getvalue() == ""

    @pytest.mark.asyncio
    async def test_emulator_dies(self, session, fake_gdb, popen) -> None:
        """Test QEMU exiting mid-verification is a lost connection."""
        session.assemble()
        await session.launch()
        popen.poll.return_value = 1

        with pytest.raises(ConnectionLost):
            await session.verify(BOOT_COMPLETE, timeout=5)

    @pytest.mark.asyncio
    async def test_verify_all_cycles(self, session, stream, fake_gdb) -> None:
        """Test each checkpoint runs in its own attach cycle."""
        for number, addr in ((1, BOOT_COMPLETE_ADDR), (2, TIMER_ADDR), (3, SWITCH_ADDR)):
            fake_gdb.respond("-exec-continue", "running",
                             after=[stopped_record(addr, bkptno=number)])

        events = await session.verify_all([BOOT_COMPLETE, TIMER_INTERRUPT, TASK_SWITCH],
                                           timeout=5)

        assert [e.address for e in events] == [BOOT_COMPLETE_ADDR, TIMER_ADDR, SWITCH_ADDR]
        assert stream.getvalue().splitlines() == [
            "[SENTINEL] BOOT_COMPLETE",
            "[SENTINEL] TIMER_INTERRUPT",
            "[SENTINEL] TASK_SWITCH",
        ]
        assert len(fake_gdb.commands("-target-detach")) == 3


class TestRun:
    """Test the full pipeline."""

    @pytest.mark.asyncio
    async def test_run(self, session, stream, fake_gdb, popen, kernel_artifact) -> None:
        """Test build → assemble → launch → verify with QEMU left running."""
        fake_gdb.respond("-exec-continue", "running",
                         after=[stopped_record(BOOT_COMPLETE_ADDR, bkptno=1)])

        with patch("bootprobe.core.session.BuildOrchestrator") as orchestrator:
            orchestrator.return_value.build.return_value = kernel_artifact
            async with session:
                events = await session.run(timeout=5)

        assert [e.sentinel for e in events] == ["BOOT_COMPLETE"]
        assert stream.getvalue() == "[SENTINEL] BOOT_COMPLETE\n"
        popen.terminate.assert_not_called()
        assert session.config.launch.pid_file.read_text().strip() == "4242"

    @pytest.mark.asyncio
    async def test_run_without_stub(self, session, fake_gdb, popen, kernel_artifact) -> None:
        """Test the kernel is only booted when the stub is off."""
        session.config.launch.gdb_stub = False
        with patch("bootprobe.core.session.BuildOrchestrator") as orchestrator:
            orchestrator.return_value.build.return_value = kernel_artifact
            assert await session.run() == []
        assert fake_gdb.written == []

    @pytest.mark.asyncio
    async def test_terminate_on_exit(self, session, popen) -> None:
        """Test QEMU is stopped on close only when asked to."""
        session.config.terminate_on_exit = True
        session.assemble()
        await session.launch()
        await session.close()

        popen.terminate.assert_called_once()
        assert not session.config.launch.pid_file.exists()
