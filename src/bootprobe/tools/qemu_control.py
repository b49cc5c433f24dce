"""QEMU launcher for booting the kernel image."""

import asyncio
import logging
import os
import signal
import subprocess
from dataclasses import dataclass, field
from pathlib import Path
from typing import IO, List, Optional

from bootprobe.core.errors import LaunchError
from bootprobe.core.types import LaunchConfig, StatusExitDevice
from bootprobe.tools.logs import LogCollector

logger = logging.getLogger(__name__)


def is_process_running(pid: int) -> bool:
    """Check if a process is running."""
    try:
        os.kill(pid, 0)
        return True
    except (OSError, ProcessLookupError):
        return False


def process_matches(pid: int, executable: str) -> bool:
    """Check that ``pid`` was started from ``executable``.

    Compares basenames of argv[0] via /proc. Where /proc is unavailable the
    pid marker is trusted as is.
    """
    proc = Path("/proc")
    if not proc.is_dir():
        return True
    try:
        cmdline = (proc / str(pid) / "cmdline").read_bytes()
    except OSError:
        return False
    argv0 = cmdline.split(b"\0", 1)[0].decode(errors="replace")
    return bool(argv0) and Path(argv0).name == Path(executable).name


async def kill_process(pid: int, timeout: float = 5.0) -> None:
    """SIGTERM a process, escalating to SIGKILL after ``timeout``."""
    try:
        os.kill(pid, signal.SIGTERM)
    except ProcessLookupError:
        return
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while is_process_running(pid) and loop.time() < deadline:
        await asyncio.sleep(0.1)
    if is_process_running(pid):
        try:
            os.kill(pid, signal.SIGKILL)
        except ProcessLookupError:
            pass


@dataclass
class EmulatorProcess:
    """Handle to a detached QEMU instance.

    Owned by the launcher; the debug controller and log collector only hold
    references to it.
    """
    pid: int
    config: LaunchConfig
    process: Optional["subprocess.Popen[bytes]"] = None
    log_handles: List[IO[bytes]] = field(default_factory=list)

    @property
    def running(self) -> bool:
        if self.process is not None:
            return self.process.poll() is None
        return is_process_running(self.pid)

    @property
    def returncode(self) -> Optional[int]:
        if self.process is None:
            return None
        return self.process.poll()

    @property
    def guest_status(self) -> Optional[int]:
        """Code the guest reported through the status-exit device, if any."""
        code = self.returncode
        if code is None:
            return None
        return StatusExitDevice.decode(code)

    async def terminate(self, timeout: float = 5.0) -> None:
        """Stop the process, escalating to SIGKILL if it does not exit."""
        if self.process is not None:
            if self.process.poll() is None:
                self.process.terminate()
                if not await self._wait_exit(timeout):
                    self.process.kill()
                    await self._wait_exit(timeout)
        elif is_process_running(self.pid):
            await kill_process(self.pid, timeout)
        self.close_logs()

    async def _wait_exit(self, timeout: float) -> bool:
        """Poll the child without blocking the event loop."""
        assert self.process is not None
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        while self.process.poll() is None:
            if loop.time() >= deadline:
                return False
            await asyncio.sleep(0.05)
        return True

    def close_logs(self) -> None:
        for handle in self.log_handles:
            handle.close()
        self.log_handles.clear()


class QEMUController:
    """Launches QEMU on the assembled boot media.

    Every launch starts from a clean slate: a stale instance recorded in the
    pid marker is terminated and the logs are reset first. The emulator runs
    detached; ``start`` returns as soon as it is up.

    Example:
        qemu = QEMUController(LaunchConfig(gdb_stub=True, gdb_wait=True))
        emulator = await qemu.start(Path("mnt"))
        ...
        await qemu.stop()
    """

    def __init__(
        self,
        config: Optional[LaunchConfig] = None,
        collector: Optional[LogCollector] = None,
        startup_delay: float = 0.5,
    ) -> None:
        """Initialize QEMU launcher.

        Args:
            config: Launch configuration (uses defaults if not provided)
            collector: Log collector for this config (created if not provided)
            startup_delay: Seconds to wait before checking for an immediate exit
        """
        self.config = config or LaunchConfig()
        self.collector = collector or LogCollector(self.config)
        self.startup_delay = startup_delay
        self.emulator: Optional[EmulatorProcess] = None

    # === Command Line ===

    def build_command(self, media: Path) -> List[str]:
        """Compose the QEMU command line for ``media``."""
        cfg = self.config
        cmd = [
            cfg.qemu_path,
            "-machine", cfg.machine,
            "-m", cfg.memory,
        ]
        if cfg.no_reboot:
            cmd.append("-no-reboot")
        if cfg.no_shutdown:
            cmd.append("-no-shutdown")
        cmd += [
            "-bios", str(cfg.firmware),
            "-drive", f"format=raw,file=fat:rw:{media}",
            "-device", cfg.status_exit.device_arg(),
            "-chardev", f"stdio,id=char_com1,mux=on,logfile={cfg.serial_log}",
            "-serial", "chardev:char_com1",
            "-mon", "chardev=char_com1",
        ]
        if cfg.display:
            cmd += ["-display", cfg.display]

        if cfg.gdb_stub:
            cmd += ["-gdb", f"tcp::{cfg.gdb_port}"]
            if cfg.gdb_wait:
                cmd.append("-S")  # Hold at first instruction

        if cfg.trace:
            cmd += ["-d", cfg.trace_events, "-D", str(cfg.trace_log)]

        cmd.extend(cfg.extra_args)
        return cmd

    # === Lifecycle ===

    async def terminate_stale(self) -> Optional[int]:
        """Terminate the instance recorded in the pid marker, if still alive.

        Returns:
            PID of the terminated instance, or None
        """
        pid = self._read_marker()
        if pid is None:
            return None

        killed = None
        if self._is_ours(pid):
            logger.info(f"Terminating stale QEMU instance (PID {pid})")
            await kill_process(pid)
            killed = pid
        self.config.pid_file.unlink(missing_ok=True)
        return killed

    def adopt(self) -> Optional[EmulatorProcess]:
        """Take a handle on the running instance recorded in the pid marker.

        The instance is only watched, not owned: no log handles, and
        ``release`` leaves it running.

        Returns:
            Handle to the instance, or None if no live QEMU is recorded
        """
        pid = self._read_marker()
        if pid is None or not self._is_ours(pid):
            return None
        self.emulator = EmulatorProcess(pid=pid, config=self.config)
        logger.info(f"Watching QEMU instance (PID {pid})")
        return self.emulator

    def _read_marker(self) -> Optional[int]:
        pid_file = self.config.pid_file
        if not pid_file.exists():
            return None
        try:
            return int(pid_file.read_text().strip())
        except ValueError:
            logger.warning(f"Ignoring malformed pid marker {pid_file}")
            pid_file.unlink()
            return None

    def _is_ours(self, pid: int) -> bool:
        return is_process_running(pid) and process_matches(pid, self.config.qemu_path)

    async def start(self, media: Path) -> EmulatorProcess:
        """Start QEMU on the boot media.

        Args:
            media: Root of the assembled boot tree

        Returns:
            Handle to the running emulator

        Raises:
            LaunchError: If QEMU is missing or exits immediately
        """
        await self.terminate_stale()
        self.collector.prepare()

        cmd = self.build_command(media)
        logger.info("Launching QEMU")
        logger.debug(f"QEMU command: {' '.join(cmd)}")
        if self.config.gdb_stub:
            wait = " (waiting for connection)" if self.config.gdb_wait else ""
            logger.info(f"GDB server enabled on port {self.config.gdb_port}{wait}")
        if self.config.trace:
            logger.info(f"QEMU debug logging enabled -> {self.config.trace_log}")

        stderr = open(self.config.stderr_log, "ab")
        try:
            process = subprocess.Popen(
                cmd,
                stdin=subprocess.DEVNULL,
                stdout=subprocess.DEVNULL,
                stderr=stderr,
                start_new_session=True,
            )
        except FileNotFoundError:
            stderr.close()
            raise LaunchError(
                f"QEMU not found at '{self.config.qemu_path}'\n"
                f"Try: --qemu-path /path/to/qemu-system-x86_64\n"
                f"Or install: sudo apt install qemu-system-x86"
            )
        except PermissionError:
            stderr.close()
            raise LaunchError(
                f"Permission denied running QEMU at '{self.config.qemu_path}'\n"
                f"Check that the file is executable: chmod +x {self.config.qemu_path}"
            )

        self.config.pid_file.write_text(f"{process.pid}\n")

        await asyncio.sleep(self.startup_delay)

        if process.poll() is not None:
            stderr.close()
            self.config.pid_file.unlink(missing_ok=True)
            raise LaunchError(
                f"QEMU exited immediately with status {process.returncode}",
                stderr=self.collector.read_stderr(),
            )

        self.emulator = EmulatorProcess(
            pid=process.pid,
            config=self.config,
            process=process,
            log_handles=[stderr],
        )
        logger.info(f"QEMU running (PID {process.pid})")
        return self.emulator

    async def stop(self) -> None:
        """Stop the QEMU instance and remove its pid marker."""
        if self.emulator:
            await self.emulator.terminate()
            self.emulator = None
        self.config.pid_file.unlink(missing_ok=True)

    def release(self) -> None:
        """Drop the handle without stopping QEMU.

        The pid marker stays so the next launch can find the instance.
        """
        if self.emulator:
            self.emulator.close_logs()
            self.emulator = None

    @property
    def running(self) -> bool:
        """Check if QEMU is running."""
        return self.emulator is not None and self.emulator.running

    @property
    def gdb_port(self) -> int:
        """Get the GDB port."""
        return self.config.gdb_port

    # === Context Manager ===

    async def __aenter__(self) -> "QEMUController":
        return self

    async def __aexit__(self, exc_type: object, exc_val: object, exc_tb: object) -> None:
        await self.stop()
