"""Serial and trace log collection."""

import logging
from pathlib import Path
from typing import List

from bootprobe.core.types import LaunchConfig

logger = logging.getLogger(__name__)


class LogCollector:
    """Owns the log files QEMU writes to.

    Passive: files are reset before a run and only read afterwards. QEMU is
    the single writer of each file while it runs.
    """

    def __init__(self, config: LaunchConfig) -> None:
        self.config = config

    @property
    def paths(self) -> List[Path]:
        paths = [self.config.serial_log, self.config.stderr_log]
        if self.config.trace:
            paths.append(self.config.trace_log)
        return paths

    def prepare(self) -> None:
        """Truncate (or create) the logs for this run.

        A trace log left over from a traced run is removed when tracing is
        off, so its presence always reflects the current run.
        """
        for path in self.paths:
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_bytes(b"")
        if not self.config.trace and self.config.trace_log.exists():
            self.config.trace_log.unlink()
        logger.debug(f"Reset logs: {', '.join(str(p) for p in self.paths)}")

    def read_serial(self) -> str:
        return self._read(self.config.serial_log)

    def read_trace(self) -> str:
        return self._read(self.config.trace_log)

    def read_stderr(self) -> str:
        return self._read(self.config.stderr_log)

    def serial_contains(self, marker: str) -> bool:
        return marker in self.read_serial()

    def _read(self, path: Path) -> str:
        if not path.exists():
            return ""
        return path.read_text(errors="replace")
