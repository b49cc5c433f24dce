"""Boot media assembly."""

import hashlib
import logging
import shutil
from pathlib import Path

from bootprobe.core.errors import MediaAssemblyError
from bootprobe.core.types import BootMedia

logger = logging.getLogger(__name__)

LOADER_PATH = Path("EFI/BOOT/BOOTX64.EFI")
KERNEL_PATH = Path("kernel.elf")


class BootMediaAssembler:
    """Rebuilds the FAT boot tree QEMU exposes as a raw drive.

    The tree is deleted and recreated on every run, so identical inputs
    always yield an identical tree.
    """

    def __init__(self, root: Path) -> None:
        self.root = Path(root)

    def assemble(self, bootloader: Path, kernel: Path) -> BootMedia:
        """Assemble the media tree.

        Args:
            bootloader: Built EFI bootloader
            kernel: Built kernel binary

        Returns:
            BootMedia describing the tree

        Raises:
            MediaAssemblyError: If a source is missing or I/O fails
        """
        bootloader = Path(bootloader)
        kernel = Path(kernel)
        for label, source in (("Bootloader", bootloader), ("Kernel binary", kernel)):
            if not source.is_file():
                raise MediaAssemblyError(f"{label} not found: {source}")

        loader_dst = self.root / LOADER_PATH
        kernel_dst = self.root / KERNEL_PATH
        try:
            if self.root.exists():
                shutil.rmtree(self.root)
            loader_dst.parent.mkdir(parents=True)
            shutil.copyfile(bootloader, loader_dst)
            shutil.copyfile(kernel, kernel_dst)
        except OSError as e:
            raise MediaAssemblyError(f"Failed to assemble boot media at {self.root}: {e}")

        logger.info(f"Assembled boot media at {self.root}")
        return BootMedia(root=self.root, loader=loader_dst, kernel=kernel_dst)

    def digest(self) -> str:
        """SHA-256 over relative paths and contents of every file in the tree."""
        h = hashlib.sha256()
        for path in sorted(p for p in self.root.rglob("*") if p.is_file()):
            h.update(path.relative_to(self.root).as_posix().encode())
            h.update(b"\0")
            h.update(path.read_bytes())
        return h.hexdigest()
