"""Boot-and-verification harness for kernel development under QEMU/GDB."""

__version__ = "0.1.0"
