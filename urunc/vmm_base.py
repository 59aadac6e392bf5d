"""Shared pieces of the virtual machine monitors: arguments, guests, helpers."""

from __future__ import annotations

import dataclasses
import enum
import platform
from typing import Mapping

DEFAULT_MEMORY = 256  # default guest memory for every monitor, in MB

_BYTES_IN_MIB = 1024 * 1024
_BYTES_IN_MB = 1000 * 1000


class VMMError(Exception):
    """A monitor could not be selected, prepared or started."""


class VMMNotInstalledError(VMMError):
    """The monitor's binary cannot be found on this host."""

    def __init__(self, message: str = "vmm not found") -> None:
        super().__init__(message)


class VmmType(str, enum.Enum):
    """The monitors a unikernel can run on."""

    SPT = "spt"
    HVT = "hvt"
    QEMU = "qemu"
    FIRECRACKER = "firecracker"
    HEDGE = "hedge"


@dataclasses.dataclass
class ExecArgs:
    """Everything a monitor needs to boot a unikernel."""

    container: str = ""
    unikernel_path: str = ""
    tap_device: str = ""
    block_device: str = ""
    initrd_path: str = ""
    command: str = ""
    ip_address: str = ""
    guest_mac: str = ""
    seccomp: bool = False
    mem_size_b: int = 0
    environment: list[str] = dataclasses.field(default_factory=list)


def _monitor_key(monitor: str | enum.Enum) -> str:
    if isinstance(monitor, enum.Enum):
        return str(monitor.value)
    return monitor


@dataclasses.dataclass
class Unikernel:
    """A guest kernel and the monitor options it asks for.

    Each mapping goes from a monitor name to the option text the guest
    needs on that monitor; a monitor missing from a mapping gets "".
    """

    net_cli: Mapping[str, str] = dataclasses.field(default_factory=dict)
    block_cli: Mapping[str, str] = dataclasses.field(default_factory=dict)
    extra_cli: Mapping[str, str] = dataclasses.field(default_factory=dict)

    def monitor_net_cli(self, monitor: str) -> str:
        """Return the option prefix that attaches a TAP device for `monitor`."""
        return self.net_cli.get(_monitor_key(monitor), "")

    def monitor_block_cli(self, monitor: str) -> str:
        """Return the option prefix that attaches a block device for `monitor`."""
        return self.block_cli.get(_monitor_key(monitor), "")

    def monitor_cli(self, monitor: str) -> str:
        """Return any further options for `monitor`."""
        return self.extra_cli.get(_monitor_key(monitor), "")


def cpu_arch() -> str:
    """Return the host architecture as monitors name it, or "" if unknown."""
    machine = platform.machine().lower()
    if machine in ("x86_64", "amd64"):
        return "x86_64"
    if machine in ("aarch64", "arm64"):
        return "aarch64"
    return ""


def append_non_empty(body: str, prefix: str, value: str) -> str:
    """Append `prefix` and `value` to `body` only when `value` is non-empty."""
    if value:
        return body + prefix + value
    return body


def bytes_to_mib(size: int) -> int:
    """Convert bytes to whole mebibytes, rounding down."""
    return size // _BYTES_IN_MIB


def bytes_to_mb(size: int) -> int:
    """Convert bytes to whole megabytes, rounding down."""
    return size // _BYTES_IN_MB


def bytes_to_string_mb(arg_mem: int) -> str:
    """Return the guest memory in MB as text.

    Zero, or anything under one MB, falls back to DEFAULT_MEMORY.
    """
    if not arg_mem:
        return str(DEFAULT_MEMORY)
    return str(bytes_to_mb(arg_mem) or DEFAULT_MEMORY)