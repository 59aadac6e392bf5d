"""The virtual machine monitors that boot unikernels."""

from __future__ import annotations

import json
import logging
import os
import shutil
import signal
from typing import Any, NoReturn

from urunc.vmm_base import (
    DEFAULT_MEMORY,
    ExecArgs,
    Unikernel,
    VMMError,
    VMMNotInstalledError,
    VmmType,
    append_non_empty,
    bytes_to_mib,
    bytes_to_string_mb,
    cpu_arch,
)

log = logging.getLogger(__name__)

SPT_BINARY = "solo5-spt"
HVT_BINARY = "solo5-hvt"
QEMU_BINARY = "qemu-system-"
FIRECRACKER_BINARY = "firecracker"
FC_JSON_FILENAME = "fc.json"
HEDGE_CONSOLE_ENDPOINT = "/proc/vmcons"

# System calls the hvt process may use once its seccomp filter is loaded.
HVT_SECCOMP_SYSCALLS = (
    "rt_sigaction", "ioctl", "pread64", "mmap", "recvmsg", "openat", "sendto",
    "mprotect", "write", "epoll_ctl", "epoll_create1", "read", "open", "close",
    "fstat", "stat", "munmap", "brk", "access", "execve", "timerfd_create",
    "arch_prctl", "lseek", "personality", "socket", "bind", "getsockname",
    "exit", "exit_group", "getpid", "tgkill", "nanosleep", "futex",
    "epoll_pwait", "rt_sigreturn", "timerfd_settime", "pwrite64", "newfstatat",
    "set_tid_address", "set_robust_list", "rseq", "prlimit64", "getrandom",
)


def _environment(entries: list[str]) -> dict[str, str]:
    env = {}
    for entry in entries:
        key, _, value = entry.partition("=")
        env[key] = value
    return env


def _exec(path: str, argv: list[str], environment: list[str]) -> None:
    os.execve(path, argv, _environment(environment))


class _Monitor:
    binary = ""

    def __init__(self, binary_path: str) -> None:
        self.path = binary_path

    def ok(self) -> None:
        """Check that the monitor can be used; raise if not."""
        return None

    def stop(self, target: str) -> None:
        """Terminate the monitor running as process `target`, if any.

        The monitor replaces the runtime process, so a target that is not a
        process id leaves nothing to stop.
        """
        if not target.isdigit():
            return
        try:
            os.kill(int(target), signal.SIGTERM)
        except ProcessLookupError:
            log.debug("monitor process %s already exited", target)


class _Solo5(_Monitor):
    monitor = ""

    def ok(self) -> None:
        if shutil.which(self.binary) is None:
            raise VMMNotInstalledError()

    def command(self, args: ExecArgs, ukernel: Unikernel) -> list[str]:
        """Return the argument vector that boots `ukernel`."""
        cmd = f"{self.path} --mem={bytes_to_string_mb(args.mem_size_b)}"
        cmd = append_non_empty(cmd, " " + ukernel.monitor_net_cli(self.monitor), args.tap_device)
        cmd = append_non_empty(cmd, " " + ukernel.monitor_block_cli(self.monitor), args.block_device)
        cmd = append_non_empty(cmd, " ", ukernel.monitor_cli(self.monitor))
        cmd += " " + args.unikernel_path + " " + args.command
        return cmd.split(" ")


class SPT(_Solo5):
    """The solo5 sandboxed process tender."""

    binary = SPT_BINARY
    monitor = VmmType.SPT.value

    def ok(self) -> None:
        super().ok()

    def stop(self, target: str) -> None:
        super().stop(target)

    def command(self, args: ExecArgs, ukernel: Unikernel) -> list[str]:
        return super().command(args, ukernel)

    def execve(self, args: ExecArgs, ukernel: Unikernel) -> None:
        """Replace the current process with spt running `ukernel`."""
        argv = self.command(args, ukernel)
        log.info("Ready to execve spt: %s", " ".join(argv))
        _exec(self.path, argv, args.environment)


class HVT(_Solo5):
    """The solo5 hardware virtualised tender."""

    binary = HVT_BINARY
    monitor = VmmType.HVT.value

    def ok(self) -> None:
        super().ok()

    def stop(self, target: str) -> None:
        super().stop(target)

    def command(self, args: ExecArgs, ukernel: Unikernel) -> list[str]:
        return super().command(args, ukernel)

    def execve(self, args: ExecArgs, ukernel: Unikernel) -> None:
        """Replace the current process with hvt running `ukernel`.

        Seccomp filtering cannot be installed from here, so a request for
        it is refused instead of being silently dropped.
        """
        argv = self.command(args, ukernel)
        if args.seccomp:
            log.error("Could not load seccomp filters")
            raise VMMError("could not load seccomp filters for hvt")
        log.info("Ready to execve hvt: %s", " ".join(argv))
        _exec(self.path, argv, args.environment)


class Qemu(_Monitor):
    """QEMU with KVM acceleration."""

    binary = QEMU_BINARY
    monitor = VmmType.QEMU.value

    def ok(self) -> None:
        return None

    def stop(self, target: str) -> None:
        super().stop(target)

    def command(self, args: ExecArgs, ukernel: Unikernel) -> list[str]:
        """Return the argument vector that boots `ukernel`."""
        cmd = f"{self.path} -m {bytes_to_string_mb(args.mem_size_b)}M"
        cmd += " -cpu host"
        cmd += " -enable-kvm"
        cmd += " -nographic -vga none"
        if args.seccomp:
            cmd += " --sandbox on"
            cmd += ",obsolete=deny"
            cmd += ",elevateprivileges=deny"
            cmd += ",spawn=deny"
            cmd += ",resourcecontrol=deny"
        if cpu_arch() == "aarch64":
            cmd += " -M virt"
        cmd += " -kernel " + args.unikernel_path
        if args.tap_device:
            netcli = ukernel.monitor_net_cli(self.monitor)
            if not netcli:
                netcli = " -net nic,model=virtio -net tap,script=no,downscript=no,ifname="
            cmd += netcli + args.tap_device
        else:
            cmd += " -nic none"
        if args.block_device:
            block_cli = ukernel.monitor_block_cli(self.monitor)
            if not block_cli:
                block_cli = (
                    " -device virtio-blk-pci,id=blk0,drive=hd0,scsi=off"
                    " -drive format=raw,if=none,id=hd0,file="
                )
            cmd += block_cli + args.block_device
        if args.initrd_path:
            cmd += " -initrd " + args.initrd_path
        cmd += ukernel.monitor_cli(self.monitor)
        return cmd.split(" ") + ["-append", args.command]

    def execve(self, args: ExecArgs, ukernel: Unikernel) -> None:
        """Replace the current process with QEMU running `ukernel`."""
        argv = self.command(args, ukernel)
        log.info("Ready to execve qemu: %s", argv)
        _exec(self.path, argv, args.environment)


class Firecracker(_Monitor):
    """Firecracker, configured through a JSON file in the working directory."""

    binary = FIRECRACKER_BINARY

    def ok(self) -> None:
        return None

    def stop(self, target: str) -> None:
        super().stop(target)

    def config(self, args: ExecArgs) -> dict[str, Any]:
        """Return the Firecracker JSON configuration for `args`."""
        mem = DEFAULT_MEMORY
        if args.mem_size_b:
            mem = bytes_to_mib(args.mem_size_b) or DEFAULT_MEMORY

        net: dict[str, str] = {"iface_id": "net1"}
        if args.guest_mac:
            net["guest_mac"] = args.guest_mac
        net["host_dev_name"] = args.tap_device

        drives = []
        if args.block_device:
            drives.append(
                {
                    "drive_id": "rootfs",
                    "is_read_only": False,
                    "is_root_device": True,
                    "path_on_host": args.block_device,
                }
            )

        boot_args = args.command
        if cpu_arch() == "aarch64":
            boot_args += " console=ttyS0"
        source = {"kernel_image_path": args.unikernel_path, "boot_args": boot_args}
        if args.initrd_path:
            source["initrd_path"] = args.initrd_path

        return {
            "boot-source": source,
            "machine-config": {
                "vcpu_count": 1,
                "mem_size_mib": mem,
                "smt": False,
                "track_dirty_pages": False,
            },
            "drives": drives,
            "network-interfaces": [net],
        }

    def command(self, args: ExecArgs) -> list[str]:
        """Return the argument vector that starts Firecracker."""
        argv = [self.path, "--no-api", "--config-file", FC_JSON_FILENAME]
        if not args.seccomp:
            argv.append("--no-seccomp")
        return argv

    def execve(self, args: ExecArgs, ukernel: Unikernel) -> None:
        """Write fc.json and replace the current process with Firecracker."""
        data = json.dumps(self.config(args), separators=(",", ":"))
        try:
            fd = os.open(FC_JSON_FILENAME, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o644)
            with os.fdopen(fd, "w", encoding="utf-8") as handle:
                handle.write(data)
        except OSError as exc:
            raise VMMError(f"failed to save Firecracker json config: {exc}") from exc
        log.info("Firecracker json config: %s", data)
        argv = self.command(args)
        log.info("Ready to execve Firecracker: %s", argv)
        _exec(self.path, argv, args.environment)


class Hedge:
    """The hedge monitor, which cannot run guests yet."""

    path = ""
    console_endpoint = HEDGE_CONSOLE_ENDPOINT

    def _unsupported(self, operation: str) -> NoReturn:
        console = "present" if os.path.exists(self.console_endpoint) else "absent"
        log.debug("hedge %s requested (console %s %s)", operation, self.console_endpoint, console)
        raise VMMError("hedge not implemented yet")

    def ok(self) -> None:
        self._unsupported("check")

    def stop(self, target: str) -> None:
        self._unsupported(f"stop of {target!r}")

    def execve(self, args: ExecArgs, ukernel: Unikernel) -> None:
        self._unsupported(f"execve of {args.unikernel_path!r}")


def _lookup(binary: str) -> str:
    path = shutil.which(binary)
    if path is None:
        raise VMMNotInstalledError()
    return path


def new_vmm(vmm_type: VmmType | str) -> SPT | HVT | Qemu | Firecracker | Hedge:
    """Return the monitor of the given type, located on this host."""
    try:
        try:
            kind = VmmType(vmm_type)
        except ValueError:
            name = getattr(vmm_type, "value", vmm_type)
            raise VMMError(f'vmm "{name}" is not supported') from None
        if kind is VmmType.SPT:
            return SPT(_lookup(SPT_BINARY))
        if kind is VmmType.HVT:
            return HVT(_lookup(HVT_BINARY))
        if kind is VmmType.QEMU:
            return Qemu(_lookup(QEMU_BINARY + cpu_arch()))
        if kind is VmmType.FIRECRACKER:
            return Firecracker(_lookup(FIRECRACKER_BINARY))
        hedge = Hedge()
        try:
            hedge.ok()
        except VMMError:
            raise VMMNotInstalledError() from None
        return hedge
    except VMMError as exc:
        log.error("%s", exc)
        raise