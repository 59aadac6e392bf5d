"""TAP device setup and teardown for unikernel networking."""

from __future__ import annotations

import dataclasses
import ipaddress
import logging
import os
import shutil
import socket
import subprocess

from urunc.constants import (
    DYNAMIC_NETWORK_TAP_IP,
    STATIC_NETWORK_TAP_IP,
    STATIC_NETWORK_UNIKERNEL_IP,
)

log = logging.getLogger(__name__)

DEFAULT_INTERFACE = "eth0"
DEFAULT_TAP = "tapX_urunc"
STATIC_IP_ADDR = f"{STATIC_NETWORK_TAP_IP}/24"
MAX_TAP_DEVICES = 255

IP_FORWARD_PATH = "/proc/sys/net/ipv4/ip_forward"
ROUTE_TABLE_PATH = "/proc/net/route"
SYS_CLASS_NET = "/sys/class/net"

_RTF_GATEWAY = 0x2
_INGRESS_PARENT = "ffff:"


class NetworkError(Exception):
    """The network of a unikernel could not be set up or torn down."""


@dataclasses.dataclass
class Interface:
    """Addressing of the guest's network interface."""

    ip: str = ""
    default_gateway: str = ""
    mask: str = ""
    interface: str = ""
    mac: str = ""


@dataclasses.dataclass
class UnikernelNetworkInfo:
    """The TAP device given to the monitor and the guest's addressing."""

    tap_device: str = ""
    eth_device: Interface = dataclasses.field(default_factory=Interface)


def _run(*argv: str) -> str:
    try:
        result = subprocess.run(argv, capture_output=True, text=True, check=False)
    except OSError as exc:
        raise NetworkError(f"failed to run {argv[0]}: {exc}") from exc
    if result.returncode != 0:
        raise NetworkError(f"command {' '.join(argv)} failed: {result.stderr.strip()}")
    return result.stdout


def _interfaces() -> list[str]:
    return [name for _, name in socket.if_nameindex()]


def _read_sys(iface: str, attribute: str) -> str:
    path = os.path.join(SYS_CLASS_NET, iface, attribute)
    try:
        with open(path, encoding="ascii") as handle:
            return handle.read().strip()
    except OSError as exc:
        raise NetworkError(f"failed to read {attribute} of {iface}: {exc}") from exc


def _require_link(iface: str) -> int:
    """Return the MTU of `iface`, raising if the link does not exist."""
    if iface not in _interfaces():
        log.error("failed to find %s interface", iface)
        raise NetworkError(f"link {iface} not found")
    return int(_read_sys(iface, "mtu"))


def dynamic_tap_name(index: int) -> str:
    """Return the name of the TAP device with the given index."""
    return DEFAULT_TAP.replace("X", str(index))


def dynamic_tap_address(index: int) -> str:
    """Return the CIDR address of the TAP device with the given index."""
    return f"{DYNAMIC_NETWORK_TAP_IP}/24".replace("X", str(index + 1))


def prefix_to_mask(prefix_length: int) -> str:
    """Return the dotted-decimal IPv4 netmask of a prefix length."""
    if not 0 <= prefix_length <= 32:
        raise NetworkError(f"invalid IPv4 prefix length {prefix_length}")
    return str(ipaddress.IPv4Network(f"0.0.0.0/{prefix_length}").netmask)


def parse_default_gateway(route_table: str) -> str:
    """Return the default gateway found in the text of /proc/net/route."""
    for line in route_table.splitlines()[1:]:
        fields = line.split()
        if len(fields) < 4:
            continue
        destination, gateway, flags = fields[1], fields[2], fields[3]
        try:
            if int(destination, 16) != 0 or not int(flags, 16) & _RTF_GATEWAY:
                continue
            raw = int(gateway, 16).to_bytes(4, "little")
        except (ValueError, OverflowError):
            continue
        return str(ipaddress.IPv4Address(raw))
    raise NetworkError("no default gateway found")


def tap_index() -> int:
    """Return the number of TAP devices in the current network namespace."""
    count = sum(1 for name in _interfaces() if "tap" in name)
    if count > MAX_TAP_DEVICES:
        raise NetworkError("TAP interfaces count higher than 255")
    return count


def _create_tap_device(name: str, mtu: int, uid: int, gid: int) -> None:
    try:
        _run(
            "ip", "tuntap", "add", "dev", name, "mode", "tap",
            "user", str(uid), "group", str(gid), "one_queue", "vnet_hdr",
        )
    except NetworkError as exc:
        raise NetworkError(f"failed to create tap device: {exc}") from exc
    try:
        _run("ip", "link", "set", "dev", name, "mtu", str(mtu))
    except NetworkError as exc:
        raise NetworkError(f"failed to set tap device MTU to {mtu}: {exc}") from exc


def _add_ingress_qdisc(link: str) -> None:
    _run("tc", "qdisc", "add", "dev", link, "ingress")


def _add_redirect_filter(source: str, target: str) -> None:
    _run(
        "tc", "filter", "add", "dev", source, "parent", _INGRESS_PARENT,
        "protocol", "all", "u32", "match", "u32", "0", "0",
        "action", "mirred", "egress", "redirect", "dev", target,
    )


def _network_setup(
    tap_name: str, ip_address: str, redirect_link: str, mtu: int,
    add_tc_rules: bool, uid: int, gid: int,
) -> str:
    _create_tap_device(tap_name, mtu, uid, gid)
    if add_tc_rules:
        _add_ingress_qdisc(tap_name)
        _add_ingress_qdisc(redirect_link)
        _add_redirect_filter(tap_name, redirect_link)
        _add_redirect_filter(redirect_link, tap_name)
    try:
        ipaddress.ip_interface(ip_address)
    except ValueError as exc:
        raise NetworkError(str(exc)) from exc
    _run("ip", "addr", "replace", ip_address, "dev", tap_name)
    _run("ip", "link", "set", "dev", tap_name, "up")
    return tap_name


def _interface_info(iface: str) -> Interface:
    mac = _read_sys(iface, "address")
    if not mac:
        raise NetworkError(f"failed to get MAC address of {iface!r}")
    ip_address = ""
    mask = ""
    for line in _run("ip", "-o", "-4", "addr", "show", "dev", iface).splitlines():
        fields = line.split()
        if "inet" not in fields:
            continue
        address = ipaddress.ip_interface(fields[fields.index("inet") + 1])
        if address.ip.is_loopback:
            continue
        ip_address = str(address.ip)
        mask = prefix_to_mask(address.network.prefixlen)
        break
    if not mask:
        raise NetworkError(f"failed to find mask for {DEFAULT_INTERFACE!r}")
    if not ip_address:
        raise NetworkError(f"failed to find IPv4 address for {DEFAULT_INTERFACE!r}")
    try:
        with open(ROUTE_TABLE_PATH, encoding="ascii") as handle:
            gateway = parse_default_gateway(handle.read())
    except OSError as exc:
        raise NetworkError(f"failed to read routing table: {exc}") from exc
    return Interface(
        ip=ip_address,
        default_gateway=gateway,
        mask=mask,
        interface=DEFAULT_INTERFACE,
        mac=mac,
    )


def set_nat_rule(iface: str, source_ip: str) -> None:
    """Enable IP forwarding and masquerade traffic from `source_ip` out of `iface`."""
    path = shutil.which("iptables")
    if path is None:
        raise NetworkError('executable "iptables" not found in $PATH')
    try:
        with open(IP_FORWARD_PATH, "w", encoding="ascii") as handle:
            handle.write("1")
    except OSError as exc:
        raise NetworkError(f"failed to enable IP forwarding: {exc}") from exc
    log.debug("Enabled IP forwarding")
    _run(
        path, "-t", "nat", "-A", "POSTROUTING", "-s", source_ip, "-o", iface,
        "-j", "MASQUERADE", "--wait", "1",
    )
    log.info("Applied iptables rule for NAT")


class StaticNetwork:
    """A single TAP device with a fixed address, NATed through eth0."""

    def network_setup(self, uid: int, gid: int) -> UnikernelNetworkInfo:
        """Create the TAP device and return the guest's addressing."""
        tap_name = dynamic_tap_name(0)
        mtu = _require_link(DEFAULT_INTERFACE)
        tap = _network_setup(tap_name, STATIC_IP_ADDR, DEFAULT_INTERFACE, mtu, False, uid, gid)
        set_nat_rule(DEFAULT_INTERFACE, STATIC_IP_ADDR)
        return UnikernelNetworkInfo(
            tap_device=tap,
            eth_device=Interface(
                ip=STATIC_NETWORK_UNIKERNEL_IP,
                default_gateway=STATIC_NETWORK_TAP_IP,
                mask="255.255.255.0",
                interface=DEFAULT_INTERFACE,
                mac=_read_sys(DEFAULT_INTERFACE, "address"),
            ),
        )


class DynamicNetwork:
    """A TAP device bridged to eth0 by traffic-control redirect rules.

    Only one unikernel per network namespace is supported.
    """

    def network_setup(self, uid: int, gid: int) -> UnikernelNetworkInfo:
        """Create the TAP device, mirror it with eth0 and return the guest's addressing."""
        index = tap_index()
        if index > 0:
            raise NetworkError(
                "unsupported operation: can't spawn multiple unikernels "
                "in the same network namespace"
            )
        mtu = _require_link(DEFAULT_INTERFACE)
        tap = _network_setup(
            dynamic_tap_name(index), dynamic_tap_address(index),
            DEFAULT_INTERFACE, mtu, True, uid, gid,
        )
        return UnikernelNetworkInfo(tap_device=tap, eth_device=_interface_info(DEFAULT_INTERFACE))


def new_network_manager(network_type: str) -> StaticNetwork | DynamicNetwork:
    """Return the network manager named by `network_type`."""
    if network_type == "static":
        return StaticNetwork()
    if network_type == "dynamic":
        return DynamicNetwork()
    raise NetworkError(f"network manager {network_type} not supported")


def _has_output(*argv: str) -> bool:
    return bool(_run(*argv).strip())


def _delete_filters(device: str) -> None:
    if _has_output("tc", "filter", "show", "dev", device, "parent", _INGRESS_PARENT):
        _run("tc", "filter", "del", "dev", device, "parent", _INGRESS_PARENT)


def _delete_ingress_qdisc(device: str) -> None:
    if "ingress" in _run("tc", "qdisc", "show", "dev", device, "ingress"):
        _run("tc", "qdisc", "del", "dev", device, "ingress")


def cleanup(tap_device: str) -> None:
    """Remove the TAP device and the traffic-control rules tied to it."""
    log.info("net cleanup called")
    names = _interfaces()
    for name in names:
        log.debug("Discovered device %s", name)
    if tap_device not in names:
        log.error("Failed to get link %s by name", tap_device)
        return
    try:
        _delete_filters(tap_device)
    except NetworkError:
        pass
    try:
        _delete_filters(DEFAULT_INTERFACE)
    except NetworkError as exc:
        log.error("Failed to delete all TC filters: %s", exc)
        raise
    try:
        _delete_ingress_qdisc(tap_device)
        _delete_ingress_qdisc(DEFAULT_INTERFACE)
    except NetworkError as exc:
        log.error("Failed to delete all qdiscs: %s", exc)
        raise
    try:
        _run("ip", "link", "set", "dev", tap_device, "down")
        _run("ip", "link", "del", "dev", tap_device)
    except NetworkError as exc:
        log.error("Failed to delete link %s: %s", tap_device, exc)