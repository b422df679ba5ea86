"""Network interface, route and resolver probing."""

from __future__ import annotations

import ipaddress
import json
import re
from dataclasses import dataclass, field
from typing import Any, Iterable, List, Optional, Sequence, Tuple

from .commands import CommandRunner
from .errors import ProbeFailure
from .logging_utils import log_event

__all__ = [
    "DnsConfig",
    "FALLBACK_RESOLVER",
    "InterfaceAddress",
    "InterfaceSelection",
    "NetworkFacts",
    "NetworkInterface",
    "RouteInfo",
    "default_routes",
    "list_interfaces",
    "parse_address_json",
    "parse_address_text",
    "predictable_naming",
    "probe_network",
    "select_interfaces",
    "system_resolvers",
]

FALLBACK_RESOLVER = "8.8.8.8"


@dataclass(frozen=True)
class InterfaceAddress:
    address: str
    prefix_length: int


@dataclass(frozen=True)
class NetworkInterface:
    """Addresses and hardware address of one kernel network interface."""

    name: str
    index: int
    mac_address: Optional[str] = None
    ipv4_addresses: Tuple[InterfaceAddress, ...] = ()
    ipv6_addresses: Tuple[InterfaceAddress, ...] = ()


@dataclass(frozen=True)
class RouteInfo:
    interface: str
    gateway4: Optional[str] = None
    gateway6: Optional[str] = None


@dataclass(frozen=True)
class DnsConfig:
    nameservers: Tuple[str, ...] = ()


@dataclass(frozen=True)
class InterfaceSelection:
    """Which interfaces get a static configuration.

    By default the interfaces with kernel index 2 and 3 are chosen, which on
    cloud images are the first two NICs after ``lo``.  Explicit ``names``
    replace the index policy entirely.
    """

    primary_index: int = 2
    secondary_index: Optional[int] = 3
    names: Tuple[str, ...] = ()


@dataclass(frozen=True)
class NetworkFacts:
    primary: NetworkInterface
    route: RouteInfo
    dns: DnsConfig
    predictable_names: bool
    secondary: Optional[NetworkInterface] = None
    unconfigured: Tuple[str, ...] = field(default_factory=tuple)

    @property
    def interfaces(self) -> Tuple[NetworkInterface, ...]:
        if self.secondary is None:
            return (self.primary,)
        return (self.primary, self.secondary)


def _addresses(entries: Iterable[Any], family: str) -> Tuple[InterfaceAddress, ...]:
    found: List[InterfaceAddress] = []
    for entry in entries:
        if not isinstance(entry, dict) or entry.get("family") != family:
            continue
        local = entry.get("local")
        prefix = entry.get("prefixlen")
        if not isinstance(local, str) or not local or not isinstance(prefix, int):
            continue
        found.append(InterfaceAddress(address=local, prefix_length=prefix))
    return tuple(found)


def parse_address_json(payload: str) -> List[NetworkInterface]:
    """Parse ``ip -j address show`` output, skipping loopback interfaces."""

    try:
        data = json.loads(payload or "[]")
    except json.JSONDecodeError as exc:
        raise ProbeFailure(f"unexpected output from ip -j address show: {exc}") from exc
    if not isinstance(data, list):
        raise ProbeFailure("unexpected output from ip -j address show: not a list")

    interfaces: List[NetworkInterface] = []
    for entry in data:
        if not isinstance(entry, dict):
            continue
        name = entry.get("ifname")
        index = entry.get("ifindex")
        if not isinstance(name, str) or not isinstance(index, int):
            raise ProbeFailure(f"interface entry without name or index: {entry!r}")
        link_type = entry.get("link_type")
        if link_type == "loopback" or "LOOPBACK" in (entry.get("flags") or []):
            continue
        mac = entry.get("address") if link_type == "ether" else None
        addr_info = entry.get("addr_info") or []
        interfaces.append(
            NetworkInterface(
                name=name,
                index=index,
                mac_address=mac if isinstance(mac, str) and mac else None,
                ipv4_addresses=_addresses(addr_info, "inet"),
                ipv6_addresses=_addresses(addr_info, "inet6"),
            )
        )
    return interfaces


_HEADER = re.compile(r"^(\d+):\s+([^:@\s]+)(?:@\S+)?:\s")
_LINK = re.compile(r"^\s+link/(\S+)(?:\s+(\S+))?")
_INET = re.compile(r"^\s+(inet6?)\s+([0-9A-Fa-f.:]+)/(\d+)\b")


def parse_address_text(payload: str) -> List[NetworkInterface]:
    """Parse the human-readable ``ip address show`` listing.

    Used only with iproute2 releases that predate ``-j``.  Any non-blank line
    outside an interface block is treated as an unknown format.
    """

    blocks: List[dict[str, Any]] = []
    current: Optional[dict[str, Any]] = None
    for line in payload.splitlines():
        if not line.strip():
            continue
        header = _HEADER.match(line)
        if header:
            current = {
                "index": int(header.group(1)),
                "name": header.group(2),
                "link": None,
                "mac": None,
                "inet": [],
                "inet6": [],
            }
            blocks.append(current)
            continue
        if current is None:
            raise ProbeFailure(f"unexpected line in ip address output: {line.strip()!r}")
        link = _LINK.match(line)
        if link:
            current["link"] = link.group(1)
            current["mac"] = link.group(2) if link.group(1) == "ether" else None
            continue
        inet = _INET.match(line)
        if inet:
            current[inet.group(1)].append(
                InterfaceAddress(address=inet.group(2), prefix_length=int(inet.group(3)))
            )

    return [
        NetworkInterface(
            name=block["name"],
            index=block["index"],
            mac_address=block["mac"],
            ipv4_addresses=tuple(block["inet"]),
            ipv6_addresses=tuple(block["inet6"]),
        )
        for block in blocks
        if block["link"] != "loopback"
    ]


def list_interfaces(runner: CommandRunner) -> List[NetworkInterface]:
    """Return the non-loopback interfaces in kernel index order."""

    result = runner.run(["ip", "-j", "address", "show"])
    if result.returncode == 0:
        interfaces = parse_address_json(result.stdout)
        source = "json"
    else:
        log_event(
            "nixos_inplace.network.list_interfaces.json_unavailable",
            returncode=result.returncode,
            stderr=result.stderr.strip(),
        )
        interfaces = parse_address_text(runner.output(["ip", "address", "show"]))
        source = "text"
    interfaces.sort(key=lambda iface: iface.index)
    log_event(
        "nixos_inplace.network.list_interfaces.finished",
        source=source,
        interfaces=[iface.name for iface in interfaces],
    )
    return interfaces


def select_interfaces(
    interfaces: Sequence[NetworkInterface],
    selection: InterfaceSelection = InterfaceSelection(),
) -> Tuple[NetworkInterface, Optional[NetworkInterface], Tuple[str, ...]]:
    """Return ``(primary, secondary, unconfigured_names)``.

    Raises:
        ProbeFailure: when the primary interface (or an explicitly named
            secondary) does not exist.
    """

    secondary: Optional[NetworkInterface] = None
    if selection.names:
        by_name = {iface.name: iface for iface in interfaces}
        wanted = selection.names[:2]
        missing = [name for name in wanted if name not in by_name]
        if missing:
            raise ProbeFailure(f"network interface(s) not found: {', '.join(missing)}")
        primary = by_name[wanted[0]]
        if len(wanted) > 1:
            secondary = by_name[wanted[1]]
    else:
        by_index = {iface.index: iface for iface in interfaces}
        if selection.primary_index not in by_index:
            raise ProbeFailure(
                f"no network interface with kernel index {selection.primary_index}"
            )
        primary = by_index[selection.primary_index]
        if selection.secondary_index is not None:
            secondary = by_index.get(selection.secondary_index)

    chosen = {primary.name}
    if secondary is not None:
        chosen.add(secondary.name)
    unconfigured = tuple(iface.name for iface in interfaces if iface.name not in chosen)
    if unconfigured:
        log_event(
            "nixos_inplace.network.select_interfaces.partial",
            configured=sorted(chosen),
            unconfigured=unconfigured,
        )
    return primary, secondary, unconfigured


_DEFAULT_VIA = re.compile(r"^default\s+via\s+(\S+)")


def _valid_address(value: Any) -> Optional[str]:
    if not isinstance(value, str):
        return None
    try:
        ipaddress.ip_address(value)
    except ValueError:
        return None
    return value


def _default_gateway(runner: CommandRunner, interface: str, family: str) -> Optional[str]:
    family_args = ["-6"] if family == "inet6" else []
    result = runner.run(["ip", "-j", *family_args, "route", "show", "default", "dev", interface])
    if result.returncode == 0:
        try:
            routes = json.loads(result.stdout or "[]")
        except json.JSONDecodeError as exc:
            raise ProbeFailure(f"unexpected output from ip -j route show: {exc}") from exc
        if not isinstance(routes, list):
            raise ProbeFailure("unexpected output from ip -j route show: not a list")
        for route in routes:
            if isinstance(route, dict):
                gateway = _valid_address(route.get("gateway"))
                if gateway:
                    return gateway
        return None

    text = runner.output(
        ["ip", *family_args, "route", "show", "default", "dev", interface],
        ignore_errors=True,
    )
    for line in text.splitlines():
        match = _DEFAULT_VIA.match(line.strip())
        if match:
            gateway = _valid_address(match.group(1))
            if gateway:
                return gateway
    return None


def default_routes(runner: CommandRunner, interface: str) -> RouteInfo:
    """Return the IPv4 and IPv6 default gateways reachable via ``interface``.

    Each family is queried on its own; a missing or failing IPv6 lookup never
    hides the IPv4 gateway and vice versa.
    """

    gateways: dict[str, Optional[str]] = {}
    for family in ("inet", "inet6"):
        try:
            gateways[family] = _default_gateway(runner, interface, family)
        except ProbeFailure as exc:
            log_event(
                "nixos_inplace.network.default_routes.unreadable",
                interface=interface,
                family=family,
                error=str(exc),
            )
            gateways[family] = None
    route = RouteInfo(
        interface=interface,
        gateway4=gateways["inet"],
        gateway6=gateways["inet6"],
    )
    log_event(
        "nixos_inplace.network.default_routes.finished",
        interface=interface,
        gateway4=route.gateway4,
        gateway6=route.gateway6,
    )
    return route


def system_resolvers(runner: CommandRunner, path: str = "/etc/resolv.conf") -> DnsConfig:
    """Return the configured nameservers with loopback stubs replaced.

    The converted system boots without the stub resolver that answers on the
    loopback address, so such entries become :data:`FALLBACK_RESOLVER`.
    """

    try:
        text = runner.read_text(path)
    except OSError as exc:
        log_event("nixos_inplace.network.resolvers.unreadable", path=path, error=str(exc))
        return DnsConfig()

    nameservers: List[str] = []
    for raw_line in text.splitlines():
        line = re.split(r"[#;]", raw_line, maxsplit=1)[0]
        parts = line.split()
        if len(parts) < 2 or parts[0] != "nameserver":
            continue
        value = parts[1]
        try:
            parsed = ipaddress.ip_address(value.split("%", 1)[0])
        except ValueError:
            log_event("nixos_inplace.network.resolvers.invalid", path=path, value=value)
            continue
        nameservers.append(FALLBACK_RESOLVER if parsed.is_loopback else value)
    return DnsConfig(nameservers=tuple(nameservers))


def predictable_naming(primary_name: str) -> bool:
    """Return ``False`` when the kernel assigned legacy ``eth*`` names."""

    return not primary_name.startswith("eth")


def probe_network(
    runner: CommandRunner,
    selection: InterfaceSelection = InterfaceSelection(),
    *,
    resolv_conf: str = "/etc/resolv.conf",
) -> NetworkFacts:
    """Collect everything the static network configuration needs."""

    primary, secondary, unconfigured = select_interfaces(list_interfaces(runner), selection)
    facts = NetworkFacts(
        primary=primary,
        secondary=secondary,
        route=default_routes(runner, primary.name),
        dns=system_resolvers(runner, resolv_conf),
        predictable_names=predictable_naming(primary.name),
        unconfigured=unconfigured,
    )
    log_event(
        "nixos_inplace.network.probe.finished",
        primary=primary.name,
        secondary=secondary.name if secondary else None,
        nameservers=facts.dns.nameservers,
        predictable_names=facts.predictable_names,
    )
    return facts
