"""Rendering of the NixOS configuration files describing the probed host."""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Sequence, Tuple

from .environment import BiosBoot, EfiBoot
from .facts import HostFacts
from .logging_utils import log_event
from .network import InterfaceAddress, NetworkFacts, NetworkInterface
from .nix import NixIndentedString, NixRaw, render_module
from .swap import ExistingSwapDevice

__all__ = [
    "ConfigPaths",
    "STATE_VERSION",
    "SynthesisResult",
    "initrd_available_modules",
    "render_configuration",
    "render_hardware_configuration",
    "render_networking",
    "write_configuration",
]

STATE_VERSION = "23.11"

_BASE_INITRD_MODULES = ("ata_piix", "uhci_hcd", "xen_blkfront")
_X86_64_INITRD_MODULES = ("vmw_pvscsi",)
_INITRD_KERNEL_MODULES = ("nvme",)

_HARDWARE_FILE = "hardware-configuration.nix"
_NETWORKING_FILE = "networking.nix"


@dataclass(frozen=True)
class ConfigPaths:
    directory: Path = Path("/etc/nixos")

    @property
    def configuration(self) -> Path:
        return self.directory / "configuration.nix"

    @property
    def hardware(self) -> Path:
        return self.directory / _HARDWARE_FILE

    @property
    def networking(self) -> Path:
        return self.directory / _NETWORKING_FILE


@dataclass(frozen=True)
class SynthesisResult:
    written: Tuple[Path, ...] = ()
    skipped: Tuple[Path, ...] = field(default_factory=tuple)


def initrd_available_modules(architecture: str) -> Tuple[str, ...]:
    """Return the early-boot storage drivers for ``architecture``."""

    if architecture == "x86_64":
        return _BASE_INITRD_MODULES + _X86_64_INITRD_MODULES
    return _BASE_INITRD_MODULES


def render_configuration(
    facts: HostFacts,
    *,
    include_networking: bool = False,
    extra_imports: Sequence[str] = (),
) -> str:
    """Render ``configuration.nix``."""

    imports: List[Any] = [NixRaw(f"./{_HARDWARE_FILE}")]
    if include_networking:
        imports.append(NixRaw(f"./{_NETWORKING_FILE}"))
    # Extra imports are user-supplied paths or expressions, emitted verbatim.
    imports.extend(NixRaw(item) for item in extra_imports)

    body: Dict[Any, Any] = {
        "imports": imports,
        ("boot", "tmp", "cleanOnBoot"): True,
        ("zramSwap", "enable"): not isinstance(facts.swap, ExistingSwapDevice),
        ("networking", "hostName"): facts.identity.hostname,
        ("networking", "domain"): facts.identity.domain,
        ("services", "openssh", "enable"): True,
        ("users", "users", "root", "openssh", "authorizedKeys", "keys"): [
            key.render() for key in facts.authorized_keys
        ],
        ("system", "stateVersion"): STATE_VERSION,
    }
    if not facts.identity.domain:
        del body[("networking", "domain")]
    return render_module([], body)


def render_hardware_configuration(facts: HostFacts) -> str:
    """Render ``hardware-configuration.nix``."""

    body: Dict[Any, Any] = {
        "imports": [NixRaw('(modulesPath + "/profiles/qemu-guest.nix")')],
    }
    boot = facts.boot
    if isinstance(boot, EfiBoot):
        body[("boot", "loader", "grub")] = {
            "efiSupport": True,
            "efiInstallAsRemovable": True,
            "device": "nodev",
        }
        body[("fileSystems", "/boot")] = {
            "device": boot.esp_identifier,
            "fsType": "vfat",
        }
    elif isinstance(boot, BiosBoot):
        body[("boot", "loader", "grub", "device")] = boot.device
    else:
        raise TypeError(f"unsupported boot target: {boot!r}")

    body[("boot", "initrd", "availableKernelModules")] = list(
        initrd_available_modules(facts.architecture)
    )
    body[("boot", "initrd", "kernelModules")] = list(_INITRD_KERNEL_MODULES)
    body[("fileSystems", "/")] = {
        "device": facts.root.device,
        "fsType": facts.root.fs_type,
    }
    if isinstance(facts.swap, ExistingSwapDevice):
        body["swapDevices"] = [{"device": facts.swap.path}]
    return render_module(["modulesPath"], body)


def _address_list(addresses: Sequence[InterfaceAddress]) -> List[Dict[str, Any]]:
    return [
        {"address": entry.address, "prefixLength": entry.prefix_length}
        for entry in addresses
    ]


def _interface_block(
    interface: NetworkInterface, network: NetworkFacts, *, primary: bool
) -> Dict[Any, Any]:
    block: Dict[Any, Any] = {
        ("ipv4", "addresses"): _address_list(interface.ipv4_addresses),
        ("ipv6", "addresses"): _address_list(interface.ipv6_addresses),
    }
    if primary and network.route.gateway4:
        block[("ipv4", "routes")] = [{"address": network.route.gateway4, "prefixLength": 32}]
    if primary and network.route.gateway6:
        block[("ipv6", "routes")] = [{"address": network.route.gateway6, "prefixLength": 128}]
    return block


def render_networking(network: NetworkFacts) -> str:
    """Render ``networking.nix`` with static addressing for the probed NICs."""

    settings: Dict[Any, Any] = {"nameservers": list(network.dns.nameservers)}
    if network.route.gateway4:
        settings["defaultGateway"] = network.route.gateway4
    if network.route.gateway6:
        settings["defaultGateway6"] = {
            "address": network.route.gateway6,
            "interface": network.route.interface,
        }
    settings[("dhcpcd", "enable")] = False
    settings["usePredictableInterfaceNames"] = NixRaw(
        f"lib.mkForce {'true' if network.predictable_names else 'false'}"
    )
    settings["interfaces"] = {
        interface.name: _interface_block(
            interface, network, primary=interface == network.primary
        )
        for interface in network.interfaces
    }

    body: Dict[Any, Any] = {"networking": settings}
    rules = [
        f'ATTR{{address}}=="{interface.mac_address}", NAME="{interface.name}"'
        for interface in network.interfaces
        if interface.mac_address
    ]
    if rules:
        body[("services", "udev", "extraRules")] = NixIndentedString(tuple(rules))

    comments = [
        "This file was populated at runtime with the networking",
        "details gathered from the active system.",
    ]
    if network.unconfigured:
        comments.append(
            "Interfaces left unconfigured: " + ", ".join(network.unconfigured)
        )
    return render_module(["lib"], body, comments=comments)


def _write(path: Path, text: str) -> Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(text, encoding="utf-8")
    log_event("nixos_inplace.synthesize.file_written", path=path, size=len(text))
    return path


def write_configuration(
    facts: HostFacts,
    paths: ConfigPaths = ConfigPaths(),
    *,
    synthesize_main: bool = True,
    extra_imports: Sequence[str] = (),
) -> SynthesisResult:
    """Write the configuration files under ``paths.directory``.

    An existing ``configuration.nix`` is never overwritten: when present,
    neither it nor the hardware configuration is touched.  The network file
    is regenerated on every call when network facts are available.  With
    ``synthesize_main`` unset (flake installs) only the hardware and network
    files are produced, and an existing hardware file is kept.
    """

    written: List[Path] = []
    skipped: List[Path] = []
    include_networking = facts.network is not None

    if paths.configuration.exists():
        log_event(
            "nixos_inplace.synthesize.existing_configuration",
            path=paths.configuration,
        )
        skipped.extend([paths.configuration, paths.hardware])
    elif synthesize_main:
        main_text = render_configuration(
            facts,
            include_networking=include_networking,
            extra_imports=extra_imports,
        )
        written.append(_write(paths.configuration, main_text))
        written.append(_write(paths.hardware, render_hardware_configuration(facts)))
    elif paths.hardware.exists():
        skipped.extend([paths.configuration, paths.hardware])
    else:
        skipped.append(paths.configuration)
        written.append(_write(paths.hardware, render_hardware_configuration(facts)))

    if facts.network is not None:
        written.append(_write(paths.networking, render_networking(facts.network)))

    return SynthesisResult(written=tuple(written), skipped=tuple(skipped))
