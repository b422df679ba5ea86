"""Tests for rendering and writing the NixOS configuration."""

from __future__ import annotations

import dataclasses
import json

from nixos_inplace.environment import BiosBoot, EfiBoot, RootFilesystem
from nixos_inplace.facts import HostFacts, HostIdentity
from nixos_inplace.keys import AuthorizedKey
from nixos_inplace.network import (
    DnsConfig,
    InterfaceAddress,
    NetworkFacts,
    NetworkInterface,
    RouteInfo,
    probe_network,
)
from nixos_inplace.swap import ExistingSwapDevice, NeedsTemporarySwap
from nixos_inplace.synthesize import (
    STATE_VERSION,
    ConfigPaths,
    initrd_available_modules,
    render_configuration,
    render_hardware_configuration,
    render_networking,
    write_configuration,
)

from tests.fakes import make_runner, ok

ESP = "/dev/disk/by-uuid/1111-2222"


def _facts(**overrides) -> HostFacts:
    base = HostFacts(
        architecture="x86_64",
        firmware="efi",
        boot=EfiBoot(esp_identifier=ESP),
        root=RootFilesystem(device="/dev/vda1", fs_type="ext4"),
        identity=HostIdentity(hostname="web-1", domain="example.com"),
        authorized_keys=(AuthorizedKey("ssh-ed25519", "AAAAkey", "alice"),),
        swap=NeedsTemporarySwap(),
    )
    return dataclasses.replace(base, **overrides)


def _network(**overrides) -> NetworkFacts:
    eth0 = NetworkInterface(
        name="eth0",
        index=2,
        mac_address="52:54:00:aa:bb:01",
        ipv4_addresses=(InterfaceAddress("10.0.0.5", 24),),
        ipv6_addresses=(InterfaceAddress("2001:db8::5", 64),),
    )
    base = NetworkFacts(
        primary=eth0,
        route=RouteInfo(interface="eth0", gateway4="10.0.0.1", gateway6="2001:db8::1"),
        dns=DnsConfig(nameservers=("8.8.8.8",)),
        predictable_names=False,
    )
    return dataclasses.replace(base, **overrides)


def test_initrd_modules_depend_on_architecture() -> None:
    assert "vmw_pvscsi" in initrd_available_modules("x86_64")
    assert "vmw_pvscsi" not in initrd_available_modules("aarch64")
    assert initrd_available_modules("aarch64") == ("ata_piix", "uhci_hcd", "xen_blkfront")


def test_configuration_contents() -> None:
    text = render_configuration(_facts())

    assert text.startswith("{ ... }:\n")
    assert "./hardware-configuration.nix" in text
    assert "./networking.nix" not in text
    assert "boot.tmp.cleanOnBoot = true;" in text
    assert "zramSwap.enable = true;" in text
    assert 'networking.hostName = "web-1";' in text
    assert 'networking.domain = "example.com";' in text
    assert "services.openssh.enable = true;" in text
    assert 'users.users.root.openssh.authorizedKeys.keys = [ "ssh-ed25519 AAAAkey alice" ];' in text
    assert f'system.stateVersion = "{STATE_VERSION}";' in text


def test_configuration_omits_empty_domain_and_adds_imports() -> None:
    facts = _facts(identity=HostIdentity(hostname="web-1"))

    text = render_configuration(
        facts, include_networking=True, extra_imports=["/etc/nixos/extra.nix"]
    )

    assert "networking.domain" not in text
    assert "./networking.nix" in text
    assert "/etc/nixos/extra.nix" in text


def test_existing_swap_disables_zram_and_is_referenced() -> None:
    facts = _facts(swap=ExistingSwapDevice(path="/dev/sda2"))

    assert "zramSwap.enable = false;" in render_configuration(facts)
    hardware = render_hardware_configuration(facts)
    assert 'swapDevices = [\n    { device = "/dev/sda2"; }\n  ];' in hardware


def test_efi_hardware_references_stable_esp() -> None:
    text = render_hardware_configuration(_facts())

    assert text.startswith("{ modulesPath, ... }:\n")
    assert '(modulesPath + "/profiles/qemu-guest.nix")' in text
    assert "efiSupport = true;" in text
    assert "efiInstallAsRemovable = true;" in text
    assert 'device = "nodev";' in text
    assert 'fileSystems."/boot" = {' in text
    assert f'device = "{ESP}";' in text
    assert 'fsType = "vfat";' in text
    assert '"/dev/sd' not in text
    assert 'fileSystems."/" = {\n    device = "/dev/vda1";\n    fsType = "ext4";\n  };' in text
    assert "boot.initrd.kernelModules = [ \"nvme\" ];" in text


def test_bios_hardware_uses_grub_device() -> None:
    text = render_hardware_configuration(
        _facts(firmware="bios", boot=BiosBoot(device="/dev/vda"))
    )

    assert 'boot.loader.grub.device = "/dev/vda";' in text
    assert "efiSupport" not in text
    assert 'fileSystems."/boot"' not in text


def test_networking_contents() -> None:
    text = render_networking(_network())

    assert text.startswith("{ lib, ... }:\n")
    assert "# This file was populated at runtime with the networking" in text
    assert 'nameservers = [ "8.8.8.8" ];' in text
    assert 'defaultGateway = "10.0.0.1";' in text
    assert 'defaultGateway6 = {\n      address = "2001:db8::1";\n      interface = "eth0";\n    };' in text
    assert "dhcpcd.enable = false;" in text
    assert "usePredictableInterfaceNames = lib.mkForce false;" in text
    assert '{ address = "10.0.0.5"; prefixLength = 24; }' in text
    assert '{ address = "2001:db8::5"; prefixLength = 64; }' in text
    assert '{ address = "10.0.0.1"; prefixLength = 32; }' in text
    assert '{ address = "2001:db8::1"; prefixLength = 128; }' in text
    assert 'ATTR{address}=="52:54:00:aa:bb:01", NAME="eth0"' in text


def test_networking_without_gateways_or_secondary_routes() -> None:
    secondary = NetworkInterface(
        name="eth1",
        index=3,
        ipv4_addresses=(InterfaceAddress("10.10.0.7", 16),),
    )
    network = _network(
        route=RouteInfo(interface="eth0"),
        secondary=secondary,
        unconfigured=("wg0",),
        predictable_names=True,
    )

    text = render_networking(network)

    assert "defaultGateway" not in text
    assert "routes" not in text
    assert "eth1 = {" in text
    assert '{ address = "10.10.0.7"; prefixLength = 16; }' in text
    assert "usePredictableInterfaceNames = lib.mkForce true;" in text
    assert "# Interfaces left unconfigured: wg0" in text


def test_write_configuration_creates_files(tmp_path) -> None:
    paths = ConfigPaths(directory=tmp_path / "etc/nixos")
    facts = _facts(network=_network())

    result = write_configuration(facts, paths)

    assert result.written == (paths.configuration, paths.hardware, paths.networking)
    assert result.skipped == ()
    assert "./networking.nix" in paths.configuration.read_text()
    assert "lib.mkForce false" in paths.networking.read_text()


def test_existing_configuration_is_kept_but_network_regenerated(tmp_path) -> None:
    paths = ConfigPaths(directory=tmp_path)
    original = b"{ ... }: { /* hand written */ }\n"
    paths.configuration.write_bytes(original)
    paths.networking.write_text("stale\n")

    result = write_configuration(_facts(network=_network()), paths)

    assert paths.configuration.read_bytes() == original
    assert not paths.hardware.exists()
    assert result.skipped == (paths.configuration, paths.hardware)
    assert result.written == (paths.networking,)
    assert "10.0.0.5" in paths.networking.read_text()


def test_rerun_is_idempotent(tmp_path) -> None:
    paths = ConfigPaths(directory=tmp_path)
    facts = _facts()

    write_configuration(facts, paths)
    first = paths.hardware.read_bytes()
    result = write_configuration(facts, paths)

    assert result.written == ()
    assert paths.hardware.read_bytes() == first


def test_flake_mode_writes_hardware_only(tmp_path) -> None:
    paths = ConfigPaths(directory=tmp_path)

    result = write_configuration(_facts(), paths, synthesize_main=False)

    assert result.written == (paths.hardware,)
    assert result.skipped == (paths.configuration,)
    assert not paths.configuration.exists()

    again = write_configuration(_facts(), paths, synthesize_main=False)
    assert again.written == ()
    assert again.skipped == (paths.configuration, paths.hardware)


def test_end_to_end_static_network_from_probe(tmp_path) -> None:
    runner = make_runner(
        {
            ("ip", "-j", "address", "show"): ok(
                json.dumps(
                    [
                        {"ifindex": 1, "ifname": "lo", "link_type": "loopback"},
                        {
                            "ifindex": 2,
                            "ifname": "eth0",
                            "link_type": "ether",
                            "address": "52:54:00:00:00:01",
                            "addr_info": [
                                {"family": "inet", "local": "10.0.0.5", "prefixlen": 24}
                            ],
                        },
                    ]
                )
            ),
            ("ip", "-j", "route", "show", "default", "dev", "eth0"): ok(
                json.dumps([{"dst": "default", "gateway": "10.0.0.1"}])
            ),
            ("ip", "-j", "-6", "route", "show", "default", "dev", "eth0"): ok("[]"),
        },
        files={"/etc/resolv.conf": "nameserver 127.0.0.53\n"},
    )
    facts = _facts(
        firmware="bios",
        boot=BiosBoot(device="/dev/vda"),
        network=probe_network(runner),
    )
    paths = ConfigPaths(directory=tmp_path)

    write_configuration(facts, paths)
    text = paths.networking.read_text()

    assert 'nameservers = [ "8.8.8.8" ];' in text
    assert "127.0.0.53" not in text
    assert "eth0 = {" in text
    assert 'defaultGateway = "10.0.0.1";' in text
    assert "defaultGateway6" not in text
    assert '{ address = "10.0.0.1"; prefixLength = 32; }' in text
    assert '{ address = "10.0.0.5"; prefixLength = 24; }' in text
    assert "usePredictableInterfaceNames = lib.mkForce false;" in text
