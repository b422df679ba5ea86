"""Tests for the files that hand the system over to NixOS."""

from __future__ import annotations

import os
import stat

from nixos_inplace.lustrate import (
    LUSTRATE_PATHS,
    fix_ssh_host_key_permissions,
    lustrate_entries,
    reify_resolv_conf,
    write_lustrate_marker,
)


def _host_keys(root):
    ssh = root / "etc/ssh"
    ssh.mkdir(parents=True)
    for name in ("ssh_host_ed25519_key", "ssh_host_ed25519_key.pub", "ssh_host_rsa_key"):
        (ssh / name).write_text(name)
        os.chmod(ssh / name, 0o644)
    return ssh


def test_entries_include_host_keys(tmp_path) -> None:
    _host_keys(tmp_path)

    entries = lustrate_entries(tmp_path)

    assert entries[: len(LUSTRATE_PATHS)] == list(LUSTRATE_PATHS)
    assert entries[len(LUSTRATE_PATHS) :] == [
        "etc/ssh/ssh_host_ed25519_key",
        "etc/ssh/ssh_host_ed25519_key.pub",
        "etc/ssh/ssh_host_rsa_key",
    ]


def test_marker_is_written(tmp_path) -> None:
    (tmp_path / "etc").mkdir()
    (tmp_path / "etc/NIXOS_LUSTRATE").write_text("etc/custom\n")

    marker = write_lustrate_marker(tmp_path)

    assert (tmp_path / "etc/NIXOS").exists()
    lines = marker.read_text().splitlines()
    assert lines[0] == "etc/custom"
    assert lines[1:] == list(LUSTRATE_PATHS)


def test_resolv_conf_symlink_is_replaced(tmp_path) -> None:
    etc = tmp_path / "etc"
    etc.mkdir()
    target = tmp_path / "run/resolved/stub-resolv.conf"
    target.parent.mkdir(parents=True)
    target.write_text("nameserver 127.0.0.53\n")
    (etc / "resolv.conf").symlink_to(target)

    assert reify_resolv_conf(tmp_path) is True

    resolv = etc / "resolv.conf"
    assert not resolv.is_symlink()
    assert resolv.read_text() == "nameserver 127.0.0.53\n"
    assert (etc / "resolv.conf.lnk").is_symlink()


def test_regular_resolv_conf_is_left_alone(tmp_path) -> None:
    etc = tmp_path / "etc"
    etc.mkdir()
    (etc / "resolv.conf").write_text("nameserver 1.1.1.1\n")

    assert reify_resolv_conf(tmp_path) is True
    assert not (etc / "resolv.conf.lnk").exists()


def test_dangling_resolv_conf_symlink_is_not_fatal(tmp_path) -> None:
    etc = tmp_path / "etc"
    etc.mkdir()
    (etc / "resolv.conf").symlink_to(tmp_path / "missing")

    assert reify_resolv_conf(tmp_path) is False
    assert (etc / "resolv.conf").is_symlink()


def test_private_host_keys_are_restricted(tmp_path) -> None:
    ssh = _host_keys(tmp_path)

    fixed = fix_ssh_host_key_permissions(tmp_path)

    assert [path.name for path in fixed] == ["ssh_host_ed25519_key", "ssh_host_rsa_key"]
    assert stat.S_IMODE(os.stat(ssh / "ssh_host_rsa_key").st_mode) == 0o600
    assert stat.S_IMODE(os.stat(ssh / "ssh_host_ed25519_key.pub").st_mode) == 0o644
