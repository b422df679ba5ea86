"""Files that hand the running system over to NixOS on the next boot.

NixOS stage 1 "lustrates" a foreign root when ``/etc/NIXOS_LUSTRATE`` exists:
everything except ``/nix``, ``/boot`` and the paths listed in that file is
moved to ``/old-root``.
"""

from __future__ import annotations

import os
from pathlib import Path
from typing import Iterable, List

from .logging_utils import log_event

__all__ = [
    "LUSTRATE_PATHS",
    "fix_ssh_host_key_permissions",
    "lustrate_entries",
    "reify_resolv_conf",
    "write_lustrate_marker",
]

LUSTRATE_PATHS = (
    "etc/nixos",
    "etc/resolv.conf",
    "root/.nix-defexpr/channels",
)


def _ssh_host_keys(root: Path) -> List[Path]:
    return sorted((root / "etc/ssh").glob("ssh_host_*_key*"))


def lustrate_entries(root: Path = Path("/")) -> List[str]:
    """Return the root-relative paths to keep across the lustration boot."""

    entries = list(LUSTRATE_PATHS)
    entries.extend(str(path.relative_to(root)) for path in _ssh_host_keys(root))
    return entries


def write_lustrate_marker(root: Path = Path("/")) -> Path:
    """Create ``/etc/NIXOS`` and append the keep-list to ``/etc/NIXOS_LUSTRATE``.

    The marker is written once.  An ``OSError`` propagates to the caller; the
    write is not retried.
    """

    etc = root / "etc"
    (etc / "NIXOS").touch()
    marker = etc / "NIXOS_LUSTRATE"
    entries = lustrate_entries(root)
    with marker.open("a", encoding="utf-8") as handle:
        for entry in entries:
            handle.write(entry + "\n")
    log_event("nixos_inplace.lustrate.marker_written", path=marker, entries=entries)
    return marker


def reify_resolv_conf(root: Path = Path("/")) -> bool:
    """Replace a symlinked ``resolv.conf`` with a regular copy of its content.

    Resolver symlinks point into ``/run`` trees of services that do not exist
    after the conversion.  The link is kept aside as ``resolv.conf.lnk``.
    Returns ``False`` when the copy could not be made; the failure is only
    logged.
    """

    resolv = root / "etc/resolv.conf"
    if not resolv.is_symlink():
        return True
    try:
        content = resolv.read_text(encoding="utf-8")
        aside = resolv.with_name("resolv.conf.lnk")
        os.replace(resolv, aside)
        resolv.write_text(content, encoding="utf-8")
    except OSError as exc:
        log_event("nixos_inplace.lustrate.resolv_conf_failed", path=resolv, error=str(exc))
        return False
    log_event("nixos_inplace.lustrate.resolv_conf_reified", path=resolv)
    return True


def fix_ssh_host_key_permissions(root: Path = Path("/")) -> List[Path]:
    """Restrict private SSH host keys to ``0600``.

    Some images ship group-readable host keys, which NixOS' sshd refuses to
    load.  Failures are logged and skipped.
    """

    fixed: List[Path] = []
    keys: Iterable[Path] = (
        path for path in _ssh_host_keys(root) if not path.name.endswith(".pub")
    )
    for path in keys:
        try:
            os.chmod(path, 0o600)
        except OSError as exc:
            log_event("nixos_inplace.lustrate.host_key_chmod_failed", path=path, error=str(exc))
            continue
        fixed.append(path)
    return fixed
