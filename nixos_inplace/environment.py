"""Firmware, boot device and root filesystem detection."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional, Union

from .commands import CommandRunner
from .errors import ProbeFailure
from .logging_utils import log_event

__all__ = [
    "BiosBoot",
    "BootTarget",
    "EfiBoot",
    "RootFilesystem",
    "FIRMWARE_BIOS",
    "FIRMWARE_EFI",
    "detect_architecture",
    "detect_boot_target",
    "detect_firmware_mode",
    "detect_root_filesystem",
    "find_boot_device",
    "find_stable_esp",
]

FIRMWARE_EFI = "efi"
FIRMWARE_BIOS = "bios"

_EFI_FIRMWARE_DIR = "/sys/firmware/efi"
_STABLE_ID_DIR = "/dev/disk/by-uuid"

# Order matters: nested ESP mounts are checked before ``/boot`` itself.
_ESP_MOUNT_CANDIDATES = ("/boot/EFI", "/boot/efi", "/boot")

_BIOS_DISK_CANDIDATES = ("/dev/vda", "/dev/sda", "/dev/xvda", "/dev/nvme0n1")

_ARCHITECTURE_ALIASES = {
    "x86_64": "x86_64",
    "amd64": "x86_64",
    "aarch64": "aarch64",
    "arm64": "aarch64",
}


@dataclass(frozen=True)
class EfiBoot:
    """EFI boot target referencing the ESP by a stable identifier."""

    esp_identifier: str

    def __post_init__(self) -> None:
        if not self.esp_identifier.startswith(_STABLE_ID_DIR + "/"):
            raise ValueError(
                f"ESP reference {self.esp_identifier!r} is not under {_STABLE_ID_DIR}"
            )


@dataclass(frozen=True)
class BiosBoot:
    """BIOS boot target installing GRUB to a whole disk."""

    device: str


BootTarget = Union[EfiBoot, BiosBoot]


@dataclass(frozen=True)
class RootFilesystem:
    """The block device mounted at ``/`` and its filesystem type."""

    device: str
    fs_type: str


def detect_firmware_mode(runner: CommandRunner) -> str:
    """Return ``"efi"`` when the firmware interface directory exists."""

    if runner.is_dir(_EFI_FIRMWARE_DIR):
        return FIRMWARE_EFI
    return FIRMWARE_BIOS


def detect_architecture(runner: CommandRunner) -> str:
    """Return the normalised machine architecture reported by ``uname -m``."""

    machine = runner.output(["uname", "-m"]).strip()
    return _ARCHITECTURE_ALIASES.get(machine, machine)


def _mount_of(runner: CommandRunner, path: str) -> Optional[tuple[str, str]]:
    """Return ``(target, source)`` of the filesystem containing ``path``."""

    listing = runner.output(
        ["findmnt", "-n", "-r", "-o", "TARGET,SOURCE", "-T", path],
        ignore_errors=True,
    )
    for line in listing.splitlines():
        parts = line.split()
        if len(parts) >= 2:
            return _unescape(parts[0]), _unescape(parts[1])
    return None


def _unescape(value: str) -> str:
    # ``findmnt -r`` hex-escapes whitespace in paths.
    return value.replace("\\x20", " ")


def find_stable_esp(runner: CommandRunner) -> str:
    """Return the ``/dev/disk/by-uuid`` path of the mounted ESP.

    Raises:
        ProbeFailure: when no candidate is a mount point of its own or the
            backing device has no stable identifier.
    """

    source: Optional[str] = None
    for candidate in _ESP_MOUNT_CANDIDATES:
        if not runner.is_dir(candidate):
            continue
        mount = _mount_of(runner, candidate)
        if mount is None:
            continue
        target, mount_source = mount
        if target == candidate:
            source = mount_source
            log_event(
                "nixos_inplace.environment.esp.mount_found",
                mount_point=candidate,
                source=mount_source,
            )
            break

    if source is None:
        log_event("nixos_inplace.environment.esp.missing", candidates=_ESP_MOUNT_CANDIDATES)
        raise ProbeFailure("no ESP mount point found")

    resolved_source = runner.realpath(source)
    for entry in runner.list_dir(_STABLE_ID_DIR):
        if runner.realpath(entry) == resolved_source:
            log_event(
                "nixos_inplace.environment.esp.resolved",
                source=source,
                identifier=entry,
            )
            return entry

    raise ProbeFailure(f"no ESP stable identifier found for {source}")


def find_boot_device(runner: CommandRunner) -> str:
    """Return the first conventional whole-disk device that exists.

    When none exists the last candidate is returned; the generated GRUB
    device will then be wrong, which is left visible rather than guessed.
    """

    for candidate in _BIOS_DISK_CANDIDATES:
        if runner.path_exists(candidate):
            return candidate
    log_event(
        "nixos_inplace.environment.boot_device.missing",
        candidates=_BIOS_DISK_CANDIDATES,
    )
    return _BIOS_DISK_CANDIDATES[-1]


def detect_boot_target(runner: CommandRunner, firmware: str) -> BootTarget:
    if firmware == FIRMWARE_EFI:
        return EfiBoot(esp_identifier=find_stable_esp(runner))
    return BiosBoot(device=find_boot_device(runner))


def _root_mount_entry(mount_table: str) -> Optional[tuple[str, str]]:
    """Return ``(source, fstype)`` of the topmost mount at ``/``."""

    entry: Optional[tuple[str, str]] = None
    for line in mount_table.splitlines():
        parts = line.split()
        if len(parts) < 3:
            continue
        if parts[1] == "/":
            # Later entries shadow earlier ones (``rootfs`` then the real root).
            entry = (parts[0].replace("\\040", " "), parts[2])
    return entry


def detect_root_filesystem(
    runner: CommandRunner, mounts_path: str = "/proc/mounts"
) -> RootFilesystem:
    """Return the block device mounted at ``/`` together with its type.

    Raises:
        ProbeFailure: when ``/`` is not backed by a named block device, as with
            overlay or tmpfs roots.
    """

    try:
        table = runner.read_text(mounts_path)
    except OSError as exc:
        raise ProbeFailure(f"unable to read mount table {mounts_path}: {exc}") from exc

    entry = _root_mount_entry(table)
    if entry is None:
        raise ProbeFailure("no filesystem mounted at /")
    device, table_type = entry

    if device == "/dev/root":
        resolved = runner.output(["findmnt", "-n", "-o", "SOURCE", "/"], ignore_errors=True)
        device = resolved.strip() or device

    if not device.startswith("/dev/") or device == "/dev/root":
        log_event("nixos_inplace.environment.root.unsupported", source=device, fs_type=table_type)
        raise ProbeFailure(f"root filesystem source {device!r} is not a block device")

    queried = runner.output(
        ["findmnt", "-nr", "-o", "FSTYPE", "-S", device], ignore_errors=True
    ).strip()
    fs_type = queried.splitlines()[0] if queried else table_type

    log_event("nixos_inplace.environment.root.detected", device=device, fs_type=fs_type)
    return RootFilesystem(device=device, fs_type=fs_type)
