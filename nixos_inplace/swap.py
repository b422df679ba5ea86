"""Swap classification and the temporary swap file used during installation."""

from __future__ import annotations

import os
import tempfile
from dataclasses import dataclass
from typing import List, Optional, Union

from .commands import CommandRunner
from .errors import BestEffortFailure, ExternalToolFailure
from .logging_utils import log_event

__all__ = [
    "ExistingSwapDevice",
    "NeedsTemporarySwap",
    "SwapAbsent",
    "SwapState",
    "TemporarySwapFile",
    "classify_swap",
]


@dataclass(frozen=True)
class ExistingSwapDevice:
    """Active swap on a persistent block device, reused by the new system."""

    path: str


@dataclass(frozen=True)
class SwapAbsent:
    """No usable swap and provisioning is suppressed."""


@dataclass(frozen=True)
class NeedsTemporarySwap:
    """No persistent swap; a temporary file is provisioned for the install."""


SwapState = Union[ExistingSwapDevice, SwapAbsent, NeedsTemporarySwap]

_VOLATILE_SWAP_PREFIXES = ("/dev/zram",)


def classify_swap(runner: CommandRunner, *, suppressed: bool = False) -> SwapState:
    """Classify the active swap areas without changing anything."""

    listing = runner.output(
        ["swapon", "--show=NAME,TYPE", "--noheadings", "--raw"],
        ignore_errors=True,
    )
    for line in listing.splitlines():
        parts = line.split()
        if not parts:
            continue
        name = parts[0]
        if name.startswith(_VOLATILE_SWAP_PREFIXES):
            continue
        if runner.is_block_device(name):
            log_event("nixos_inplace.swap.classify", state="existing-device", path=name)
            return ExistingSwapDevice(path=name)

    if suppressed:
        log_event("nixos_inplace.swap.classify", state="absent")
        return SwapAbsent()
    log_event("nixos_inplace.swap.classify", state="needs-temporary-file")
    return NeedsTemporarySwap()


class TemporarySwapFile:
    """A swap file that only lives for the duration of the install step.

    Small cloud instances run out of memory while building the system
    closure.  Both directions are best-effort: failures are logged and the
    install continues without the extra swap.
    """

    def __init__(
        self,
        runner: CommandRunner,
        *,
        directory: str = "/tmp",
        size_mib: int = 1024,
    ) -> None:
        self.runner = runner
        self.directory = directory
        self.size_mib = size_mib
        self.path: Optional[str] = None
        self.active = False

    def _step(self, cmd: List[str]) -> None:
        try:
            self.runner.execute(cmd)
        except ExternalToolFailure as exc:
            raise BestEffortFailure(str(exc)) from exc

    def provision(self) -> bool:
        """Create and enable the swap file; return ``True`` on success."""

        try:
            fd, path = tempfile.mkstemp(
                prefix="nixos-inplace.", suffix=".swp", dir=self.directory
            )
            os.close(fd)
        except OSError as exc:
            log_event("nixos_inplace.swap.provision.failed", step="create", error=str(exc))
            return False
        self.path = path

        steps = (
            ["dd", "if=/dev/zero", f"of={path}", "bs=1M", f"count={self.size_mib}"],
            ["chmod", "0600", path],
            ["mkswap", path],
            ["swapon", path],
        )
        for cmd in steps:
            try:
                self._step(cmd)
            except BestEffortFailure as exc:
                log_event(
                    "nixos_inplace.swap.provision.failed",
                    step=cmd[0],
                    path=path,
                    error=str(exc),
                )
                return False
        self.active = True
        log_event("nixos_inplace.swap.provision.finished", path=path, size_mib=self.size_mib)
        return True

    def teardown(self) -> bool:
        """Disable and delete the swap file; return ``True`` when clean."""

        if self.path is None:
            return True
        clean = True
        if self.active:
            try:
                self._step(["swapoff", self.path])
                self.active = False
            except BestEffortFailure as exc:
                log_event("nixos_inplace.swap.teardown.failed", step="swapoff", error=str(exc))
                clean = False
        if not self.active:
            try:
                os.unlink(self.path)
            except FileNotFoundError:
                pass
            except OSError as exc:
                log_event("nixos_inplace.swap.teardown.failed", step="unlink", error=str(exc))
                clean = False
        log_event("nixos_inplace.swap.teardown.finished", path=self.path, clean=clean)
        return clean
