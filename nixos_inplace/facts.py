"""The immutable record of everything probed from the running host."""

from __future__ import annotations

from dataclasses import asdict, dataclass, is_dataclass
from typing import Any, Dict, Mapping, Optional, Tuple

from . import environment, keys, network
from .commands import CommandRunner
from .environment import BootTarget, RootFilesystem
from .keys import AuthorizedKey
from .logging_utils import log_event
from .network import InterfaceSelection, NetworkFacts
from .swap import SwapState

__all__ = ["HostFacts", "HostIdentity", "gather_host_facts", "probe_identity"]


@dataclass(frozen=True)
class HostIdentity:
    hostname: str
    domain: str = ""


@dataclass(frozen=True)
class HostFacts:
    """Probe results handed from the orchestrator to the synthesizer.

    ``swap`` is attached after classification with :func:`dataclasses.replace`;
    ``network`` is ``None`` unless a static network configuration was
    requested.
    """

    architecture: str
    firmware: str
    boot: BootTarget
    root: RootFilesystem
    identity: HostIdentity
    authorized_keys: Tuple[AuthorizedKey, ...] = ()
    network: Optional[NetworkFacts] = None
    swap: Optional[SwapState] = None

    def to_payload(self) -> Dict[str, Any]:
        """Return a JSON-serialisable description of the facts."""

        payload = asdict(self)
        payload["boot"] = {"kind": type(self.boot).__name__, **asdict(self.boot)}
        if self.swap is not None and is_dataclass(self.swap):
            payload["swap"] = {"kind": type(self.swap).__name__, **asdict(self.swap)}
        return payload


def probe_identity(runner: CommandRunner) -> HostIdentity:
    """Return the short hostname and DNS domain of the running system."""

    hostname = runner.output(["hostname", "-s"], ignore_errors=True).strip()
    domain = runner.output(["hostname", "-d"], ignore_errors=True).strip()
    if not hostname:
        try:
            hostname = runner.read_text("/etc/hostname").strip().split(".", 1)[0]
        except OSError:
            hostname = ""
    return HostIdentity(hostname=hostname or "nixos", domain=domain)


def gather_host_facts(
    runner: CommandRunner,
    *,
    environ: Mapping[str, str],
    include_network: bool = False,
    selection: InterfaceSelection = InterfaceSelection(),
) -> HostFacts:
    """Run every probe and return the resulting :class:`HostFacts`.

    Raises:
        ProbeFailure: when the ESP (in EFI mode), the root filesystem or the
            primary network interface cannot be determined.
    """

    firmware = environment.detect_firmware_mode(runner)
    architecture = environment.detect_architecture(runner)
    boot = environment.detect_boot_target(runner, firmware)
    root = environment.detect_root_filesystem(runner)
    identity = probe_identity(runner)
    authorized = keys.load_authorized_keys(runner, keys.candidate_key_files(environ))
    network_facts = network.probe_network(runner, selection) if include_network else None

    log_event(
        "nixos_inplace.facts.gathered",
        firmware=firmware,
        architecture=architecture,
        boot=boot,
        root=root,
        hostname=identity.hostname,
        keys=len(authorized),
        network=network_facts is not None,
    )
    return HostFacts(
        architecture=architecture,
        firmware=firmware,
        boot=boot,
        root=root,
        identity=identity,
        authorized_keys=authorized,
        network=network_facts,
    )
