"""Sequencing of a complete in-place conversion."""

from __future__ import annotations

import dataclasses
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Mapping, Optional, Tuple

from . import lustrate
from .commands import CommandRunner
from .config import Settings
from .errors import ExternalToolFailure, InplaceError, PrerequisiteMissing
from .facts import HostFacts, gather_host_facts
from .installer import NixInstaller
from .logging_utils import log_event
from .swap import NeedsTemporarySwap, TemporarySwapFile, classify_swap
from .synthesize import ConfigPaths, SynthesisResult, write_configuration

__all__ = [
    "InstallOrchestrator",
    "InstallResult",
    "REQUIRED_TOOLS",
    "STAGES",
    "check_prerequisites",
]

STAGE_CHECK = "check-prerequisites"
STAGE_PROBE = "probe-environment"
STAGE_CLASSIFY_SWAP = "classify-swap"
STAGE_PROVISION_SWAP = "provision-swap"
STAGE_SYNTHESIZE = "synthesize-config"
STAGE_RUN_INSTALLER = "run-installer"
STAGE_TEARDOWN_SWAP = "teardown-swap"
STAGE_DONE = "done"

STAGES = (
    STAGE_CHECK,
    STAGE_PROBE,
    STAGE_CLASSIFY_SWAP,
    STAGE_PROVISION_SWAP,
    STAGE_SYNTHESIZE,
    STAGE_RUN_INSTALLER,
    STAGE_TEARDOWN_SWAP,
    STAGE_DONE,
)

REQUIRED_TOOLS = (
    "curl",
    "findmnt",
    "groupadd",
    "hostname",
    "ip",
    "swapon",
    "tar",
    "uname",
    "useradd",
    "xzcat",
)

_STATUS_FILENAME = "status"


@dataclass(frozen=True)
class InstallResult:
    """Outcome of an :meth:`InstallOrchestrator.run` invocation."""

    status: str
    reason: Optional[str] = None
    stages: Tuple[str, ...] = ()
    details: Dict[str, str] = field(default_factory=dict)


def _record_result(
    status: str,
    *,
    status_dir: Path,
    stages: List[str],
    reason: Optional[str] = None,
    details: Optional[Dict[str, str]] = None,
) -> InstallResult:
    """Persist and return an :class:`InstallResult`."""

    payload: Dict[str, str] = dict(details or {})
    log_event(
        "nixos_inplace.install.result",
        status=status,
        reason=reason,
        stages=stages,
        details=payload,
    )

    try:
        status_dir.mkdir(parents=True, exist_ok=True)
        status_path = status_dir / _STATUS_FILENAME
        lines = [f"STATE={status}\n"]
        if reason:
            lines.append(f"REASON={reason}\n")
        lines.append(f"STAGES={','.join(stages)}\n")
        for key, value in sorted(payload.items()):
            lines.append(f"{key.upper()}={value}\n")
        status_path.write_text("".join(lines), encoding="utf-8")
    except OSError as error:
        log_event(
            "nixos_inplace.install.status_write_failed",
            error=str(error),
            status=status,
            status_dir=status_dir,
        )

    return InstallResult(status=status, reason=reason, stages=tuple(stages), details=payload)


def check_prerequisites(runner: CommandRunner) -> None:
    """Fail unless running as root with every required tool available.

    Raises:
        PrerequisiteMissing: naming the first missing requirement.
    """

    if runner.geteuid() != 0:
        raise PrerequisiteMissing("must run as root")
    missing = [tool for tool in REQUIRED_TOOLS if runner.which(tool) is None]
    if missing:
        raise PrerequisiteMissing(f"missing required tool(s): {', '.join(missing)}")


class InstallOrchestrator:
    """Drive probing, synthesis and the installer handoff in a fixed order.

    Stages run strictly in :data:`STAGES` order and none is entered twice.
    Provisioning and teardown of the temporary swap file happen as a pair,
    and teardown is attempted even when the installer fails.
    """

    def __init__(
        self,
        settings: Settings,
        *,
        runner: Optional[CommandRunner] = None,
        installer: Optional[NixInstaller] = None,
        swap_file: Optional[TemporarySwapFile] = None,
        root: Path = Path("/"),
        environ: Optional[Mapping[str, str]] = None,
    ) -> None:
        self.settings = settings
        self.runner = runner or CommandRunner()
        self.installer = installer or NixInstaller(self.runner, settings)
        self.swap_file = swap_file
        self.root = root
        self.environ = os.environ if environ is None else environ
        self.paths = ConfigPaths(directory=root / str(settings.config_dir).lstrip("/"))
        self.stages: List[str] = []

    def _enter(self, stage: str) -> None:
        if stage in self.stages:
            raise RuntimeError(f"stage {stage} entered twice")
        self.stages.append(stage)
        log_event("nixos_inplace.install.stage", stage=stage)

    def probe(self) -> HostFacts:
        """Gather host facts and classify swap without changing anything."""

        facts = gather_host_facts(
            self.runner,
            environ=self.environ,
            include_network=self.settings.network_config,
            selection=self.settings.interface_selection,
        )
        swap = classify_swap(self.runner, suppressed=self.settings.no_swap)
        return dataclasses.replace(facts, swap=swap)

    def run(self) -> InstallResult:
        """Perform the conversion.

        Raises:
            InplaceError, OSError: on any fatal failure, after the failure has
                been recorded in the status file.  The machine is not rebooted;
                see :meth:`reboot`.
        """

        log_event("nixos_inplace.install.start", root=self.root, settings=self.settings)
        try:
            facts, synthesis = self._convert()
        except (InplaceError, OSError) as exc:
            _record_result(
                "failed",
                status_dir=self.settings.state_dir,
                stages=self.stages,
                reason=str(exc),
            )
            raise

        self._enter(STAGE_DONE)
        reboot = not self.settings.no_reboot
        details = {
            "root_device": facts.root.device,
            "firmware": facts.firmware,
            "written": ",".join(str(path) for path in synthesis.written),
            "skipped": ",".join(str(path) for path in synthesis.skipped),
            "reboot": "requested" if reboot else "skipped",
        }
        return _record_result(
            "success",
            status_dir=self.settings.state_dir,
            stages=self.stages,
            details=details,
        )

    def reboot(self) -> bool:
        """Reboot into the new system unless ``NO_REBOOT`` is set.

        Called after :meth:`run` so the caller can report the outcome first.
        A failing ``reboot`` is logged and leaves the handoff to the operator.
        """

        if self.settings.no_reboot:
            return False
        try:
            self.installer.reboot()
        except ExternalToolFailure as exc:
            log_event("nixos_inplace.install.reboot_failed", error=str(exc))
            return False
        return True

    def _convert(self) -> Tuple[HostFacts, SynthesisResult]:
        self._enter(STAGE_CHECK)
        check_prerequisites(self.runner)

        self._enter(STAGE_PROBE)
        facts = gather_host_facts(
            self.runner,
            environ=self.environ,
            include_network=self.settings.network_config,
            selection=self.settings.interface_selection,
        )

        self._enter(STAGE_CLASSIFY_SWAP)
        swap = classify_swap(self.runner, suppressed=self.settings.no_swap)
        facts = dataclasses.replace(facts, swap=swap)

        temporary: Optional[TemporarySwapFile] = None
        if isinstance(swap, NeedsTemporarySwap):
            self._enter(STAGE_PROVISION_SWAP)
            temporary = self.swap_file or TemporarySwapFile(self.runner)
            temporary.provision()

        try:
            self._enter(STAGE_SYNTHESIZE)
            synthesis = write_configuration(
                facts,
                self.paths,
                synthesize_main=not self.settings.use_flake,
                extra_imports=self.settings.extra_imports,
            )

            self._enter(STAGE_RUN_INSTALLER)
            self._run_installer(facts)
        finally:
            if temporary is not None:
                self._enter(STAGE_TEARDOWN_SWAP)
                temporary.teardown()
        return facts, synthesis

    def _run_installer(self, facts: HostFacts) -> None:
        installer = self.installer
        installer.create_build_users()
        installer.install_nix()
        if not self.settings.use_flake:
            installer.configure_channel()

        configuration = self.paths.configuration
        url = self.settings.nixos_config_url
        if url is not None:
            installer.fetch_configuration(url, configuration)
        elif self.settings.nixos_config:
            configuration = Path(self.settings.nixos_config)
        installer.build_system(configuration)

        lustrate.fix_ssh_host_key_permissions(self.root)
        lustrate.reify_resolv_conf(self.root)
        lustrate.write_lustrate_marker(self.root)
        installer.activate(facts)
