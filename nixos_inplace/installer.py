"""Thin wrappers around the external tools that perform the installation."""

from __future__ import annotations

import os
from pathlib import Path
from typing import Dict, Optional, Sequence

from .commands import CommandRunner
from .config import Settings
from .environment import EfiBoot
from .errors import ExternalToolFailure
from .facts import HostFacts
from .logging_utils import log_event

__all__ = ["NixInstaller", "SYSTEM_PROFILE"]

SYSTEM_PROFILE = "/nix/var/nix/profiles/system"
_BUILD_GROUP = "nixbld"
_BUILD_GROUP_ID = "30000"
_BUILD_USERS = 10
# ``groupadd``/``useradd`` exit status when the group or user already exists.
_ALREADY_EXISTS = 9


class NixInstaller:
    """Install Nix, build the NixOS system profile and make it bootable."""

    def __init__(
        self,
        runner: CommandRunner,
        settings: Settings,
        *,
        home: Optional[Path] = None,
        download_dir: Path = Path("/tmp"),
    ) -> None:
        self.runner = runner
        self.settings = settings
        self.home = home or Path(os.environ.get("HOME") or "/root")
        self.download_dir = download_dir

    def _nix_env(self, **extra: str) -> Dict[str, str]:
        env = dict(os.environ)
        path = env.get("PATH", "/usr/sbin:/usr/bin:/sbin:/bin")
        env["PATH"] = os.pathsep.join(
            [str(self.home / ".nix-profile/bin"), "/nix/var/nix/profiles/default/bin", path]
        )
        env.update(extra)
        return env

    def _tolerant(self, cmd: Sequence[str], tolerated: int) -> None:
        returncode = self.runner.call(cmd, None)
        if returncode not in (0, tolerated):
            raise ExternalToolFailure(cmd, returncode)

    def create_build_users(self) -> None:
        """Create the ``nixbld`` group and its build users if missing."""

        self._tolerant(["groupadd", _BUILD_GROUP, "-g", _BUILD_GROUP_ID], _ALREADY_EXISTS)
        nologin = self.runner.which("nologin") or "/sbin/nologin"
        for number in range(1, _BUILD_USERS + 1):
            self._tolerant(
                [
                    "useradd",
                    "-c", f"Nix build user {number}",
                    "-d", "/var/empty",
                    "-g", _BUILD_GROUP,
                    "-G", _BUILD_GROUP,
                    "-M", "-N", "-r",
                    "-s", nologin,
                    f"{_BUILD_GROUP}{number}",
                ],
                _ALREADY_EXISTS,
            )
        log_event("nixos_inplace.installer.build_users.finished", users=_BUILD_USERS)

    def install_nix(self) -> None:
        script = self.download_dir / "nixos-inplace-install-nix.sh"
        self.runner.execute(
            ["curl", "-fsSL", self.settings.nix_install_url, "-o", str(script)]
        )
        self.runner.execute(["sh", str(script), "--no-channel-add"])

    def configure_channel(self) -> None:
        env = self._nix_env()
        channel_url = f"https://nixos.org/channels/{self.settings.nix_channel}"
        self.runner.execute(["nix-channel", "--remove", "nixpkgs"], env=env)
        self.runner.execute(["nix-channel", "--add", channel_url, "nixos"], env=env)
        self.runner.execute(["nix-channel", "--update"], env=env)

    def fetch_configuration(self, url: str, destination: Path) -> None:
        """Download ``url`` verbatim over ``destination``."""

        destination.parent.mkdir(parents=True, exist_ok=True)
        self.runner.execute(["curl", "-fsSL", url, "-o", str(destination)])
        log_event("nixos_inplace.installer.configuration_fetched", url=url, path=destination)

    def build_system(self, configuration: Path) -> None:
        """Build the system closure and point the system profile at it."""

        if self.settings.use_flake:
            target = (
                f"{self.settings.flake_uri}#nixosConfigurations."
                f"{self.settings.flake_hostname}.config.system.build.toplevel"
            )
            self.runner.execute(
                [
                    "nix",
                    "--extra-experimental-features", "nix-command flakes",
                    "build",
                    "--profile", SYSTEM_PROFILE,
                    target,
                ],
                env=self._nix_env(),
            )
            return

        nixpkgs = self.home / ".nix-defexpr/channels/nixos"
        self.runner.execute(
            [
                "nix-env",
                "--set",
                "-I", f"nixpkgs={nixpkgs}",
                "-f", "<nixpkgs/nixos>",
                "-p", SYSTEM_PROFILE,
                "-A", "system",
            ],
            env=self._nix_env(NIXOS_CONFIG=str(configuration)),
        )

    def _prepare_boot(self, facts: HostFacts) -> None:
        """Move the old ``/boot`` aside and leave an empty ESP at ``/boot``."""

        esp = facts.boot.esp_identifier if isinstance(facts.boot, EfiBoot) else None
        self.runner.execute(["rm", "-rf", "/boot.bak"])
        if esp is not None:
            self.runner.execute(["umount", esp])
        try:
            self.runner.execute(["mv", "/boot", "/boot.bak"])
        except ExternalToolFailure:
            # ``/boot`` is itself a mount point.
            self.runner.execute(["cp", "-a", "/boot", "/boot.bak"])
            self.runner.execute(["find", "/boot", "-mindepth", "1", "-delete"])
            self.runner.execute(["umount", "/boot"])
        if esp is not None:
            self.runner.execute(["mkdir", "-p", "/boot"])
            self.runner.execute(["mount", esp, "/boot"])
            self.runner.execute(["find", "/boot", "-mindepth", "1", "-delete"])

    def activate(self, facts: HostFacts) -> None:
        """Install the boot loader for the new system profile."""

        self._prepare_boot(facts)
        self.runner.execute(
            [f"{SYSTEM_PROFILE}/bin/switch-to-configuration", "boot"],
            env=self._nix_env(NIXOS_INSTALL_BOOTLOADER="1"),
        )

    def reboot(self) -> None:
        self.runner.execute(["reboot"])
