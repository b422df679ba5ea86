"""Run settings read from environment variables."""

from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Mapping, Optional, Tuple

from .errors import PrerequisiteMissing
from .network import InterfaceSelection

__all__ = ["DEFAULT_NIX_CHANNEL", "DEFAULT_NIX_INSTALL_URL", "Settings", "load_settings"]

DEFAULT_NIX_CHANNEL = "nixos-23.11"
DEFAULT_NIX_INSTALL_URL = "https://nixos.org/nix/install"
_DEFAULT_STATE_DIR = Path("/run/nixos-inplace")

# Providers whose images only get their addresses from metadata services that
# are gone after conversion, so the live addressing must be frozen statically.
_STATIC_NETWORK_PROVIDERS = frozenset({"digitalocean"})


def _env_flag(environ: Mapping[str, str], name: str) -> bool:
    value = environ.get(name)
    if value is None:
        return False
    return value.strip().lower() not in {"", "0", "false", "no"}


def _env_value(environ: Mapping[str, str], name: str) -> Optional[str]:
    value = environ.get(name)
    if value is None or not value.strip():
        return None
    return value.strip()


def _env_list(environ: Mapping[str, str], name: str) -> Tuple[str, ...]:
    value = environ.get(name) or ""
    return tuple(item.strip() for item in value.split(",") if item.strip())


@dataclass(frozen=True)
class Settings:
    use_flake: bool = False
    flake_uri: Optional[str] = None
    flake_hostname: Optional[str] = None
    nixos_config: Optional[str] = None
    no_swap: bool = False
    no_reboot: bool = False
    nix_channel: str = DEFAULT_NIX_CHANNEL
    nix_install_url: str = DEFAULT_NIX_INSTALL_URL
    provider: Optional[str] = None
    network_config: bool = False
    extra_imports: Tuple[str, ...] = ()
    interface_names: Tuple[str, ...] = ()
    config_dir: Path = Path("/etc/nixos")
    state_dir: Path = _DEFAULT_STATE_DIR

    @property
    def nixos_config_url(self) -> Optional[str]:
        """Return ``NIXOS_CONFIG`` when it names a remote configuration."""

        if self.nixos_config and self.nixos_config.startswith(("http://", "https://")):
            return self.nixos_config
        return None

    @property
    def interface_selection(self) -> InterfaceSelection:
        return InterfaceSelection(names=self.interface_names)


def load_settings(environ: Optional[Mapping[str, str]] = None) -> Settings:
    """Return :class:`Settings` built from ``environ`` (default ``os.environ``).

    Raises:
        PrerequisiteMissing: when flake mode is requested without
            ``FLAKE_URI`` and ``FLAKE_HOSTNAME``.
    """

    env = os.environ if environ is None else environ

    use_flake = _env_flag(env, "USE_FLAKE")
    flake_uri = _env_value(env, "FLAKE_URI")
    flake_hostname = _env_value(env, "FLAKE_HOSTNAME")
    if use_flake:
        missing = [
            name
            for name, value in (("FLAKE_URI", flake_uri), ("FLAKE_HOSTNAME", flake_hostname))
            if value is None
        ]
        if missing:
            raise PrerequisiteMissing(
                f"{' and '.join(missing)} must be set when USE_FLAKE is enabled"
            )

    provider = _env_value(env, "PROVIDER")
    network_config = _env_flag(env, "DO_NETCONF") or (
        provider is not None and provider.lower() in _STATIC_NETWORK_PROVIDERS
    )

    state_dir = _env_value(env, "NIXOS_INPLACE_STATE_DIR")

    return Settings(
        use_flake=use_flake,
        flake_uri=flake_uri,
        flake_hostname=flake_hostname,
        nixos_config=None if use_flake else _env_value(env, "NIXOS_CONFIG"),
        no_swap=_env_flag(env, "NO_SWAP"),
        no_reboot=_env_flag(env, "NO_REBOOT"),
        nix_channel=_env_value(env, "NIX_CHANNEL") or DEFAULT_NIX_CHANNEL,
        nix_install_url=_env_value(env, "NIX_INSTALL_URL") or DEFAULT_NIX_INSTALL_URL,
        provider=provider,
        network_config=network_config,
        extra_imports=_env_list(env, "NIXOS_IMPORT"),
        interface_names=_env_list(env, "NETWORK_INTERFACES"),
        state_dir=Path(state_dir) if state_dir else _DEFAULT_STATE_DIR,
    )
