"""CLI entry point for nixos-inplace."""

import argparse
import dataclasses
import json
import sys
from pathlib import Path

from . import config, install, synthesize
from .errors import InplaceError
from .facts import HostFacts


def _print_rendered(facts: HostFacts, settings: config.Settings) -> None:
    """Print the files a real run would write, without writing them."""

    directory = settings.config_dir
    sections = []
    if not settings.use_flake:
        sections.append(
            (
                directory / "configuration.nix",
                synthesize.render_configuration(
                    facts,
                    include_networking=facts.network is not None,
                    extra_imports=settings.extra_imports,
                ),
            )
        )
    sections.append(
        (directory / "hardware-configuration.nix", synthesize.render_hardware_configuration(facts))
    )
    if facts.network is not None:
        sections.append((directory / "networking.nix", synthesize.render_networking(facts.network)))
    for path, text in sections:
        print(f"# {path}")
        print(text)


def main(argv: list[str] | None = None) -> None:
    """Run the nixos-inplace tool."""
    parser = argparse.ArgumentParser(
        description="Convert the running Linux host into NixOS in place"
    )
    parser.add_argument(
        "--probe-only",
        action="store_true",
        help="Print the probed host facts as JSON and exit",
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Print the generated configuration files without writing or installing",
    )
    parser.add_argument(
        "--network",
        dest="network",
        action=argparse.BooleanOptionalAction,
        default=None,
        help=(
            "Freeze the live addressing into networking.nix (defaults to the "
            "PROVIDER / DO_NETCONF settings)."
        ),
    )
    parser.add_argument(
        "--config-dir",
        type=Path,
        default=None,
        help="Directory receiving the generated configuration (default /etc/nixos)",
    )
    args = parser.parse_args(argv)

    try:
        settings = config.load_settings()
        if args.network is not None:
            settings = dataclasses.replace(settings, network_config=args.network)
        if args.config_dir is not None:
            settings = dataclasses.replace(settings, config_dir=args.config_dir)

        orchestrator = install.InstallOrchestrator(settings)
        if args.probe_only or args.dry_run:
            facts = orchestrator.probe()
            if args.probe_only:
                print(json.dumps(facts.to_payload(), indent=2, sort_keys=True))
            else:
                _print_rendered(facts, settings)
            return

        result = orchestrator.run()
    except (InplaceError, OSError) as exc:
        print(f"ERROR: {exc}", file=sys.stderr)
        sys.exit(1)

    print("NixOS system installed; the conversion completes on the next boot.")
    if result.details.get("skipped"):
        print(f"Kept existing configuration: {result.details['skipped']}")
    if settings.no_reboot:
        print("Reboot suppressed by NO_REBOOT.")
    else:
        print("Rebooting now.", flush=True)
        orchestrator.reboot()


if __name__ == "__main__":
    main()
