"""Discovery of root's SSH authorized keys."""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import List, Mapping, Optional, Sequence, Tuple

from .commands import CommandRunner
from .logging_utils import log_event

__all__ = [
    "AuthorizedKey",
    "candidate_key_files",
    "load_authorized_keys",
    "parse_authorized_keys",
]

# Key types, including OpenSSH certificate types such as
# ``ssh-ed25519-cert-v01@openssh.com``.
_ALGORITHM = re.compile(r"^(?:ssh|ecdsa-sha2|sk)-[a-z0-9-]+(?:@[a-z0-9.-]+)?$")


@dataclass(frozen=True)
class AuthorizedKey:
    algorithm: str
    key_material: str
    comment: str = ""

    def render(self) -> str:
        """Return the key as a single normalised ``authorized_keys`` line."""

        parts = [self.algorithm, self.key_material]
        if self.comment:
            parts.append(self.comment)
        return " ".join(parts)


def _key_fields(line: str) -> List[str]:
    """Return the fields of ``line`` starting at the key type.

    Quotes are only honoured while skipping the option prefix; everything
    from the key type on is split on plain whitespace.
    """

    start = 0
    quoted = False
    for index, char in enumerate(line + " "):
        if char == '"':
            quoted = not quoted
        elif char.isspace() and not quoted:
            if _ALGORITHM.match(line[start:index]):
                return line[start:].split()
            start = index + 1
    return []


def parse_authorized_keys(text: str) -> Tuple[AuthorizedKey, ...]:
    """Parse ``authorized_keys`` content.

    Leading option lists (``no-pty,command="..."``) are dropped and comment
    whitespace collapses to single spaces.  Lines without a recognised key
    type are ignored.
    """

    keys: List[AuthorizedKey] = []
    for raw_line in text.splitlines():
        line = raw_line.strip()
        if not line or line.startswith("#"):
            continue
        fields = _key_fields(line)
        if len(fields) < 2:
            continue
        keys.append(
            AuthorizedKey(
                algorithm=fields[0],
                key_material=fields[1],
                comment=" ".join(fields[2:]),
            )
        )
    return tuple(keys)


def candidate_key_files(
    environ: Mapping[str, str], root_home: str = "/root"
) -> List[str]:
    """Return the authorized-keys files to try, most authoritative first."""

    candidates = [f"{root_home}/.ssh/authorized_keys"]
    sudo_user = environ.get("SUDO_USER")
    if sudo_user:
        candidates.append(f"/home/{sudo_user}/.ssh/authorized_keys")
    home = environ.get("HOME")
    if home:
        candidates.append(f"{home.rstrip('/')}/.ssh/authorized_keys")

    unique: List[str] = []
    for candidate in candidates:
        if candidate not in unique:
            unique.append(candidate)
    return unique


def load_authorized_keys(
    runner: CommandRunner, candidates: Sequence[str]
) -> Tuple[AuthorizedKey, ...]:
    """Return the keys of the first readable candidate file.

    The first file that can be read wins even when it holds no usable key;
    files are never merged.
    """

    source: Optional[str] = None
    keys: Tuple[AuthorizedKey, ...] = ()
    for candidate in candidates:
        try:
            text = runner.read_text(candidate)
        except OSError:
            continue
        source = candidate
        keys = parse_authorized_keys(text)
        break

    if not keys:
        log_event("nixos_inplace.keys.none_found", candidates=list(candidates), source=source)
    else:
        log_event("nixos_inplace.keys.loaded", source=source, count=len(keys))
    return keys
