"""Command execution boundary shared by the probes and the installer."""

from __future__ import annotations

import os
import shutil
import stat
import subprocess
from dataclasses import dataclass
from typing import Callable, List, Mapping, Optional, Sequence

from .errors import ExternalToolFailure
from .logging_utils import log_event

__all__ = ["CommandOutput", "CommandRunner"]


@dataclass(frozen=True)
class CommandOutput:
    """Minimal command result container for dependency injection."""

    stdout: str
    returncode: int = 0
    stderr: str = ""


class CommandRunner:
    """Encapsulate every interaction the conversion has with the host.

    Probes only use the read-only callables (``run``, ``read_text`` and the
    path predicates).  ``call`` runs commands attached to the terminal and is
    reserved for the installer steps.  Each callable can be replaced, which is
    how the tests describe a machine without touching the real one.
    """

    def __init__(
        self,
        *,
        run: Callable[[Sequence[str]], CommandOutput] | None = None,
        call: Callable[[Sequence[str], Optional[Mapping[str, str]]], int] | None = None,
        path_exists: Callable[[str], bool] | None = None,
        is_dir: Callable[[str], bool] | None = None,
        is_block_device: Callable[[str], bool] | None = None,
        realpath: Callable[[str], str] | None = None,
        read_text: Callable[[str], str] | None = None,
        list_dir: Callable[[str], List[str]] | None = None,
        which: Callable[[str], Optional[str]] | None = None,
        geteuid: Callable[[], int] | None = None,
    ) -> None:
        self.run = run or self._default_run
        self.call = call or self._default_call
        self.path_exists = path_exists or os.path.exists
        self.is_dir = is_dir or os.path.isdir
        self.is_block_device = is_block_device or self._default_is_block_device
        self.realpath = realpath or os.path.realpath
        self.read_text = read_text or self._default_read_text
        self.list_dir = list_dir or self._default_list_dir
        self.which = which or shutil.which
        self.geteuid = geteuid or os.geteuid

    @staticmethod
    def _default_run(cmd: Sequence[str]) -> CommandOutput:
        try:
            completed = subprocess.run(
                list(cmd),
                capture_output=True,
                text=True,
                check=False,
            )
        except FileNotFoundError as exc:
            return CommandOutput(stdout="", returncode=127, stderr=str(exc))
        return CommandOutput(
            stdout=completed.stdout,
            returncode=completed.returncode,
            stderr=completed.stderr,
        )

    @staticmethod
    def _default_call(cmd: Sequence[str], env: Optional[Mapping[str, str]] = None) -> int:
        try:
            completed = subprocess.run(
                list(cmd),
                check=False,
                env=dict(env) if env is not None else None,
            )
        except FileNotFoundError:
            return 127
        return completed.returncode

    @staticmethod
    def _default_is_block_device(path: str) -> bool:
        try:
            return stat.S_ISBLK(os.stat(path).st_mode)
        except OSError:
            return False

    @staticmethod
    def _default_read_text(path: str) -> str:
        with open(path, "r", encoding="utf-8") as fp:
            return fp.read()

    @staticmethod
    def _default_list_dir(path: str) -> List[str]:
        try:
            names = sorted(os.listdir(path))
        except OSError:
            return []
        return [os.path.join(path, name) for name in names]

    def output(self, cmd: Sequence[str], *, ignore_errors: bool = False) -> str:
        """Return the stdout of ``cmd``.

        A non-zero exit raises :class:`ExternalToolFailure` unless
        ``ignore_errors`` is set, in which case an empty string is returned.
        """

        result = self.run(cmd)
        if result.returncode != 0:
            log_event(
                "nixos_inplace.commands.output.failed",
                command=list(cmd),
                returncode=result.returncode,
                stderr=result.stderr.strip(),
                ignored=ignore_errors,
            )
            if ignore_errors:
                return ""
            raise ExternalToolFailure(cmd, result.returncode)
        return result.stdout

    def execute(self, cmd: Sequence[str], *, env: Optional[Mapping[str, str]] = None) -> None:
        """Run ``cmd`` attached to the terminal, raising on failure."""

        log_event("nixos_inplace.commands.execute.start", command=list(cmd))
        returncode = self.call(cmd, env)
        status = "success" if returncode == 0 else "error"
        log_event(
            "nixos_inplace.commands.execute.finished",
            command=list(cmd),
            status=status,
            returncode=returncode,
        )
        if returncode != 0:
            raise ExternalToolFailure(cmd, returncode)
