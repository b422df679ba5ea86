"""Error kinds raised during an in-place conversion.

Prerequisite, probe and external-tool failures abort the run.  Best-effort
failures are caught where they occur and only logged.
"""

from __future__ import annotations

from typing import Optional, Sequence


class InplaceError(Exception):
    """Base class for errors that abort a conversion run."""


class PrerequisiteMissing(InplaceError):
    """A required tool, privilege or setting is absent."""


class ProbeFailure(InplaceError):
    """A fact required for synthesis could not be determined."""


class ExternalToolFailure(InplaceError):
    """An external command exited unsuccessfully."""

    def __init__(
        self,
        command: Sequence[str],
        returncode: int,
        message: Optional[str] = None,
    ) -> None:
        self.command = list(command)
        self.returncode = returncode
        if message is None:
            message = f"command {' '.join(self.command)} exited with status {returncode}"
        super().__init__(message)


class BestEffortFailure(InplaceError):
    """A cleanup step failed; never propagated past the step that raised it."""
