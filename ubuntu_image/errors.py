"""Error taxonomy shared by the engine, the layout model and the steps."""

from __future__ import annotations

from typing import Optional


class UbuntuImageError(Exception):
    """Base error; carries an optional hint shown to the user."""

    def __init__(self, message: str, *, hint: Optional[str] = None) -> None:
        super().__init__(message)
        self.hint = hint

    def __str__(self) -> str:
        msg = super().__str__()
        if self.hint:
            return f"{msg}\nHint: {self.hint}"
        return msg


class ConfigError(UbuntuImageError):
    """Invalid configuration, invalid layout, or drift detected on resume."""


class StateError(UbuntuImageError):
    pass


class StateVersionError(StateError):
    """Persisted record has an unrecognized schema version."""


class CorruptStateError(StateError):
    """Persisted record could not be parsed."""


class WorkspaceError(UbuntuImageError):
    """Workspace cannot be created, locked or written."""


class WorkspaceBusyError(WorkspaceError):
    """Workspace is locked by another live run."""


class StepExecutionError(UbuntuImageError):
    def __init__(self, step_name: str, cause: BaseException) -> None:
        super().__init__(f"Step {step_name} failed: {cause}")
        self.step_name = step_name
        self.cause = cause


class CleanupError(UbuntuImageError):
    """Teardown problem. Never replaces an earlier run() failure."""

    def __init__(
        self,
        message: str,
        *,
        prior: Optional[BaseException] = None,
        hint: Optional[str] = None,
    ) -> None:
        super().__init__(message, hint=hint)
        self.prior = prior


__all__ = [
    "CleanupError",
    "ConfigError",
    "CorruptStateError",
    "StateError",
    "StateVersionError",
    "StepExecutionError",
    "UbuntuImageError",
    "WorkspaceBusyError",
    "WorkspaceError",
]
