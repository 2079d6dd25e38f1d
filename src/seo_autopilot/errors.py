from __future__ import annotations

from typing import Any, Iterable


class AutopilotError(RuntimeError):
    pass


class FatalRunError(AutopilotError):
    """Aborts the whole run; never retried."""


class KillSwitchTripped(FatalRunError):
    def __init__(self, message: str, *, state: Any = None) -> None:
        super().__init__(message)
        self.state = state


class LockCorruptedError(FatalRunError):
    pass


class InvalidModeError(FatalRunError):
    def __init__(self, mode: str, valid: Iterable[str]) -> None:
        valid_list = ", ".join(valid)
        super().__init__(f"Invalid mode {mode!r}. Valid modes: {valid_list}")
        self.mode = mode


class GuardedModeDisabledError(FatalRunError):
    pass


class ContentGenerationError(AutopilotError):
    pass


class IngestionError(AutopilotError):
    pass
