from __future__ import annotations

from enum import Enum


class UsbideError(Exception):
    """
    Base class for failures reported before (or instead of) a finished process.

    `guidance` is the sentence shown to the user: which command to run or which
    setting to check. `str(exc)` stays a short technical description.
    """

    guidance: str = "See bug.md in the workspace for details."

    def __init__(self, message: str, *, guidance: str | None = None) -> None:
        super().__init__(message)
        if guidance is not None:
            self.guidance = guidance


class ResolutionReason(str, Enum):
    NOT_FOUND = "not_found"
    RUNTIME_MISSING = "runtime_missing"
    NPM_MISSING = "npm_missing"


class ResolutionError(UsbideError):
    def __init__(self, reason: ResolutionReason, message: str, *, guidance: str | None = None) -> None:
        super().__init__(message, guidance=guidance)
        self.reason = reason


class EnvironmentBuildError(UsbideError):
    guidance = "The process environment could not be read; restart the IDE from its launcher."


class ArgvReason(str, Enum):
    EMPTY_PROMPT = "empty_prompt"
    EMPTY_ARGV = "empty_argv"
    EMPTY_PACKAGE = "empty_package"


class ArgvError(UsbideError):
    def __init__(self, reason: ArgvReason, message: str, *, guidance: str | None = None) -> None:
        super().__init__(message, guidance=guidance)
        self.reason = reason


class ProcessSpawnError(UsbideError):
    guidance = "The operating system refused to start the assistant; check that the file is executable and not blocked."


class AuthError(UsbideError):
    guidance = "Codex is not logged in: run login (or set USBIDE_CODEX_DEVICE_AUTH=1 if no browser opens), then retry."

    def __init__(self, message: str, *, output: list[str] | None = None, guidance: str | None = None) -> None:
        super().__init__(message, guidance=guidance)
        self.output = list(output or [])


class InvocationBusyError(UsbideError):
    guidance = "An assistant invocation is already running; wait for it or cancel it first."
