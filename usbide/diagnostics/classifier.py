from __future__ import annotations

import re
from dataclasses import dataclass
from enum import Enum
from typing import Any, Iterable

from usbide.core.errors import (
    ArgvError,
    AuthError,
    EnvironmentBuildError,
    InvocationBusyError,
    ProcessSpawnError,
    ResolutionError,
    UsbideError,
)


class DiagnosticKind(str, Enum):
    OK = "ok"
    UNAUTHENTICATED = "unauthenticated"
    FORBIDDEN = "forbidden"
    PROXY_AUTH_REQUIRED = "proxy_auth_required"
    RATE_LIMITED = "rate_limited"
    SERVER_ERROR = "server_error"
    TRANSPORT_ERROR = "transport_error"
    UNSUPPORTED_OPTION = "unsupported_option"
    INVALID_COMMAND = "invalid_command"
    PROCESS_FAILURE = "process_failure"
    CANCELLED = "cancelled"
    NOT_INSTALLED = "not_installed"
    INVALID_ARGUMENTS = "invalid_arguments"
    ENVIRONMENT_UNAVAILABLE = "environment_unavailable"
    SPAWN_FAILED = "spawn_failed"
    AUTH_REQUIRED = "auth_required"
    BUSY = "busy"


@dataclass(frozen=True)
class Diagnostic:
    kind: DiagnosticKind
    guidance: str
    status: int | None = None
    exit_code: int | None = None

    @property
    def ok(self) -> bool:
        return self.kind is DiagnosticKind.OK

    def to_json_obj(self) -> dict[str, Any]:
        return {"kind": self.kind.value, "guidance": self.guidance, "status": self.status, "exit_code": self.exit_code}


_STATUS_GUIDANCE: dict[DiagnosticKind, str] = {
    DiagnosticKind.UNAUTHENTICATED: "HTTP 401: authentication is invalid or expired. Run login again (or `codex logout` then login with ChatGPT).",
    DiagnosticKind.FORBIDDEN: "HTTP 403: access denied. Check that you logged in with ChatGPT (not an API key), your plan's permissions, and the network.",
    DiagnosticKind.PROXY_AUTH_REQUIRED: "HTTP 407: the proxy requires authentication. Configure HTTP_PROXY/HTTPS_PROXY with credentials.",
    DiagnosticKind.RATE_LIMITED: "HTTP 429: rate limited. Wait a moment, then send the prompt again.",
    DiagnosticKind.SERVER_ERROR: "HTTP 5xx: server error on the assistant side. Retry later.",
}

_STATUS_RE = re.compile(r"(?:unexpected status|last status[: ]+)\s*(\d{3})", re.IGNORECASE)
_ANY_STATUS_RE = re.compile(r"\b([1-5]\d{2})\b")

_BAD_ARG_MARKERS = ("unexpected argument", "unknown argument", "unrecognized")
_BAD_VALUE_MARKERS = ("invalid value", "possible values")


def extract_status_code(msg: str | None) -> int | None:
    if not msg:
        return None
    m = _STATUS_RE.search(msg)
    if m:
        return int(m.group(1))
    m = _ANY_STATUS_RE.search(msg)
    if m:
        return int(m.group(1))
    return None


def kind_for_status(status: int) -> DiagnosticKind:
    if status == 401:
        return DiagnosticKind.UNAUTHENTICATED
    if status == 403:
        return DiagnosticKind.FORBIDDEN
    if status == 407:
        return DiagnosticKind.PROXY_AUTH_REQUIRED
    if status == 429:
        return DiagnosticKind.RATE_LIMITED
    if 500 <= status <= 599:
        return DiagnosticKind.SERVER_ERROR
    return DiagnosticKind.TRANSPORT_ERROR


def hint_for_status(status: int) -> str | None:
    return _STATUS_GUIDANCE.get(kind_for_status(status))


def _unsupported_option(line: str) -> str | None:
    lower = line.lower()
    if "--ask-for-approval" in lower and any(m in lower for m in _BAD_ARG_MARKERS):
        return "--ask-for-approval"
    if "--sandbox" in lower and any(m in lower for m in _BAD_ARG_MARKERS + _BAD_VALUE_MARKERS):
        return "--sandbox"
    return None


def _is_usage_error(line: str) -> bool:
    lower = line.strip().lower()
    return lower.startswith("error:") or lower.startswith("usage: codex")


def translate_cli_line(line: str) -> str | None:
    """Readable sentence for well-known CLI stderr lines; None when the line is not recognized."""
    trimmed = line.strip()
    if not trimmed:
        return None
    lower = trimmed.lower()
    opt = _unsupported_option(trimmed)
    if opt is not None:
        return f"Error: option {opt} is not recognized by this Codex version."
    if lower.startswith("tip:") and "--ask-for-approval" in lower:
        return "Tip: to pass --ask-for-approval as a value, use -- --ask-for-approval."
    if lower.startswith("usage: codex exec"):
        return "Usage: codex exec --json --sandbox <SANDBOX_MODE> [PROMPT]."
    if lower.startswith("for more information") or "try '--help'" in lower:
        return "For more information, use --help."
    if lower.startswith("error:"):
        if any(m in lower for m in _BAD_ARG_MARKERS):
            return "Error: unknown or invalid option. See --help."
        return "Error: invalid Codex command. See --help."
    if lower.startswith("logged in using"):
        return "Logged in with ChatGPT."
    if lower.startswith("up to date in"):
        return "Up to date."
    return None


def classify(
    exit_code: int | None,
    last_error_message: str | None,
    stderr_tail: Iterable[str] = (),
    *,
    status: int | None = None,
) -> Diagnostic:
    """
    Label a finished invocation.

    Exit code 0 is success even when the stream reported a transient error
    (the error stays in the transcript). A non-zero exit is labelled by its
    transport status (explicit, or found in the last error message), else
    refined from the last stderr lines when they show a rejected option or a
    usage error. Never retries.
    """
    if exit_code == 0:
        return Diagnostic(kind=DiagnosticKind.OK, guidance="Done.", exit_code=0)

    if status is None:
        status = extract_status_code(last_error_message)
    if status is not None:
        kind = kind_for_status(status)
        guidance = _STATUS_GUIDANCE.get(kind) or f"HTTP {status}: the assistant's request failed. Check the network and retry."
        return Diagnostic(kind=kind, guidance=guidance, status=status, exit_code=exit_code)

    tail = [t for t in stderr_tail if t and t.strip()]
    for line in reversed(tail):
        opt = _unsupported_option(line)
        if opt == "--ask-for-approval":
            return Diagnostic(
                kind=DiagnosticKind.UNSUPPORTED_OPTION,
                guidance="This Codex version rejects --ask-for-approval: set USBIDE_CODEX_APPROVAL=off and send the prompt again.",
                exit_code=exit_code,
            )
        if opt == "--sandbox":
            return Diagnostic(
                kind=DiagnosticKind.UNSUPPORTED_OPTION,
                guidance="This Codex version rejects --sandbox: set USBIDE_CODEX_SANDBOX=off and send the prompt again.",
                exit_code=exit_code,
            )
    if any(_is_usage_error(line) for line in tail):
        return Diagnostic(
            kind=DiagnosticKind.INVALID_COMMAND,
            guidance="Codex rejected the command line: check USBIDE_CODEX_EXTRA_ARGS against `codex exec --help`.",
            exit_code=exit_code,
        )

    detail = f" (last output: {tail[-1].strip()[:200]})" if tail else ""
    return Diagnostic(
        kind=DiagnosticKind.PROCESS_FAILURE,
        guidance=f"Codex exited with code {exit_code}{detail}. Check the installation and the connection, then retry.",
        exit_code=exit_code,
    )


def cancelled() -> Diagnostic:
    return Diagnostic(kind=DiagnosticKind.CANCELLED, guidance="Cancelled; the partial transcript above was kept.")


def diagnostic_for_error(exc: UsbideError) -> Diagnostic:
    """Pre-process failures map to their own kinds without going through classify()."""
    if isinstance(exc, ResolutionError):
        kind = DiagnosticKind.NOT_INSTALLED
    elif isinstance(exc, ArgvError):
        kind = DiagnosticKind.INVALID_ARGUMENTS
    elif isinstance(exc, EnvironmentBuildError):
        kind = DiagnosticKind.ENVIRONMENT_UNAVAILABLE
    elif isinstance(exc, ProcessSpawnError):
        kind = DiagnosticKind.SPAWN_FAILED
    elif isinstance(exc, AuthError):
        kind = DiagnosticKind.AUTH_REQUIRED
    elif isinstance(exc, InvocationBusyError):
        kind = DiagnosticKind.BUSY
    else:
        kind = DiagnosticKind.PROCESS_FAILURE
    return Diagnostic(kind=kind, guidance=exc.guidance)
