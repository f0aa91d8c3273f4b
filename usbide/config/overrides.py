from __future__ import annotations

import re
import shlex
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Mapping


DEFAULT_NPM_PACKAGE = "@openai/codex"

_TRUTHY = {"1", "true", "yes", "on"}
_FALSY = {"0", "false", "no", "off"}

# Secret-looking material must never travel through argv (it would end up in
# process listings and in the incident log's command echo).
_SECRET_ARG_RE = re.compile(r"(secret|token|api[_-]?key|private[_-]?key|password)\s*[=:]", re.IGNORECASE)
_SECRET_VALUE_RE = re.compile(r"\bsk-[A-Za-z0-9_-]{10,}")


class SandboxMode(str, Enum):
    READ_ONLY = "read-only"
    WORKSPACE_WRITE = "workspace-write"
    DANGER_FULL_ACCESS = "danger-full-access"


class ApprovalPolicy(str, Enum):
    UNTRUSTED = "untrusted"
    ON_FAILURE = "on-failure"
    ON_REQUEST = "on-request"
    NEVER = "never"


_SANDBOX_ALIASES = {
    "read-only": SandboxMode.READ_ONLY,
    "readonly": SandboxMode.READ_ONLY,
    "ro": SandboxMode.READ_ONLY,
    "workspace-write": SandboxMode.WORKSPACE_WRITE,
    "workspace": SandboxMode.WORKSPACE_WRITE,
    "write": SandboxMode.WORKSPACE_WRITE,
    "agent": SandboxMode.WORKSPACE_WRITE,
    "danger-full-access": SandboxMode.DANGER_FULL_ACCESS,
    "danger": SandboxMode.DANGER_FULL_ACCESS,
    "full": SandboxMode.DANGER_FULL_ACCESS,
    "full-access": SandboxMode.DANGER_FULL_ACCESS,
}

_APPROVAL_ALIASES = {
    "untrusted": ApprovalPolicy.UNTRUSTED,
    "on-failure": ApprovalPolicy.ON_FAILURE,
    "onfailure": ApprovalPolicy.ON_FAILURE,
    "on-request": ApprovalPolicy.ON_REQUEST,
    "onrequest": ApprovalPolicy.ON_REQUEST,
    "never": ApprovalPolicy.NEVER,
    "none": ApprovalPolicy.NEVER,
}


def truthy(value: str | None) -> bool:
    return (value or "").strip().lower() in _TRUTHY


def falsy(value: str | None) -> bool:
    return (value or "").strip().lower() in _FALSY


def parse_sandbox_mode(value: str) -> SandboxMode | None:
    return _SANDBOX_ALIASES.get(value.strip().lower())


def parse_approval_policy(value: str) -> ApprovalPolicy | None:
    return _APPROVAL_ALIASES.get(value.strip().lower())


def deny_secret_args(args: list[str]) -> list[str]:
    problems: list[str] = []
    for i, a in enumerate(args):
        if _SECRET_ARG_RE.search(a) or _SECRET_VALUE_RE.search(a):
            problems.append(f"Secret-like value not allowed in USBIDE_CODEX_EXTRA_ARGS at position {i}")
    return problems


@dataclass(frozen=True)
class CodexOverrides:
    """
    Caller-facing switches for the assistant integration.

    Everything defaults to the safe choice: credentials and custom endpoints
    are stripped from the child environment unless explicitly allowed.
    """

    allow_api_key: bool = False
    allow_custom_base: bool = False
    device_auth: bool = False
    auto_install: bool = True
    npm_package: str = DEFAULT_NPM_PACKAGE
    sandbox: SandboxMode | None = SandboxMode.WORKSPACE_WRITE
    approval: ApprovalPolicy | None = None
    extra_args: tuple[str, ...] = field(default_factory=tuple)

    @staticmethod
    def from_env(env: Mapping[str, str]) -> "CodexOverrides":
        sandbox: SandboxMode | None = SandboxMode.WORKSPACE_WRITE
        raw_sandbox = env.get("USBIDE_CODEX_SANDBOX")
        if raw_sandbox is not None:
            if falsy(raw_sandbox):
                sandbox = None
            else:
                sandbox = parse_sandbox_mode(raw_sandbox) or SandboxMode.WORKSPACE_WRITE

        approval: ApprovalPolicy | None = None
        raw_approval = env.get("USBIDE_CODEX_APPROVAL")
        # "never" is a real policy value, so only "off"/"0"/"false" disable the flag.
        if raw_approval is not None and raw_approval.strip().lower() not in {"", "off", "0", "false"}:
            approval = parse_approval_policy(raw_approval)

        extra: list[str] = []
        raw_extra = env.get("USBIDE_CODEX_EXTRA_ARGS")
        if raw_extra and raw_extra.strip():
            extra = shlex.split(raw_extra)
            problems = deny_secret_args(extra)
            if problems:
                raise ValueError("Invalid USBIDE_CODEX_EXTRA_ARGS (contains secrets):\n" + "\n".join(problems))

        package = (env.get("USBIDE_CODEX_NPM_PACKAGE") or "").strip() or DEFAULT_NPM_PACKAGE

        return CodexOverrides(
            allow_api_key=truthy(env.get("USBIDE_CODEX_ALLOW_API_KEY")),
            allow_custom_base=truthy(env.get("USBIDE_CODEX_ALLOW_CUSTOM_BASE")),
            device_auth=truthy(env.get("USBIDE_CODEX_DEVICE_AUTH")),
            # Auto-install is on unless explicitly disabled.
            auto_install=not falsy(env.get("USBIDE_CODEX_AUTO_INSTALL")),
            npm_package=package,
            sandbox=sandbox,
            approval=approval,
            extra_args=tuple(extra),
        )

    def to_json_obj(self) -> dict[str, Any]:
        return {
            "allow_api_key": self.allow_api_key,
            "allow_custom_base": self.allow_custom_base,
            "device_auth": self.device_auth,
            "auto_install": self.auto_install,
            "npm_package": self.npm_package,
            "sandbox": self.sandbox.value if self.sandbox else None,
            "approval": self.approval.value if self.approval else None,
            "extra_args": list(self.extra_args),
        }
