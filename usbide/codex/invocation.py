from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path

from usbide.config.overrides import ApprovalPolicy, CodexOverrides, SandboxMode
from usbide.core.errors import ArgvError, ArgvReason
from usbide.core.paths import path_for_cmd


class Operation(str, Enum):
    LOGIN = "login"
    STATUS = "status"
    EXEC = "exec"
    INSTALL = "install"


@dataclass(frozen=True)
class CommandParams:
    prompt: str | None = None
    device_auth: bool = False
    json_output: bool = True
    sandbox: SandboxMode | None = None
    approval: ApprovalPolicy | None = None
    extra_args: tuple[str, ...] = field(default_factory=tuple)
    # Install only.
    package: str | None = None
    prefix: Path | None = None
    is_windows: bool = False

    @staticmethod
    def from_overrides(overrides: CodexOverrides, **kwargs) -> "CommandParams":
        base = {
            "sandbox": overrides.sandbox,
            "approval": overrides.approval,
            "extra_args": overrides.extra_args,
            "package": overrides.npm_package,
        }
        base.update(kwargs)
        return CommandParams(**base)


@dataclass(frozen=True)
class CommandSpec:
    """
    Arguments for one assistant invocation, without the program itself.

    The runner prepends the executable (and any wrapper) from the resolved
    candidate, so one CommandSpec works for portable and PATH installs.
    """

    operation: Operation
    argv: list[str]


def build_command(operation: Operation, params: CommandParams | None = None) -> CommandSpec:
    params = params or CommandParams()
    if operation is Operation.LOGIN:
        argv = ["login"]
        if params.device_auth:
            argv.append("--device-auth")
        return CommandSpec(operation=operation, argv=argv)

    if operation is Operation.STATUS:
        return CommandSpec(operation=operation, argv=["login", "status"])

    if operation is Operation.EXEC:
        prompt = params.prompt or ""
        if not prompt.strip():
            raise ArgvError(ArgvReason.EMPTY_PROMPT, "prompt must not be empty", guidance="Type a prompt before sending it to Codex.")
        # Flags first, directly after the subcommand; free-form arguments last.
        argv = ["exec"]
        if params.json_output:
            argv.append("--json")
        if params.device_auth:
            argv.append("--device-auth")
        if params.sandbox is not None:
            argv.extend(["--sandbox", params.sandbox.value])
        if params.approval is not None:
            argv.extend(["--ask-for-approval", params.approval.value])
        argv.extend(a for a in params.extra_args if a.strip())
        if prompt.lstrip().startswith("-"):
            argv.append("--")
        argv.append(prompt)
        return CommandSpec(operation=operation, argv=argv)

    if operation is Operation.INSTALL:
        package = (params.package or "").strip()
        if not package:
            raise ArgvError(ArgvReason.EMPTY_PACKAGE, "package must not be empty", guidance="Set USBIDE_CODEX_NPM_PACKAGE to a package name (default @openai/codex).")
        if params.prefix is None:
            raise ValueError("install requires a prefix")
        argv = [
            "install",
            "--prefix",
            path_for_cmd(params.prefix, params.is_windows),
            "--no-audit",
            "--no-fund",
            package,
        ]
        return CommandSpec(operation=operation, argv=argv)

    raise ValueError(f"unknown operation: {operation!r}")


def format_argv(argv: list[str]) -> str:
    """Command echo for transcripts; prompts are abbreviated so they do not flood the log."""
    out: list[str] = []
    for a in argv:
        if len(a) > 80:
            a = a[:77] + "..."
        out.append(a if a and " " not in a else f'"{a}"')
    return " ".join(out)
