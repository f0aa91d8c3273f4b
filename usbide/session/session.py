from __future__ import annotations

import logging
import os
import threading
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Iterator, Mapping

from usbide.codex.environment import build_environment
from usbide.codex.invocation import CommandParams, CommandSpec, Operation, build_command
from usbide.codex.resolver import ToolCandidate, ToolResolver, codex_entrypoint
from usbide.config.overrides import CodexOverrides
from usbide.core.errors import AuthError, EnvironmentBuildError, InvocationBusyError, ResolutionError, UsbideError
from usbide.core.paths import WorkspacePaths, ensure_portable_dirs
from usbide.diagnostics.classifier import Diagnostic, DiagnosticKind, cancelled, classify, diagnostic_for_error
from usbide.incidents.log import IncidentLog, Severity
from usbide.protocol.parser import ProtocolStreamParser
from usbide.protocol.records import DisplayEvent
from usbide.runner.runner import ProcessHandle, ProcessRunner


logger = logging.getLogger(__name__)

_POLL_SECONDS = 0.05


@dataclass
class InvocationResult:
    operation: Operation
    exit_code: int | None
    cancelled: bool
    events: list[DisplayEvent] = field(default_factory=list)
    output: list[str] = field(default_factory=list)
    diagnostic: Diagnostic | None = None

    @property
    def ok(self) -> bool:
        return self.diagnostic is not None and self.diagnostic.ok

    def to_json_obj(self) -> dict[str, Any]:
        return {
            "operation": self.operation.value,
            "exit_code": self.exit_code,
            "cancelled": self.cancelled,
            "ok": self.ok,
            "events": [e.to_json_obj() for e in self.events],
            "output": list(self.output),
            "diagnostic": self.diagnostic.to_json_obj() if self.diagnostic else None,
        }


class ExecInvocation:
    """
    One running assistant process plus its parse state.

    `pump()` never blocks and suits an interactive loop; `stream()` and
    `result()` block until the process ends. Whichever reaches the end of the
    stream first finalizes the invocation and frees the session.
    """

    def __init__(
        self,
        session: "CodexSession",
        operation: Operation,
        handle: ProcessHandle,
        parser: ProtocolStreamParser,
        initial: list[DisplayEvent] | None = None,
    ) -> None:
        self.operation = operation
        self._session = session
        self._handle = handle
        self._parser = parser
        self._events: list[DisplayEvent] = list(initial or [])
        self._pending: list[DisplayEvent] = list(initial or [])
        self._result: InvocationResult | None = None
        self._finish_lock = threading.Lock()

    @property
    def pid(self) -> int | None:
        return self._handle.pid

    @property
    def done(self) -> bool:
        return self._result is not None

    def _take(self, new: list[DisplayEvent]) -> list[DisplayEvent]:
        self._events.extend(new)
        out = self._pending + new
        self._pending = []
        return out

    def pump(self) -> list[DisplayEvent]:
        new: list[DisplayEvent] = []
        for line in self._handle.poll():
            new.extend(self._parser.feed(line))
        if self._handle.eof and self._result is None:
            new.extend(self._parser.flush())
            out = self._take(new)
            self._finish()
            return out
        return self._take(new)

    def stream(self) -> Iterator[DisplayEvent]:
        yield from self._take([])
        if self._result is not None:
            return
        for line in self._handle.lines():
            evs = self._parser.feed(line)
            if evs:
                yield from self._take(evs)
        tail = self._take(self._parser.flush())
        self._finish()
        yield from tail

    def cancel(self) -> None:
        self._handle.cancel()

    def result(self, timeout: float | None = None) -> InvocationResult:
        """
        Wait for the process and return its result.

        `timeout` bounds the whole wait, output drain included; on expiry
        TimeoutError is raised and the invocation keeps running (cancel it or
        call `result()` again).
        """
        if self._result is None:
            if timeout is None:
                for _ in self.stream():
                    pass
            else:
                deadline = time.monotonic() + timeout
                while self._result is None:
                    self.pump()
                    if self._result is not None:
                        break
                    if time.monotonic() >= deadline:
                        raise TimeoutError(f"{self.operation.value} still running after {timeout}s")
                    time.sleep(_POLL_SECONDS)
        return self._finish(timeout)

    def _finish(self, timeout: float | None = None) -> InvocationResult:
        with self._finish_lock:
            if self._result is not None:
                return self._result
            try:
                exit_code = self._handle.wait(timeout)
                was_cancelled = self._handle.cancelled
                if was_cancelled:
                    diag = cancelled()
                else:
                    last = self._parser.last_error
                    diag = classify(
                        exit_code,
                        last.message if last else None,
                        self._parser.text_tail,
                        status=last.transport_status if last else None,
                    )
                self._result = InvocationResult(
                    operation=self.operation,
                    exit_code=exit_code,
                    cancelled=was_cancelled,
                    events=list(self._events),
                    output=self._parser.text_tail,
                    diagnostic=diag,
                )
            finally:
                self._session._release(self)
            self._session._after(self._result)
            return self._result


class CodexSession:
    """
    Caller-facing entry point: resolve once, build env + argv, run, parse, classify.

    At most one invocation runs at a time. `exec` checks `login status`
    first and never starts when that check fails.
    """

    def __init__(
        self,
        root: Path,
        runner: ProcessRunner,
        *,
        resolver: ToolResolver | None = None,
        overrides: CodexOverrides | None = None,
        base_env: Mapping[str, str] | None = None,
        incidents: IncidentLog | None = None,
        is_windows: bool | None = None,
    ) -> None:
        env = os.environ.copy() if base_env is None else base_env
        if not isinstance(env, Mapping):
            raise EnvironmentBuildError(f"base environment must be a mapping, got {type(env).__name__}")
        self.paths = WorkspacePaths(root=Path(root))
        self.runner = runner
        self._base_env = env
        self.overrides = overrides if overrides is not None else CodexOverrides.from_env(env)
        self.resolver = resolver or ToolResolver(env, is_windows=is_windows)
        self.incidents = incidents
        self._candidate: ToolCandidate | None = None
        self._auto_install_tried = False
        self._lock = threading.Lock()
        # Set from reservation until the process ends; _active once the handle exists.
        self._busy: Operation | None = None
        self._active: ExecInvocation | None = None

    @property
    def root(self) -> Path:
        return self.paths.root

    @property
    def active(self) -> ExecInvocation | None:
        return self._active

    # Resolution

    def candidate(self) -> ToolCandidate:
        if self._candidate is None:
            self._candidate = self.resolver.resolve(self.root)
        return self._candidate

    def reload(self) -> ToolCandidate:
        self._candidate = None
        self._auto_install_tried = False
        return self.candidate()

    def _ensure_candidate(self, operation: Operation) -> ToolCandidate:
        try:
            return self.candidate()
        except ResolutionError as e:
            if not self.overrides.auto_install or self._auto_install_tried:
                self._incident(Severity.ERROR, operation, e)
                raise
            missing = e
        self._auto_install_tried = True
        logger.info("codex not found; attempting portable install")
        try:
            res = self.install(force=True)
        except UsbideError as e:
            self._incident(Severity.ERROR, operation, e)
            raise
        if not res.ok:
            err = ResolutionError(
                missing.reason,
                "automatic install failed",
                guidance=res.diagnostic.guidance if res.diagnostic else missing.guidance,
            )
            self._incident(Severity.ERROR, operation, err)
            raise err
        return self.candidate()

    # Operations

    def login(self, *, device_auth: bool | None = None) -> InvocationResult:
        use_device = self.overrides.device_auth if device_auth is None else device_auth
        spec = build_command(Operation.LOGIN, CommandParams(device_auth=use_device))
        cand = self._ensure_candidate(Operation.LOGIN)
        return self._start(cand, spec, structured=False).result()

    def status(self) -> InvocationResult:
        spec = build_command(Operation.STATUS)
        cand = self._ensure_candidate(Operation.STATUS)
        return self._start(cand, spec, structured=False).result()

    def exec(self, prompt: str) -> InvocationResult:
        return self.start_exec(prompt).result()

    def start_exec(self, prompt: str) -> ExecInvocation:
        params = CommandParams.from_overrides(self.overrides, prompt=prompt)
        try:
            spec = build_command(Operation.EXEC, params)
        except UsbideError as e:
            self._incident(Severity.WARNING, Operation.EXEC, e)
            raise
        cand = self._ensure_candidate(Operation.EXEC)

        st = self.status()
        if not st.ok:
            err = AuthError(
                f"login status failed (exit={st.exit_code})",
                output=st.output,
                guidance=_auth_guidance(st.diagnostic),
            )
            self._incident(Severity.ERROR, Operation.EXEC, err)
            raise err

        return self._start(cand, spec, structured=True, prompt=prompt)

    def install(self, *, force: bool = False) -> InvocationResult:
        if not force and codex_entrypoint(self.paths) is not None:
            return InvocationResult(
                operation=Operation.INSTALL,
                exit_code=0,
                cancelled=False,
                diagnostic=Diagnostic(kind=DiagnosticKind.OK, guidance="Codex is already installed in the workspace.", exit_code=0),
            )
        try:
            installer = self.resolver.resolve_installer(self.root)
            spec = build_command(
                Operation.INSTALL,
                CommandParams(
                    package=self.overrides.npm_package,
                    prefix=self.paths.codex_prefix(),
                    is_windows=self.resolver.is_windows,
                ),
            )
        except UsbideError as e:
            self._incident(Severity.ERROR, Operation.INSTALL, e)
            raise
        ensure_portable_dirs(self.paths)
        self.paths.codex_prefix().mkdir(parents=True, exist_ok=True)
        res = self._start(installer, spec, structured=False).result()
        # The next operation resolves again and picks up the new install.
        self._candidate = None
        return res

    def cancel(self) -> bool:
        inv = self._active
        if inv is None:
            return False
        logger.info("cancel requested operation=%s", inv.operation.value)
        inv.cancel()
        return True

    # Internals

    def _start(self, cand: ToolCandidate, spec: CommandSpec, *, structured: bool, prompt: str | None = None) -> ExecInvocation:
        with self._lock:
            if self._busy is not None:
                raise InvocationBusyError(f"{self._busy.value} is still running")
            self._busy = spec.operation
        try:
            env = build_environment(self.paths, self.overrides, self._base_env, cand, is_windows=self.resolver.is_windows)
            handle = self.runner.run(cand, cand.strategy, env, spec.argv, cwd=self.root)
        except UsbideError as e:
            self._release(None)
            self._incident(Severity.ERROR, spec.operation, e)
            raise
        except BaseException:
            self._release(None)
            raise
        logger.info("started operation=%s origin=%s pid=%s", spec.operation.value, cand.origin.value, handle.pid)

        parser = ProtocolStreamParser(structured=structured)
        initial = parser.echo_user(prompt) if prompt else []
        inv = ExecInvocation(self, spec.operation, handle, parser, initial=initial)
        with self._lock:
            self._active = inv
        return inv

    def _release(self, inv: ExecInvocation | None) -> None:
        with self._lock:
            if inv is None or self._active is inv:
                self._active = None
                self._busy = None

    def _after(self, res: InvocationResult) -> None:
        diag = res.diagnostic
        logger.info(
            "finished operation=%s exit=%s cancelled=%s kind=%s",
            res.operation.value,
            res.exit_code,
            res.cancelled,
            diag.kind.value if diag else None,
        )
        if self.incidents is None or diag is None or diag.ok:
            return
        severity = Severity.INFO if res.cancelled else Severity.ERROR
        details = f"exit_code={res.exit_code}"
        if diag.status is not None:
            details += f" status={diag.status}"
        self.incidents.record(severity, res.operation.value, diag.guidance, details)

    def _incident(self, severity: Severity, operation: Operation, exc: UsbideError) -> None:
        logger.warning("operation=%s failed: %s", operation.value, type(exc).__name__)
        if self.incidents is None:
            return
        diag = diagnostic_for_error(exc)
        self.incidents.record(severity, operation.value, diag.guidance, f"{diag.kind.value}: {exc}")


def _auth_guidance(diag: Diagnostic | None) -> str:
    if diag is None:
        return AuthError.guidance
    if diag.kind in (DiagnosticKind.PROCESS_FAILURE, DiagnosticKind.UNAUTHENTICATED):
        return AuthError.guidance
    # Status check failed for another reason (proxy, server): that guidance is more useful.
    return f"{AuthError.guidance} {diag.guidance}"
