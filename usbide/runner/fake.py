from __future__ import annotations

import threading
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable

from usbide.core.errors import ProcessSpawnError
from usbide.protocol.records import RawLine
from usbide.runner.runner import _EOF, ProcessHandle, ProcessRunner


@dataclass
class FakeScript:
    """
    Deterministic stand-in for one child process.

    `lines` items are either plain text (stdout) or `(stream, text)` pairs.
    With `hang=True` the process stays "running" after its output until
    cancelled, which lets tests exercise cancellation without sleeping.
    """

    lines: list = field(default_factory=list)
    exit_code: int = 0
    hang: bool = False
    spawn_error: str | None = None


@dataclass(frozen=True)
class FakeCall:
    argv: list[str]
    env: dict[str, str]
    cwd: Path | None


class FakeHandle(ProcessHandle):
    def __init__(self, script: FakeScript) -> None:
        super().__init__()
        self._script = script
        self._done = threading.Event()
        for i, item in enumerate(script.lines, start=1):
            if isinstance(item, tuple):
                stream, text = item
            else:
                stream, text = "stdout", item
            self._q.put(RawLine(stream=stream, text=text, seq=i))
        if not script.hang:
            self._q.put(_EOF)
            self._done.set()

    def wait(self, timeout: float | None = None) -> int | None:
        if not self._done.wait(timeout):
            raise TimeoutError("fake process still running")
        if self._cancelled:
            return None
        return self._script.exit_code

    def cancel(self) -> None:
        if self._done.is_set():
            return
        self._cancelled = True
        self._q.put(_EOF)
        self._done.set()


class FakeRunner(ProcessRunner):
    """
    Replays scripted output instead of creating processes.

    Scripts are consumed in order; `responder` (if given) picks a script from
    the full spawn argv instead. Every spawn is recorded in `calls`.
    """

    def __init__(self, *scripts: FakeScript, responder: Callable[[list[str]], FakeScript] | None = None) -> None:
        self._scripts = list(scripts)
        self._responder = responder
        self.calls: list[FakeCall] = []
        self.handles: list[FakeHandle] = []

    def _spawn(self, argv: list[str], env: dict[str, str], cwd: Path | None) -> ProcessHandle:
        self.calls.append(FakeCall(argv=list(argv), env=dict(env), cwd=cwd))
        if self._responder is not None:
            script = self._responder(list(argv))
        elif self._scripts:
            script = self._scripts.pop(0)
        else:
            script = FakeScript()
        if script.spawn_error:
            raise ProcessSpawnError(f"failed to start {argv[0]}: {script.spawn_error}")
        handle = FakeHandle(script)
        self.handles.append(handle)
        return handle
