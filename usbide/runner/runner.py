from __future__ import annotations

import logging
import os
import queue
import signal
import subprocess
import threading
from abc import ABC, abstractmethod
from pathlib import Path
from typing import IO, Iterator, Mapping

from usbide.codex.resolver import InvocationStrategy, ToolCandidate, env_value, find_in_path, host_is_windows
from usbide.core.errors import ArgvError, ArgvReason, ProcessSpawnError
from usbide.core.paths import path_for_cmd
from usbide.protocol.records import RawLine


logger = logging.getLogger(__name__)

# Flags that make cmd.exe run one command and exit: /d skips AutoRun, /s keeps
# quoting literal, /c terminates after the command.
CMD_EXEC_FLAGS = ("/d", "/s", "/c")
# Bypass applies to this one powershell.exe process; no policy setting is written.
POWERSHELL_EXEC_FLAGS = ("-NoProfile", "-ExecutionPolicy", "Bypass", "-File")

_EOF = object()


def spawn_argv(
    candidate: ToolCandidate,
    strategy: InvocationStrategy,
    argv: list[str],
    env: Mapping[str, str],
) -> list[str]:
    """Full program + arguments for `argv` under the given invocation strategy."""
    win = strategy is not InvocationStrategy.DIRECT_EXEC or host_is_windows()
    target = path_for_cmd(candidate.executable_path, win)

    if strategy is InvocationStrategy.WINDOWS_CMD_WRAPPER:
        comspec = env_value(env, "COMSPEC", True) or "cmd.exe"
        return [comspec, *CMD_EXEC_FLAGS, target, *argv]

    if strategy is InvocationStrategy.WINDOWS_POWERSHELL_WRAPPER:
        ps = find_in_path("powershell", env_value(env, "PATH", True), True, env_value(env, "PATHEXT", True))
        return [str(ps) if ps else "powershell", *POWERSHELL_EXEC_FLAGS, target, *argv]

    prefix = [target]
    if candidate.entrypoint_path is not None:
        prefix.append(path_for_cmd(candidate.entrypoint_path, win))
    return [*prefix, *argv]


class ProcessHandle(ABC):
    """
    One running (or finished) child process.

    Output lines from stdout and stderr are merged into a single ordered queue
    in arrival order; `lines()` blocks on it, `poll()` never blocks.
    """

    def __init__(self) -> None:
        self._q: "queue.Queue[object]" = queue.Queue()
        self._eof = False
        self._cancelled = False
        self.pid: int | None = None

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    @property
    def eof(self) -> bool:
        return self._eof

    def lines(self) -> Iterator[RawLine]:
        while not self._eof:
            item = self._q.get()
            if item is _EOF:
                self._eof = True
                return
            yield item  # type: ignore[misc]

    def poll(self) -> list[RawLine]:
        out: list[RawLine] = []
        while not self._eof:
            try:
                item = self._q.get_nowait()
            except queue.Empty:
                break
            if item is _EOF:
                self._eof = True
                break
            out.append(item)  # type: ignore[arg-type]
        return out

    @abstractmethod
    def wait(self, timeout: float | None = None) -> int | None:
        """Exit code, or None when the process was cancelled."""

    @abstractmethod
    def cancel(self) -> None:
        """Stop the process (and its children); a no-op once it has exited."""


class ProcessRunner(ABC):
    """
    Spawn/stream/cancel contract.

    Callers pick the implementation (SubprocessRunner for real use, FakeRunner
    in tests); nothing selects it from global configuration.
    """

    def run(
        self,
        candidate: ToolCandidate,
        strategy: InvocationStrategy,
        env: Mapping[str, str],
        argv: list[str],
        cwd: Path | None = None,
    ) -> ProcessHandle:
        if not argv:
            raise ArgvError(ArgvReason.EMPTY_ARGV, "argv must not be empty", guidance="Nothing to run: the command line was empty.")
        full = spawn_argv(candidate, strategy, argv, env)
        # Program and strategy only: argv may contain the user's prompt, env may contain anything.
        logger.info("spawn program=%s strategy=%s nargs=%d", full[0], strategy.value, len(full))
        return self._spawn(full, dict(env), cwd)

    @abstractmethod
    def _spawn(self, argv: list[str], env: dict[str, str], cwd: Path | None) -> ProcessHandle:
        """Start `argv` (already wrapped) and return its handle."""


class SubprocessHandle(ProcessHandle):
    def __init__(self, proc: subprocess.Popen, grace_seconds: float = 3.0) -> None:
        super().__init__()
        self._proc = proc
        self.pid = proc.pid
        self._grace = grace_seconds
        self._seq = 0
        self._seq_lock = threading.Lock()
        self._open_streams = 2
        self._readers = [
            threading.Thread(target=self._drain, args=("stdout", proc.stdout), daemon=True),
            threading.Thread(target=self._drain, args=("stderr", proc.stderr), daemon=True),
        ]
        for t in self._readers:
            t.start()

    def _drain(self, stream_name: str, stream: IO[str] | None) -> None:
        try:
            if stream is not None:
                for line in stream:
                    # Sequence numbers are taken under the lock together with the
                    # put, so seq order equals queue order across both streams.
                    with self._seq_lock:
                        self._seq += 1
                        self._q.put(RawLine(stream=stream_name, text=line.rstrip("\r\n"), seq=self._seq))
        except (OSError, ValueError):
            # Pipe closed under us by cancel().
            pass
        finally:
            with self._seq_lock:
                self._open_streams -= 1
                last = self._open_streams == 0
            if last:
                self._q.put(_EOF)

    def wait(self, timeout: float | None = None) -> int | None:
        rc = self._proc.wait(timeout=timeout)
        for t in self._readers:
            t.join(timeout=1.0)
        if self._cancelled:
            return None
        return rc

    def cancel(self) -> None:
        if self._proc.poll() is not None:
            return
        self._cancelled = True
        logger.info("cancel pid=%s", self._proc.pid)
        _kill_process_tree(self._proc, grace_seconds=self._grace)


def _kill_process_tree(proc: subprocess.Popen, grace_seconds: float) -> None:
    if os.name == "nt":
        proc.kill()
        return
    # Children start with start_new_session=True, so pid is the process group id too.
    try:
        os.killpg(proc.pid, signal.SIGTERM)
    except ProcessLookupError:
        return
    except PermissionError:
        proc.terminate()
    try:
        proc.wait(timeout=grace_seconds)
        return
    except subprocess.TimeoutExpired:
        pass
    try:
        os.killpg(proc.pid, signal.SIGKILL)
    except (ProcessLookupError, PermissionError):
        proc.kill()


class SubprocessRunner(ProcessRunner):
    def __init__(self, grace_seconds: float = 3.0) -> None:
        self._grace = grace_seconds

    def _spawn(self, argv: list[str], env: dict[str, str], cwd: Path | None) -> ProcessHandle:
        kwargs: dict[str, object] = {}
        if os.name == "nt":
            kwargs["creationflags"] = subprocess.CREATE_NEW_PROCESS_GROUP
        else:
            kwargs["start_new_session"] = True
        try:
            proc = subprocess.Popen(
                argv,
                stdin=subprocess.DEVNULL,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                text=True,
                encoding="utf-8",
                errors="replace",
                bufsize=1,
                env=env,
                cwd=str(cwd) if cwd is not None else None,
                **kwargs,
            )
        except OSError as e:
            raise ProcessSpawnError(f"failed to start {argv[0]}: {e}") from e
        return SubprocessHandle(proc, grace_seconds=self._grace)
