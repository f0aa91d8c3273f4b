from __future__ import annotations

from pathlib import Path
from typing import Mapping

from usbide.codex.resolver import Origin, ToolCandidate, host_is_windows, split_search_path
from usbide.config.overrides import CodexOverrides
from usbide.core.errors import EnvironmentBuildError
from usbide.core.paths import WorkspacePaths


API_KEY_VARS = ("OPENAI_API_KEY", "CODEX_API_KEY")
CUSTOM_BASE_VARS = ("OPENAI_BASE_URL", "OPENAI_API_BASE", "OPENAI_API_HOST")


def build_environment(
    paths: WorkspacePaths,
    overrides: CodexOverrides,
    base_env: Mapping[str, str],
    candidate: ToolCandidate | None = None,
    *,
    is_windows: bool | None = None,
) -> dict[str, str]:
    """
    Build the child environment for one invocation.

    Pure function of its inputs: `base_env` is a snapshot the caller took
    (usually `dict(os.environ)`), and nothing here reads or mutates process
    state. Rules apply in a fixed order so the result is auditable:

    1. copy `base_env` (Windows: fold a `Path`-cased key into `PATH`);
    2. default the UTF-8 hints;
    3. drop credential and endpoint overrides unless explicitly allowed;
    4. pin every home/temp/cache location under the workspace;
    5. put the portable tool directories first on PATH.
    """
    if not isinstance(base_env, Mapping):
        raise EnvironmentBuildError(f"base environment must be a mapping, got {type(base_env).__name__}")
    win = host_is_windows() if is_windows is None else bool(is_windows)

    env: dict[str, str] = {}
    for k, v in base_env.items():
        if not isinstance(k, str) or not isinstance(v, str):
            raise EnvironmentBuildError(f"non-string environment entry: {k!r}")
        env[k] = v
    _normalize_path_key(env, win)

    env.setdefault("PYTHONUTF8", "1")
    env.setdefault("PYTHONIOENCODING", "utf-8")

    if not overrides.allow_api_key:
        _remove_vars(env, API_KEY_VARS, win)
    if not overrides.allow_custom_base:
        _remove_vars(env, CUSTOM_BASE_VARS, win)

    tmp = str(paths.tmp_dir())
    env["CODEX_HOME"] = str(paths.codex_home())
    env["TMP"] = tmp
    env["TEMP"] = tmp
    env["TMPDIR"] = tmp
    env["PIP_CACHE_DIR"] = str(paths.pip_cache_dir())
    env["PYTHONPYCACHEPREFIX"] = str(paths.pycache_dir())
    env["PYTHONNOUSERSITE"] = "1"
    env["NPM_CONFIG_CACHE"] = str(paths.npm_cache_dir())
    env["NPM_CONFIG_UPDATE_NOTIFIER"] = "false"

    if candidate is not None and candidate.origin is Origin.PORTABLE:
        # Prepend in reverse so the final order is: codex .bin, runtime dir, tools/node/bin.
        node_bin = paths.node_bin_dir()
        if node_bin.exists():
            prepend_path(env, node_bin, win)
        prepend_path(env, candidate.executable_path.parent, win)
        prepend_path(env, paths.codex_bin_dir(), win)

    return env


def prepend_path(env: dict[str, str], directory: Path, is_windows: bool) -> None:
    sep = ";" if is_windows else ":"
    current = env.get("PATH", "")
    entries = split_search_path(current, is_windows)
    if directory in entries:
        return
    env["PATH"] = str(directory) if not current else f"{directory}{sep}{current}"


def redacted_view(env: Mapping[str, str]) -> dict[str, str]:
    """Variable names with masked values; the only form of an environment fit for display."""
    return {k: "***" for k in sorted(env)}


def _normalize_path_key(env: dict[str, str], is_windows: bool) -> None:
    if not is_windows or "PATH" in env:
        return
    for k in list(env):
        if k.upper() == "PATH":
            env["PATH"] = env.pop(k)
            return


def _remove_vars(env: dict[str, str], names: tuple[str, ...], is_windows: bool) -> None:
    wanted = {n.upper() for n in names} if is_windows else set(names)
    for k in list(env):
        if (k.upper() if is_windows else k) in wanted:
            del env[k]
