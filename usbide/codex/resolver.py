from __future__ import annotations

import json
import logging
import os
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Any, Mapping

from usbide.core.errors import ResolutionError, ResolutionReason
from usbide.core.paths import WorkspacePaths


logger = logging.getLogger(__name__)

ASSISTANT_COMMAND = "codex"
DEFAULT_PATHEXT = ".COM;.EXE;.BAT;.CMD;.PS1"

INSTALL_GUIDANCE = (
    "Codex is not installed: run install (needs a portable Node in tools/node) "
    "or put the `codex` command on PATH."
)


class Origin(str, Enum):
    PORTABLE = "portable"
    PATH_FALLBACK = "path_fallback"


class InvocationStrategy(str, Enum):
    DIRECT_EXEC = "direct_exec"
    WINDOWS_CMD_WRAPPER = "windows_cmd_wrapper"
    WINDOWS_POWERSHELL_WRAPPER = "windows_powershell_wrapper"


@dataclass(frozen=True)
class ToolCandidate:
    origin: Origin
    executable_path: Path
    strategy: InvocationStrategy
    # Set for runtime+script pairs (node + codex.js, node + npm-cli.js).
    entrypoint_path: Path | None = None

    def to_json_obj(self) -> dict[str, Any]:
        return {
            "origin": self.origin.value,
            "executable_path": str(self.executable_path),
            "entrypoint_path": str(self.entrypoint_path) if self.entrypoint_path else None,
            "strategy": self.strategy.value,
        }


def host_is_windows() -> bool:
    return os.name == "nt"


def env_value(env: Mapping[str, str], key: str, is_windows: bool) -> str | None:
    """Windows environment keys are case-insensitive (`Path` vs `PATH`)."""
    if key in env:
        return env[key]
    if is_windows:
        for k, v in env.items():
            if k.upper() == key.upper():
                return v
    return None


def split_search_path(raw: str, is_windows: bool) -> list[Path]:
    sep = ";" if is_windows else ":"
    return [Path(p) for p in raw.split(sep) if p.strip()]


def find_in_path(
    cmd: str,
    search_path: str | None,
    is_windows: bool,
    pathext: str | None = None,
) -> Path | None:
    cmd = cmd.strip()
    if not cmd:
        return None

    candidate = Path(cmd)
    has_separator = os.sep in cmd or (is_windows and ("/" in cmd or "\\" in cmd))
    if candidate.is_absolute() or has_separator:
        return candidate if candidate.exists() else None

    extensions: list[str] = [""]
    if is_windows and not candidate.suffix:
        extensions = [e for e in (pathext or DEFAULT_PATHEXT).split(";") if e] or [""]

    for d in split_search_path(search_path or "", is_windows):
        for ext in extensions:
            # PATHEXT is upper-case by convention; shims on disk are usually lower-case.
            for variant in dict.fromkeys([ext, ext.lower()]):
                p = d / f"{cmd}{variant}"
                if p.is_file():
                    return p
    return None


def node_candidates(paths: WorkspacePaths, is_windows: bool) -> list[Path]:
    node_dir = paths.node_dir()
    if is_windows:
        return [node_dir / "node.exe"]
    return [node_dir / "bin" / "node", node_dir / "node"]


def portable_node(paths: WorkspacePaths, is_windows: bool) -> Path | None:
    for p in node_candidates(paths, is_windows):
        if p.exists():
            return p
    return None


def codex_entrypoint(paths: WorkspacePaths) -> Path | None:
    """
    Locate the assistant's JS entrypoint from the managed install's package.json.

    `bin` may be a string or an object; prefer the `codex` key, else the first
    string value.
    """
    pkg_json = paths.codex_package_json()
    if not pkg_json.exists():
        return None
    try:
        data = json.loads(pkg_json.read_text(encoding="utf-8"))
    except (OSError, ValueError):
        logger.warning("unreadable package.json: %s", pkg_json)
        return None
    if not isinstance(data, dict):
        return None
    bin_field = data.get("bin")
    rel: str | None = None
    if isinstance(bin_field, str):
        rel = bin_field
    elif isinstance(bin_field, dict):
        v = bin_field.get(ASSISTANT_COMMAND)
        if isinstance(v, str):
            rel = v
        else:
            rel = next((x for x in bin_field.values() if isinstance(x, str)), None)
    if not rel:
        return None
    entry = pkg_json.parent / rel
    return entry if entry.exists() else None


def npm_cli_js(node: Path) -> Path | None:
    node_dir = node.parent
    direct = node_dir / "node_modules" / "npm" / "bin" / "npm-cli.js"
    if direct.exists():
        return direct
    # Unix tarball layout: <prefix>/bin/node + <prefix>/lib/node_modules/npm.
    alt = node_dir.parent / "lib" / "node_modules" / "npm" / "bin" / "npm-cli.js"
    if alt.exists():
        return alt.resolve()
    return None


def strategy_for(path: Path, is_windows: bool) -> InvocationStrategy:
    """
    Pick the wrapper from the file extension alone.

    The file is never opened: a shebang cannot change the outcome, since only
    `.cmd`/`.bat`/`.ps1` need a wrapper and everything else runs directly.
    """
    if not is_windows:
        return InvocationStrategy.DIRECT_EXEC
    suffix = path.suffix.lower()
    if suffix in {".cmd", ".bat"}:
        return InvocationStrategy.WINDOWS_CMD_WRAPPER
    if suffix == ".ps1":
        return InvocationStrategy.WINDOWS_POWERSHELL_WRAPPER
    return InvocationStrategy.DIRECT_EXEC


class ToolResolver:
    """
    Decide which assistant executable to launch.

    `env` is the mapping PATH/PATHEXT are read from (defaults to the ambient
    environment at construction time). `is_windows` can be forced so wrapper
    selection is testable on any host.
    """

    def __init__(self, env: Mapping[str, str] | None = None, *, is_windows: bool | None = None) -> None:
        self._env = dict(os.environ if env is None else env)
        self._is_windows = host_is_windows() if is_windows is None else bool(is_windows)

    @property
    def is_windows(self) -> bool:
        return self._is_windows

    def _search_path(self) -> str:
        return env_value(self._env, "PATH", self._is_windows) or ""

    def _pathext(self) -> str | None:
        return env_value(self._env, "PATHEXT", self._is_windows)

    def _node(self, paths: WorkspacePaths) -> Path | None:
        found = portable_node(paths, self._is_windows)
        if found is not None:
            return found
        return find_in_path("node", self._search_path(), self._is_windows, self._pathext())

    def resolve(self, workspace_root: Path) -> ToolCandidate:
        paths = WorkspacePaths(root=workspace_root)

        entry = codex_entrypoint(paths)
        if entry is not None:
            node = self._node(paths)
            if node is not None:
                cand = ToolCandidate(
                    origin=Origin.PORTABLE,
                    executable_path=node,
                    entrypoint_path=entry,
                    strategy=InvocationStrategy.DIRECT_EXEC,
                )
                logger.info("resolved portable codex entrypoint=%s runtime=%s", entry, node)
                return cand

        found = find_in_path(ASSISTANT_COMMAND, self._search_path(), self._is_windows, self._pathext())
        if found is None:
            raise ResolutionError(
                ResolutionReason.NOT_FOUND,
                "codex not found (no portable install and nothing on PATH)",
                guidance=INSTALL_GUIDANCE,
            )
        cand = ToolCandidate(
            origin=Origin.PATH_FALLBACK,
            executable_path=found,
            strategy=strategy_for(found, self._is_windows),
        )
        logger.info("resolved codex on PATH path=%s strategy=%s", found, cand.strategy.value)
        return cand

    def resolve_installer(self, workspace_root: Path) -> ToolCandidate:
        """Portable npm (node + npm-cli.js) used to install the assistant under the workspace."""
        paths = WorkspacePaths(root=workspace_root)
        node = self._node(paths)
        if node is None:
            raise ResolutionError(
                ResolutionReason.RUNTIME_MISSING,
                "portable node not found",
                guidance=f"Node not found: place node in {paths.node_dir()} (e.g. node.exe) or add node to PATH.",
            )
        npm = npm_cli_js(node)
        if npm is None:
            raise ResolutionError(
                ResolutionReason.NPM_MISSING,
                "npm-cli.js not found next to node",
                guidance="npm-cli.js not found: check that the portable Node ships with npm.",
            )
        return ToolCandidate(
            origin=Origin.PORTABLE,
            executable_path=node,
            entrypoint_path=npm,
            strategy=InvocationStrategy.DIRECT_EXEC,
        )
