from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path


CODEX_NPM_SCOPE = "@openai"
CODEX_NPM_NAME = "codex"


@dataclass(frozen=True)
class WorkspacePaths:
    """
    Every location the integration layer reads, writes or hands to the child.

    The workspace root is the only write boundary: nothing here points at
    host-global locations (home directory, system temp, global npm prefix).
    """

    root: Path

    def cache_dir(self) -> Path:
        return self.root / "cache"

    def pip_cache_dir(self) -> Path:
        return self.cache_dir() / "pip"

    def pycache_dir(self) -> Path:
        return self.cache_dir() / "pycache"

    def npm_cache_dir(self) -> Path:
        return self.cache_dir() / "npm"

    def tmp_dir(self) -> Path:
        return self.root / "tmp"

    def codex_home(self) -> Path:
        return self.root / "codex_home"

    def state_dir(self) -> Path:
        return self.root / ".usbide"

    def logs_dir(self) -> Path:
        return self.state_dir() / "logs"

    def log_path(self) -> Path:
        return self.logs_dir() / "usbide.log"

    def incident_log_path(self) -> Path:
        return self.root / "bug.md"

    # Portable Node.js runtime (read-only, shipped on the removable media).
    def node_dir(self) -> Path:
        return self.root / "tools" / "node"

    def node_bin_dir(self) -> Path:
        return self.node_dir() / "bin"

    # Managed npm prefix holding the portable assistant install.
    def codex_prefix(self) -> Path:
        return self.state_dir() / "codex"

    def codex_bin_dir(self) -> Path:
        return self.codex_prefix() / "node_modules" / ".bin"

    def codex_package_dir(self) -> Path:
        return self.codex_prefix() / "node_modules" / CODEX_NPM_SCOPE / CODEX_NPM_NAME

    def codex_package_json(self) -> Path:
        return self.codex_package_dir() / "package.json"

    def portable_dirs(self) -> list[Path]:
        """Directories the external startup collaborator creates once per launch."""
        return [
            self.pip_cache_dir(),
            self.pycache_dir(),
            self.npm_cache_dir(),
            self.tmp_dir(),
            self.codex_home(),
        ]


def ensure_portable_dirs(paths: WorkspacePaths) -> None:
    for p in paths.portable_dirs():
        p.mkdir(parents=True, exist_ok=True)


def path_for_cmd(path: Path | str, is_windows: bool) -> str:
    """
    Render a path for an argv slot.

    Windows verbatim prefixes (\\\\?\\ and \\\\?\\UNC\\) confuse cmd.exe and node,
    so they are stripped; other platforms get the path unchanged.
    """
    raw = str(path)
    if not is_windows:
        return raw
    if raw.startswith("\\\\?\\UNC\\"):
        return "\\\\" + raw[len("\\\\?\\UNC\\") :]
    if raw.startswith("\\\\?\\"):
        return raw[len("\\\\?\\") :]
    return raw
