from __future__ import annotations

import logging
import re
import threading
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path


logger = logging.getLogger("usbide.incidents")

SK_RE = re.compile(r"\bsk-[A-Za-z0-9_-]{10,}")
JWT_RE = re.compile(r"\beyJ[A-Za-z0-9_-]{10,}\.[A-Za-z0-9_-]{10,}\.[A-Za-z0-9_-]{10,}\b")
BEARER_RE = re.compile(r"\bBearer\s+[A-Za-z0-9\-._~+/]+=*", re.IGNORECASE)
GH_TOKEN_RE = re.compile(r"\bgh[opsu]_[A-Za-z0-9]{20,}\b")
ENV_SECRET_RE = re.compile(r"\b((?:OPENAI|CODEX)_API_KEY)\s*[:=]\s*([^\s'\";]+)", re.IGNORECASE)
KV_SECRET_RE = re.compile(r"\b(api[_-]?key|token|secret|password|passwd)\s*[:=]\s*([^\s'\";]+)", re.IGNORECASE)


class Severity(str, Enum):
    INFO = "info"
    WARNING = "warning"
    ERROR = "error"


def redact(text: str) -> str:
    """Mask credential-looking values; everything else (paths, commands) stays readable."""
    text = ENV_SECRET_RE.sub(lambda m: f"{m.group(1)}=[REDACTED]", text)
    text = SK_RE.sub("[REDACTED_KEY]", text)
    text = JWT_RE.sub("[REDACTED_JWT]", text)
    text = BEARER_RE.sub("Bearer [REDACTED_TOKEN]", text)
    text = GH_TOKEN_RE.sub("[REDACTED_TOKEN]", text)
    text = KV_SECRET_RE.sub(lambda m: f"{m.group(1)}=[REDACTED]", text)
    return text


def _timestamp() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="seconds").replace("+00:00", "Z")


def _one_line(text: str) -> str:
    return " ".join(text.splitlines()).strip()


def format_entry(severity: Severity, context: str, message: str, details: str | None = None, *, timestamp: str | None = None) -> str:
    lines = [
        f"## {timestamp or _timestamp()}",
        f"- level: {severity.value}",
        f"- context: {redact(_one_line(context))}",
        f"- message: {redact(_one_line(message))}",
    ]
    if details:
        lines.append(f"- details: {redact(_one_line(details))}")
    lines.append("")
    return "\n".join(lines) + "\n"


class IncidentLog:
    """
    Append-only Markdown incident log (`bug.md` at the workspace root).

    `record()` never raises: a failed write is reported on the
    `usbide.incidents` logger and otherwise dropped.
    """

    def __init__(self, path: Path) -> None:
        self.path = Path(path)
        self._lock = threading.Lock()

    def record(self, severity: Severity | str, context: str, message: str, details: str | None = None) -> bool:
        try:
            sev = Severity(severity)
        except ValueError:
            sev = Severity.ERROR
        entry = format_entry(sev, context, message, details)
        try:
            with self._lock:
                with self.path.open("a", encoding="utf-8") as f:
                    f.write(entry)
        except OSError as e:
            logger.warning("incident log write failed path=%s err=%s", self.path, type(e).__name__)
            return False
        return True
