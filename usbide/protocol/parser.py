from __future__ import annotations

import json
import logging
from collections import deque
from dataclasses import dataclass, field
from typing import Any

from usbide.diagnostics.classifier import extract_status_code, hint_for_status, translate_cli_line
from usbide.protocol.records import (
    ActionMessage,
    AssistantMessage,
    DedupKey,
    DisplayEvent,
    DisplayKind,
    ErrorMessage,
    RawLine,
)


logger = logging.getLogger(__name__)

MALFORMED_NOTICE_THRESHOLD = 20
DEDUP_WINDOW = 4
# Actions are only compared with the one emitted just before them.
ACTION_DEDUP_WINDOW = 1
TEXT_TAIL_LINES = 50

DELTA_TYPES = ("response.output_text.delta", "response.output_text")
DONE_TYPES = ("response.output_text.done", "response.output_item.done", "response.completed", "turn.completed")
TURN_BOUNDARY_TYPES = ("turn.started", "turn.completed")

ACTION_TYPES = ("tool_call", "function_call", "action", "tool")
CODEX_ITEM_ACTIONS = {
    "command_execution": "Command",
    "file_change": "File change",
    "mcp_tool_call": "Tool",
    "web_search": "Web search",
}
_TEXT_PART_TYPES = ("output_text", "output_markdown", "text", "input_text")
_STATUS_FIELDS = ("status", "status_code", "http_status")


class ProtocolParseError(ValueError):
    """One line could not be decoded; recovered inside the parser."""


@dataclass
class ParserState:
    """Everything one invocation's parse accumulates. Never shared between invocations."""

    assistant: AssistantMessage | None = None
    recent: dict[DisplayKind, deque] = field(default_factory=dict)
    last_error: ErrorMessage | None = None
    last_seq: int = 0
    malformed_total: int = 0
    malformed_run: int = 0
    notice_armed: bool = True
    text_tail: deque = field(default_factory=lambda: deque(maxlen=TEXT_TAIL_LINES))


def _decode(text: str) -> dict[str, Any]:
    try:
        obj = json.loads(text)
    except json.JSONDecodeError as e:
        raise ProtocolParseError(str(e)) from e
    if not isinstance(obj, dict):
        raise ProtocolParseError(f"expected a JSON object, got {type(obj).__name__}")
    return obj


def _str(v: Any) -> str | None:
    if isinstance(v, str) and v:
        return v
    return None


def _texts_from_content(content: Any) -> list[str]:
    if isinstance(content, str):
        return [content] if content else []
    out: list[str] = []
    if isinstance(content, list):
        for part in content:
            if isinstance(part, str):
                if part:
                    out.append(part)
            elif isinstance(part, dict) and part.get("type") in _TEXT_PART_TYPES:
                t = _str(part.get("text")) or _str(part.get("content"))
                if t:
                    out.append(t)
    return out


def _compact(v: Any) -> str:
    if isinstance(v, (dict, list)):
        return json.dumps(v, ensure_ascii=False, separators=(",", ":"), sort_keys=True)
    return str(v).strip('"')


def format_action(payload: dict[str, Any]) -> ActionMessage | None:
    """Tool/function-call payload -> `name: args`; None when the payload is not an action."""
    raw_type = str(payload.get("type") or "").lower()
    name = next((payload[k] for k in ("name", "tool", "tool_name") if k in payload), None)
    args = next((payload[k] for k in ("arguments", "args", "input", "parameters") if k in payload), None)
    if raw_type not in ACTION_TYPES and (name is None or args is None):
        return None
    if name is None:
        name = payload.get("id")

    desc = _str(payload.get("message")) or _str(payload.get("description"))
    if desc and desc.strip() and name is None and args is None:
        return ActionMessage(label=desc.strip())

    arg_text = _compact(args) if args is not None else None
    if name is not None and _compact(name):
        return ActionMessage(label=_compact(name), payload=arg_text or None)
    if arg_text:
        return ActionMessage(label=arg_text)
    return None


def format_codex_item(item: dict[str, Any]) -> ActionMessage | None:
    """Codex `item.*` action items (command runs, file edits, MCP calls, searches)."""
    item_type = item.get("type")
    label = CODEX_ITEM_ACTIONS.get(str(item_type))
    if label is None:
        return None
    if item_type == "command_execution":
        payload = _str(item.get("command"))
    elif item_type == "file_change":
        changes = item.get("changes")
        paths = []
        if isinstance(changes, list):
            for c in changes:
                if isinstance(c, dict) and _str(c.get("path")):
                    kind = _str(c.get("kind"))
                    paths.append(f"{kind} {c['path']}" if kind else c["path"])
        payload = ", ".join(paths) or None
    elif item_type == "mcp_tool_call":
        server = _str(item.get("server"))
        tool = _str(item.get("tool"))
        payload = ".".join(p for p in (server, tool) if p) or None
    else:
        payload = _str(item.get("query"))
    status = _str(item.get("status"))
    if payload and status and status not in ("completed", "in_progress"):
        payload = f"{payload} ({status})"
    return ActionMessage(label=label, payload=payload)


def _status_of(*containers: Any) -> int | None:
    for c in containers:
        if not isinstance(c, dict):
            continue
        for key in _STATUS_FIELDS:
            v = c.get(key)
            if isinstance(v, int) and not isinstance(v, bool) and 100 <= v <= 599:
                return v
            if isinstance(v, str) and v.isdigit() and len(v) == 3:
                return int(v)
    return None


def error_text(prefix: str, err: ErrorMessage) -> str:
    translated = translate_cli_line(err.message) if err.message else None
    if translated:
        return translated
    if err.transport_status is not None:
        hint = hint_for_status(err.transport_status)
        base = f"{prefix} (HTTP {err.transport_status})."
        return f"{base} {hint}" if hint else base
    if err.message:
        return f"{prefix}: {err.message.strip()}"
    return f"{prefix}: something went wrong. Check the log and retry."


class ProtocolStreamParser:
    """
    Turns the assistant's line-delimited JSON records into display events.

    `structured=False` is for plain-text operations (login, status, install):
    every non-blank line becomes a notice, translated when it is a known CLI
    message.
    """

    def __init__(self, *, structured: bool = True) -> None:
        self.structured = structured
        self.state = ParserState()

    @property
    def last_error(self) -> ErrorMessage | None:
        return self.state.last_error

    @property
    def text_tail(self) -> list[str]:
        return list(self.state.text_tail)

    def feed(self, line: RawLine) -> list[DisplayEvent]:
        st = self.state
        st.last_seq = max(st.last_seq, line.seq)
        text = line.text.strip()
        if not text:
            return []

        if not self.structured:
            st.text_tail.append(text)
            return self._emit(DisplayKind.NOTICE, translate_cli_line(text) or text, line.seq, dedup=False)

        try:
            obj = _decode(text)
        except ProtocolParseError:
            return self._malformed(line, text)

        st.malformed_run = 0
        st.notice_armed = True
        return self._record(obj, line.seq)

    def flush(self) -> list[DisplayEvent]:
        return self._close_buffer(self.state.last_seq)

    def echo_user(self, prompt: str) -> list[DisplayEvent]:
        """The prompt as sent, so the assistant echoing it back is not shown twice."""
        return self._emit(DisplayKind.USER, prompt, 0)

    def _malformed(self, line: RawLine, text: str) -> list[DisplayEvent]:
        st = self.state
        st.text_tail.append(text)
        translated = translate_cli_line(text)
        if translated:
            return self._emit(DisplayKind.NOTICE, translated, line.seq)
        if line.stream != "stdout":
            # Diagnostic chatter on stderr is expected; only stdout is protocol.
            return []
        st.malformed_total += 1
        st.malformed_run += 1
        logger.debug("skipped non-JSON line seq=%d", line.seq)
        if st.notice_armed and st.malformed_run >= MALFORMED_NOTICE_THRESHOLD:
            st.notice_armed = False
            msg = (
                f"{st.malformed_run} consecutive output lines were not valid JSON; "
                "the transcript may be incomplete. Check that the installed Codex supports `exec --json`."
            )
            return [DisplayEvent(kind=DisplayKind.NOTICE, text=msg, seq=line.seq)]
        return []

    def _record(self, obj: dict[str, Any], seq: int) -> list[DisplayEvent]:
        st = self.state
        rtype = obj.get("type")
        out: list[DisplayEvent] = []

        if rtype in DELTA_TYPES:
            delta = _str(obj.get("delta")) or _str(obj.get("text"))
            if delta:
                if st.assistant is None:
                    st.assistant = AssistantMessage()
                st.assistant.append(delta)
            return out

        if rtype in DONE_TYPES:
            if st.assistant is not None:
                out.extend(self._close_buffer(seq))
            else:
                text = _str(obj.get("text"))
                if text:
                    out.extend(self._emit(DisplayKind.ASSISTANT, text, seq))
            if rtype in TURN_BOUNDARY_TYPES:
                st.recent.clear()
            return out

        if rtype == "turn.started":
            out.extend(self._close_buffer(seq))
            st.recent.clear()
            return out

        if rtype == "error":
            msg = _str(obj.get("message")) or ""
            return self._error(ErrorMessage(_status_of(obj) or extract_status_code(msg), msg), "Codex error", seq)

        if rtype == "turn.failed":
            err = obj.get("error") if isinstance(obj.get("error"), dict) else {}
            msg = _str(err.get("message")) or _str(err.get("text")) or ""
            return self._error(ErrorMessage(_status_of(err, obj) or extract_status_code(msg), msg), "Turn failed", seq)

        for kind, text in self._display_items(obj):
            out.extend(self._emit(kind, text, seq))
        return out

    def _display_items(self, obj: dict[str, Any]) -> list[tuple[DisplayKind, str]]:
        items: list[tuple[DisplayKind, str]] = []
        rtype = obj.get("type")
        payload = obj.get("payload") if isinstance(obj.get("payload"), dict) else None
        item = obj.get("item") if isinstance(obj.get("item"), dict) else None

        if str(rtype).lower() in ACTION_TYPES:
            action = format_action(obj)
            if action is not None:
                items.append((DisplayKind.ACTION, action.render()))

        if rtype == "event_msg" and payload is not None:
            ptype = payload.get("type")
            msg = _str(payload.get("message")) or _str(payload.get("text"))
            if ptype in ("agent_message", "assistant_message"):
                if msg:
                    items.append((DisplayKind.ASSISTANT, msg))
            elif ptype in ("user_message", "user"):
                if msg:
                    items.append((DisplayKind.USER, msg))
            else:
                action = format_action(payload)
                if action is not None:
                    items.append((DisplayKind.ACTION, action.render()))

        if rtype == "response_item" and payload is not None:
            items.extend(self._message_items(payload))
            action = format_action(payload)
            if action is not None:
                items.append((DisplayKind.ACTION, action.render()))

        if item is not None:
            items.extend(self._item_items(item))
            # Codex reports an action item on start and again on completion; show the final state.
            if rtype != "item.started":
                action = format_codex_item(item) or format_action(item)
                if action is not None:
                    items.append((DisplayKind.ACTION, action.render()))

        for container in (obj, payload, item):
            if container is None:
                continue
            calls: list[Any] = []
            if isinstance(container.get("tool_call"), dict):
                calls.append(container["tool_call"])
            listed = container.get("tool_calls") or container.get("tools")
            if isinstance(listed, list):
                calls.extend(c for c in listed if isinstance(c, dict))
            for call in calls:
                action = format_action(call)
                if action is not None:
                    items.append((DisplayKind.ACTION, action.render()))

        uniq: list[tuple[DisplayKind, str]] = []
        for it in items:
            if it not in uniq:
                uniq.append(it)
        return uniq

    def _message_items(self, payload: dict[str, Any]) -> list[tuple[DisplayKind, str]]:
        if payload.get("type") != "message":
            return []
        role = payload.get("role")
        if role == "assistant":
            kind = DisplayKind.ASSISTANT
        elif role == "user":
            kind = DisplayKind.USER
        else:
            return []
        texts = _texts_from_content(payload.get("content"))
        if not texts:
            msg = _str(payload.get("message"))
            texts = [msg] if msg else []
        return [(kind, t) for t in texts]

    def _item_items(self, item: dict[str, Any]) -> list[tuple[DisplayKind, str]]:
        itype = item.get("type")
        if itype == "message":
            return self._message_items(item)
        if itype in ("agent_message", "assistant_message"):
            kind = DisplayKind.ASSISTANT
        elif itype in ("user_message", "user"):
            kind = DisplayKind.USER
        else:
            return []
        texts = _texts_from_content(item.get("content"))
        for key in ("text", "message"):
            t = _str(item.get(key))
            if t:
                texts.append(t)
        return [(kind, t) for t in texts]

    def _error(self, err: ErrorMessage, prefix: str, seq: int) -> list[DisplayEvent]:
        st = self.state
        out = self._close_buffer(seq)
        st.last_error = err
        out.append(DisplayEvent(kind=DisplayKind.ERROR, text=error_text(prefix, err), seq=seq, status=err.transport_status))
        return out

    def _close_buffer(self, seq: int) -> list[DisplayEvent]:
        st = self.state
        if st.assistant is None:
            return []
        msg = st.assistant
        msg.open = False
        st.assistant = None
        return self._emit(DisplayKind.ASSISTANT, msg.text(), seq, flush_first=False)

    def _emit(self, kind: DisplayKind, text: str, seq: int, *, dedup: bool = True, flush_first: bool = True) -> list[DisplayEvent]:
        st = self.state
        out: list[DisplayEvent] = []
        # A finished message or action must not overtake text still accumulating before it.
        if flush_first and kind in (DisplayKind.ASSISTANT, DisplayKind.ACTION, DisplayKind.USER):
            out.extend(self._close_buffer(seq))
        cleaned = text.strip()
        if not cleaned:
            return out
        if dedup:
            key = DedupKey.of(kind, cleaned)
            size = ACTION_DEDUP_WINDOW if kind is DisplayKind.ACTION else DEDUP_WINDOW
            window = st.recent.setdefault(kind, deque(maxlen=size))
            if key in window:
                return out
            window.append(key)
        out.append(DisplayEvent(kind=kind, text=cleaned, seq=seq))
        return out
