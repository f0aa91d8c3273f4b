from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Union


@dataclass(frozen=True)
class RawLine:
    stream: str  # stdout | stderr
    text: str
    seq: int


class DisplayKind(str, Enum):
    USER = "user"
    ASSISTANT = "assistant"
    ACTION = "action"
    ERROR = "error"
    NOTICE = "notice"


LABELS = {
    DisplayKind.USER: "User",
    DisplayKind.ASSISTANT: "Assistant",
    DisplayKind.ACTION: "Action",
    DisplayKind.ERROR: "Error",
    DisplayKind.NOTICE: "Notice",
}


@dataclass(frozen=True)
class DisplayEvent:
    kind: DisplayKind
    text: str
    seq: int
    status: int | None = None

    @property
    def label(self) -> str:
        return LABELS[self.kind]

    def to_json_obj(self) -> dict[str, Any]:
        obj: dict[str, Any] = {"kind": self.kind.value, "text": self.text, "seq": self.seq}
        if self.status is not None:
            obj["status"] = self.status
        return obj


@dataclass(frozen=True)
class UserMessage:
    text: str


@dataclass
class AssistantMessage:
    buffer: list[str] = field(default_factory=list)
    open: bool = True

    def append(self, delta: str) -> None:
        self.buffer.append(delta)

    def text(self) -> str:
        return "".join(self.buffer)


@dataclass(frozen=True)
class ActionMessage:
    label: str
    payload: str | None = None

    def render(self) -> str:
        if self.payload:
            return f"{self.label}: {self.payload}"
        return self.label


@dataclass(frozen=True)
class ErrorMessage:
    transport_status: int | None
    message: str


ProtocolMessage = Union[UserMessage, AssistantMessage, ActionMessage, ErrorMessage]


@dataclass(frozen=True)
class DedupKey:
    kind: DisplayKind
    content: str

    @staticmethod
    def of(kind: DisplayKind, text: str) -> "DedupKey":
        return DedupKey(kind=kind, content=" ".join(text.split()))
