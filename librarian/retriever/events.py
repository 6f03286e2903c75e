"""
Stream events emitted by the pipeline and their server-sent-events framing.
"""

import json
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict


class EventKind(str, Enum):
    STEP = "step"
    TOKEN = "token"
    SOURCES = "sources"
    ERROR = "error"
    DONE = "done"


TERMINAL_KINDS = (EventKind.ERROR, EventKind.DONE)


@dataclass
class StreamEvent:
    kind: EventKind
    data: Dict[str, Any] = field(default_factory=dict)

    @property
    def is_terminal(self) -> bool:
        return self.kind in TERMINAL_KINDS

    def to_sse(self) -> str:
        return f"event: {self.kind.value}\ndata: {json.dumps(self.data, ensure_ascii=False, default=str)}\n\n"

    @classmethod
    def step(cls, step: str, message: str) -> "StreamEvent":
        return cls(EventKind.STEP, {"step": step, "message": message})

    @classmethod
    def token(cls, content: str) -> "StreamEvent":
        return cls(EventKind.TOKEN, {"content": content})

    @classmethod
    def sources(cls, payload: Dict[str, Any]) -> "StreamEvent":
        return cls(EventKind.SOURCES, payload)

    @classmethod
    def error(cls, message: str) -> "StreamEvent":
        return cls(EventKind.ERROR, {"error": message})

    @classmethod
    def done(cls) -> "StreamEvent":
        return cls(EventKind.DONE, {})
