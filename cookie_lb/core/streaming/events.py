from __future__ import annotations

from dataclasses import dataclass
from typing import Awaitable, Callable, Literal

from typing_extensions import TypeAliasType

from cookie_lb.core.types import JsonObject

THINK_OPEN = "<think>\n"
THINK_CLOSE = "\n</think>\n"


@dataclass(frozen=True, slots=True)
class InlineImage:
    mime_type: str
    data: str

    def to_payload(self) -> JsonObject:
        return {"mimeType": self.mime_type, "data": self.data}


@dataclass(frozen=True, slots=True)
class ToolCall:
    id: str | None
    name: str
    arguments: str

    def to_payload(self) -> JsonObject:
        return {
            "id": self.id,
            "type": "function",
            "function": {"name": self.name, "arguments": self.arguments},
        }


@dataclass(frozen=True, slots=True)
class TextEvent:
    content: str
    kind: Literal["text"] = "text"

    def to_payload(self) -> JsonObject:
        return {"type": self.kind, "content": self.content}


@dataclass(frozen=True, slots=True)
class ThinkingEvent:
    content: str
    kind: Literal["thinking"] = "thinking"

    def to_payload(self) -> JsonObject:
        return {"type": self.kind, "content": self.content}


@dataclass(frozen=True, slots=True)
class ImageEvent:
    image: InlineImage
    kind: Literal["image"] = "image"

    def to_payload(self) -> JsonObject:
        return {"type": self.kind, "image": self.image.to_payload()}


@dataclass(frozen=True, slots=True)
class ToolCallsEvent:
    tool_calls: tuple[ToolCall, ...]
    kind: Literal["tool_calls"] = "tool_calls"

    def to_payload(self) -> JsonObject:
        return {"type": self.kind, "tool_calls": [call.to_payload() for call in self.tool_calls]}


StreamEvent = TypeAliasType("StreamEvent", TextEvent | ThinkingEvent | ImageEvent | ToolCallsEvent)

EventSink = TypeAliasType("EventSink", Callable[[StreamEvent], Awaitable[None]])
