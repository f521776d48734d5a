from __future__ import annotations

import codecs
import json
import logging
from collections.abc import AsyncIterable, AsyncIterator, Sequence

from cookie_lb.core.metrics import get_metrics
from cookie_lb.core.streaming.events import (
    THINK_CLOSE,
    THINK_OPEN,
    ImageEvent,
    InlineImage,
    StreamEvent,
    TextEvent,
    ThinkingEvent,
    ToolCall,
    ToolCallsEvent,
)
from cookie_lb.core.types import JsonObject, JsonValue

logger = logging.getLogger(__name__)

DATA_PREFIX = "data: "


def uses_think_markup(model_name: str, no_markup_prefixes: Sequence[str]) -> bool:
    return not any(model_name.startswith(prefix) for prefix in no_markup_prefixes)


class StreamTranslator:
    """Turns the upstream ``data: <json>`` line stream into normalized events.

    One instance per request. ``feed`` may be called with arbitrary chunk
    boundaries; a record split across chunks is reassembled before parsing.
    """

    def __init__(self, model_name: str, *, no_markup_prefixes: Sequence[str] = ("gemini-",)) -> None:
        self.model_name = model_name
        self.think_markup = uses_think_markup(model_name, no_markup_prefixes)
        self.thinking_open = False
        self.images: list[InlineImage] = []
        self._pending_tool_calls: list[ToolCall] = []
        self._buffer = ""
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")

    def feed(self, chunk: bytes | str) -> list[StreamEvent]:
        text = chunk if isinstance(chunk, str) else self._decoder.decode(chunk)
        self._buffer += text
        lines = self._buffer.split("\n")
        self._buffer = lines.pop()
        events: list[StreamEvent] = []
        for line in lines:
            events.extend(self._handle_line(line))
        return events

    def finish(self) -> list[StreamEvent]:
        # A final record without a trailing newline is still a complete record.
        tail = self._buffer + self._decoder.decode(b"", final=True)
        self._buffer = ""
        if not tail:
            return []
        return self._handle_line(tail)

    def _handle_line(self, line: str) -> list[StreamEvent]:
        if not line.startswith(DATA_PREFIX):
            return []
        raw = line[len(DATA_PREFIX) :].strip()
        if not raw:
            return []
        try:
            record = json.loads(raw)
        except json.JSONDecodeError:
            get_metrics().observe_malformed_record(model=self.model_name)
            logger.warning("Skipping malformed stream record model=%s line=%s", self.model_name, raw[:200])
            return []
        if not isinstance(record, dict):
            return []
        return self._handle_record(record)

    def _handle_record(self, record: JsonObject) -> list[StreamEvent]:
        candidate = _first_candidate(record)
        if candidate is None:
            return []
        events: list[StreamEvent] = []
        for part in _parts_of(candidate):
            events.extend(self._handle_part(part))
        if candidate.get("finishReason"):
            events.extend(self._flush())
        return events

    def _handle_part(self, part: JsonObject) -> list[StreamEvent]:
        if part.get("thought") is True:
            return self._handle_thought(part.get("text"))
        if "text" in part:
            return self._handle_text(part.get("text"))
        inline_data = part.get("inlineData")
        if isinstance(inline_data, dict):
            return [*self._close_thinking(), self._handle_image(inline_data)]
        function_call = part.get("functionCall")
        if isinstance(function_call, dict):
            self._pending_tool_calls.append(_tool_call(function_call))
            return self._close_thinking()
        return []

    def _handle_thought(self, text: JsonValue) -> list[StreamEvent]:
        content = text if isinstance(text, str) else ""
        if not self.think_markup:
            return [TextEvent(content)]
        events: list[StreamEvent] = []
        if not self.thinking_open:
            events.append(ThinkingEvent(THINK_OPEN))
            self.thinking_open = True
        events.append(ThinkingEvent(content))
        return events

    def _handle_text(self, text: JsonValue) -> list[StreamEvent]:
        if not isinstance(text, str) or not text.strip():
            return []
        events: list[StreamEvent] = self._close_thinking()
        events.append(TextEvent(text))
        return events

    def _handle_image(self, inline_data: JsonObject) -> ImageEvent:
        mime_type = inline_data.get("mimeType")
        data = inline_data.get("data")
        image = InlineImage(
            mime_type=mime_type if isinstance(mime_type, str) else "application/octet-stream",
            data=data if isinstance(data, str) else "",
        )
        self.images.append(image)
        return ImageEvent(image)

    def _close_thinking(self) -> list[StreamEvent]:
        if not self.thinking_open or not self.think_markup:
            return []
        self.thinking_open = False
        return [ThinkingEvent(THINK_CLOSE)]

    def _flush(self) -> list[StreamEvent]:
        events = self._close_thinking()
        if self._pending_tool_calls:
            events.append(ToolCallsEvent(tuple(self._pending_tool_calls)))
            self._pending_tool_calls = []
        return events


async def iter_events(chunks: AsyncIterable[bytes], translator: StreamTranslator) -> AsyncIterator[StreamEvent]:
    async for chunk in chunks:
        for event in translator.feed(chunk):
            yield event
    for event in translator.finish():
        yield event


def _first_candidate(record: JsonObject) -> JsonObject | None:
    response = record.get("response")
    if not isinstance(response, dict):
        return None
    candidates = response.get("candidates")
    if not isinstance(candidates, list) or not candidates:
        return None
    candidate = candidates[0]
    return candidate if isinstance(candidate, dict) else None


def _parts_of(candidate: JsonObject) -> list[JsonObject]:
    content = candidate.get("content")
    if not isinstance(content, dict):
        return []
    parts = content.get("parts")
    if not isinstance(parts, list):
        return []
    return [part for part in parts if isinstance(part, dict)]


def _tool_call(function_call: JsonObject) -> ToolCall:
    call_id = function_call.get("id")
    name = function_call.get("name")
    args = function_call.get("args")
    return ToolCall(
        id=call_id if isinstance(call_id, str) else None,
        name=name if isinstance(name, str) else "",
        arguments=json.dumps(args if args is not None else {}, ensure_ascii=False, separators=(",", ":")),
    )
