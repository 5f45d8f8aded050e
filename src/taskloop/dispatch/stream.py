"""Incremental parser for the worker's newline-delimited JSON event stream."""

from __future__ import annotations

import json
import logging
from typing import Any

from taskloop.dispatch.pricing import TokenUsage

logger = logging.getLogger(__name__)


class StreamEventParser:
    """Accumulate text, usage and reported cost from stream-json output.

    Chunks may split lines anywhere; partial lines are buffered until the next
    newline or ``finish()``.
    """

    def __init__(self) -> None:
        self._buffer = ""
        self._text_parts: list[str] = []
        self._result_text: str | None = None
        self.usage = TokenUsage()
        self.reported_cost_usd: float | None = None
        self.malformed_lines = 0
        self.events_seen = 0

    @property
    def text(self) -> str:
        """Captured text, falling back to the result event text."""

        joined = "".join(self._text_parts)
        if joined:
            return joined
        return self._result_text or ""

    def feed(self, chunk: str) -> None:
        self._buffer += chunk
        *lines, self._buffer = self._buffer.split("\n")
        for line in lines:
            self._handle_line(line)

    def finish(self) -> None:
        """Flush a trailing line that was not newline-terminated."""

        remainder, self._buffer = self._buffer, ""
        self._handle_line(remainder)

    def _handle_line(self, line: str) -> None:
        stripped = line.strip()
        if not stripped:
            return
        try:
            event = json.loads(stripped)
        except json.JSONDecodeError:
            self.malformed_lines += 1
            logger.debug("Skipping malformed worker line: %.200s", stripped)
            return
        if not isinstance(event, dict):
            self.malformed_lines += 1
            return
        self.events_seen += 1
        self._handle_event(event)

    def _handle_event(self, event: dict[str, Any]) -> None:
        event_type = event.get("type")
        if event_type == "stream_event":
            inner = event.get("event")
            if isinstance(inner, dict) and inner.get("type") == "content_block_delta":
                delta = inner.get("delta")
                if isinstance(delta, dict) and delta.get("type") == "text_delta":
                    text = delta.get("text")
                    if isinstance(text, str):
                        self._text_parts.append(text)
            return

        if event_type == "assistant":
            message = event.get("message")
            content = message.get("content") if isinstance(message, dict) else None
            if isinstance(content, list):
                for block in content:
                    if isinstance(block, dict) and block.get("type") == "text":
                        text = block.get("text")
                        if isinstance(text, str):
                            self._text_parts.append(text)
            return

        if event_type == "result":
            self._handle_result(event)

    def _handle_result(self, event: dict[str, Any]) -> None:
        cost = event.get("total_cost_usd")
        if isinstance(cost, int | float) and not isinstance(cost, bool):
            self.reported_cost_usd = float(cost)
        usage = event.get("usage")
        if isinstance(usage, dict):
            self.usage = TokenUsage(
                input_tokens=_as_int(usage.get("input_tokens")),
                output_tokens=_as_int(usage.get("output_tokens")),
                cache_read_input_tokens=_as_int(usage.get("cache_read_input_tokens")),
                cache_creation_input_tokens=_as_int(usage.get("cache_creation_input_tokens")),
            )
        result_text = event.get("result")
        if isinstance(result_text, str):
            self._result_text = result_text


def _as_int(value: object) -> int:
    if isinstance(value, bool):
        return 0
    if isinstance(value, int):
        return value
    if isinstance(value, float):
        return int(value)
    return 0
