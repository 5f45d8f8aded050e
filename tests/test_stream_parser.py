from __future__ import annotations

import json

import allure
import pytest

from taskloop.dispatch.stream import StreamEventParser

pytestmark = [
    allure.epic("Dispatch Engine"),
    allure.feature("Worker Stream"),
]


def _line(event: object) -> str:
    return json.dumps(event) + "\n"


def test_text_deltas_are_joined_across_split_chunks() -> None:
    payload = (
        _line(
            {
                "type": "stream_event",
                "event": {
                    "type": "content_block_delta",
                    "delta": {"type": "text_delta", "text": "Hello, "},
                },
            },
        )
        + _line(
            {
                "type": "stream_event",
                "event": {
                    "type": "content_block_delta",
                    "delta": {"type": "text_delta", "text": "world"},
                },
            },
        )
        + _line(
            {
                "type": "result",
                "result": "ignored when deltas exist",
                "total_cost_usd": 0.0123,
                "usage": {
                    "input_tokens": 100,
                    "output_tokens": 20,
                    "cache_read_input_tokens": 300,
                    "cache_creation_input_tokens": 40,
                },
            },
        )
    )
    parser = StreamEventParser()
    for index in range(0, len(payload), 7):
        parser.feed(payload[index : index + 7])
    parser.finish()

    assert parser.text == "Hello, world"
    assert parser.reported_cost_usd == pytest.approx(0.0123)
    assert parser.usage.input_tokens == 100
    assert parser.usage.output_tokens == 20
    assert parser.usage.total_input_tokens == 440
    assert parser.events_seen == 3
    assert parser.malformed_lines == 0


def test_assistant_message_text_blocks_are_captured() -> None:
    parser = StreamEventParser()
    parser.feed(
        _line(
            {
                "type": "assistant",
                "message": {
                    "content": [
                        {"type": "tool_use", "name": "bash"},
                        {"type": "text", "text": "done"},
                    ],
                },
            },
        ),
    )
    parser.finish()

    assert parser.text == "done"


def test_result_text_is_the_fallback() -> None:
    parser = StreamEventParser()
    parser.feed(_line({"type": "system", "subtype": "init"}))
    parser.feed(json.dumps({"type": "result", "result": "final answer"}))
    parser.finish()

    assert parser.text == "final answer"
    assert parser.reported_cost_usd is None


def test_malformed_lines_are_counted_and_skipped() -> None:
    parser = StreamEventParser()
    parser.feed("not json\n")
    parser.feed("[1, 2, 3]\n")
    parser.feed("\n   \n")
    parser.feed(_line({"type": "result", "result": "still parsed", "total_cost_usd": True}))
    parser.finish()

    assert parser.malformed_lines == 2
    assert parser.events_seen == 1
    assert parser.text == "still parsed"
    assert parser.reported_cost_usd is None


def test_non_numeric_usage_values_count_as_zero() -> None:
    parser = StreamEventParser()
    parser.feed(
        _line(
            {
                "type": "result",
                "usage": {
                    "input_tokens": "many",
                    "output_tokens": 12.7,
                    "cache_read_input_tokens": None,
                },
            },
        ),
    )
    parser.finish()

    assert parser.usage.input_tokens == 0
    assert parser.usage.output_tokens == 12
    assert parser.usage.cache_read_input_tokens == 0
    assert parser.text == ""
