"""Local demo worker for dispatch integration tests.

Reads the prompt from stdin and answers with a deterministic stream-json
transcript, optionally closing its own task or failing on request.
"""

from __future__ import annotations

import argparse
import json
import os
import sys
from pathlib import Path

from taskloop.tasks.repository import TaskStore

_SHAPES = ("delta", "assistant", "result", "silent")


def main(argv: list[str] | None = None) -> int:
    """Run local deterministic demo worker."""

    parser = argparse.ArgumentParser()
    parser.add_argument("--model", default="haiku")
    parser.add_argument("--shape", choices=_SHAPES, default="delta")
    parser.add_argument("--garbage", action="store_true", help="emit one malformed line first")
    parser.add_argument("--total-cost", type=float, default=None)
    parser.add_argument("--input-tokens", type=int, default=1200)
    parser.add_argument("--output-tokens", type=int, default=300)
    parser.add_argument("--self-close", choices=("completed", "failed", "blocked"), default=None)
    parser.add_argument("--exit-code", type=int, default=0)
    parser.add_argument("--stderr", default="")
    parser.add_argument("--stderr-filler", type=int, default=0, help="trace lines after --stderr")
    args = parser.parse_args(argv)

    prompt = sys.stdin.read()
    text = f"handled: {_subject_from_prompt(prompt)}"

    if args.garbage:
        _emit_raw("this is not json")
    if args.shape == "delta":
        for piece in (text[: len(text) // 2], text[len(text) // 2 :]):
            _emit(
                {
                    "type": "stream_event",
                    "event": {
                        "type": "content_block_delta",
                        "delta": {"type": "text_delta", "text": piece},
                    },
                },
            )
    elif args.shape == "assistant":
        _emit({"type": "assistant", "message": {"content": [{"type": "text", "text": text}]}})

    result: dict[str, object] = {
        "type": "result",
        "result": "" if args.shape == "silent" else text,
        "usage": {
            "input_tokens": args.input_tokens,
            "output_tokens": args.output_tokens,
            "cache_read_input_tokens": 0,
            "cache_creation_input_tokens": 0,
        },
    }
    if args.total_cost is not None:
        result["total_cost_usd"] = args.total_cost
    _emit(result)

    if args.self_close is not None:
        _self_close(args.self_close, text)
    if args.stderr:
        sys.stderr.write(args.stderr)
        for index in range(args.stderr_filler):
            sys.stderr.write(f"  at frame {index} in worker runtime\n")
        sys.stderr.flush()
    return args.exit_code


def _self_close(status: str, summary: str) -> None:
    task_id = int(os.environ["TASKLOOP_TASK_ID"])
    with TaskStore(Path(os.environ["TASKLOOP_DB_PATH"])) as store:
        if status == "completed":
            store.mark_completed(task_id, f"self-closed: {summary}")
        elif status == "failed":
            store.mark_failed(task_id, f"self-closed: {summary}")
        else:
            store.mark_blocked(task_id, f"self-closed: {summary}")


def _subject_from_prompt(prompt: str) -> str:
    for line in prompt.splitlines():
        if line.startswith("Subject: "):
            return line.removeprefix("Subject: ").strip()
    return "(no subject)"


def _emit(event: dict[str, object]) -> None:
    _emit_raw(json.dumps(event))


def _emit_raw(line: str) -> None:
    sys.stdout.write(line + "\n")
    sys.stdout.flush()


if __name__ == "__main__":  # pragma: no cover
    sys.exit(main())
