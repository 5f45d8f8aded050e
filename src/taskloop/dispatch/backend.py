"""Subprocess-based worker runner."""

from __future__ import annotations

import codecs
import logging
import os
import shlex
import subprocess
import threading
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import IO, Protocol

from taskloop.dispatch.pricing import TokenUsage
from taskloop.dispatch.stream import StreamEventParser

logger = logging.getLogger(__name__)

_READ_CHUNK_BYTES = 64 * 1024
_STDERR_TAIL_CHARS = 2000


@dataclass(slots=True)
class WorkerRunRequest:
    """Inputs required to execute one worker process."""

    prompt: str
    model: str
    command_template: str
    cwd: Path
    env: dict[str, str] = field(default_factory=dict)


@dataclass(slots=True)
class WorkerRunResult:
    """Execution outcome collected from the worker's output stream."""

    exit_code: int
    text: str
    usage: TokenUsage
    reported_cost_usd: float | None
    stderr: str
    malformed_lines: int
    duration_ms: int


class WorkerRunError(RuntimeError):
    """Worker could not be started or exited unsuccessfully."""

    def __init__(self, message: str, *, result: WorkerRunResult | None = None) -> None:
        super().__init__(message)
        self.result = result


class WorkerBackend(Protocol):
    """Protocol implemented by worker runners."""

    def run(self, request: WorkerRunRequest) -> WorkerRunResult:
        """Run one worker to completion or raise ``WorkerRunError``."""


class CliWorkerBackend:
    """Spawn the configured worker command, stream the prompt in and events out."""

    def run(self, request: WorkerRunRequest) -> WorkerRunResult:
        run_args = build_run_args(command_template=request.command_template, model=request.model)
        env = os.environ.copy()
        env.update(request.env)

        started = time.monotonic()
        try:
            process = subprocess.Popen(  # noqa: S603
                run_args,
                cwd=request.cwd,
                env=env,
                stdin=subprocess.PIPE,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
            )
        except FileNotFoundError as error:
            raise WorkerRunError(f"worker command not found: {run_args[0]}") from error
        except OSError as error:
            raise WorkerRunError(f"worker failed to start: {error}") from error

        logger.info("Worker started (pid=%d, model=%s)", process.pid, request.model)
        parser = StreamEventParser()
        stderr_chunks: list[bytes] = []
        assert process.stdin is not None
        assert process.stdout is not None
        assert process.stderr is not None
        writer = threading.Thread(
            target=_write_prompt,
            args=(process.stdin, request.prompt),
            name="worker-stdin",
            daemon=True,
        )
        drainer = threading.Thread(
            target=_drain_stream,
            args=(process.stderr, stderr_chunks),
            name="worker-stderr",
            daemon=True,
        )
        writer.start()
        drainer.start()

        decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        with process.stdout:
            while True:
                chunk = process.stdout.read1(_READ_CHUNK_BYTES)  # type: ignore[attr-defined]
                if not chunk:
                    break
                parser.feed(decoder.decode(chunk))
        parser.feed(decoder.decode(b"", final=True))
        parser.finish()

        exit_code = process.wait()
        writer.join()
        drainer.join()

        stderr = b"".join(stderr_chunks).decode("utf-8", errors="replace")
        result = WorkerRunResult(
            exit_code=exit_code,
            text=parser.text,
            usage=parser.usage,
            reported_cost_usd=parser.reported_cost_usd,
            stderr=stderr,
            malformed_lines=parser.malformed_lines,
            duration_ms=int((time.monotonic() - started) * 1000),
        )
        if parser.malformed_lines:
            logger.warning("Worker emitted %d malformed line(s)", parser.malformed_lines)
        if exit_code != 0:
            tail = stderr.strip()[-_STDERR_TAIL_CHARS:]
            raise WorkerRunError(f"worker exited {exit_code}: {tail}", result=result)
        logger.info(
            "Worker finished in %d ms (%d chars of output)",
            result.duration_ms,
            len(result.text),
        )
        return result


def build_run_args(*, command_template: str, model: str) -> list[str]:
    """Render the command template into argv; ``{model}`` is the only placeholder."""

    stripped = command_template.strip()
    if not stripped:
        raise WorkerRunError("worker command template is empty")
    try:
        rendered = stripped.format(model=shlex.quote(model))
    except (KeyError, IndexError) as error:
        raise WorkerRunError(f"unsupported worker command placeholder: {error}") from error
    argv = shlex.split(rendered)
    if not argv:
        raise WorkerRunError("worker command template rendered empty command")
    return argv


def _write_prompt(stream: IO[bytes], prompt: str) -> None:
    try:
        stream.write(prompt.encode("utf-8"))
        stream.flush()
    except BrokenPipeError:
        logger.warning("Worker closed stdin before the prompt was fully written")
    finally:
        try:
            stream.close()
        except BrokenPipeError:
            pass


def _drain_stream(stream: IO[bytes], sink: list[bytes]) -> None:
    with stream:
        for chunk in iter(lambda: stream.read(_READ_CHUNK_BYTES), b""):
            sink.append(chunk)
