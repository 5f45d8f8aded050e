from __future__ import annotations

from pathlib import Path

import allure
import pytest

from taskloop.dispatch.backend import (
    CliWorkerBackend,
    WorkerRunError,
    WorkerRunRequest,
    build_run_args,
)

pytestmark = [
    allure.epic("Dispatch Engine"),
    allure.feature("Worker Backend"),
]


def test_build_run_args_renders_model_placeholder() -> None:
    args = build_run_args(
        command_template="claude --print --model {model} --output-format stream-json",
        model="opus",
    )

    assert args == ["claude", "--print", "--model", "opus", "--output-format", "stream-json"]


def test_build_run_args_rejects_unknown_placeholder() -> None:
    with pytest.raises(WorkerRunError, match="placeholder"):
        build_run_args(command_template="worker --prompt {prompt_file}", model="opus")


def test_build_run_args_rejects_empty_template() -> None:
    with pytest.raises(WorkerRunError, match="empty"):
        build_run_args(command_template="   ", model="opus")


def _request(command: str, cwd: Path, prompt: str = "Subject: greet\n") -> WorkerRunRequest:
    return WorkerRunRequest(prompt=prompt, model="haiku", command_template=command, cwd=cwd)


def test_runs_worker_and_parses_stream(tmp_path: Path, echo_worker_command: str) -> None:
    result = CliWorkerBackend().run(
        _request(f"{echo_worker_command} --garbage --total-cost 0.5", tmp_path),
    )

    assert result.exit_code == 0
    assert result.text == "handled: greet"
    assert result.reported_cost_usd == pytest.approx(0.5)
    assert result.usage.input_tokens == 1200
    assert result.usage.output_tokens == 300
    assert result.malformed_lines == 1


def test_nonzero_exit_carries_stderr_and_partial_result(
    tmp_path: Path,
    echo_worker_command: str,
) -> None:
    with pytest.raises(WorkerRunError, match="worker exited 2: boom") as raised:
        CliWorkerBackend().run(
            _request(f"{echo_worker_command} --exit-code 2 --stderr boom", tmp_path),
        )

    assert raised.value.result is not None
    assert raised.value.result.text == "handled: greet"
    assert raised.value.result.exit_code == 2


def test_missing_executable_is_reported(tmp_path: Path) -> None:
    request = _request("definitely-not-a-real-worker-binary --model {model}", tmp_path)

    with pytest.raises(WorkerRunError, match="worker command not found"):
        CliWorkerBackend().run(request)


def test_large_prompt_does_not_deadlock(tmp_path: Path, echo_worker_command: str) -> None:
    request = _request(
        f"{echo_worker_command} --shape assistant",
        tmp_path,
        prompt="Subject: big\n" + "x" * 2_000_000,
    )

    result = CliWorkerBackend().run(request)

    assert result.text == "handled: big"
