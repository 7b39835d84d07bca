"""任务状态机测试。"""

from __future__ import annotations

import pytest

from modules.pipelines.tasks import GenerationTask, PollResult, TaskState, expire, next_state


def test_normal_lifecycle():
    state = TaskState.PENDING
    state = next_state(state, PollResult.processing())
    assert state is TaskState.PROCESSING
    state = next_state(state, PollResult.succeeded(["https://x/1.png"]))
    assert state is TaskState.SUCCEEDED


def test_no_backward_transition():
    assert next_state(TaskState.PROCESSING, PollResult.pending()) is TaskState.PROCESSING


@pytest.mark.parametrize("terminal", [TaskState.SUCCEEDED, TaskState.FAILED, TaskState.TIMED_OUT])
@pytest.mark.parametrize(
    "result",
    [PollResult.pending(), PollResult.processing(), PollResult.succeeded(["u"]), PollResult.failed("x")],
)
def test_terminal_states_absorb(terminal, result):
    assert next_state(terminal, result) is terminal


def test_success_without_images_is_failure():
    assert next_state(TaskState.PROCESSING, PollResult(state=TaskState.SUCCEEDED)) is TaskState.FAILED


def test_expire_only_affects_running_tasks():
    assert expire(TaskState.PENDING) is TaskState.TIMED_OUT
    assert expire(TaskState.PROCESSING) is TaskState.TIMED_OUT
    assert expire(TaskState.SUCCEEDED) is TaskState.SUCCEEDED
    assert expire(TaskState.FAILED) is TaskState.FAILED


def test_task_observe_counts_attempts_and_keeps_message():
    task = GenerationTask(task_id="t1")

    task.observe(PollResult.processing())
    task.observe(PollResult.failed("provider says no"))
    task.observe(PollResult.succeeded(["late"]))

    assert task.attempts == 3
    assert task.state is TaskState.FAILED
    assert task.error_message == "provider says no"


def test_status_values_match_wire_labels():
    assert TaskState.SUCCEEDED.value == "SUCCEED"
    assert TaskState.TIMED_OUT.terminal
    assert not TaskState.PROCESSING.terminal
