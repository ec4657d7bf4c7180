"""Tests for durable exploration records and status transitions."""

import threading
from datetime import timedelta

import pytest

from forkcat.core.config import ExplorationSettings
from forkcat.core.errors import (
    ExplorationNotFoundError,
    InvalidTransitionError,
    ResourcesStillAllocatedError,
)
from forkcat.exploration.models import (
    Attempt,
    ExecutionResult,
    Exploration,
    branch_name,
    new_exploration_id,
)
from forkcat.exploration.state import ExplorationStateManager


@pytest.fixture
def state(tmp_path):
    return ExplorationStateManager(tmp_path / "explorations")


def make_exploration(state, branches=2, **fields) -> Exploration:
    exploration_id = fields.pop("id", None) or new_exploration_id()
    return Exploration(
        id=exploration_id,
        task="add a feature",
        repository=state.root.parent,
        settings=ExplorationSettings(branches=branches),
        attempts=[
            Attempt(
                index=i,
                branch_name=branch_name(exploration_id, i),
                worktree_path=state.worktrees_dir(exploration_id) / f"attempt-{i}",
            )
            for i in range(1, branches + 1)
        ],
        **fields,
    )


def test_create_and_load(state):
    exploration = state.create(make_exploration(state))

    loaded = state.load(exploration.id)

    assert loaded.model_dump() == exploration.model_dump()
    assert state.exists(exploration.id)
    assert [a.status for a in loaded.attempts] == ["pending", "pending"]


def test_create_twice_fails(state):
    exploration = state.create(make_exploration(state))

    with pytest.raises(FileExistsError):
        state.create(exploration)


def test_load_unknown(state):
    with pytest.raises(ExplorationNotFoundError, match="exp-missing"):
        state.load("exp-missing")


def test_exploration_ids_are_unique():
    assert len({new_exploration_id() for _ in range(200)}) == 200


def test_transition_sets_timestamps(state):
    exploration = state.create(make_exploration(state))

    running = state.transition(exploration.id, "running", expected="pending")
    assert running.started_at is not None
    assert running.completed_at is None

    done = state.transition(exploration.id, "completed", expected="running")
    assert done.completed_at >= done.started_at


@pytest.mark.parametrize("path", [
    ["completed"],
    ["running", "completed", "running"],
    ["running", "failed", "stopped"],
    ["stopped", "running"],
])
def test_backward_or_terminal_transitions_rejected(state, path):
    exploration = state.create(make_exploration(state))
    *allowed, rejected = path
    for status in allowed:
        state.transition(exploration.id, status)

    with pytest.raises(InvalidTransitionError):
        state.transition(exploration.id, rejected)


def test_compare_and_swap_rejects_stale_expectation(state):
    exploration = state.create(make_exploration(state))
    state.transition(exploration.id, "running", expected="pending")
    state.transition(exploration.id, "stopped", expected=("pending", "running"))

    with pytest.raises(InvalidTransitionError) as exc_info:
        state.transition(exploration.id, "completed", expected="running")

    assert exc_info.value.current == "stopped"
    assert state.load(exploration.id).status == "stopped"


def test_attempt_transitions(state):
    exploration = state.create(make_exploration(state))

    attempt = state.transition_attempt(exploration.id, 1, "running",
                                       expected="pending", container_id="c1", port=3000)
    assert attempt.status == "running"
    assert attempt.container_id == "c1"
    assert attempt.started_at is not None

    attempt = state.transition_attempt(exploration.id, 1, "completed", expected="running")
    assert attempt.completed_at is not None
    assert attempt.duration_seconds >= 0

    with pytest.raises(InvalidTransitionError):
        state.transition_attempt(exploration.id, 1, "failed")
    # Other attempts are untouched
    assert state.load(exploration.id).attempt(2).status == "pending"


def test_pending_attempt_can_fail_directly(state):
    exploration = state.create(make_exploration(state))

    attempt = state.transition_attempt(exploration.id, 2, "failed",
                                       expected="pending", reason="provisioning: boom")

    assert attempt.status == "failed"
    assert attempt.reason == "provisioning: boom"


def test_update_attempt_refuses_status(state):
    exploration = state.create(make_exploration(state))

    with pytest.raises(ValueError, match="transition_attempt"):
        state.update_attempt(exploration.id, 1, status="completed")


def test_concurrent_updates_are_not_lost(state):
    exploration = state.create(make_exploration(state, branches=8))

    def run(index):
        state.transition_attempt(exploration.id, index, "running")
        state.update_attempt(exploration.id, index, container_id=f"c{index}")

    threads = [threading.Thread(target=run, args=(i,)) for i in range(1, 9)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    loaded = state.load(exploration.id)
    assert [a.container_id for a in loaded.attempts] == [f"c{i}" for i in range(1, 9)]
    assert all(a.status == "running" for a in loaded.attempts)


def test_record_results(state):
    exploration = state.create(make_exploration(state))

    state.record_results(exploration.id, ExecutionResult(
        mode="parallel", total_branches=2, completed_branches=1,
        duration_ms=1200, winner_index=2,
    ))

    assert state.load(exploration.id).winner_index == 2


def test_list_filters_and_order(state, tmp_path):
    older = make_exploration(state)
    older.created_at -= timedelta(hours=1)
    state.create(older)
    newer = state.create(make_exploration(state))
    state.transition(newer.id, "running")

    assert [e.id for e in state.list_explorations()] == [newer.id, older.id]
    assert [e.id for e in state.list_explorations(status="pending")] == [older.id]
    assert [e.id for e in state.list_explorations(status=["running", "failed"])] == [newer.id]
    assert len(state.list_explorations(active_only=True)) == 2
    assert state.list_explorations(repository=tmp_path / "elsewhere") == []


def test_list_skips_corrupt_records(state):
    good = state.create(make_exploration(state))
    broken = state.root / "exp-broken"
    broken.mkdir()
    (broken / "metadata.json").write_text("{not json")

    assert [e.id for e in state.list_explorations()] == [good.id]


def test_list_empty_root(tmp_path):
    assert ExplorationStateManager(tmp_path / "missing").list_explorations() == []


def test_summaries(state):
    exploration = state.create(make_exploration(state, branches=3))
    state.transition_attempt(exploration.id, 1, "failed")

    (summary,) = state.summaries()

    assert summary.id == exploration.id
    assert summary.branches == 3
    assert summary.failed == 1
    assert summary.completed == 0


def test_delete_refuses_held_resources(state):
    exploration = state.create(make_exploration(state))
    state.update_attempt(exploration.id, 1, container_id="c1")

    with pytest.raises(ResourcesStillAllocatedError, match=r"\[1\]"):
        state.delete(exploration.id)
    assert state.exists(exploration.id)

    state.update_attempt(exploration.id, 1, container_id=None)
    worktree = state.load(exploration.id).attempt(2).worktree_path
    worktree.mkdir(parents=True)

    with pytest.raises(ResourcesStillAllocatedError, match=r"\[2\]"):
        state.delete(exploration.id)


def test_delete(state):
    exploration = state.create(make_exploration(state))

    state.delete(exploration.id)

    assert not state.exists(exploration.id)
    assert not state.exploration_dir(exploration.id).exists()


def test_forced_delete(state):
    exploration = state.create(make_exploration(state))
    state.update_attempt(exploration.id, 1, container_id="c1")

    state.delete(exploration.id, force=True)

    assert not state.exists(exploration.id)
