"""Tests for the shared insight and decision pools."""

import threading
from datetime import timedelta

import pytest

from forkcat.exploration.collaboration import CollaborationCoordinator
from forkcat.exploration.models import utcnow


@pytest.fixture
def pool(tmp_path):
    coordinator = CollaborationCoordinator(tmp_path / "shared")
    coordinator.initialize()
    return coordinator


def test_initialize_creates_empty_pools(pool):
    assert pool.insights_path.is_file()
    assert pool.decisions_path.is_file()
    assert (pool.shared_dir / "progress").is_dir()
    assert pool.get_insights() == []
    assert pool.pending_decisions() == []


def test_initialize_keeps_existing_pools(pool):
    pool.publish_insight(1, "cache the parser")

    pool.initialize()

    assert len(pool.get_insights()) == 1


def test_publish_and_filter(pool):
    pool.publish_insight(1, "tests live in tests/", type="discovery", tags=["layout"])
    pool.publish_insight(2, "flaky network test", type="warning", tags=["tests"])
    pool.publish_insight(2, "use the fixture", type="solution", tags=["tests"])

    assert [i.content for i in pool.get_insights(type="warning")] == ["flaky network test"]
    assert len(pool.get_insights(tag="tests")) == 2
    assert [i.author_index for i in pool.get_insights(exclude_author=2)] == [1]
    assert [i.content for i in pool.get_insights(limit=1)] == ["use the fixture"]
    assert pool.get_insights(limit=0) == []


def test_since_filter(pool):
    before = utcnow() - timedelta(seconds=1)
    pool.publish_insight(1, "recent")

    assert len(pool.get_insights(since=before)) == 1
    assert pool.get_insights(since=utcnow() + timedelta(minutes=1)) == []


def test_search_is_case_insensitive(pool):
    pool.publish_insight(1, "The Parser is slow", tags=["perf"])
    pool.publish_insight(2, "nothing to see")

    assert [i.author_index for i in pool.search_insights("parser")] == [1]
    assert [i.author_index for i in pool.search_insights("PERF")] == [1]


def test_concurrent_publishes_are_all_kept(pool):
    def publish(author):
        for n in range(10):
            pool.publish_insight(author, f"insight {n} from {author}")

    threads = [threading.Thread(target=publish, args=(i,)) for i in range(1, 6)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    insights = pool.get_insights()
    assert len(insights) == 50
    assert len({i.id for i in insights}) == 50


def test_decision_votes(pool):
    decision = pool.propose_decision("Which parser?", 1, options=["lark", "pyparsing"])

    pool.vote(decision.id, 1, "lark")
    pool.vote(decision.id, 2, "pyparsing")
    updated = pool.vote(decision.id, 2, "lark")

    assert [(v.author_index, v.option) for v in updated.votes] == [(1, "lark"), (2, "lark")]


def test_vote_for_unknown_option(pool):
    decision = pool.propose_decision("Which parser?", 1, options=["lark"])

    with pytest.raises(ValueError, match="not an option"):
        pool.vote(decision.id, 2, "regex")


def test_unknown_decision(pool):
    with pytest.raises(KeyError):
        pool.get_decision("dec-missing")
    with pytest.raises(KeyError):
        pool.vote("dec-missing", 1, "a")


def test_resolve_is_idempotent(pool):
    decision = pool.propose_decision("Tabs or spaces?", 1)

    first = pool.resolve_decision(decision.id, "spaces")
    second = pool.resolve_decision(decision.id, "tabs")

    assert first.status == "resolved"
    assert second.resolution == "spaces"
    assert second.resolved_at == first.resolved_at
    assert pool.pending_decisions() == []
    assert [d.id for d in pool.resolved_decisions()] == [decision.id]


def test_votes_after_resolution_are_ignored(pool):
    decision = pool.propose_decision("Tabs or spaces?", 1)
    pool.resolve_decision(decision.id, "spaces")

    after = pool.vote(decision.id, 2, "tabs")

    assert after.votes == []


def test_resolve_by_majority(pool):
    decision = pool.propose_decision("Library?", 1)
    pool.vote(decision.id, 1, "a")
    pool.vote(decision.id, 2, "b")
    pool.vote(decision.id, 3, "b")

    assert pool.resolve_by_majority(decision.id).resolution == "b"


def test_majority_tie_goes_to_earliest_vote(pool):
    decision = pool.propose_decision("Library?", 1)
    pool.vote(decision.id, 1, "b")
    pool.vote(decision.id, 2, "a")

    assert pool.resolve_by_majority(decision.id).resolution == "b"


def test_majority_without_votes(pool):
    decision = pool.propose_decision("Library?", 1)

    with pytest.raises(ValueError, match="no votes"):
        pool.resolve_by_majority(decision.id)


def test_stats(pool):
    pool.publish_insight(1, "a")
    pool.publish_insight(1, "b")
    pool.publish_insight(3, "c")
    resolved = pool.propose_decision("q1", 2)
    pool.resolve_decision(resolved.id, "yes")
    pending = pool.propose_decision("q2", 1)
    pool.vote(pending.id, 3, "no")

    stats = pool.get_stats()

    assert stats.total_insights == 3
    assert stats.pending_decisions == 1
    assert stats.resolved_decisions == 1
    assert stats.insights_by_author == {1: 2, 3: 1}

    assert pool.author_stats(1).insights_published == 2
    assert pool.author_stats(1).decisions_participated == 1
    assert pool.author_stats(3).decisions_participated == 1
    assert pool.author_stats(4).model_dump() == {
        "insights_published": 0, "decisions_participated": 0,
    }


def test_stats_without_shared_dir(tmp_path):
    coordinator = CollaborationCoordinator(tmp_path / "never-created")

    stats = coordinator.get_stats()

    assert stats.total_insights == 0
    assert stats.pending_decisions == 0
    assert coordinator.author_stats(1).insights_published == 0


def test_clear(pool):
    pool.publish_insight(1, "a")
    pool.propose_decision("q", 1)

    pool.clear()

    assert pool.get_stats().total_insights == 0
    assert pool.get_stats().pending_decisions == 0
