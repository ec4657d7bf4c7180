"""Shared insight and decision pools for the attempts of one exploration.

Attempts never talk to each other directly. They publish insights to
an append-only log and settle questions through decisions that move
``pending -> resolved`` exactly once. Both pools live in the
exploration's shared directory, which sandboxes see as a bind mount::

    shared/insights-pool.json
    shared/decisions-pool.json
    shared/locks/

Writers take an exclusive portalocker lock and replace the whole file
atomically, so readers (which do not lock) always parse a complete
document and existing insight records are never rewritten.
"""

from __future__ import annotations

import secrets
from collections import Counter
from collections.abc import Iterable
from datetime import datetime
from pathlib import Path
from typing import Literal

from pydantic import BaseModel, Field

from forkcat.core.log import logger
from forkcat.core.storage import locked, read_json, update_json, write_json_atomic
from forkcat.exploration.models import utcnow

INSIGHTS_FILE = "insights-pool.json"
DECISIONS_FILE = "decisions-pool.json"

InsightType = Literal["discovery", "warning", "pattern", "blocker", "solution"]


class Insight(BaseModel):
    id: str
    author_index: int
    content: str
    type: InsightType = "discovery"
    tags: list[str] = Field(default_factory=list)
    timestamp: datetime = Field(default_factory=utcnow)


class Vote(BaseModel):
    author_index: int
    option: str
    timestamp: datetime = Field(default_factory=utcnow)


class Decision(BaseModel):
    id: str
    question: str
    author_index: int
    options: list[str] = Field(default_factory=list)
    status: Literal["pending", "resolved"] = "pending"
    resolution: str | None = None
    votes: list[Vote] = Field(default_factory=list)
    created_at: datetime = Field(default_factory=utcnow)
    resolved_at: datetime | None = None


class CollaborationStats(BaseModel):
    total_insights: int = 0
    pending_decisions: int = 0
    resolved_decisions: int = 0
    insights_by_author: dict[int, int] = Field(default_factory=dict)


class AuthorStats(BaseModel):
    insights_published: int = 0
    decisions_participated: int = 0


class CollaborationCoordinator:
    """File-backed pub/sub pool scoped to one exploration."""

    def __init__(self, shared_dir: Path, lock_timeout: float = 30):
        self.shared_dir = Path(shared_dir)
        self.lock_timeout = lock_timeout

    @property
    def insights_path(self) -> Path:
        return self.shared_dir / INSIGHTS_FILE

    @property
    def decisions_path(self) -> Path:
        return self.shared_dir / DECISIONS_FILE

    def _lock(self, name: str) -> Path:
        return self.shared_dir / "locks" / f"{name}.lock"

    def initialize(self) -> None:
        """Create empty pools; existing pools are left as they are."""
        self.shared_dir.mkdir(parents=True, exist_ok=True)
        (self.shared_dir / "progress").mkdir(exist_ok=True)
        pools = (
            (self.insights_path, "insights", {"insights": []}),
            (self.decisions_path, "decisions", {"decisions": {}}),
        )
        for path, name, empty in pools:
            with locked(self._lock(name), self.lock_timeout):
                if not path.exists():
                    write_json_atomic(path, empty)

    # ------------------------------------------------------------
    # Insights
    # ------------------------------------------------------------

    def publish_insight(
        self,
        author_index: int,
        content: str,
        type: InsightType = "discovery",
        tags: Iterable[str] = (),
    ) -> Insight:
        """Append one insight to the pool."""
        insight = Insight(
            id=f"ins-{secrets.token_hex(4)}",
            author_index=author_index,
            content=content,
            type=type,
            tags=list(tags),
        )

        def append(pool):
            pool = pool or {"insights": []}
            pool["insights"].append(insight.model_dump(mode="json"))
            return pool

        update_json(self.insights_path, self._lock("insights"), append,
                    timeout=self.lock_timeout)
        logger.debug("Insight published", author_index=author_index,
                     insight_id=insight.id, type=type)
        return insight

    def _load_insights(self) -> list[Insight]:
        pool = read_json(self.insights_path, {"insights": []})
        return [Insight.model_validate(i) for i in pool.get("insights", [])]

    def get_insights(
        self,
        type: str | None = None,
        tag: str | None = None,
        exclude_author: int | None = None,
        since: datetime | None = None,
        limit: int | None = None,
    ) -> list[Insight]:
        """Insights in publication order, optionally filtered.

        ``limit`` keeps the most recent matches.
        """
        insights = [
            i for i in self._load_insights()
            if (type is None or i.type == type)
            and (tag is None or tag in i.tags)
            and (exclude_author is None or i.author_index != exclude_author)
            and (since is None or i.timestamp >= since)
        ]
        if limit is not None:
            insights = insights[-limit:] if limit > 0 else []
        return insights

    def search_insights(self, text: str) -> list[Insight]:
        needle = text.lower()
        return [
            i for i in self._load_insights()
            if needle in i.content.lower()
            or any(needle in t.lower() for t in i.tags)
        ]

    # ------------------------------------------------------------
    # Decisions
    # ------------------------------------------------------------

    def _load_decisions(self) -> dict[str, Decision]:
        pool = read_json(self.decisions_path, {"decisions": {}})
        return {
            key: Decision.model_validate(value)
            for key, value in pool.get("decisions", {}).items()
        }

    def _update_decisions(self, mutate) -> dict:
        def apply(pool):
            pool = pool or {"decisions": {}}
            mutate(pool["decisions"])
            return pool
        return update_json(self.decisions_path, self._lock("decisions"),
                           apply, timeout=self.lock_timeout)

    def propose_decision(
        self, question: str, author_index: int, options: Iterable[str] = ()
    ) -> Decision:
        decision = Decision(
            id=f"dec-{secrets.token_hex(4)}",
            question=question,
            author_index=author_index,
            options=list(options),
        )

        def add(decisions):
            decisions[decision.id] = decision.model_dump(mode="json")

        self._update_decisions(add)
        logger.debug("Decision proposed", decision_id=decision.id,
                     author_index=author_index)
        return decision

    def get_decision(self, decision_id: str) -> Decision:
        try:
            return self._load_decisions()[decision_id]
        except KeyError:
            raise KeyError(f"Unknown decision: {decision_id}") from None

    def vote(self, decision_id: str, author_index: int, option: str) -> Decision:
        """Record or replace ``author_index``'s vote on a pending decision.

        Votes on resolved decisions are ignored.
        """
        def cast(decisions):
            if decision_id not in decisions:
                raise KeyError(f"Unknown decision: {decision_id}")
            decision = Decision.model_validate(decisions[decision_id])
            if decision.status == "resolved":
                return
            if decision.options and option not in decision.options:
                raise ValueError(
                    f"{option!r} is not an option of {decision_id}"
                )
            decision.votes = [
                v for v in decision.votes if v.author_index != author_index
            ]
            decision.votes.append(Vote(author_index=author_index, option=option))
            decisions[decision_id] = decision.model_dump(mode="json")

        pool = self._update_decisions(cast)
        return Decision.model_validate(pool["decisions"][decision_id])

    def resolve_decision(self, decision_id: str, resolution: str) -> Decision:
        """Resolve a decision once.

        Resolving an already-resolved decision returns it unchanged,
        keeping the first resolution.
        """
        def resolve(decisions):
            if decision_id not in decisions:
                raise KeyError(f"Unknown decision: {decision_id}")
            decision = Decision.model_validate(decisions[decision_id])
            if decision.status == "resolved":
                return
            decision.status = "resolved"
            decision.resolution = resolution
            decision.resolved_at = utcnow()
            decisions[decision_id] = decision.model_dump(mode="json")

        pool = self._update_decisions(resolve)
        decision = Decision.model_validate(pool["decisions"][decision_id])
        logger.debug("Decision resolved", decision_id=decision_id,
                     resolution=decision.resolution)
        return decision

    def resolve_by_majority(self, decision_id: str) -> Decision:
        """Resolve with the most voted option; ties go to the earliest vote."""
        decision = self.get_decision(decision_id)
        if decision.status == "resolved":
            return decision
        if not decision.votes:
            raise ValueError(f"Decision {decision_id} has no votes")
        counts = Counter(v.option for v in decision.votes)
        best = max(counts.values())
        winner = next(v.option for v in decision.votes if counts[v.option] == best)
        return self.resolve_decision(decision_id, winner)

    def pending_decisions(self) -> list[Decision]:
        return [d for d in self._load_decisions().values() if d.status == "pending"]

    def resolved_decisions(self) -> list[Decision]:
        return [d for d in self._load_decisions().values() if d.status == "resolved"]

    # ------------------------------------------------------------
    # Stats and maintenance
    # ------------------------------------------------------------

    def get_stats(self) -> CollaborationStats:
        """Pool counters; zero before any attempt has written."""
        if not self.shared_dir.exists():
            return CollaborationStats()
        insights = self._load_insights()
        decisions = self._load_decisions().values()
        return CollaborationStats(
            total_insights=len(insights),
            pending_decisions=sum(d.status == "pending" for d in decisions),
            resolved_decisions=sum(d.status == "resolved" for d in decisions),
            insights_by_author=dict(Counter(i.author_index for i in insights)),
        )

    def author_stats(self, author_index: int) -> AuthorStats:
        if not self.shared_dir.exists():
            return AuthorStats()
        decisions = self._load_decisions().values()
        return AuthorStats(
            insights_published=sum(
                i.author_index == author_index for i in self._load_insights()
            ),
            decisions_participated=sum(
                d.author_index == author_index
                or any(v.author_index == author_index for v in d.votes)
                for d in decisions
            ),
        )

    def clear(self) -> None:
        """Empty both pools."""
        with locked(self._lock("insights"), self.lock_timeout):
            write_json_atomic(self.insights_path, {"insights": []})
        with locked(self._lock("decisions"), self.lock_timeout):
            write_json_atomic(self.decisions_path, {"decisions": {}})
