"""Merge-back options and outcomes."""

from __future__ import annotations

from typing import Literal

from pydantic import BaseModel, Field

from forkcat.core.config import MergeConfig

MergeStrategy = Literal["direct", "squash", "rebase"]
ConflictType = Literal["content", "delete", "rename"]


class MergeOptions(BaseModel):
    strategy: MergeStrategy = "direct"
    target_branch: str | None = None
    create_backup: bool = True
    auto_resolve_conflicts: bool = False
    conflict_preference: Literal["theirs", "ours"] = "theirs"
    delete_worktree: bool = True
    create_pr: bool = False
    remote: str = "origin"
    pr_title: str | None = None
    pr_body: str | None = None

    @classmethod
    def from_config(cls, config: MergeConfig, **overrides) -> MergeOptions:
        """Options seeded from ``config.merge``; ``None`` overrides are ignored."""
        values = config.model_dump(include=set(cls.model_fields))
        values.update({k: v for k, v in overrides.items() if v is not None})
        return cls(**values)


class MergeConflict(BaseModel):
    file_path: str
    conflict_type: ConflictType = "content"

    @property
    def auto_resolvable(self) -> bool:
        return self.conflict_type in ("content", "delete")


class MergePreview(BaseModel):
    """Dry-run outcome of merging an attempt; nothing is mutated."""

    can_merge: bool
    source_branch: str
    target_branch: str
    commits_to_merge: int = 0
    files_changed: list[str] = Field(default_factory=list)
    conflicts: list[MergeConflict] = Field(default_factory=list)
    errors: list[str] = Field(default_factory=list)


class MergeResult(BaseModel):
    success: bool
    strategy: MergeStrategy
    source_branch: str
    target_branch: str
    backup_branch: str | None = None
    merge_commit: str | None = None
    commits_merged: int | None = None
    files_changed: int | None = None
    conflicts: list[MergeConflict] = Field(default_factory=list)
    pr_url: str | None = None
    error: str | None = None
