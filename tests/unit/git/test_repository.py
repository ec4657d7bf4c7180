"""Tests for the git porcelain wrapper against real repositories."""

import pytest
from conftest import commit_files, run_git

from forkcat.core.errors import GitCommandError
from forkcat.git.repository import (
    GitRepository,
    conflict_type_for,
    mentions_path,
)


@pytest.fixture
def repo(git_repo):
    return GitRepository(git_repo)


def diverge(git_repo, ours: dict, theirs: dict) -> None:
    """Create ``topic`` with ``theirs`` and advance ``main`` with ``ours``."""
    run_git(git_repo, "checkout", "--quiet", "-b", "topic")
    commit_files(git_repo, theirs, "Topic change")
    run_git(git_repo, "checkout", "--quiet", "main")
    commit_files(git_repo, ours, "Main change")


def test_queries(repo, git_repo):
    assert repo.is_repository()
    assert repo.current_branch() == "main"
    assert repo.branch_exists("main")
    assert not repo.branch_exists("nope")
    assert repo.is_clean()
    assert repo.rev_parse("HEAD") == run_git(git_repo, "rev-parse", "HEAD")


def test_not_a_repository(tmp_path):
    assert not GitRepository(tmp_path).is_repository()


def test_detached_head(repo, git_repo):
    run_git(git_repo, "checkout", "--quiet", "--detach")

    assert repo.current_branch() is None


def test_dirty_tree(repo, git_repo):
    (git_repo / "scratch.txt").write_text("x")

    assert not repo.is_clean()
    assert repo.status_porcelain() == ["?? scratch.txt"]


def test_git_error_carries_stderr(repo):
    with pytest.raises(GitCommandError) as exc_info:
        repo.rev_parse("does-not-exist")

    assert exc_info.value.exit_code != 0
    assert "rev-parse" in exc_info.value.command


def test_list_branches_by_prefix(repo):
    repo.create_branch("exploration/exp-1/branch-1", "HEAD")
    repo.create_branch("exploration/exp-1/branch-2", "HEAD")
    repo.create_branch("exploration/exp-2/branch-1", "HEAD")
    repo.create_branch("explorations-unrelated", "HEAD")

    assert repo.list_branches("exploration/exp-1") == [
        "exploration/exp-1/branch-1",
        "exploration/exp-1/branch-2",
    ]
    assert len(repo.list_branches("exploration")) == 3


def test_commit_stats(repo, git_repo):
    base = repo.rev_parse("HEAD")
    commit_files(git_repo, {"new.py": "a\nb\n", "app.py": "VALUE = 2\n"}, "Change")

    assert repo.count_commits(base, "HEAD") == 1
    assert sorted(repo.changed_files(base, "HEAD")) == ["app.py", "new.py"]
    assert repo.diff_shortstat(base, "HEAD") == (2, 3, 1)


def test_merge_tree_clean(repo, git_repo):
    diverge(git_repo, {"main.txt": "main\n"}, {"topic.txt": "topic\n"})
    head = repo.rev_parse("HEAD")

    result = repo.merge_tree("main", "topic")

    assert result.clean
    assert result.conflicted_files == []
    assert repo.rev_parse("HEAD") == head
    assert repo.is_clean()


def test_merge_tree_content_conflict(repo, git_repo):
    diverge(git_repo, {"app.py": "VALUE = 2\n"}, {"app.py": "VALUE = 3\n"})

    result = repo.merge_tree("main", "topic")

    assert not result.clean
    assert result.conflicted_files == ["app.py"]
    assert result.conflict_types == {"app.py": "content"}
    assert repo.is_clean()


def test_merge_tree_delete_conflict(repo, git_repo):
    diverge(git_repo, {"app.py": "VALUE = 2\n"}, {"app.py": None})

    result = repo.merge_tree("main", "topic")

    assert result.conflict_types == {"app.py": "delete"}


def test_merge_tree_types_similar_paths_separately(repo, git_repo):
    commit_files(git_repo, {"a.txt": "a\n", "data.txt": "data\n"}, "Add data")
    diverge(git_repo,
            {"a.txt": "ours\n", "data.txt": "ours\n"},
            {"a.txt": "theirs\n", "data.txt": None})

    result = repo.merge_tree("main", "topic")

    assert result.conflict_types == {"a.txt": "content", "data.txt": "delete"}


@pytest.mark.parametrize("message,path,expected", [
    ("Merge conflict in a.txt", "a.txt", True),
    ("data.txt deleted in topic and modified in main.", "data.txt", True),
    ("data.txt deleted in topic and modified in main.", "a.txt", False),
    ("Merge conflict in src/a.txt", "a.txt", False),
    ("Merge conflict in a.txt.orig", "a.txt", False),
    ("Merge conflict in a.txt.", "a.txt", True),
])
def test_mentions_path(message, path, expected):
    assert mentions_path(message, path) is expected


@pytest.mark.parametrize("label,expected", [
    ("content", "content"),
    ("add/add", "content"),
    ("modify/delete", "delete"),
    ("rename/delete", "rename"),
    ("rename/rename", "rename"),
])
def test_conflict_type_for(label, expected):
    assert conflict_type_for(label) == expected


def test_conflicted_merge_and_abort(repo, git_repo):
    diverge(git_repo, {"app.py": "VALUE = 2\n"}, {"app.py": "VALUE = 3\n"})
    head = repo.rev_parse("HEAD")

    result = repo.merge("topic")

    assert result.exited == 1
    assert repo.operation_in_progress() == "merge"
    assert repo.unmerged_files() == {"app.py": "content"}

    repo.abort_operation()

    assert repo.operation_in_progress() is None
    assert repo.rev_parse("HEAD") == head
    assert repo.is_clean()


@pytest.mark.parametrize("side,expected", [
    ("theirs", "VALUE = 3\n"),
    ("ours", "VALUE = 2\n"),
])
def test_stage_side(repo, git_repo, side, expected):
    diverge(git_repo, {"app.py": "VALUE = 2\n"}, {"app.py": "VALUE = 3\n"})
    repo.merge("topic")

    repo.stage_side("app.py", side)

    assert repo.unmerged_files() == {}
    assert (git_repo / "app.py").read_text() == expected


def test_stage_side_deleted_file(repo, git_repo):
    diverge(git_repo, {"app.py": "VALUE = 2\n"}, {"app.py": None})
    repo.merge("topic")

    repo.stage_side("app.py", "theirs")

    assert repo.unmerged_files() == {}
    assert not (git_repo / "app.py").exists()


def test_ff_only_refuses_divergence(repo, git_repo):
    diverge(git_repo, {"main.txt": "main\n"}, {"topic.txt": "topic\n"})

    with pytest.raises(GitCommandError):
        repo.merge("topic", ff_only=True)


def test_worktree_listing(repo, tmp_path):
    path = tmp_path / "wt"
    repo.add_worktree(path, "feature", "HEAD")

    worktrees = repo.list_worktrees()

    assert len(worktrees) == 2
    added = next(w for w in worktrees if w.path.resolve() == path.resolve())
    assert added.branch == "feature"
    assert not added.detached
