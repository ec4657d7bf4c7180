"""Git porcelain used by worktree provisioning and merge-back."""

from __future__ import annotations

import re
import shlex
from dataclasses import dataclass, field
from pathlib import Path

from invoke import Result

from forkcat.core.errors import GitCommandError
from forkcat.core.log import logger
from forkcat.core.runner import Runner

# Porcelain XY codes of unmerged paths; D on either side is a delete
# conflict, everything else a content conflict.
UNMERGED_CODES = {"DD", "AU", "UD", "UA", "DU", "AA", "UU"}


@dataclass
class WorktreeInfo:
    """One entry of ``git worktree list --porcelain``."""

    path: Path
    head: str | None = None
    branch: str | None = None
    detached: bool = False
    locked: bool = False
    prunable: bool = False


@dataclass
class MergeTreeResult:
    """Outcome of a ``git merge-tree --write-tree`` dry run."""

    clean: bool
    tree: str | None = None
    conflicted_files: list[str] = field(default_factory=list)
    # file path -> content | delete | rename
    conflict_types: dict[str, str] = field(default_factory=dict)


def quote(*args: str | Path) -> str:
    return " ".join(shlex.quote(str(a)) for a in args)


def conflict_type_for(label: str) -> str:
    """Collapse git's CONFLICT (<label>) kinds into three types."""
    label = label.lower()
    if "rename" in label:
        return "rename"
    if "delete" in label:
        return "delete"
    return "content"


def mentions_path(message: str, path: str) -> bool:
    """Whether ``path`` appears in a git message as a whole path.

    A trailing full stop ends a sentence, not the path.
    """
    pattern = rf"(?<![\w./-]){re.escape(path)}(?!\.?[\w/-])"
    return re.search(pattern, message) is not None


class GitRepository:
    """Runs git commands against one working tree.

    Every command is a fresh Runner invocation, so an instance can be
    shared between threads.
    """

    def __init__(self, workdir: Path):
        self.workdir = Path(workdir)

    def git(
        self,
        args: str,
        check: bool = True,
        cwd: Path | None = None,
        env: dict[str, str] | None = None,
    ) -> Result:
        """Run ``git <args>``.

        Raises:
            GitCommandError: When check is set and git exits non-zero
        """
        command = f"git {args}"
        result = Runner().execute(
            command, cwd=cwd or self.workdir, check=False, env=env
        )
        logger.spew("git", command=command, exit_code=result.exited)
        if check and result.exited != 0:
            raise GitCommandError(command, result.exited, result.stderr)
        return result

    def output(self, args: str, cwd: Path | None = None) -> str:
        return self.git(args, cwd=cwd).stdout.strip()

    # ------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------

    def is_repository(self) -> bool:
        result = self.git("rev-parse --is-inside-work-tree", check=False)
        return result.exited == 0 and result.stdout.strip() == "true"

    def git_dir(self) -> Path:
        path = Path(self.output("rev-parse --git-dir"))
        return path if path.is_absolute() else self.workdir / path

    def rev_parse(self, ref: str) -> str:
        return self.output(f"rev-parse --verify {quote(ref + '^{commit}')}")

    def current_branch(self) -> str | None:
        """Checked out branch name, or None on a detached HEAD."""
        result = self.git("symbolic-ref --quiet --short HEAD", check=False)
        return result.stdout.strip() if result.exited == 0 else None

    def branch_exists(self, name: str) -> bool:
        result = self.git(
            f"show-ref --verify --quiet {quote('refs/heads/' + name)}",
            check=False,
        )
        return result.exited == 0

    def list_branches(self, prefix: str) -> list[str]:
        """Local branches under ``prefix`` (matched up to a slash)."""
        ref = quote("refs/heads/" + prefix)
        out = self.output(
            f"for-each-ref {quote('--format=%(refname:short)')} {ref}"
        )
        return [line for line in out.splitlines() if line]

    def status_porcelain(self, cwd: Path | None = None) -> list[str]:
        out = self.git("status --porcelain", cwd=cwd).stdout
        return [line for line in out.splitlines() if line.strip()]

    def is_clean(self, cwd: Path | None = None) -> bool:
        return not self.status_porcelain(cwd)

    def unmerged_files(self) -> dict[str, str]:
        """Unmerged paths mapped to conflict type (content/delete)."""
        conflicts = {}
        for line in self.status_porcelain():
            code, path = line[:2], line[3:]
            if code in UNMERGED_CODES:
                conflicts[path] = "delete" if "D" in code else "content"
        return conflicts

    def operation_in_progress(self) -> str | None:
        """Name of an unfinished merge/rebase/cherry-pick, if any."""
        git_dir = self.git_dir()
        markers = {
            "merge": "MERGE_HEAD",
            "rebase": "rebase-merge",
            "rebase-apply": "rebase-apply",
            "cherry-pick": "CHERRY_PICK_HEAD",
            "revert": "REVERT_HEAD",
        }
        for name, marker in markers.items():
            if (git_dir / marker).exists():
                return name
        return None

    def count_commits(self, base: str, tip: str) -> int:
        return int(self.output(f"rev-list --count {quote(f'{base}..{tip}')}"))

    def changed_files(self, base: str, tip: str) -> list[str]:
        out = self.output(f"diff --name-only {quote(base, tip)}")
        return [line for line in out.splitlines() if line]

    def diff_shortstat(self, base: str, tip: str) -> tuple[int, int, int]:
        """(files changed, insertions, deletions) from base...tip."""
        out = self.output(f"diff --shortstat {quote(f'{base}...{tip}')}")
        numbers = []
        for pattern in (r"(\d+) files? changed", r"(\d+) insertions?",
                        r"(\d+) deletions?"):
            match = re.search(pattern, out)
            numbers.append(int(match.group(1)) if match else 0)
        return numbers[0], numbers[1], numbers[2]

    def merge_base(self, a: str, b: str) -> str:
        return self.output(f"merge-base {quote(a, b)}")

    def merge_tree(self, target: str, source: str) -> MergeTreeResult:
        """Dry-run merge of ``source`` into ``target``.

        Needs git 2.38+. Only writes tree objects; refs, index and
        working tree are left alone.
        """
        result = self.git(
            f"merge-tree --write-tree --name-only {quote(target, source)}",
            check=False,
        )
        if result.exited not in (0, 1):
            raise GitCommandError(
                "git merge-tree", result.exited, result.stderr
            )

        lines = result.stdout.splitlines()
        tree = lines[0].strip() if lines else None
        if result.exited == 0:
            return MergeTreeResult(clean=True, tree=tree)

        files = []
        rest = iter(lines[1:])
        for line in rest:
            if not line.strip():
                break
            if line not in files:
                files.append(line)

        types = dict.fromkeys(files, "content")
        for line in rest:
            match = re.match(r"CONFLICT \(([^)]+)\): (.*)", line)
            if not match:
                continue
            kind, message = match.groups()
            for path in files:
                if mentions_path(message, path):
                    types[path] = conflict_type_for(kind)
        return MergeTreeResult(
            clean=False, tree=tree, conflicted_files=files,
            conflict_types=types,
        )

    # ------------------------------------------------------------
    # Worktrees and branches
    # ------------------------------------------------------------

    def list_worktrees(self) -> list[WorktreeInfo]:
        out = self.git("worktree list --porcelain").stdout
        worktrees = []
        current: WorktreeInfo | None = None
        for line in out.splitlines():
            if line.startswith("worktree "):
                current = WorktreeInfo(path=Path(line[len("worktree "):]))
                worktrees.append(current)
            elif current is None:
                continue
            elif line.startswith("HEAD "):
                current.head = line[len("HEAD "):]
            elif line.startswith("branch "):
                current.branch = line[len("branch "):].removeprefix(
                    "refs/heads/"
                )
            elif line == "detached":
                current.detached = True
            elif line.startswith("locked"):
                current.locked = True
            elif line.startswith("prunable"):
                current.prunable = True
        return worktrees

    def add_worktree(self, path: Path, branch: str, base_ref: str) -> None:
        self.git(f"worktree add -b {quote(branch, path, base_ref)}")

    def remove_worktree(self, path: Path, force: bool = False) -> None:
        flag = "--force " if force else ""
        self.git(f"worktree remove {flag}{quote(path)}")

    def prune_worktrees(self) -> None:
        self.git("worktree prune")

    def create_branch(self, name: str, start_point: str) -> None:
        self.git(f"branch {quote(name, start_point)}")

    def delete_branch(self, name: str, force: bool = False) -> None:
        self.git(f"branch {'-D' if force else '-d'} {quote(name)}")

    def checkout(self, ref: str, detach: bool = False, force: bool = False) -> None:
        flags = ("--detach " if detach else "") + ("-f " if force else "")
        self.git(f"checkout {flags}{quote(ref)}")

    # ------------------------------------------------------------
    # Merging
    # ------------------------------------------------------------

    def merge(
        self,
        source: str,
        squash: bool = False,
        message: str | None = None,
        ff_only: bool = False,
    ) -> Result:
        """Merge ``source`` into HEAD; exit code 1 means conflicts."""
        if squash:
            flags = "--squash"
        elif ff_only:
            flags = "--ff-only"
        else:
            flags = "--no-ff --no-edit"
            if message:
                flags += f" -m {quote(message)}"
        result = self.git(f"merge {flags} {quote(source)}", check=False)
        if result.exited not in (0, 1) or (ff_only and result.exited):
            raise GitCommandError(f"git merge {flags}", result.exited,
                                  result.stderr or result.stdout)
        return result

    def commit(self, message: str) -> str:
        self.git(f"commit --no-verify -m {quote(message)}")
        return self.rev_parse("HEAD")

    def stage_side(self, path: str, side: str) -> None:
        """Resolve an unmerged path by keeping ``ours`` or ``theirs``.

        A side that deleted the file resolves to a deletion.
        """
        stage = {"ours": "2", "theirs": "3"}[side]
        stages = self.output(f"ls-files -u -- {quote(path)}").splitlines()
        if any(line.split()[2] == stage for line in stages if line.strip()):
            self.git(f"checkout --{side} -- {quote(path)}")
            self.git(f"add -- {quote(path)}")
        else:
            self.git(f"rm --quiet -- {quote(path)}")

    def rebase(self, onto: str) -> None:
        self.git(f"rebase {quote(onto)}")

    def abort_operation(self) -> None:
        """Abort whatever merge or rebase is in progress."""
        operation = self.operation_in_progress()
        if operation == "merge":
            self.git("merge --abort", check=False)
        elif operation in ("rebase", "rebase-apply"):
            self.git("rebase --abort", check=False)
        elif operation == "cherry-pick":
            self.git("cherry-pick --abort", check=False)

    def reset_hard(self, ref: str) -> None:
        self.git(f"reset --hard {quote(ref)}")

    def push(self, remote: str, branch: str) -> None:
        self.git(f"push --set-upstream {quote(remote, branch)}")
