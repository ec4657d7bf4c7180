"""Read-only merge analysis shared by preview and merge."""

from __future__ import annotations

from forkcat.core.errors import GitCommandError
from forkcat.git.repository import GitRepository
from forkcat.merge.models import MergeConflict, MergePreview


def preview_branches(repository: GitRepository, source: str, target: str) -> MergePreview:
    """What merging ``source`` into ``target`` would do.

    Uses ``git merge-tree``, so neither refs, index nor working tree
    change.
    """
    preview = MergePreview(can_merge=False, source_branch=source, target_branch=target)
    for branch in (source, target):
        if not repository.branch_exists(branch):
            preview.errors.append(f"Branch {branch} does not exist")
    if preview.errors:
        return preview

    try:
        preview.commits_to_merge = repository.count_commits(target, source)
        base = repository.merge_base(target, source)
        preview.files_changed = repository.changed_files(base, source)
        outcome = repository.merge_tree(target, source)
    except GitCommandError as e:
        preview.errors.append(str(e))
        return preview

    preview.conflicts = [
        MergeConflict(file_path=path,
                      conflict_type=outcome.conflict_types.get(path, "content"))
        for path in outcome.conflicted_files
    ]
    if preview.commits_to_merge == 0:
        preview.errors.append(f"{source} has no commits missing from {target}")
    preview.can_merge = not preview.errors and not preview.conflicts
    return preview
