"""Prompt templates for repairing a blocked merge in the main repository."""

from arbiter.services.worktree_service import ConflictType

LOCAL_CHANGES = """\
There are uncommitted local changes that would be overwritten by the merge.

You need to:
1. Run `git status` to see which files have local changes.
2. Review the changes with `git diff`.
3. Decide the best approach:
   - If the local changes should be kept, commit them with an appropriate message.
   - If the local changes can be discarded, run `git checkout -- <file>`.
   - If they should be set aside, run `git stash`.
4. After handling local changes, the merge will be retried automatically.

Be careful to preserve important work. If unsure, commit the changes rather than discarding them.
"""

UNTRACKED_FILES = """\
There are untracked files that would be overwritten by the merge.

You need to:
1. Run `git status` to see the untracked files.
2. Review whether these files are important.
3. Either:
   - Add and commit them: `git add <file> && git commit -m "Add <file>"`
   - Move them aside: `mv <file> <file>.backup`
   - Delete them if they are not needed: `rm <file>`
4. After handling untracked files, the merge will be retried automatically.

Untracked files may contain work that was created but never committed.
"""

MERGE_CONFLICT = """\
There is a real merge conflict: both branches modified the same lines.

You need to:
1. The merge was already aborted, so start it again: `git merge {branch}`
2. Run `git status` to see the conflicting files.
3. For each conflicting file:
   - Read the file and find the conflict markers (<<<<<<< ======= >>>>>>>).
   - Decide how to resolve it (keep ours, keep theirs, or combine).
   - Edit the file to resolve the conflict.
   - Run `git add <file>` to mark it resolved.
4. Complete the merge with `git commit`.
"""

OTHER = """\
An unexpected merge error occurred.

Please:
1. Run `git status` to understand the current state.
2. Fix whatever is preventing the merge.
3. The merge will be retried automatically after you are done.
"""

_GUIDANCE = {
    ConflictType.local_changes: LOCAL_CHANGES,
    ConflictType.untracked_files: UNTRACKED_FILES,
    ConflictType.merge_conflict: MERGE_CONFLICT,
}


def format_repair_prompt(
    conflict_type: ConflictType | None,
    details: str,
    branch: str,
    default_branch: str,
    repo_path: str,
    attempt: int = 1,
) -> str:
    """Build the prompt for a generator run that unblocks a failed merge."""
    kind = conflict_type or ConflictType.other
    guidance = _GUIDANCE.get(kind, OTHER).format(branch=branch)
    parts = [
        "You are resolving a git merge problem in this repository.",
        "\n## Situation",
        f"We are trying to merge branch `{branch}` into `{default_branch}` but hit an issue.",
        f"\n## Conflict Type: {kind.value}",
        f"\n## Error Details\n{details[:3000] or 'No details available'}",
        f"\n## Your Task\n{guidance}",
        "## Important Notes",
        f"- You are working in the MAIN repository at: {repo_path}",
        f"- The branch to merge is: {branch}",
        f"- The target branch is: {default_branch}",
        "- When the problem is resolved, just finish. The merge will be retried automatically.",
        "- If you complete the merge yourself, that is also fine.",
    ]
    if attempt > 1:
        parts.append(f"- This is repair attempt {attempt}; the previous attempt did not unblock the merge.")
    return "\n".join(parts)
