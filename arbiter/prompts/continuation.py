"""Prompt template for resuming a session after a checkpoint."""

from arbiter.models.session import ChatMessage

DIFF_LIMIT = 5000
TRUNCATION_MARKER = "\n\n... (diff truncated for brevity)"


def format_continuation_prompt(
    original_task: str,
    diff: str,
    pending: list[ChatMessage],
    checkpoint_count: int,
) -> str:
    """Tell the generator what is already committed and what the user added since."""
    if len(diff) > DIFF_LIMIT:
        diff = diff[:DIFF_LIMIT] + TRUNCATION_MARKER
    follow_ups = "\n".join(f"{m.author_name}: {m.content}" for m in pending)

    return f"""\
## Continuation of Previous Task

You were working on: "{original_task}"

### Work Completed So Far (Checkpoint {checkpoint_count})
The following changes have been committed and should NOT be redone:

```diff
{diff}
```

### New Instructions from User
{follow_ups or 'No new instructions'}

### Your Task
Continue from where you left off, incorporating the new instructions above.
- Do NOT redo work that has already been committed
- Build upon the existing changes
- The changes above are already saved; focus on the new requirements

If the new instructions conflict with or modify existing work, update the files appropriately.
"""
