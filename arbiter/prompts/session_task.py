"""Prompt templates for a code-editing session."""

from arbiter.models.session import ChatMessage

HISTORY_LIMIT = 10

TASK_HEADER = """\
# Self-Edit Task

## What You Are
You are a coding agent working inside the arbiter repository. You are editing \
the codebase in an isolated git worktree based on a request from a trusted team member.
"""

INSTRUCTIONS = """\
## Instructions
1. Carefully analyze what needs to be done.
2. Make all necessary changes to fulfill the request completely.
3. You have full access: install packages, create files, modify anything needed.
4. Run the test suite if one exists and make sure it passes.
5. At the end, provide a clear summary of what you changed.

## Important Notes
- This is a trusted environment and you have full permissions.
- Stay inside the working directory above. Do not touch the main checkout.
- Do not commit; your changes are committed and merged automatically.
- If the request asks for a full feature, build the whole thing.
"""


def format_task_prompt(
    request: str,
    author_name: str,
    channel_name: str | None,
    branch_name: str,
    working_dir: str,
    history: list[ChatMessage] | None = None,
    codebase_context: str = "",
    approach: str | None = None,
) -> str:
    """Assemble the prompt for the first generator run of a session."""
    parts = [
        TASK_HEADER,
        "## Current Context",
        f"- **Branch**: `{branch_name}`",
        f"- **Working Directory**: `{working_dir}`",
        f"- **Requested By**: {author_name} (in #{channel_name or 'DM'})",
        f"\n## The Request\n{request}",
    ]

    if approach and approach.strip() != request.strip():
        parts.append(f"\n## Suggested Approach\n{approach}")

    recent = (history or [])[-HISTORY_LIMIT:]
    conversation = "\n".join(f"{m.author_name}: {m.content[:300]}" for m in recent)
    parts.append(f"\n## Recent Conversation\n```\n{conversation or 'No recent conversation'}\n```")

    if codebase_context:
        parts.append(f"\n## Codebase Overview\n{codebase_context}")

    parts.append("\n" + INSTRUCTIONS)
    parts.append("Now proceed with the task.")
    return "\n".join(parts)
