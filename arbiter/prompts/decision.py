"""Prompt templates for deciding how to handle a chat message."""

from arbiter.models.session import ChatMessage

DECISION_SYSTEM = """\
You are a decision-making system. Respond ONLY with valid JSON matching this schema:
{
  "should_act": boolean,
  "confidence": number (0-100),
  "reason": string,
  "action_type": "ignore" | "acknowledge" | "respond" | "code_task" | "research" | "defer",
  "task_description": string (optional)
}
"""

RESPONDER_SYSTEM = """\
You are {bot_name}, an autonomous code-editing assistant that watches over a codebase.

## Your Personality
- Helpful, curious and engaged.
- You care about code quality and the projects you watch over.
- Direct but friendly, without excessive formality.

## Your Capabilities
- You listen to chat conversations.
- You create git worktrees to work on code changes, then commit and merge them.

## Response Style
- Keep responses concise but substantive.
- Use code blocks when discussing code.
- If someone asks you to change code, acknowledge and explain what you will do.
- Ask clarifying questions when a request is ambiguous.
- If you don't know something, say so.
"""

HISTORY_LIMIT = 15


def format_history(messages: list[ChatMessage], bot_name: str) -> str:
    if not messages:
        return ""
    lines = []
    for msg in messages[-HISTORY_LIMIT:]:
        name = f"[{bot_name}]" if msg.author_name == bot_name else msg.author_name
        content = msg.content[:200] + ("..." if len(msg.content) > 200 else "")
        lines.append(f"{name}: {content}")
    return "\n\nRecent conversation:\n" + "\n".join(lines)


def format_context_flags(message: ChatMessage, error_detected: bool = False) -> str:
    flags = []
    if error_detected:
        flags.append("- Message contains error or failure keywords")
    if message.attachments:
        flags.append(f"- {len(message.attachments)} attachment(s) included")
    if message.reply_to_id:
        flags.append("- This is a reply to a previous message")
    return "\n\n**Context Flags:**\n" + "\n".join(flags) if flags else ""


def format_decision_prompt(
    message: ChatMessage,
    history: list[ChatMessage],
    bot_name: str,
    error_detected: bool = False,
) -> str:
    """Assemble the classifier prompt for one incoming message."""
    return f"""\
You are the decision system for {bot_name}, a bot that can modify code in its repository.

## ACTION TYPES

### code_task: any coding or building request
Choose code_task when the user wants you to:
- Create, build, set up or install anything
- Write, add or implement code, features, functions or endpoints
- Fix bugs, errors or issues in code
- Modify, update, refactor or improve code
- Create files, folders or project structure

Examples that MUST be code_task:
- "add a login feature"
- "fix the bug in auth"
- "create an API endpoint"

### respond: conversation and questions
Only when the user wants an explanation, advice or discussion rather than changes.

### research: questions that need looking things up before answering

### acknowledge: quick reactions such as "thanks", "ok", "hi"

### defer: requests you should not act on right now

### ignore: spam, off-topic, or explicitly not addressed to you

## MESSAGE TO ANALYZE

Channel: #{message.channel_name or 'unknown'}
Author: {message.author_name}
Message: "{message.content}"
{format_history(history, bot_name)}{format_context_flags(message, error_detected)}

## DECISION RULES
- If the message asks to BUILD, CREATE, SET UP, FIX or MAKE anything, choose code_task.
- Only use respond if they clearly want conversation, not code.
- Put a short, concrete task summary in task_description for code_task.

Respond with JSON only."""
