"""Small text helpers shared by services and prompts."""

import re
import secrets
import string
import time

_BASE36 = string.digits + string.ascii_lowercase
_NON_SLUG = re.compile(r"[^a-z0-9]+")


def to_base36(value: int) -> str:
    """Encode a non-negative integer in lowercase base 36."""
    if value < 0:
        raise ValueError("value must be non-negative")
    if value == 0:
        return "0"
    digits = []
    while value:
        value, rem = divmod(value, 36)
        digits.append(_BASE36[rem])
    return "".join(reversed(digits))


def now_ms() -> int:
    return time.time_ns() // 1_000_000


def random_base36(length: int = 6) -> str:
    return "".join(secrets.choice(_BASE36) for _ in range(length))


def slugify(text: str, max_length: int = 30) -> str:
    """Lowercase, collapse non-alphanumeric runs to ``-`` and trim to max_length.

    The result only ever contains ``[a-z0-9-]`` and never starts or ends
    with a hyphen. Returns ``"task"`` when nothing usable is left.
    """
    slug = _NON_SLUG.sub("-", text.lower()).strip("-")
    slug = slug[:max_length].strip("-")
    return slug or "task"


def truncate(text: str, limit: int, marker: str = "...") -> str:
    if len(text) <= limit:
        return text
    return text[:limit] + marker


def format_duration(seconds: float) -> str:
    """Render a duration as ``45s``, ``3m 12s`` or ``1h 4m``."""
    total = int(seconds)
    if total < 60:
        return f"{total}s"
    minutes, secs = divmod(total, 60)
    if minutes < 60:
        return f"{minutes}m {secs}s"
    hours, minutes = divmod(minutes, 60)
    return f"{hours}h {minutes}m"


def chunk_message(content: str, max_length: int = 2000) -> list[str]:
    """Split content into pieces no longer than max_length.

    Prefers to break at the last newline, then the last space, as long as
    the break falls in the second half of the window. Otherwise splits hard.
    """
    if len(content) <= max_length:
        return [content]

    chunks: list[str] = []
    remaining = content
    while len(remaining) > max_length:
        window = remaining[:max_length]
        split_at = window.rfind("\n")
        if split_at < max_length // 2:
            split_at = window.rfind(" ")
        if split_at < max_length // 2:
            split_at = max_length
        chunks.append(remaining[:split_at])
        remaining = remaining[split_at:].lstrip()
    if remaining:
        chunks.append(remaining)
    return chunks


def strip_nul(text: str) -> str:
    """Drop NUL characters, which cannot be passed through argv."""
    return text.replace("\x00", "")
