"""Runs the headless code generator CLI and streams its events."""

import asyncio
import json
import logging
import os
import shutil
import signal
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable

logger = logging.getLogger(__name__)

# Stream records can carry whole file contents.
STREAM_LIMIT = 16 * 1024 * 1024


@dataclass
class GeneratorEvent:
    type: str
    content: str
    raw: Any = None


@dataclass
class GeneratorResult:
    exit_code: int
    summary: str
    success: bool
    aborted: bool = False
    timed_out: bool = False
    events: int = field(default=0)


EventHandler = Callable[[GeneratorEvent], Awaitable[None]]


def _as_text(value: Any) -> str:
    if isinstance(value, str):
        return value
    if isinstance(value, list):
        parts = [item.get("text", "") for item in value if isinstance(item, dict)]
        if any(parts):
            return "\n".join(p for p in parts if p)
    return json.dumps(value)


def _blocks(data: dict) -> list[dict]:
    message = data.get("message")
    if isinstance(message, dict) and isinstance(message.get("content"), list):
        return [b for b in message["content"] if isinstance(b, dict)]
    return []


def parse_stream_event(line: str) -> GeneratorEvent | None:
    """Turn one line of ``stream-json`` output into an event.

    Returns None for records that carry nothing worth surfacing. Lines that
    are not JSON come back as plain text events.
    """
    try:
        data = json.loads(line)
    except json.JSONDecodeError:
        return GeneratorEvent(type="text", content=line)
    if not isinstance(data, dict):
        return GeneratorEvent(type="text", content=line, raw=data)

    kind = data.get("type")
    blocks = _blocks(data)

    if kind == "assistant":
        text = next((b.get("text") for b in blocks if b.get("type") == "text" and b.get("text")), None)
        if text:
            return GeneratorEvent(type="text", content=text, raw=data)

    if kind == "content_block_delta":
        delta = data.get("delta") or {}
        if delta.get("type") == "text_delta" and delta.get("text"):
            return GeneratorEvent(type="text", content=delta["text"], raw=data)

    tool_use = next((b for b in blocks if b.get("type") == "tool_use"), None)
    if kind == "tool_use" or tool_use is not None:
        name = (tool_use or data).get("name") or "unknown"
        return GeneratorEvent(type="tool_use", content=f"Using tool: {name}", raw=data)

    tool_result = next((b for b in blocks if b.get("type") == "tool_result"), None)
    if kind == "tool_result" or tool_result is not None:
        source = tool_result if tool_result is not None else data
        return GeneratorEvent(type="tool_result", content=_as_text(source.get("content", "")), raw=data)

    if kind == "result":
        content = data.get("result") or data.get("message") or "Completed"
        return GeneratorEvent(type="result", content=_as_text(content), raw=data)

    if kind in ("system", "error"):
        content = data.get("message") or data.get("error") or json.dumps(data)
        return GeneratorEvent(type=kind, content=_as_text(content), raw=data)

    for key in ("message", "text", "content"):
        if data.get(key):
            return GeneratorEvent(type="system", content=_as_text(data[key]), raw=data)
    return None


class AgentRunner:
    """One generator process. Create a new runner per run."""

    def __init__(
        self,
        binary: str = "claude",
        abort_grace_seconds: float = 5.0,
        timeout_seconds: float | None = None,
    ) -> None:
        self._binary = binary
        self._grace = abort_grace_seconds
        self._timeout = timeout_seconds
        self._proc: asyncio.subprocess.Process | None = None
        self._aborted = False
        self._timed_out = False
        self._kill_task: asyncio.Task | None = None

    @property
    def aborted(self) -> bool:
        return self._aborted

    def build_command(self, prompt: str) -> list[str]:
        return [
            self._binary,
            "-p", prompt,
            "--output-format", "stream-json",
            "--verbose",
            "--permission-mode", "acceptEdits",
        ]

    async def execute(
        self,
        prompt: str,
        working_dir: str,
        on_event: EventHandler | None = None,
    ) -> GeneratorResult:
        """Run the generator in working_dir until it exits.

        Args:
            prompt: Full task prompt passed with ``-p``.
            working_dir: Directory the generator edits.
            on_event: Awaited for every parsed event, in stream order.

        Returns:
            GeneratorResult. Spawn failures are reported with exit code 1
            rather than raised.
        """
        logger.info("Starting generator in %s", working_dir)
        logger.debug("Prompt: %s", prompt[:200])
        env = {**os.environ, "PWD": working_dir}
        try:
            self._proc = await asyncio.create_subprocess_exec(
                *self.build_command(prompt),
                cwd=working_dir,
                env=env,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                limit=STREAM_LIMIT,
            )
        except OSError as e:
            logger.error("Failed to start generator: %s", e)
            return GeneratorResult(
                exit_code=1, summary=f"Failed to start generator: {e}", success=False
            )

        timer = None
        if self._timeout:
            timer = asyncio.get_running_loop().call_later(self._timeout, self._on_timeout)

        stderr_task = asyncio.create_task(self._read_stderr())
        last_content = ""
        count = 0
        try:
            async for event in self._events():
                count += 1
                if event.content:
                    last_content = event.content
                if on_event is not None:
                    try:
                        await on_event(event)
                    except Exception:
                        logger.exception("Generator event handler failed")
            exit_code = await self._proc.wait()
        finally:
            if timer is not None:
                timer.cancel()
            if self._proc.returncode is None:
                self._kill()
                await self._proc.wait()
            if self._kill_task is not None:
                self._kill_task.cancel()
        error_output = await stderr_task

        logger.info("Generator exited with code %s", exit_code)
        summary = last_content or error_output.strip() or "No output captured"
        if self._timed_out:
            summary = f"Generator timed out after {self._timeout:.0f}s. {summary}"
        return GeneratorResult(
            exit_code=exit_code,
            summary=summary,
            success=exit_code == 0 and not self._aborted,
            aborted=self._aborted,
            timed_out=self._timed_out,
            events=count,
        )

    async def _events(self):
        assert self._proc is not None and self._proc.stdout is not None
        while True:
            line = await self._proc.stdout.readline()
            if not line:
                return
            text = line.decode("utf-8", errors="replace").strip()
            if not text:
                continue
            event = parse_stream_event(text)
            if event is not None:
                yield event

    async def _read_stderr(self) -> str:
        assert self._proc is not None and self._proc.stderr is not None
        data = await self._proc.stderr.read()
        text = data.decode("utf-8", errors="replace")
        if text.strip():
            logger.debug("Generator stderr: %s", text.strip()[:500])
        return text

    def abort(self) -> None:
        """Ask the process to stop: SIGTERM now, SIGKILL after the grace period."""
        if self._proc is None or self._aborted or self._proc.returncode is not None:
            return
        logger.info("Aborting generator (pid %s)", self._proc.pid)
        self._aborted = True
        self._signal(signal.SIGTERM)
        self._kill_task = asyncio.get_running_loop().create_task(self._kill_after_grace())

    async def _kill_after_grace(self) -> None:
        await asyncio.sleep(self._grace)
        if self._proc is not None and self._proc.returncode is None:
            logger.warning("Generator ignored SIGTERM, killing")
            self._kill()

    def _on_timeout(self) -> None:
        logger.warning("Generator timed out after %ss", self._timeout)
        self._timed_out = True
        self.abort()

    def _signal(self, sig: signal.Signals) -> None:
        try:
            self._proc.send_signal(sig)
        except ProcessLookupError:
            pass

    def _kill(self) -> None:
        self._signal(signal.SIGKILL)

    def is_available(self) -> bool:
        return shutil.which(self._binary) is not None


RunnerFactory = Callable[[], AgentRunner]
