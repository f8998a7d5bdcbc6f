"""Runtime configuration loaded from environment variables."""

import logging
import os

from dotenv import load_dotenv
from pydantic import BaseModel, Field, field_validator

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on")


def _env_list(name: str, default: list[str]) -> list[str]:
    raw = os.getenv(name)
    if raw is None:
        return list(default)
    return [part.strip() for part in raw.split(",") if part.strip()]


class ArbiterConfig(BaseModel):
    """All tunables for one arbiter process."""

    model: str = "claude-sonnet-4-20250514"
    confidence_threshold: int = Field(default=70, ge=0, le=100)
    low_confidence_threshold: int = Field(default=40, ge=0, le=100)

    repo_path: str = Field(default_factory=os.getcwd)
    worktree_base: str = "/tmp/arbiter-worktrees"
    default_branch: str = "main"
    shared_dirs: list[str] = Field(default_factory=lambda: [".venv", "node_modules"])

    generator_binary: str = "claude"
    abort_grace_seconds: float = Field(default=5.0, gt=0)
    generator_timeout_seconds: float | None = None
    merge_repair_attempts: int = Field(default=1, ge=0)
    restart_on_merge: bool = True

    queue_max_size: int = Field(default=1000, gt=0)
    queue_process_delay: float = Field(default=0.1, ge=0)
    aggregation_window: float = Field(default=3.0, ge=0)
    message_limit: int = Field(default=2000, gt=0)
    status_throttle_seconds: float = Field(default=2.0, ge=0)
    exit_delay: float = Field(default=1.0, ge=0)

    status_channel_id: str | None = None
    handle_signals: bool = True
    log_level: str = "INFO"
    host: str = "127.0.0.1"
    port: int = 8000

    @field_validator("log_level")
    @classmethod
    def _upper_level(cls, v: str) -> str:
        v = v.upper()
        if v not in ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"):
            raise ValueError(f"unknown log level: {v}")
        return v

    @classmethod
    def from_env(cls) -> "ArbiterConfig":
        """Build a config from the process environment.

        Unset variables keep the model defaults. Values are validated by
        pydantic, so a malformed number raises ``ValidationError``.
        """
        defaults = cls()
        timeout = os.getenv("ARBITER_GENERATOR_TIMEOUT")
        return cls(
            model=os.getenv("ARBITER_MODEL", defaults.model),
            confidence_threshold=os.getenv(
                "ARBITER_CONFIDENCE_THRESHOLD", defaults.confidence_threshold
            ),
            repo_path=os.getenv("GIT_REPO_PATH", defaults.repo_path),
            worktree_base=os.getenv("GIT_WORKTREE_BASE", defaults.worktree_base),
            default_branch=os.getenv("GIT_DEFAULT_BRANCH", defaults.default_branch),
            shared_dirs=_env_list("ARBITER_SHARED_DIRS", defaults.shared_dirs),
            generator_binary=os.getenv("ARBITER_GENERATOR_BINARY", defaults.generator_binary),
            abort_grace_seconds=os.getenv(
                "ARBITER_ABORT_GRACE_SECONDS", defaults.abort_grace_seconds
            ),
            generator_timeout_seconds=timeout or None,
            merge_repair_attempts=os.getenv(
                "ARBITER_MERGE_REPAIR_ATTEMPTS", defaults.merge_repair_attempts
            ),
            restart_on_merge=_env_bool("ARBITER_RESTART_ON_MERGE", defaults.restart_on_merge),
            queue_max_size=os.getenv("ARBITER_QUEUE_MAX_SIZE", defaults.queue_max_size),
            queue_process_delay=os.getenv(
                "ARBITER_QUEUE_PROCESS_DELAY", defaults.queue_process_delay
            ),
            aggregation_window=os.getenv(
                "ARBITER_AGGREGATION_WINDOW", defaults.aggregation_window
            ),
            message_limit=os.getenv("ARBITER_MESSAGE_LIMIT", defaults.message_limit),
            status_throttle_seconds=os.getenv(
                "ARBITER_STATUS_THROTTLE", defaults.status_throttle_seconds
            ),
            exit_delay=os.getenv("ARBITER_EXIT_DELAY", defaults.exit_delay),
            status_channel_id=os.getenv("STATUS_CHANNEL_ID") or None,
            handle_signals=_env_bool("ARBITER_HANDLE_SIGNALS", defaults.handle_signals),
            log_level=os.getenv("ARBITER_LOG_LEVEL", defaults.log_level),
            host=os.getenv("ARBITER_HOST", defaults.host),
            port=os.getenv("ARBITER_PORT", defaults.port),
        )


def load_config(env_file: str | None = None) -> ArbiterConfig:
    """Load a ``.env`` file (if present) and build the config from the environment."""
    load_dotenv(env_file, override=False)
    return ArbiterConfig.from_env()


def configure_logging(level: str = "INFO") -> None:
    logging.basicConfig(level=getattr(logging, level.upper(), logging.INFO), format=LOG_FORMAT)
