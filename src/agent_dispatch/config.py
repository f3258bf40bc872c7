"""Runtime configuration for workers, sessions, recovery and chat delivery."""

from __future__ import annotations

import os
import platform
import socket
from dataclasses import dataclass, field

SUPPORTED_ENGINES = ("claude", "codex", "gemini")
SUPPORTED_CHAT_BACKENDS = ("console", "telegram")


class ConfigError(ValueError):
    """Settings are missing or inconsistent."""


DEFAULT_COMMAND_TEMPLATES = {
    "claude": (
        "claude -p --input-format stream-json --output-format stream-json --verbose "
        "--permission-mode {permission_mode}"
    ),
    "codex": "codex exec --json --sandbox workspace-write {prompt}",
    "gemini": "gemini --output-format stream-json --approval-mode auto_edit --prompt {prompt}",
}


@dataclass(slots=True)
class WorkerSettings:
    """Task executor settings for one machine."""

    worker_id: str = field(default_factory=lambda: f"worker-{socket.gethostname()}-{os.getpid()}")
    machine_id: str = field(default_factory=socket.gethostname)
    project_filter: str | None = None
    projects: tuple[str, ...] = ()
    poll_interval_seconds: float = 5.0
    heartbeat_interval_seconds: float = 30.0
    max_concurrency: int = 3
    engine_priority: tuple[str, ...] = SUPPORTED_ENGINES
    reconnect_delay_seconds: float = 5.0
    transport_exit_codes: tuple[int, ...] = (255,)
    workspace_root: str = "workspaces"
    result_summary_max_chars: int = 4000


@dataclass(slots=True)
class EngineSettings:
    """How each engine CLI is started."""

    command_templates: dict[str, str] = field(
        default_factory=lambda: dict(DEFAULT_COMMAND_TEMPLATES),
    )
    models: dict[str, str] = field(default_factory=dict)
    permission_mode: str = "acceptEdits"


@dataclass(slots=True)
class SessionSettings:
    """Topic binding and outbound streaming settings."""

    flush_interval_seconds: float = 1.5
    max_message_chars: int = 3500
    spawn_guard_seconds: float = 60.0
    close_grace_seconds: float = 30.0
    result_idle_seconds: float = 300.0


@dataclass(slots=True)
class SuppressionSettings:
    ttl_seconds: float = 60.0


@dataclass(slots=True)
class FailoverSettings:
    """Rate-limit failover policy."""

    window_seconds: float = 60.0
    signal_threshold: int = 3
    retry_after_threshold_seconds: float = 300.0
    max_hops: int | None = None
    excerpt_max_chars: int = 2000
    immediate_window_seconds: float = 30.0


@dataclass(slots=True)
class HealthSettings:
    """Recovery sweep settings."""

    heartbeat_timeout_seconds: int = 120
    dispatch_heartbeat_window_seconds: int = 60
    stale_task_timeout_seconds: int = 600
    sweep_interval_seconds: float = 60.0
    alert_cooldown_seconds: float = 600.0
    alert_topic_id: str = ""
    alerts_enabled: bool = True


@dataclass(slots=True)
class ChatSettings:
    """Chat delivery backend."""

    backend: str = "console"
    telegram_bot_token: str = ""
    telegram_chat_id: str = ""
    telegram_api_base_url: str = "https://api.telegram.org"
    request_timeout_seconds: float = 30.0
    telegram_poll_timeout_seconds: int = 25


@dataclass(slots=True)
class Settings:
    """Application settings grouped by domain concerns."""

    db_url: str = "sqlite:///.agent_dispatch.db"
    sqlite_busy_timeout_ms: int = 5000
    worker: WorkerSettings = field(default_factory=WorkerSettings)
    engines: EngineSettings = field(default_factory=EngineSettings)
    session: SessionSettings = field(default_factory=SessionSettings)
    suppression: SuppressionSettings = field(default_factory=SuppressionSettings)
    failover: FailoverSettings = field(default_factory=FailoverSettings)
    health: HealthSettings = field(default_factory=HealthSettings)
    chat: ChatSettings = field(default_factory=ChatSettings)

    @classmethod
    def from_env(cls, db_url: str | None = None) -> Settings:
        """Load settings from environment with sane defaults for local development."""

        hostname = socket.gethostname()
        machine_id = os.getenv("AGENT_DISPATCH_MACHINE_ID", hostname)
        return cls(
            db_url=db_url or os.getenv("AGENT_DISPATCH_DB_URL", "sqlite:///.agent_dispatch.db"),
            sqlite_busy_timeout_ms=int(os.getenv("AGENT_DISPATCH_SQLITE_BUSY_TIMEOUT_MS", "5000")),
            worker=WorkerSettings(
                worker_id=os.getenv(
                    "AGENT_DISPATCH_WORKER_ID",
                    f"worker-{machine_id}-{os.getpid()}",
                ),
                machine_id=machine_id,
                project_filter=os.getenv("AGENT_DISPATCH_PROJECT_FILTER") or None,
                projects=_env_csv("AGENT_DISPATCH_PROJECTS"),
                poll_interval_seconds=float(os.getenv("AGENT_DISPATCH_POLL_INTERVAL_SECONDS", "5")),
                heartbeat_interval_seconds=float(
                    os.getenv("AGENT_DISPATCH_HEARTBEAT_INTERVAL_SECONDS", "30"),
                ),
                max_concurrency=int(os.getenv("AGENT_DISPATCH_MAX_CONCURRENCY", "3")),
                engine_priority=_env_csv("AGENT_DISPATCH_ENGINE_PRIORITY") or SUPPORTED_ENGINES,
                reconnect_delay_seconds=float(
                    os.getenv("AGENT_DISPATCH_RECONNECT_DELAY_SECONDS", "5"),
                ),
                transport_exit_codes=tuple(
                    int(code) for code in _env_csv("AGENT_DISPATCH_TRANSPORT_EXIT_CODES")
                )
                or (255,),
                workspace_root=os.getenv("AGENT_DISPATCH_WORKSPACE_ROOT", "workspaces"),
                result_summary_max_chars=int(
                    os.getenv("AGENT_DISPATCH_RESULT_SUMMARY_MAX_CHARS", "4000"),
                ),
            ),
            engines=EngineSettings(
                command_templates={
                    engine: os.getenv(
                        f"AGENT_DISPATCH_{engine.upper()}_COMMAND",
                        DEFAULT_COMMAND_TEMPLATES[engine],
                    )
                    for engine in SUPPORTED_ENGINES
                },
                models={
                    engine: model
                    for engine in SUPPORTED_ENGINES
                    if (model := os.getenv(f"AGENT_DISPATCH_{engine.upper()}_MODEL", ""))
                },
                permission_mode=os.getenv("AGENT_DISPATCH_PERMISSION_MODE", "acceptEdits"),
            ),
            session=SessionSettings(
                flush_interval_seconds=float(
                    os.getenv("AGENT_DISPATCH_FLUSH_INTERVAL_SECONDS", "1.5"),
                ),
                max_message_chars=int(os.getenv("AGENT_DISPATCH_MAX_MESSAGE_CHARS", "3500")),
                spawn_guard_seconds=float(os.getenv("AGENT_DISPATCH_SPAWN_GUARD_SECONDS", "60")),
                close_grace_seconds=float(os.getenv("AGENT_DISPATCH_CLOSE_GRACE_SECONDS", "30")),
                result_idle_seconds=float(os.getenv("AGENT_DISPATCH_RESULT_IDLE_SECONDS", "300")),
            ),
            suppression=SuppressionSettings(
                ttl_seconds=float(os.getenv("AGENT_DISPATCH_SUPPRESSION_TTL_SECONDS", "60")),
            ),
            failover=FailoverSettings(
                window_seconds=float(os.getenv("AGENT_DISPATCH_FAILOVER_WINDOW_SECONDS", "60")),
                signal_threshold=int(os.getenv("AGENT_DISPATCH_FAILOVER_SIGNAL_THRESHOLD", "3")),
                retry_after_threshold_seconds=float(
                    os.getenv("AGENT_DISPATCH_FAILOVER_RETRY_AFTER_THRESHOLD_SECONDS", "300"),
                ),
                max_hops=_env_optional_int("AGENT_DISPATCH_FAILOVER_MAX_HOPS"),
                excerpt_max_chars=int(
                    os.getenv("AGENT_DISPATCH_FAILOVER_EXCERPT_MAX_CHARS", "2000"),
                ),
                immediate_window_seconds=float(
                    os.getenv("AGENT_DISPATCH_FAILOVER_IMMEDIATE_WINDOW_SECONDS", "30"),
                ),
            ),
            health=HealthSettings(
                heartbeat_timeout_seconds=int(
                    os.getenv("AGENT_DISPATCH_HEARTBEAT_TIMEOUT_SECONDS", "120"),
                ),
                dispatch_heartbeat_window_seconds=int(
                    os.getenv("AGENT_DISPATCH_DISPATCH_HEARTBEAT_WINDOW_SECONDS", "60"),
                ),
                stale_task_timeout_seconds=int(
                    os.getenv("AGENT_DISPATCH_STALE_TASK_TIMEOUT_SECONDS", "600"),
                ),
                sweep_interval_seconds=float(
                    os.getenv("AGENT_DISPATCH_SWEEP_INTERVAL_SECONDS", "60"),
                ),
                alert_cooldown_seconds=float(
                    os.getenv("AGENT_DISPATCH_ALERT_COOLDOWN_SECONDS", "600"),
                ),
                alert_topic_id=os.getenv("AGENT_DISPATCH_ALERT_TOPIC_ID", ""),
                alerts_enabled=_env_bool("AGENT_DISPATCH_HEALTH_ALERTS_ENABLED", default=True),
            ),
            chat=ChatSettings(
                backend=os.getenv("AGENT_DISPATCH_CHAT_BACKEND", "console").strip().lower(),
                telegram_bot_token=os.getenv("AGENT_DISPATCH_TELEGRAM_BOT_TOKEN", ""),
                telegram_chat_id=os.getenv("AGENT_DISPATCH_TELEGRAM_CHAT_ID", ""),
                telegram_api_base_url=os.getenv(
                    "AGENT_DISPATCH_TELEGRAM_API_BASE_URL",
                    "https://api.telegram.org",
                ),
                request_timeout_seconds=float(
                    os.getenv("AGENT_DISPATCH_CHAT_REQUEST_TIMEOUT_SECONDS", "30"),
                ),
                telegram_poll_timeout_seconds=int(
                    os.getenv("AGENT_DISPATCH_TELEGRAM_POLL_TIMEOUT_SECONDS", "25"),
                ),
            ),
        )

    def validate(self) -> None:
        """Raise configuration error for inconsistent settings."""

        if not self.db_url.strip():
            raise ConfigError("AGENT_DISPATCH_DB_URL must not be empty.")
        if self.worker.max_concurrency <= 0:
            raise ConfigError("AGENT_DISPATCH_MAX_CONCURRENCY must be > 0.")
        if self.worker.poll_interval_seconds <= 0:
            raise ConfigError("AGENT_DISPATCH_POLL_INTERVAL_SECONDS must be > 0.")
        if self.worker.heartbeat_interval_seconds <= 0:
            raise ConfigError("AGENT_DISPATCH_HEARTBEAT_INTERVAL_SECONDS must be > 0.")
        if not self.worker.engine_priority:
            raise ConfigError("AGENT_DISPATCH_ENGINE_PRIORITY must list at least one engine.")
        for engine in self.worker.engine_priority:
            if engine not in SUPPORTED_ENGINES:
                raise ConfigError(
                    f"Unsupported engine in AGENT_DISPATCH_ENGINE_PRIORITY: {engine!r}. "
                    f"Supported: {', '.join(SUPPORTED_ENGINES)}",
                )
            if not self.engines.command_templates.get(engine, "").strip():
                raise ConfigError(f"AGENT_DISPATCH_{engine.upper()}_COMMAND must not be empty.")
        if self.session.max_message_chars <= 0:
            raise ConfigError("AGENT_DISPATCH_MAX_MESSAGE_CHARS must be > 0.")
        if self.session.flush_interval_seconds <= 0:
            raise ConfigError("AGENT_DISPATCH_FLUSH_INTERVAL_SECONDS must be > 0.")
        if self.session.result_idle_seconds <= 0:
            raise ConfigError("AGENT_DISPATCH_RESULT_IDLE_SECONDS must be > 0.")
        if self.suppression.ttl_seconds <= 0:
            raise ConfigError("AGENT_DISPATCH_SUPPRESSION_TTL_SECONDS must be > 0.")
        if self.failover.signal_threshold <= 0:
            raise ConfigError("AGENT_DISPATCH_FAILOVER_SIGNAL_THRESHOLD must be > 0.")
        if self.failover.excerpt_max_chars <= 0:
            raise ConfigError("AGENT_DISPATCH_FAILOVER_EXCERPT_MAX_CHARS must be > 0.")
        if self.health.heartbeat_timeout_seconds <= 0:
            raise ConfigError("AGENT_DISPATCH_HEARTBEAT_TIMEOUT_SECONDS must be > 0.")
        if self.health.stale_task_timeout_seconds <= 0:
            raise ConfigError("AGENT_DISPATCH_STALE_TASK_TIMEOUT_SECONDS must be > 0.")
        if self.chat.backend not in SUPPORTED_CHAT_BACKENDS:
            raise ConfigError(
                f"Unsupported AGENT_DISPATCH_CHAT_BACKEND: {self.chat.backend!r}. "
                f"Supported: {', '.join(SUPPORTED_CHAT_BACKENDS)}",
            )
        if self.chat.backend == "telegram" and not (
            self.chat.telegram_bot_token and self.chat.telegram_chat_id
        ):
            raise ConfigError(
                "AGENT_DISPATCH_TELEGRAM_BOT_TOKEN and AGENT_DISPATCH_TELEGRAM_CHAT_ID "
                "are required for the telegram chat backend.",
            )
        if self.chat.telegram_poll_timeout_seconds < 0:
            raise ConfigError("AGENT_DISPATCH_TELEGRAM_POLL_TIMEOUT_SECONDS must be >= 0.")


def machine_os() -> str:
    return f"{platform.system()} {platform.release()}".strip()


def _env_csv(name: str) -> tuple[str, ...]:
    raw = os.getenv(name, "")
    return tuple(part.strip() for part in raw.split(",") if part.strip())


def _env_optional_int(name: str) -> int | None:
    raw = os.getenv(name, "").strip()
    if not raw:
        return None
    try:
        return int(raw)
    except ValueError as error:
        raise ConfigError(f"Invalid integer value for {name}: {raw!r}") from error


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    normalized = value.strip().lower()
    if normalized in {"1", "true", "yes", "on"}:
        return True
    if normalized in {"0", "false", "no", "off"}:
        return False
    raise ConfigError(f"Invalid boolean value for {name}: {value!r}")
