"""Runtime configuration for the hand-off hub."""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from urllib.parse import urlparse


@dataclass(slots=True)
class DistributionSettings:
    """Distribution loop and dispatch settings."""

    interval_seconds: float = 10.0
    pull_agents: tuple[str, ...] = ("opencode",)
    hub_agent_name: str = "orchestrator"
    default_target_agent: str = "claude"
    auto_dispatch: bool = True
    issue_url_template: str | None = None

    def issue_url(self, issue_number: int) -> str | None:
        if not self.issue_url_template:
            return None
        return self.issue_url_template.format(number=issue_number)


@dataclass(slots=True)
class NotificationSettings:
    """Operator notification endpoint; log-only when ``url`` is unset."""

    url: str | None = None
    timeout_seconds: float = 10.0
    max_retries: int = 2


@dataclass(slots=True)
class Settings:
    """Application settings grouped by concern."""

    db_path: Path = Path(".agent_handoff.db")
    sqlite_busy_timeout_ms: int = 5_000
    log_level: str = "INFO"
    distribution: DistributionSettings = field(default_factory=DistributionSettings)
    notification: NotificationSettings = field(default_factory=NotificationSettings)

    @classmethod
    def from_env(cls, db_path: Path | None = None) -> Settings:
        """Load settings from environment with sane defaults for local development."""

        return cls(
            db_path=db_path or Path(os.getenv("AGENT_HANDOFF_DB_PATH", ".agent_handoff.db")),
            sqlite_busy_timeout_ms=int(os.getenv("AGENT_HANDOFF_SQLITE_BUSY_TIMEOUT_MS", "5000")),
            log_level=os.getenv("AGENT_HANDOFF_LOG_LEVEL", "INFO").strip().upper(),
            distribution=DistributionSettings(
                interval_seconds=float(
                    os.getenv("AGENT_HANDOFF_DISTRIBUTION_INTERVAL_SECONDS", "10"),
                ),
                pull_agents=_env_csv("AGENT_HANDOFF_PULL_AGENTS", default=("opencode",)),
                hub_agent_name=os.getenv("AGENT_HANDOFF_HUB_AGENT_NAME", "orchestrator")
                .strip()
                .lower(),
                default_target_agent=os.getenv("AGENT_HANDOFF_DEFAULT_TARGET_AGENT", "claude")
                .strip()
                .lower(),
                auto_dispatch=_env_bool("AGENT_HANDOFF_AUTO_DISPATCH", default=True),
                issue_url_template=os.getenv("AGENT_HANDOFF_ISSUE_URL_TEMPLATE") or None,
            ),
            notification=NotificationSettings(
                url=os.getenv("AGENT_HANDOFF_NOTIFY_URL") or None,
                timeout_seconds=float(os.getenv("AGENT_HANDOFF_NOTIFY_TIMEOUT_SECONDS", "10")),
                max_retries=int(os.getenv("AGENT_HANDOFF_NOTIFY_MAX_RETRIES", "2")),
            ),
        )

    def validate(self) -> None:
        """Raise configuration error on values the runtime cannot work with."""

        if self.sqlite_busy_timeout_ms <= 0:
            raise ValueError("AGENT_HANDOFF_SQLITE_BUSY_TIMEOUT_MS must be > 0.")
        if self.distribution.interval_seconds <= 0:
            raise ValueError("AGENT_HANDOFF_DISTRIBUTION_INTERVAL_SECONDS must be > 0.")
        if not self.distribution.hub_agent_name:
            raise ValueError("AGENT_HANDOFF_HUB_AGENT_NAME must not be empty.")
        if self.log_level not in logging.getLevelNamesMapping():
            raise ValueError(f"Unknown AGENT_HANDOFF_LOG_LEVEL: {self.log_level!r}")
        template = self.distribution.issue_url_template
        if template is not None and "{number}" not in template:
            raise ValueError(
                "AGENT_HANDOFF_ISSUE_URL_TEMPLATE must contain a '{number}' placeholder.",
            )
        if self.notification.url is not None:
            parsed = urlparse(self.notification.url)
            if parsed.scheme not in {"http", "https"} or not parsed.netloc:
                raise ValueError(
                    f"Invalid AGENT_HANDOFF_NOTIFY_URL: {self.notification.url!r}",
                )
        if self.notification.timeout_seconds <= 0:
            raise ValueError("AGENT_HANDOFF_NOTIFY_TIMEOUT_SECONDS must be > 0.")
        if self.notification.max_retries < 0:
            raise ValueError("AGENT_HANDOFF_NOTIFY_MAX_RETRIES must be >= 0.")


def _env_csv(name: str, *, default: tuple[str, ...]) -> tuple[str, ...]:
    raw = os.getenv(name)
    if raw is None:
        return default
    return tuple(part.strip().lower() for part in raw.split(",") if part.strip())


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    normalized = value.strip().lower()
    if normalized in {"1", "true", "yes", "on"}:
        return True
    if normalized in {"0", "false", "no", "off"}:
        return False
    raise ValueError(f"Invalid boolean value for {name}: {value!r}")
