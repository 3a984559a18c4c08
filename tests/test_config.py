from __future__ import annotations

from pathlib import Path

import allure
import pytest

from agent_handoff.config import DistributionSettings, NotificationSettings, Settings

pytestmark = [
    allure.epic("Configuration"),
    allure.feature("Environment Settings"),
]


def test_from_env_defaults(monkeypatch: pytest.MonkeyPatch) -> None:
    for name in (
        "AGENT_HANDOFF_DB_PATH",
        "AGENT_HANDOFF_PULL_AGENTS",
        "AGENT_HANDOFF_HUB_AGENT_NAME",
        "AGENT_HANDOFF_LOG_LEVEL",
        "AGENT_HANDOFF_AUTO_DISPATCH",
        "AGENT_HANDOFF_NOTIFY_URL",
        "AGENT_HANDOFF_DISTRIBUTION_INTERVAL_SECONDS",
    ):
        monkeypatch.delenv(name, raising=False)

    settings = Settings.from_env()

    assert settings.db_path == Path(".agent_handoff.db")
    assert settings.distribution.interval_seconds == 10.0
    assert settings.distribution.pull_agents == ("opencode",)
    assert settings.distribution.hub_agent_name == "orchestrator"
    assert settings.distribution.auto_dispatch is True
    assert settings.notification.url is None
    settings.validate()


def test_from_env_reads_overrides(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    monkeypatch.setenv("AGENT_HANDOFF_DB_PATH", str(tmp_path / "env.db"))
    monkeypatch.setenv("AGENT_HANDOFF_PULL_AGENTS", " OpenCode , aider ,")
    monkeypatch.setenv("AGENT_HANDOFF_AUTO_DISPATCH", "off")
    monkeypatch.setenv("AGENT_HANDOFF_DISTRIBUTION_INTERVAL_SECONDS", "2.5")
    monkeypatch.setenv("AGENT_HANDOFF_HUB_AGENT_NAME", " Hub ")
    monkeypatch.setenv(
        "AGENT_HANDOFF_ISSUE_URL_TEMPLATE",
        "https://github.com/acme/app/issues/{number}",
    )

    settings = Settings.from_env()

    assert settings.db_path == tmp_path / "env.db"
    assert settings.distribution.pull_agents == ("opencode", "aider")
    assert settings.distribution.auto_dispatch is False
    assert settings.distribution.interval_seconds == 2.5
    assert settings.distribution.hub_agent_name == "hub"
    assert settings.distribution.issue_url(7) == "https://github.com/acme/app/issues/7"


def test_explicit_db_path_wins_over_env(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    monkeypatch.setenv("AGENT_HANDOFF_DB_PATH", str(tmp_path / "env.db"))

    settings = Settings.from_env(db_path=tmp_path / "cli.db")

    assert settings.db_path == tmp_path / "cli.db"


def test_invalid_boolean_is_rejected(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("AGENT_HANDOFF_AUTO_DISPATCH", "maybe")

    with pytest.raises(ValueError, match="Invalid boolean value for AGENT_HANDOFF_AUTO_DISPATCH"):
        Settings.from_env()


@pytest.mark.parametrize(
    ("settings", "message"),
    [
        (Settings(sqlite_busy_timeout_ms=0), "BUSY_TIMEOUT_MS"),
        (
            Settings(distribution=DistributionSettings(interval_seconds=0)),
            "DISTRIBUTION_INTERVAL_SECONDS",
        ),
        (Settings(distribution=DistributionSettings(hub_agent_name="")), "HUB_AGENT_NAME"),
        (Settings(log_level="LOUD"), "Unknown AGENT_HANDOFF_LOG_LEVEL"),
        (
            Settings(distribution=DistributionSettings(issue_url_template="https://x/issues")),
            "placeholder",
        ),
        (
            Settings(notification=NotificationSettings(url="ftp://hooks.example.com")),
            "Invalid AGENT_HANDOFF_NOTIFY_URL",
        ),
        (
            Settings(
                notification=NotificationSettings(
                    url="https://hooks.example.com",
                    max_retries=-1,
                ),
            ),
            "MAX_RETRIES",
        ),
    ],
)
def test_validate_rejects_unusable_values(settings: Settings, message: str) -> None:
    with pytest.raises(ValueError, match=message):
        settings.validate()


def test_issue_url_is_none_without_template() -> None:
    assert DistributionSettings().issue_url(42) is None
