"""Test configuration loading and rate-limit tiers."""
from core.config import RateLimit, SyncHubConfig, rate_limit_for


def test_defaults():
    config = SyncHubConfig.default()
    assert config.sync.page_limit == 100
    assert config.sync.deadline_seconds is None
    assert config.webhooks.tolerance_seconds is None
    assert config.database_url is None


def test_from_env(monkeypatch):
    monkeypatch.setenv("SYNCHUB_PAGE_LIMIT", "250")
    monkeypatch.setenv("SYNCHUB_SYNC_DEADLINE_SECONDS", "90")
    monkeypatch.setenv("SYNCHUB_WEBHOOK_TOLERANCE_SECONDS", "300")
    monkeypatch.setenv("SYNCHUB_DATABASE_URL", "sqlite+aiosqlite:///synchub.db")
    monkeypatch.setenv("APP_URL", "https://app.example.com")

    config = SyncHubConfig.from_env()

    assert config.sync.page_limit == 250
    assert config.sync.deadline_seconds == 90.0
    assert config.webhooks.tolerance_seconds == 300
    assert config.webhooks.app_url == "https://app.example.com"
    assert config.database_url == "sqlite+aiosqlite:///synchub.db"


def test_rate_limit_tiers():
    assert rate_limit_for("pro") == RateLimit(requests=1000)
    assert rate_limit_for("enterprise").requests == 5000
    assert rate_limit_for("unknown") == rate_limit_for("starter")
