"""Frozen dataclass configuration for SyncHub.

Every tunable lives in one immutable tree:
- SyncConfig: page size and deadlines for sync runs
- AuthConfig: refresh buffer and token endpoint timeout
- WebhookConfig: public URL, replay window, dedupe retention
- Rate-limit tiers consumed by the external throttler

Usage::

    config = SyncHubConfig.from_env()
    orchestrator = SyncOrchestrator(..., page_limit=config.sync.page_limit)
"""

import os
from dataclasses import dataclass, field
from enum import Enum
from types import MappingProxyType
from typing import Mapping, Optional


# ---------------------------------------------------------------------------
# Rate-limit tiers (declarative, enforced outside this service)
# ---------------------------------------------------------------------------

class RateLimitTier(str, Enum):
    FREE = "free"
    STARTER = "starter"
    PRO = "pro"
    ENTERPRISE = "enterprise"


@dataclass(frozen=True)
class RateLimit:
    requests: int
    window_seconds: int = 60


RATE_LIMIT_TIERS: Mapping[RateLimitTier, RateLimit] = MappingProxyType({
    RateLimitTier.FREE: RateLimit(requests=60),
    RateLimitTier.STARTER: RateLimit(requests=300),
    RateLimitTier.PRO: RateLimit(requests=1000),
    RateLimitTier.ENTERPRISE: RateLimit(requests=5000),
})


def rate_limit_for(tier: str) -> RateLimit:
    """Limit for a tier name. Unknown names fall back to starter."""
    try:
        return RATE_LIMIT_TIERS[RateLimitTier(tier)]
    except ValueError:
        return RATE_LIMIT_TIERS[RateLimitTier.STARTER]


# ---------------------------------------------------------------------------
# Nested config sections
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class SyncConfig:
    """Sync run limits."""

    page_limit: int = 100
    deadline_seconds: Optional[float] = None  # None = no deadline


@dataclass(frozen=True)
class AuthConfig:
    """Credential lifecycle settings."""

    refresh_buffer_seconds: int = 60
    token_timeout_seconds: float = 15.0


@dataclass(frozen=True)
class WebhookConfig:
    """Inbound webhook settings."""

    app_url: str = "http://localhost:8000"
    tolerance_seconds: Optional[int] = None  # None = no replay window
    dedupe_ttl_seconds: int = 7 * 24 * 3600


# ---------------------------------------------------------------------------
# Top-level config
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class SyncHubConfig:
    """Complete SyncHub configuration."""

    sync: SyncConfig = field(default_factory=SyncConfig)
    auth: AuthConfig = field(default_factory=AuthConfig)
    webhooks: WebhookConfig = field(default_factory=WebhookConfig)
    database_url: Optional[str] = None  # None = in-memory persistence
    log_level: str = "INFO"

    @classmethod
    def default(cls) -> "SyncHubConfig":
        """Create config with all defaults."""
        return cls()

    @classmethod
    def from_env(cls, prefix: str = "SYNCHUB_") -> "SyncHubConfig":
        """Create config from environment variables.

        Example: SYNCHUB_PAGE_LIMIT=250, APP_URL=https://app.example.com
        """
        sync_overrides = {}
        page_limit = os.getenv(f"{prefix}PAGE_LIMIT")
        if page_limit:
            sync_overrides["page_limit"] = int(page_limit)
        deadline = os.getenv(f"{prefix}SYNC_DEADLINE_SECONDS")
        if deadline:
            sync_overrides["deadline_seconds"] = float(deadline)

        auth_overrides = {}
        buffer = os.getenv(f"{prefix}REFRESH_BUFFER_SECONDS")
        if buffer:
            auth_overrides["refresh_buffer_seconds"] = int(buffer)

        webhook_overrides = {}
        app_url = os.getenv("APP_URL") or os.getenv(f"{prefix}APP_URL")
        if app_url:
            webhook_overrides["app_url"] = app_url
        tolerance = os.getenv(f"{prefix}WEBHOOK_TOLERANCE_SECONDS")
        if tolerance:
            webhook_overrides["tolerance_seconds"] = int(tolerance)

        return cls(
            sync=SyncConfig(**sync_overrides),
            auth=AuthConfig(**auth_overrides),
            webhooks=WebhookConfig(**webhook_overrides),
            database_url=os.getenv(f"{prefix}DATABASE_URL") or None,
            log_level=os.getenv(f"{prefix}LOG_LEVEL", "INFO"),
        )
