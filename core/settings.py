"""
Reconciliation settings using pydantic-settings v2 with nested env keys.

All keys live under the ``RECONCILIATION__`` prefix, e.g.
``RECONCILIATION__SECRETS__SIGNING_SECRET`` or
``RECONCILIATION__POLLING__MAX_ATTEMPTS``. Kept apart from core.config.Settings
so the app settings stay importable without gateway secrets.
"""
from __future__ import annotations

from functools import lru_cache
from typing import Literal, Optional

from pydantic import BaseModel, Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from domain.event.store import MIN_RETENTION_HOURS
from domain.transaction.ledger import ObservationPolicy


# upstream key prefixes per environment
_ENV_PREFIXES = {"test": "test_", "live": "prod_"}


class SecretSettings(BaseModel):
    signing_secret: str = Field(min_length=1)
    verification_secret: str = Field(min_length=1)

    @model_validator(mode="after")
    def _secrets_differ(self):
        if self.signing_secret == self.verification_secret:
            raise ValueError("signing_secret and verification_secret must differ")
        return self


class GatewayTimeouts(BaseModel):
    connect: float = 2.0
    read: float = 5.0
    write: float = 5.0
    total: float = 10.0
    creation: float = 10.0
    status_query: float = 5.0


class CreationRetrySettings(BaseModel):
    max_retries: int = Field(default=3, ge=0)
    base_delay: float = Field(default=0.5, ge=0)
    jitter: float = Field(default=0.25, ge=0)
    max_delay: float = Field(default=8.0, gt=0)


class PollingSettings(BaseModel):
    grace_period: float = Field(default=10.0, ge=0)
    initial_delay: float = Field(default=2.0, gt=0)
    max_delay: float = Field(default=30.0, gt=0)
    max_attempts: int = Field(default=20, ge=1)


class DedupSettings(BaseModel):
    backend: Literal["memory", "redis", "sqlalchemy"] = "sqlalchemy"
    retention_hours: int = Field(default=MIN_RETENTION_HOURS, ge=MIN_RETENTION_HOURS)


class GatewaySettings(BaseModel):
    base_url: str = "https://sandbox.gateway.example/v1"
    public_key: Optional[str] = None
    private_key: Optional[str] = None


class ReconciliationSettings(BaseSettings):
    environment: Literal["test", "live"] = "test"
    policy: ObservationPolicy = ObservationPolicy.FIRST_WINS
    ledger_backend: Literal["memory", "sqlalchemy"] = "sqlalchemy"
    secrets: SecretSettings
    timeouts: GatewayTimeouts = Field(default_factory=GatewayTimeouts)
    retry: CreationRetrySettings = Field(default_factory=CreationRetrySettings)
    polling: PollingSettings = Field(default_factory=PollingSettings)
    dedup: DedupSettings = Field(default_factory=DedupSettings)
    gateway: GatewaySettings = Field(default_factory=GatewaySettings)

    model_config = SettingsConfigDict(
        env_prefix="RECONCILIATION__",
        env_file=".env",
        case_sensitive=False,
        extra="ignore",
        env_nested_delimiter="__",
    )

    @model_validator(mode="after")
    def _secrets_match_environment(self):
        wrong_prefix = _ENV_PREFIXES["live" if self.environment == "test" else "test"]
        for name in ("signing_secret", "verification_secret"):
            value = getattr(self.secrets, name)
            if value.startswith(wrong_prefix):
                raise ValueError(f"{name} looks like a {wrong_prefix!r} key but environment is {self.environment!r}")
        return self


@lru_cache
def get_reconciliation_settings() -> ReconciliationSettings:
    return ReconciliationSettings()
