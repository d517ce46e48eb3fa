"""Configuration management for the fleet watchdog."""

from __future__ import annotations

import os
from pathlib import Path
from typing import Any, Literal, Optional

import yaml
from pydantic import BaseModel, Field, field_validator, model_validator

from fleet_guard.infra import InfraConfig
from fleet_guard.models import MonitoredTarget
from fleet_guard.policy import EscalationWindows
from fleet_guard.telegram import TELEGRAM_TIMEOUT_SECONDS, TelegramConfig


class ConfigError(ValueError):
    pass


class TargetConfig(BaseModel):
    """One monitored fleet member."""
    name: str = Field(..., min_length=1, description="Worker name, also used for the infra API")
    health_endpoint: str = Field(..., min_length=1, description="URL answering GET with a health JSON body")
    heartbeat_key: Optional[str] = Field(default=None, description="Heartbeat key (defaults to the name)")
    deployment_key: Optional[str] = Field(default=None, description="Deployment key (defaults to the name)")

    def to_target(self) -> MonitoredTarget:
        return MonitoredTarget(
            name=self.name,
            health_endpoint=self.health_endpoint,
            heartbeat_key=self.heartbeat_key or self.name,
            deployment_key=self.deployment_key or self.name,
        )


class TelegramSettings(BaseModel):
    bot_token: str = Field(default="", description="Telegram bot token")
    chat_id: str = Field(default="", description="Telegram chat to alert")


class InfraSettings(BaseModel):
    api_base_url: str = Field(default="https://api.cloudflare.com/client/v4", description="Control API base URL")
    account_id: str = Field(default="", description="Account owning the workers")
    api_token: str = Field(default="", description="Control API bearer token")
    timeout_seconds: float = Field(default=20.0, gt=0, description="Per-request timeout")


class StoreSettings(BaseModel):
    backend: Literal["file", "memory"] = Field(default="file", description="State backend")
    path: str = Field(default="state/fleet-guard.json", description="State file for the file backend")


class FleetGuardConfig(BaseModel):
    """Main configuration for the watchdog."""

    namespace: str = Field(default="fleet-guard", description="Prefix for every state table")
    log_level: str = Field(default="INFO", description="Logging level")
    targets: list[TargetConfig] = Field(default_factory=list, description="Monitored fleet")

    # Detection
    health_check_timeout_ms: int = Field(default=5000, gt=0, description="Per-probe timeout")
    heartbeat_threshold_ms: int = Field(default=600_000, gt=0, description="Heartbeat staleness threshold")

    # Remediation
    rollback_window_ms: int = Field(default=300_000, gt=0, description="Probe failures after a deploy roll back")
    heartbeat_rollback_window_ms: int = Field(default=3_600_000, gt=0, description="Dead workers after a deploy roll back")
    rollback_guard_ttl_ms: int = Field(default=3_600_000, gt=0, description="Rollback dedup per deployment version")
    restart_cooldown_ms: int = Field(default=300_000, gt=0, description="Minimum interval between restarts")

    # Alerting
    alert_cooldown_ms: int = Field(default=300_000, ge=0, description="Per (type, worker) alert cooldown")

    # Scheduling
    health_check_interval_seconds: int = Field(default=60, ge=1, description="Health probe cycle interval")
    heartbeat_check_interval_seconds: int = Field(default=60, ge=1, description="Dead man's switch interval")
    lease_ttl_seconds: int = Field(default=120, ge=1, description="Cycle lease lifetime")

    # HTTP surface
    admin_token: str = Field(default="", description="Bearer token for admin endpoints")
    ingest_token: str = Field(default="", description="Bearer token for heartbeat/deployment ingest")

    telegram: TelegramSettings = Field(default_factory=TelegramSettings)
    infra: InfraSettings = Field(default_factory=InfraSettings)
    store: StoreSettings = Field(default_factory=StoreSettings)

    @field_validator("targets")
    @classmethod
    def _unique_targets(cls, targets: list[TargetConfig]) -> list[TargetConfig]:
        seen: set[str] = set()
        for t in targets:
            if t.name in seen:
                raise ValueError(f"Duplicate target entry: {t.name}")
            seen.add(t.name)
        return targets

    @model_validator(mode="after")
    def _lease_outlives_one_step(self) -> "FleetGuardConfig":
        # The lease is renewed between remediations, so it must cover probing
        # plus one remediation (three control API calls and an alert).
        slowest_step = (
            self.health_check_timeout_ms / 1000.0 + 3 * self.infra.timeout_seconds + TELEGRAM_TIMEOUT_SECONDS
        )
        if self.lease_ttl_seconds < slowest_step:
            raise ValueError(
                f"lease_ttl_seconds={self.lease_ttl_seconds} is shorter than one cycle step ({slowest_step:g}s)"
            )
        return self

    def fleet(self) -> tuple[MonitoredTarget, ...]:
        return tuple(t.to_target() for t in self.targets)

    def windows(self) -> EscalationWindows:
        return EscalationWindows(
            probe_seconds=self.rollback_window_ms / 1000.0,
            heartbeat_seconds=self.heartbeat_rollback_window_ms / 1000.0,
        )

    def telegram_config(self) -> TelegramConfig:
        return TelegramConfig(bot_token=self.telegram.bot_token, chat_id=self.telegram.chat_id)

    def infra_config(self) -> InfraConfig:
        return InfraConfig(
            api_base_url=self.infra.api_base_url,
            account_id=self.infra.account_id,
            api_token=self.infra.api_token,
            timeout_seconds=self.infra.timeout_seconds,
        )


_INT_ENV = {
    "HEALTH_CHECK_TIMEOUT_MS": "health_check_timeout_ms",
    "HEARTBEAT_THRESHOLD_MS": "heartbeat_threshold_ms",
    "ROLLBACK_WINDOW_MS": "rollback_window_ms",
    "ALERT_COOLDOWN_MS": "alert_cooldown_ms",
}

_NESTED_ENV = {
    "TELEGRAM_BOT_TOKEN": ("telegram", "bot_token"),
    "TELEGRAM_CHAT_ID": ("telegram", "chat_id"),
    "INFRA_API_TOKEN": ("infra", "api_token"),
    "INFRA_ACCOUNT_ID": ("infra", "account_id"),
    "FLEET_GUARD_STATE_PATH": ("store", "path"),
}


def _apply_env_overrides(config_data: dict[str, Any], environ: dict[str, str]) -> None:
    for env_name, key in _INT_ENV.items():
        value = environ.get(env_name)
        if value is None or not value.strip():
            continue
        try:
            config_data[key] = int(value.strip())
        except ValueError as exc:
            raise ConfigError(f"{env_name} must be an integer, got {value!r}") from exc

    for env_name, key in (
        ("LOG_LEVEL", "log_level"),
        ("FLEET_GUARD_ADMIN_TOKEN", "admin_token"),
        ("FLEET_GUARD_INGEST_TOKEN", "ingest_token"),
    ):
        value = environ.get(env_name)
        if value:
            config_data[key] = value.strip()

    for env_name, (section, key) in _NESTED_ENV.items():
        value = environ.get(env_name)
        if not value:
            continue
        nested = config_data.get(section)
        if not isinstance(nested, dict):
            nested = {}
            config_data[section] = nested
        nested[key] = value.strip()


def load_config(config_path: Optional[str] = None, environ: Optional[dict[str, str]] = None) -> FleetGuardConfig:
    """Load configuration from a YAML file, then apply environment overrides."""
    env = dict(os.environ if environ is None else environ)
    if config_path is None:
        config_path = env.get("FLEET_GUARD_CONFIG", "config/fleet-guard.yaml")

    config_data: dict[str, Any] = {}
    path = Path(config_path)
    if path.exists():
        with open(path, "r", encoding="utf-8") as f:
            raw = yaml.safe_load(f) or {}
        if not isinstance(raw, dict):
            raise ConfigError("Config YAML must be a mapping")
        config_data = raw

    _apply_env_overrides(config_data, env)
    try:
        return FleetGuardConfig(**config_data)
    except ValueError as exc:
        raise ConfigError(str(exc)) from exc
