"""Configuration loading and validation."""

import os
import json
import hashlib
from pathlib import Path
from typing import Any, Optional

import yaml
from pydantic import BaseModel, Field, field_validator

from .errors import ConfigError


class ExecutionLimitsConfig(BaseModel):
    """Volume caps for unattended execution."""
    max_auto_executions_per_hour: int = Field(default=10, ge=1, le=1000)
    max_auto_executions_per_day: int = Field(default=50, ge=1, le=10000)
    sweep_batch_size: int = Field(default=10, ge=1, le=100)
    approved_batch_size: int = Field(default=5, ge=0, le=100)
    max_execution_attempts: int = Field(default=3, ge=1, le=10)


class AutoExecutionConfig(BaseModel):
    """Opportunity thresholds an action must clear to run unattended."""
    min_confidence: float = Field(default=0.7, ge=0.0, le=1.0)
    min_revenue_impact: float = Field(default=0.10, ge=0.0)  # $/month


class CircuitBreakerConfig(BaseModel):
    """Circuit breaker configuration."""
    failure_threshold: int = Field(default=3, ge=1, le=100)
    window_seconds: int = Field(default=3600, ge=60)


class NotificationConfig(BaseModel):
    """Notification batching, routing and delivery settings."""
    standard_batch_max_size: int = Field(default=20, ge=1, le=500)
    standard_batch_max_age_seconds: int = Field(default=3600, ge=0)
    high_impact_threshold: float = Field(default=50.0, ge=0.0)  # $/month

    # Whose stored preferences gate delivery (None = only configured quiet hours apply)
    recipient_id: Optional[str] = Field(default=None)
    digest_recipients: list[str] = Field(default_factory=list)

    # Fallback quiet hours (local hour of day) when stored preferences leave them unset
    quiet_hours_start: Optional[int] = Field(default=None, ge=0, le=23)
    quiet_hours_end: Optional[int] = Field(default=None, ge=0, le=23)

    slack_webhook_url: Optional[str] = Field(default=None)
    sendgrid_api_key: Optional[str] = Field(default=None)
    email_from: str = Field(default="noreply@example.com")
    email_from_name: str = Field(default="Content Action Engine")
    dashboard_url: str = Field(default="http://localhost:8080")
    request_timeout_seconds: float = Field(default=10.0, ge=1.0, le=120.0)


class SchedulerConfig(BaseModel):
    """Periodic job intervals."""
    sweep_interval_seconds: int = Field(default=300, ge=10)
    flush_interval_seconds: int = Field(default=60, ge=5)
    digest_hour: int = Field(default=8, ge=0, le=23)
    weekly_report_weekday: int = Field(default=0, ge=0, le=6)  # Monday = 0


class ServerConfig(BaseModel):
    """Operator HTTP server."""
    host: str = Field(default="0.0.0.0")
    port: int = Field(default=8080, ge=1, le=65535)


class EngineConfig(BaseModel):
    """Main engine configuration."""
    name: str = Field(default="content-action-engine")
    version: str = Field(default="0.1.0")

    limits: ExecutionLimitsConfig = Field(default_factory=ExecutionLimitsConfig)
    auto_execution: AutoExecutionConfig = Field(default_factory=AutoExecutionConfig)
    circuit_breaker: CircuitBreakerConfig = Field(default_factory=CircuitBreakerConfig)
    notifications: NotificationConfig = Field(default_factory=NotificationConfig)
    scheduler: SchedulerConfig = Field(default_factory=SchedulerConfig)
    server: ServerConfig = Field(default_factory=ServerConfig)

    database_path: str = Field(default="./data/engine.db")

    @field_validator("database_path")
    @classmethod
    def _database_path_not_empty(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("database_path must not be empty")
        return value

    def config_hash(self) -> str:
        """Generate hash of config for change detection."""
        return hashlib.sha256(
            self.model_dump_json().encode()
        ).hexdigest()[:16]


# Environment variable -> (section, field)
ENV_OVERRIDES = {
    "SLACK_WEBHOOK_URL": ("notifications", "slack_webhook_url"),
    "SENDGRID_API_KEY": ("notifications", "sendgrid_api_key"),
    "EMAIL_FROM": ("notifications", "email_from"),
    "DATABASE_PATH": (None, "database_path"),
}


class ConfigLoader:
    """Loads and validates YAML/JSON configurations."""

    def __init__(self, config_dir: str = "./config"):
        self.config_dir = Path(config_dir)

    def load_engine_config(
        self,
        path: Optional[str] = None,
        environ: Optional[dict[str, str]] = None,
    ) -> EngineConfig:
        """
        Load main engine configuration.

        A missing default file yields defaults; an explicitly named file
        must exist. Secrets are taken from the environment when set.
        """
        if path is None:
            path = self.config_dir / "engine.yaml"
            data = self._load_file(path) if path.exists() else {}
        else:
            path = Path(path)
            data = self._load_file(path)

        data = self._apply_env_overrides(data, os.environ if environ is None else environ)

        try:
            return EngineConfig(**data)
        except Exception as e:
            raise ConfigError(f"Invalid engine config: {e}", config_path=str(path))

    def _apply_env_overrides(self, data: dict[str, Any], environ) -> dict[str, Any]:
        data = dict(data)
        for env_name, (section, field_name) in ENV_OVERRIDES.items():
            value = environ.get(env_name)
            if not value:
                continue
            if section is None:
                data[field_name] = value
            else:
                section_data = dict(data.get(section) or {})
                section_data[field_name] = value
                data[section] = section_data
        return data

    def _load_file(self, path: Path) -> dict[str, Any]:
        """Load YAML or JSON file."""
        if not path.exists():
            raise ConfigError(f"Config file not found: {path}", config_path=str(path))

        try:
            content = path.read_text()

            if path.suffix in (".yaml", ".yml"):
                return yaml.safe_load(content) or {}
            elif path.suffix == ".json":
                return json.loads(content)
            else:
                raise ConfigError(
                    f"Unsupported config format: {path.suffix}",
                    config_path=str(path)
                )
        except yaml.YAMLError as e:
            raise ConfigError(f"Invalid YAML: {e}", config_path=str(path))
        except json.JSONDecodeError as e:
            raise ConfigError(f"Invalid JSON: {e}", config_path=str(path))
