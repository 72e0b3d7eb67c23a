"""Configuration management for the PM2 health monitor."""

from __future__ import annotations

import json
import os
from pathlib import Path
from typing import Any, Optional

import yaml
from pydantic import BaseModel, Field


class HttpHealthCheckConfig(BaseModel):
    """HTTP liveness probing (replaces the process-metric heuristics when enabled)."""
    enabled: bool = Field(default=False, description="Probe HTTP health endpoints instead of PM2 metrics")
    path: str = Field(default="/health", description="Default health endpoint path")
    timeout_seconds: float = Field(default=5.0, gt=0, description="Probe timeout in seconds")
    default_port: int = Field(default=3000, ge=1, le=65535, description="Port used when none can be inferred")
    endpoints: dict[str, str] = Field(default_factory=dict, description="Per-app health URL overrides")
    slow_response_ratio: float = Field(default=0.8, gt=0, le=1, description="Fraction of timeout considered slow")


class AlertingConfig(BaseModel):
    """Alert destinations and pacing."""
    bot_token: str = Field(default="", description="Telegram bot token")
    user_ids: list[str] = Field(default_factory=list, description="Telegram user chat ids to alert")
    group_ids: list[str] = Field(default_factory=list, description="Telegram group chat ids to alert")
    cooldown_seconds: float = Field(default=300.0, ge=0, description="Minimum gap between health alerts per process")
    send_timeout_seconds: float = Field(default=15.0, gt=0, description="Telegram API request timeout")

    def destinations(self) -> list[str]:
        out: list[str] = []
        for raw in [*self.user_ids, *self.group_ids]:
            s = str(raw or "").strip()
            if s and s not in out:
                out.append(s)
        return out


class MonitorSettings(BaseModel):
    """Main configuration for the monitor."""

    # Basic threshold loop
    monitor_interval_seconds: float = Field(default=30.0, gt=0, description="Basic threshold check interval")
    cpu_threshold_percent: float = Field(default=80.0, ge=0, description="CPU alert threshold")
    memory_threshold_mb: float = Field(default=80.0, ge=0, description="Memory alert threshold in MB")

    # Deep health loop
    health_check_enabled: bool = Field(default=True, description="Run the deep health loop")
    health_check_interval_seconds: float = Field(default=60.0, gt=0, description="Deep health check interval")
    stuck_process_threshold_seconds: float = Field(default=300.0, ge=0, description="Uptime before stuck detection")
    cpu_stuck_threshold_percent: float = Field(default=0.1, ge=0, description="Mean CPU below this is stuck")
    memory_leak_threshold_mb: float = Field(default=500.0, ge=0, description="Memory above this is trend-checked")
    frequent_restart_delta: int = Field(default=3, ge=0, description="Restart delta per check above this is flagged")
    ping_timeout_seconds: float = Field(default=5.0, gt=0, description="PM2 liveness ping timeout")

    # Remediation
    restart_threshold: int = Field(default=5, ge=1, description="Auto-restarts before manual intervention")
    escalation_threshold: int = Field(default=3, ge=1, description="Consecutive unhealthy checks before restart")
    recovery_checks: int = Field(default=3, ge=1, description="Healthy checks that clear the restart counter")

    # Process manager
    pm2_binary: str = Field(default="pm2", description="PM2 executable")
    command_timeout_seconds: float = Field(default=30.0, gt=0, description="Timeout for PM2 commands")

    # Self protection
    self_process_name: Optional[str] = Field(default=None, description="PM2 name of this monitor")
    exclude_self_from_operations: bool = Field(default=True, description="Never restart/stop/start ourselves")

    http_health_check: HttpHealthCheckConfig = Field(default_factory=HttpHealthCheckConfig)
    alerting: AlertingConfig = Field(default_factory=AlertingConfig)


def _ms_to_seconds(raw: str) -> float:
    return float(str(raw).strip()) / 1000.0


def _env_bool(raw: str) -> bool:
    return str(raw).strip().lower() in {"1", "true", "yes", "y", "on"}


def _env_csv(raw: str) -> list[str]:
    return [part.strip() for part in str(raw).split(",") if part.strip()]


def _env_endpoints(raw: str) -> dict[str, str]:
    data = json.loads(raw)
    if not isinstance(data, dict):
        raise ValueError("HEALTH_CHECK_ENDPOINTS must be a JSON object of app name -> URL")
    return {str(k): str(v) for k, v in data.items()}


# env var -> (section or None, field, converter)
_ENV_OVERRIDES: list[tuple[str, str | None, str, Any]] = [
    ("MONITOR_INTERVAL", None, "monitor_interval_seconds", _ms_to_seconds),
    ("CPU_THRESHOLD", None, "cpu_threshold_percent", float),
    ("MEMORY_THRESHOLD", None, "memory_threshold_mb", float),
    ("RESTART_THRESHOLD", None, "restart_threshold", int),
    ("HEALTH_CHECK_ENABLED", None, "health_check_enabled", _env_bool),
    ("HEALTH_CHECK_INTERVAL", None, "health_check_interval_seconds", _ms_to_seconds),
    ("STUCK_PROCESS_THRESHOLD", None, "stuck_process_threshold_seconds", _ms_to_seconds),
    ("MEMORY_LEAK_THRESHOLD", None, "memory_leak_threshold_mb", float),
    ("CPU_STUCK_THRESHOLD", None, "cpu_stuck_threshold_percent", float),
    ("PM2_COMMAND_TIMEOUT", None, "command_timeout_seconds", _ms_to_seconds),
    ("PM2_PROCESS_NAME", None, "self_process_name", str),
    ("EXCLUDE_SELF_FROM_OPERATIONS", None, "exclude_self_from_operations", _env_bool),
    ("HTTP_HEALTH_CHECK_ENABLED", "http_health_check", "enabled", _env_bool),
    ("HEALTH_CHECK_PATH", "http_health_check", "path", str),
    ("HEALTH_CHECK_TIMEOUT", "http_health_check", "timeout_seconds", _ms_to_seconds),
    ("HEALTH_CHECK_PORT", "http_health_check", "default_port", int),
    ("HEALTH_CHECK_ENDPOINTS", "http_health_check", "endpoints", _env_endpoints),
    ("AUTHORIZED_USERS", "alerting", "user_ids", _env_csv),
    ("ALERT_GROUPS", "alerting", "group_ids", _env_csv),
    ("BOT_TOKEN", "alerting", "bot_token", str),
    ("TELEGRAM_BOT_TOKEN", "alerting", "bot_token", str),
]


def apply_env_overrides(config_data: dict[str, Any], environ: dict[str, str] | None = None) -> dict[str, Any]:
    env = os.environ if environ is None else environ
    for var, section, key, convert in _ENV_OVERRIDES:
        raw = env.get(var)
        if raw is None or not str(raw).strip():
            continue
        try:
            value = convert(raw)
        except (TypeError, ValueError) as e:
            raise ValueError(f"Invalid value for {var}: {raw!r} ({e})") from e
        if section is None:
            config_data[key] = value
        else:
            sub = config_data.get(section)
            if not isinstance(sub, dict):
                sub = {}
                config_data[section] = sub
            sub[key] = value
    return config_data


def load_config(config_path: str | Path | None = None, environ: dict[str, str] | None = None) -> MonitorSettings:
    """Load configuration from a YAML file (if present) and environment variables."""
    if config_path is None:
        config_path = os.getenv("PM2_MONITOR_CONFIG", "config.yaml")

    config_data: dict[str, Any] = {}
    path = Path(config_path)
    if path.exists():
        with open(path, "r", encoding="utf-8") as f:
            config_data = yaml.safe_load(f) or {}
        if not isinstance(config_data, dict):
            raise ValueError("Config YAML must be a mapping")

    return MonitorSettings(**apply_env_overrides(config_data, environ))
