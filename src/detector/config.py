"""Configuration management for the IAM change detector.

This module provides a centralized configuration loader that:
1. Reads config/{environment}.yml when it exists
2. Overrides values from environment variables
3. Provides type-safe configuration objects

A missing YAML file is not an error: deployments that only set environment
variables get the model defaults. Whether a run has what it needs is checked
separately by the require_* helpers, so that entry points can log and exit
early instead of crashing.
"""

import json
import logging
import os
from pathlib import Path
from typing import Any, Dict, Optional
from urllib.parse import parse_qs, urlparse

import yaml
from pydantic import BaseModel, Field

from .exceptions import ConfigurationError


class StoreConfig(BaseModel):
    """Persistent store configuration."""
    connection_string: Optional[str] = None


class StoreSettings(BaseModel):
    """Parsed form of the store connection string."""
    region: str
    table_prefix: str = ""
    endpoint_url: Optional[str] = None
    profile: Optional[str] = None


class LogAnalyticsConfig(BaseModel):
    """Audit-log query configuration."""
    workspace_id: Optional[str] = None
    lookback_minutes: int = Field(default=30, gt=0)
    timeout_seconds: float = Field(default=60.0, gt=0)


class AzureConfig(BaseModel):
    """Azure identity and endpoint configuration."""
    tenant_id: Optional[str] = None
    client_id: Optional[str] = None
    client_secret: Optional[str] = None
    access_token: Optional[str] = None
    subscription_id: Optional[str] = None
    authority_host: str = "https://login.microsoftonline.com"
    arm_endpoint: str = "https://management.azure.com"
    log_analytics_endpoint: str = "https://api.loganalytics.io"
    role_assignments_api_version: str = "2022-04-01"


class EnrichmentConfig(BaseModel):
    """Context resolution and run concurrency settings."""
    max_concurrency: int = Field(default=8, gt=0)
    timeout_seconds: float = Field(default=10.0, gt=0)
    run_deadline_seconds: float = Field(default=240.0, gt=0)


class ScoringConfig(BaseModel):
    """Risk scoring settings."""
    business_timezone: str = "UTC"
    allow_time_fallback: bool = False


class BaselineConfig(BaseModel):
    """Baseline snapshot settings."""
    auto_approve_new: bool = True
    lock_ttl_seconds: int = Field(default=3600, gt=0)


class LoggingConfig(BaseModel):
    """Logging configuration."""
    level: str = "INFO"
    structured: bool = False


class Config(BaseModel):
    """Main configuration object."""
    environment: str = "dev"
    app_name: str = "iam-change-detector"
    store: StoreConfig = Field(default_factory=StoreConfig)
    log_analytics: LogAnalyticsConfig = Field(default_factory=LogAnalyticsConfig)
    azure: AzureConfig = Field(default_factory=AzureConfig)
    enrichment: EnrichmentConfig = Field(default_factory=EnrichmentConfig)
    scoring: ScoringConfig = Field(default_factory=ScoringConfig)
    baseline: BaselineConfig = Field(default_factory=BaselineConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)


def load_config(environment: Optional[str] = None, config_dir: Optional[str] = None) -> Config:
    """Load configuration from YAML files and environment variables.

    Args:
        environment: Environment name (dev/prod). If None, uses ENVIRONMENT env var.
        config_dir: Directory holding {env}.yml. Defaults to the repository config/ dir.

    Returns:
        Loaded configuration object.

    Raises:
        pydantic.ValidationError: If configuration values have the wrong shape.
    """
    env = environment or os.getenv("ENVIRONMENT", "dev")

    base = Path(config_dir) if config_dir else Path(__file__).parent.parent.parent / "config"
    config_file = base / f"{env}.yml"

    config_data: Dict[str, Any] = {}
    if config_file.exists():
        with open(config_file, "r", encoding="utf-8") as f:
            config_data = yaml.safe_load(f) or {}

    config_data.setdefault("environment", env)
    config_data = _apply_env_overrides(config_data)

    return Config(**config_data)


def _env_flag(value: str) -> bool:
    return value.strip().lower() in ("1", "true", "yes")


def _apply_env_overrides(config_data: Dict[str, Any]) -> Dict[str, Any]:
    """Apply environment variable overrides to configuration data."""
    # Store
    if os.getenv("STORE_CONNECTION_STRING"):
        config_data.setdefault("store", {})["connection_string"] = os.getenv("STORE_CONNECTION_STRING")

    # Log query
    if os.getenv("LOG_ANALYTICS_WORKSPACE_ID"):
        config_data.setdefault("log_analytics", {})["workspace_id"] = os.getenv("LOG_ANALYTICS_WORKSPACE_ID")
    lookback = os.getenv("LOOKBACK_MINUTES")
    if lookback:
        config_data.setdefault("log_analytics", {})["lookback_minutes"] = int(lookback)

    # Azure identity
    for env_name, key in (
        ("AZURE_TENANT_ID", "tenant_id"),
        ("AZURE_CLIENT_ID", "client_id"),
        ("AZURE_CLIENT_SECRET", "client_secret"),
        ("AZURE_ACCESS_TOKEN", "access_token"),
        ("AZURE_SUBSCRIPTION_ID", "subscription_id"),
    ):
        if os.getenv(env_name):
            config_data.setdefault("azure", {})[key] = os.getenv(env_name)

    # Enrichment
    max_concurrency = os.getenv("ENRICHMENT_MAX_CONCURRENCY")
    if max_concurrency:
        config_data.setdefault("enrichment", {})["max_concurrency"] = int(max_concurrency)
    enrichment_timeout = os.getenv("ENRICHMENT_TIMEOUT_SECONDS")
    if enrichment_timeout:
        config_data.setdefault("enrichment", {})["timeout_seconds"] = float(enrichment_timeout)

    # Scoring
    if os.getenv("BUSINESS_TIMEZONE"):
        config_data.setdefault("scoring", {})["business_timezone"] = os.getenv("BUSINESS_TIMEZONE")

    # Baseline policy
    auto_approve = os.getenv("BASELINE_AUTO_APPROVE")
    if auto_approve:
        config_data.setdefault("baseline", {})["auto_approve_new"] = _env_flag(auto_approve)

    # Logging
    if os.getenv("LOG_LEVEL"):
        config_data.setdefault("logging", {})["level"] = os.getenv("LOG_LEVEL")

    return config_data


def parse_store_connection(connection_string: str) -> StoreSettings:
    """Parse `dynamodb://<region>[/<table-prefix>][?endpoint_url=...&profile=...]`.

    Raises:
        ConfigurationError: If the scheme is not dynamodb or the region is missing.
    """
    parsed = urlparse(connection_string)
    if parsed.scheme != "dynamodb":
        raise ConfigurationError(f"Unsupported store scheme: {parsed.scheme or '<none>'}")
    if not parsed.netloc:
        raise ConfigurationError("Store connection string is missing the region")

    query = parse_qs(parsed.query)
    return StoreSettings(
        region=parsed.netloc,
        table_prefix=parsed.path.strip("/"),
        endpoint_url=query.get("endpoint_url", [None])[0],
        profile=query.get("profile", [None])[0],
    )


def require_pipeline_settings(config: Config) -> None:
    """Raise ConfigurationError unless a detection run can start."""
    if not config.store.connection_string:
        raise ConfigurationError("Store connection string not found (STORE_CONNECTION_STRING)")
    if not config.log_analytics.workspace_id:
        raise ConfigurationError("Log Analytics workspace id not found (LOG_ANALYTICS_WORKSPACE_ID)")
    parse_store_connection(config.store.connection_string)


def require_snapshot_settings(config: Config) -> None:
    """Raise ConfigurationError unless a baseline snapshot run can start."""
    if not config.store.connection_string:
        raise ConfigurationError("Store connection string not found (STORE_CONNECTION_STRING)")
    if not config.azure.subscription_id:
        raise ConfigurationError("Subscription id not found (AZURE_SUBSCRIPTION_ID)")
    parse_store_connection(config.store.connection_string)


class _JsonLineFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        payload = {
            "time": self.formatTime(record),
            "logger": record.name,
            "level": record.levelname,
            "message": record.getMessage(),
        }
        if record.exc_info:
            payload["exception"] = self.formatException(record.exc_info)
        return json.dumps(payload)


def setup_logging(logging_config: LoggingConfig) -> None:
    """Configure root logging for an entry point."""
    level = getattr(logging, logging_config.level.upper(), logging.INFO)
    if logging_config.structured:
        handler = logging.StreamHandler()
        handler.setFormatter(_JsonLineFormatter())
        logging.basicConfig(level=level, handlers=[handler], force=True)
    else:
        logging.basicConfig(
            level=level,
            format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
        )
