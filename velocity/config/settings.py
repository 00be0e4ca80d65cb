"""
Configuration management with Pydantic validation.

Loads settings from YAML config file and environment variables.
"""

from __future__ import annotations

import os
from pathlib import Path
from typing import Literal

import yaml
from pydantic import BaseModel, Field, field_validator
from pydantic_settings import BaseSettings

SOL_MINT = "So11111111111111111111111111111111111111112"


class RpcConfig(BaseModel):
    """Solana JSON-RPC endpoints and confirmation polling."""

    primary_url: str = Field(
        default="https://api.mainnet-beta.solana.com", validation_alias="RPC_ENDPOINT"
    )
    backup_url: str = Field(default="", validation_alias="RPC_ENDPOINT_BACKUP")
    request_timeout_sec: float = Field(default=10.0, ge=1.0, le=60.0)
    failover_retry_sec: float = Field(default=30.0, ge=1.0, le=600.0)
    confirm_timeout_sec: float = Field(default=60.0, gt=0.0, le=300.0)
    confirm_poll_sec: float = Field(default=1.0, gt=0.0, le=10.0)
    confirm_error_poll_sec: float = Field(default=2.0, gt=0.0, le=30.0)

    @field_validator("backup_url")
    @classmethod
    def validate_backup_url(cls, v: str, info) -> str:
        primary = info.data.get("primary_url", "")
        if v and v == primary:
            raise ValueError("backup_url must differ from primary_url")
        return v

    model_config = {
        "populate_by_name": True,
    }


class JupiterConfig(BaseModel):
    """Jupiter aggregator API configuration."""

    quote_api_base: str = "https://quote-api.jup.ag/v6"
    price_api_base: str = "https://price.jup.ag/v6"
    quote_mint: str = SOL_MINT
    platform_fee_bps: int = Field(default=30, ge=0, le=500)
    integrator_fee_bps: int = Field(default=50, ge=0, le=500)
    fee_account: str = ""
    price_cache_ttl_sec: float = Field(default=2.0, ge=0.0, le=300.0)
    request_timeout_sec: float = Field(default=10.0, ge=1.0, le=60.0)

    @property
    def total_fee_bps(self) -> int:
        return self.platform_fee_bps + self.integrator_fee_bps


class StrategyConfig(BaseModel):
    """Strategy lifecycle limits and trigger loop cadence."""

    max_active_per_user: int = Field(default=10, ge=1, le=100)
    max_slippage_bps: int = Field(default=1000, ge=1, le=5000)
    max_symbol_length: int = Field(default=20, ge=1, le=64)
    trigger_interval_sec: int = Field(default=60, ge=5, le=3600)


class StorageConfig(BaseModel):
    """Storage paths configuration."""

    db_path: str = "./data/velocity.db"
    logs_path: str = "./logs"


class MonitoringConfig(BaseModel):
    """Monitoring and logging configuration."""

    metrics_port: int = Field(default=9090, ge=1024, le=65535)
    api_port: int = Field(default=8000, ge=1024, le=65535)
    api_host: str = "127.0.0.1"
    api_rate_limit_per_minute: int = Field(default=10, ge=1, le=1000)
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = "INFO"
    log_http: bool = False
    error_log_max_bytes: int = Field(default=5_000_000, ge=100_000, le=50_000_000)
    error_log_backup_count: int = Field(default=3, ge=1, le=20)


class Settings(BaseSettings):
    """Main application settings."""

    environment: Literal["devnet", "mainnet"] = "mainnet"

    # Secrets from environment
    jupiter_api_key: str = Field(default="", alias="JUPITER_API_KEY")

    # Sub-configurations
    rpc: RpcConfig = Field(default_factory=RpcConfig)
    jupiter: JupiterConfig = Field(default_factory=JupiterConfig)
    strategy: StrategyConfig = Field(default_factory=StrategyConfig)
    storage: StorageConfig = Field(default_factory=StorageConfig)
    monitoring: MonitoringConfig = Field(default_factory=MonitoringConfig)

    model_config = {
        "env_file": ".env",
        "env_file_encoding": "utf-8",
        "extra": "ignore",
        "env_nested_delimiter": "__",
        "populate_by_name": True,
    }

    @property
    def has_backup_rpc(self) -> bool:
        return bool(self.rpc.backup_url)

    def validate_for_runtime(self) -> list[str]:
        """Validate settings are usable for a running service. Returns list of errors."""
        errors = []

        if not self.rpc.primary_url:
            errors.append("RPC_ENDPOINT not set")
        if self.rpc.confirm_poll_sec >= self.rpc.confirm_timeout_sec:
            errors.append("confirm_poll_sec must be shorter than confirm_timeout_sec")
        if self.environment == "mainnet" and not self.jupiter_api_key:
            errors.append("JUPITER_API_KEY not set")

        return errors


def load_settings(config_path: str | Path | None = None) -> Settings:
    """
    Load settings from YAML config file and environment variables.

    Priority (highest to lowest):
    1. Environment variables
    2. Config file values
    3. Default values
    """
    config_data = {}

    if config_path is None:
        config_path = os.environ.get("CONFIG_PATH", "config.yaml")

    config_file = Path(config_path)
    if config_file.exists():
        with open(config_file) as f:
            config_data = yaml.safe_load(f) or {}

    rpc_overrides = {}
    env_primary = os.environ.get("RPC_ENDPOINT")
    env_backup = os.environ.get("RPC_ENDPOINT_BACKUP")
    if env_primary:
        rpc_overrides["primary_url"] = env_primary
    if env_backup is not None:
        rpc_overrides["backup_url"] = env_backup
    if rpc_overrides:
        config_data.setdefault("rpc", {}).update(rpc_overrides)

    env_path = config_file.parent / ".env"
    settings = Settings(**config_data, _env_file=env_path)

    return settings


def create_default_config(path: str | Path = "config.yaml") -> None:
    """Create a default configuration file."""
    default_config = {
        "environment": "mainnet",
        "rpc": {
            "primary_url": "https://api.mainnet-beta.solana.com",
            "backup_url": "",
            "request_timeout_sec": 10.0,
            "failover_retry_sec": 30.0,
            "confirm_timeout_sec": 60.0,
            "confirm_poll_sec": 1.0,
            "confirm_error_poll_sec": 2.0,
        },
        "jupiter": {
            "quote_api_base": "https://quote-api.jup.ag/v6",
            "price_api_base": "https://price.jup.ag/v6",
            "quote_mint": SOL_MINT,
            "platform_fee_bps": 30,
            "integrator_fee_bps": 50,
            "fee_account": "",
            "price_cache_ttl_sec": 2.0,
        },
        "strategy": {
            "max_active_per_user": 10,
            "max_slippage_bps": 1000,
            "max_symbol_length": 20,
            "trigger_interval_sec": 60,
        },
        "storage": {
            "db_path": "./data/velocity.db",
            "logs_path": "./logs",
        },
        "monitoring": {
            "metrics_port": 9090,
            "api_port": 8000,
            "api_host": "127.0.0.1",
            "api_rate_limit_per_minute": 10,
            "log_level": "INFO",
            "log_http": False,
            "error_log_max_bytes": 5000000,
            "error_log_backup_count": 3,
        },
    }

    with open(path, "w") as f:
        yaml.dump(default_config, f, default_flow_style=False, sort_keys=False)
