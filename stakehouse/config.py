"""
Configuration management for Stakehouse.
Supports config.json with environment variable overrides.
All paths are resolved relative to the project root.
"""

import json
import os
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv
from pydantic import BaseModel, Field

load_dotenv()

# Project root directory (parent of 'stakehouse' folder)
PROJECT_ROOT = Path(__file__).parent.parent


def get_env(key: str, default: str = None) -> Optional[str]:
    """Get environment variable with optional default."""
    return os.environ.get(key, default)


def get_env_bool(key: str, default: bool = False) -> bool:
    """Get boolean environment variable."""
    val = os.environ.get(key)
    if val is None:
        return default
    return val.lower() in ("true", "1", "yes", "on")


def get_env_int(key: str, default: int = 0) -> int:
    """Get integer environment variable."""
    val = os.environ.get(key)
    if val is None:
        return default
    try:
        return int(val)
    except ValueError:
        return default


def get_env_float(key: str, default: float = 0.0) -> float:
    val = os.environ.get(key)
    if val is None:
        return default
    try:
        return float(val)
    except ValueError:
        return default


# ==================== Configuration Models ====================

class ServerConfig(BaseModel):
    host: str = "127.0.0.1"
    port: int = 8000
    debug: bool = True
    name: str = "Stakehouse"


class EconomyConfig(BaseModel):
    starting_balance: str = "1000.00"  # Kept as text so Decimal parsing is exact


class SettlementConfig(BaseModel):
    max_retries: int = 3  # Attempts on ConcurrencyConflict before surfacing
    timeout_seconds: float = 5.0
    busy_timeout_ms: int = 2000  # SQLite lock wait per statement


class BlackjackConfig(BaseModel):
    hand_timeout_seconds: int = 600  # Open hands older than this are stood
    sweep_interval_seconds: int = 60


class StatsConfig(BaseModel):
    refresh_seconds: int = 30
    leaderboard_size: int = 10


class RateLimitConfig(BaseModel):
    enabled: bool = True
    game_requests: str = "30/minute"  # For wagers and hand actions
    api_requests: str = "60/minute"   # For reads


class LoggingConfig(BaseModel):
    level: str = "INFO"
    log_to_file: bool = False
    formatter: str = "color"


class PathsConfig(BaseModel):
    """All paths are relative to PROJECT_ROOT."""
    config_file: str = "config.json"
    database: str = "data/stakehouse.db"
    log_file: str = "data/app.log"

    def get_config_path(self) -> Path:
        return PROJECT_ROOT / self.config_file

    def get_db_path(self) -> Path:
        path = Path(self.database)
        return path if path.is_absolute() else PROJECT_ROOT / path

    def get_log_path(self) -> Path:
        return PROJECT_ROOT / self.log_file


class AppConfig(BaseModel):
    """Main application configuration."""
    server: ServerConfig = Field(default_factory=ServerConfig)
    economy: EconomyConfig = Field(default_factory=EconomyConfig)
    settlement: SettlementConfig = Field(default_factory=SettlementConfig)
    blackjack: BlackjackConfig = Field(default_factory=BlackjackConfig)
    stats: StatsConfig = Field(default_factory=StatsConfig)
    rate_limit: RateLimitConfig = Field(default_factory=RateLimitConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)
    paths: PathsConfig = Field(default_factory=PathsConfig)


# ==================== Configuration Loading ====================

def load_config() -> AppConfig:
    """
    Load configuration from config.json with environment variable overrides.
    Environment variables take precedence over config.json values.
    """
    config_path = PathsConfig().get_config_path()

    data = {}

    if config_path.exists():
        with open(config_path, "r") as f:
            data = json.load(f)

    # Apply environment variable overrides
    if get_env("SERVER_HOST"):
        data.setdefault("server", {})["host"] = get_env("SERVER_HOST")
    if get_env("SERVER_PORT"):
        data.setdefault("server", {})["port"] = get_env_int("SERVER_PORT", 8000)
    if get_env("DEBUG"):
        data.setdefault("server", {})["debug"] = get_env_bool("DEBUG")

    if get_env("DB_PATH"):
        data.setdefault("paths", {})["database"] = get_env("DB_PATH")

    if get_env("STARTING_BALANCE"):
        data.setdefault("economy", {})["starting_balance"] = get_env("STARTING_BALANCE")

    if get_env("SETTLEMENT_MAX_RETRIES"):
        data.setdefault("settlement", {})["max_retries"] = get_env_int("SETTLEMENT_MAX_RETRIES", 3)
    if get_env("SETTLEMENT_TIMEOUT"):
        data.setdefault("settlement", {})["timeout_seconds"] = get_env_float("SETTLEMENT_TIMEOUT", 5.0)

    if get_env("LOG_LEVEL"):
        data.setdefault("logging", {})["level"] = get_env("LOG_LEVEL")
    if get_env("LOG_TO_FILE"):
        data.setdefault("logging", {})["log_to_file"] = get_env_bool("LOG_TO_FILE")
    if get_env("LOG_FORMATTER"):
        data.setdefault("logging", {})["formatter"] = get_env("LOG_FORMATTER")

    if get_env("RATE_LIMIT_ENABLED"):
        data.setdefault("rate_limit", {})["enabled"] = get_env_bool("RATE_LIMIT_ENABLED", True)
    if get_env("RATE_LIMIT_GAME_REQUESTS"):
        data.setdefault("rate_limit", {})["game_requests"] = get_env("RATE_LIMIT_GAME_REQUESTS")
    if get_env("RATE_LIMIT_API_REQUESTS"):
        data.setdefault("rate_limit", {})["api_requests"] = get_env("RATE_LIMIT_API_REQUESTS")

    return AppConfig(**data)


# Global config instance
settings = load_config()
