"""
Configuration management for Circles Coinflip.
Supports config.json with environment variable overrides.
All paths are resolved relative to the project root.
"""

import json
import os
from pathlib import Path
from typing import List, Optional

from dotenv import load_dotenv
from pydantic import BaseModel, Field

load_dotenv()

# Project root directory (parent of 'coinflip' folder)
PROJECT_ROOT = Path(__file__).parent.parent

DEFAULT_CIRCLES_RPC_URL = "https://rpc.aboutcircles.com/"
DEFAULT_HUB_ADDRESS = "0xc12C1E50ABB450d6205Ea2C3Fa861b3B834d13e8"


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


# ==================== Configuration Models ====================

class ServerConfig(BaseModel):
    host: str = "127.0.0.1"
    port: int = 8000
    debug: bool = True
    name: str = "Circles Coinflip"


class CirclesConfig(BaseModel):
    """Circles network endpoints and the org avatar that collects fees and pays winners."""
    rpc_url: str = DEFAULT_CIRCLES_RPC_URL
    chain_rpc_url: str = ""  # Falls back to rpc_url
    chain_id: int = 100  # Gnosis Chain
    hub_address: str = DEFAULT_HUB_ADDRESS
    org_avatar_address: str = ""
    org_private_key: str = ""
    payout_token_address: str = ""  # Pay this avatar's personal CRC directly instead of routing
    payment_link_base: str = "https://app.gnosis.io/transfer"
    transfer_data_event: str = "CrcV2_TransferData"
    request_timeout_seconds: float = 15.0
    receipt_timeout_seconds: int = 180

    def get_chain_rpc_url(self) -> str:
        return self.chain_rpc_url or self.rpc_url


class SoloConfig(BaseModel):
    """Solo coinflip economics and lifecycle tuning."""
    entry_fee_crc: str = "1"
    win_payout_crc: str = "2"
    preflight_enabled: bool = True
    list_limit: int = 40
    player_list_limit: int = 100
    event_scan_limit: int = 200
    history_page_size: int = 50
    history_max_pages: int = 5
    legacy_retry_markers: List[str] = Field(
        default_factory=lambda: [
            "direct transfer",
            "execution reverted for an unknown reason",
        ]
    )


class StorageConfig(BaseModel):
    backend: str = "sqlite"  # sqlite | file | supabase
    supabase_url: str = ""
    supabase_service_role_key: str = ""
    supabase_table: str = "solo_rounds"


class RateLimitConfig(BaseModel):
    enabled: bool = True
    create_requests: str = "10/minute"  # Round creation
    api_requests: str = "120/minute"  # Polling reads


class LoggingConfig(BaseModel):
    level: str = "INFO"
    log_to_file: bool = False
    formatter: str = "color"


class PathsConfig(BaseModel):
    """All paths are relative to PROJECT_ROOT."""
    config_file: str = "config.json"
    database: str = "data/solo.db"
    rounds_file: str = "data/solo-rounds.json"
    log_file: str = "data/app.log"

    def get_config_path(self) -> Path:
        return PROJECT_ROOT / self.config_file

    def get_db_path(self) -> Path:
        return PROJECT_ROOT / self.database

    def get_rounds_path(self) -> Path:
        return PROJECT_ROOT / self.rounds_file

    def get_log_path(self) -> Path:
        return PROJECT_ROOT / self.log_file


class AppConfig(BaseModel):
    """Main application configuration."""
    server: ServerConfig = Field(default_factory=ServerConfig)
    circles: CirclesConfig = Field(default_factory=CirclesConfig)
    solo: SoloConfig = Field(default_factory=SoloConfig)
    storage: StorageConfig = Field(default_factory=StorageConfig)
    rate_limit: RateLimitConfig = Field(default_factory=RateLimitConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)
    paths: PathsConfig = Field(default_factory=PathsConfig)


# ==================== Configuration Loading ====================

# (env var, section, key, kind)
ENV_OVERRIDES = [
    ("SERVER_HOST", "server", "host", "str"),
    ("SERVER_PORT", "server", "port", "int"),
    ("DEBUG", "server", "debug", "bool"),
    ("LOG_LEVEL", "logging", "level", "str"),
    ("LOG_TO_FILE", "logging", "log_to_file", "bool"),
    ("LOG_FORMATTER", "logging", "formatter", "str"),
    ("RATE_LIMIT_ENABLED", "rate_limit", "enabled", "bool"),
    ("RATE_LIMIT_CREATE_REQUESTS", "rate_limit", "create_requests", "str"),
    ("RATE_LIMIT_API_REQUESTS", "rate_limit", "api_requests", "str"),
    ("CIRCLES_RPC_URL", "circles", "rpc_url", "str"),
    ("CIRCLES_CHAIN_RPC_URL", "circles", "chain_rpc_url", "str"),
    ("CIRCLES_CHAIN_ID", "circles", "chain_id", "int"),
    ("CIRCLES_HUB_ADDRESS", "circles", "hub_address", "str"),
    ("CIRCLES_ORG_AVATAR_ADDRESS", "circles", "org_avatar_address", "str"),
    ("CIRCLES_ORG_PRIVATE_KEY", "circles", "org_private_key", "str"),
    ("CIRCLES_PAYOUT_TOKEN_ADDRESS", "circles", "payout_token_address", "str"),
    ("SOLO_ENTRY_FEE_CRC", "solo", "entry_fee_crc", "str"),
    ("SOLO_WIN_PAYOUT_CRC", "solo", "win_payout_crc", "str"),
    ("SOLO_PREFLIGHT_ENABLED", "solo", "preflight_enabled", "bool"),
    ("STORAGE_BACKEND", "storage", "backend", "str"),
    ("SUPABASE_URL", "storage", "supabase_url", "str"),
    ("SUPABASE_SERVICE_ROLE_KEY", "storage", "supabase_service_role_key", "str"),
    ("SUPABASE_ROUNDS_TABLE", "storage", "supabase_table", "str"),
    ("DB_PATH", "paths", "database", "str"),
    ("ROUNDS_FILE", "paths", "rounds_file", "str"),
]


def _apply_env_overrides(data: dict) -> dict:
    for env_key, section, key, kind in ENV_OVERRIDES:
        if not get_env(env_key):
            continue
        if kind == "int":
            value = get_env_int(env_key)
        elif kind == "bool":
            value = get_env_bool(env_key)
        else:
            value = get_env(env_key).strip()
        data.setdefault(section, {})[key] = value
    return data


def load_config(config_path: Optional[Path] = None) -> AppConfig:
    """
    Load configuration from config.json with environment variable overrides.
    Environment variables take precedence over config.json values.
    """
    config_path = config_path or PROJECT_ROOT / "config.json"

    data = {}
    if config_path.exists():
        with open(config_path, "r") as f:
            data = json.load(f)

    storage_named = bool(data.get("storage", {}).get("backend")) or bool(get_env("STORAGE_BACKEND"))
    data = _apply_env_overrides(data)

    # A configured Supabase project wins unless a backend was named explicitly
    storage = data.get("storage", {})
    if not storage_named and storage.get("supabase_url") and storage.get("supabase_service_role_key"):
        storage["backend"] = "supabase"

    return AppConfig(**data)


# Global config instance
settings = load_config()
