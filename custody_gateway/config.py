"""Gateway configuration loaded from environment variables."""

from __future__ import annotations

import os
from dataclasses import dataclass, field

from dotenv import load_dotenv

load_dotenv()

KNOWN_ENVIRONMENTS = ("development", "test", "staging", "production")


def _str_env(key: str, default: str = "") -> str:
    return os.getenv(key, default).strip()


def _int_env(key: str, default: str) -> int:
    val = os.getenv(key, default)
    try:
        return int(val)
    except (ValueError, TypeError, OverflowError):
        raise ValueError(f"Invalid integer for {key}: {val!r}")


def _bool_env(key: str, default: str) -> bool:
    val = os.getenv(key, default).strip().lower()
    if val in ("1", "true", "yes", "on"):
        return True
    if val in ("0", "false", "no", "off"):
        return False
    raise ValueError(f"Invalid boolean for {key}: {val!r}")


def _env(reader, key: str, default: str = ""):  # type: ignore[no-untyped-def]
    return field(default_factory=lambda: reader(key, default))


@dataclass(frozen=True)
class Config:
    """Process-wide settings. Built once in ``main`` and passed by reference."""

    # Identity provider (Supabase Auth)
    supabase_url: str = _env(_str_env, "SUPABASE_URL")
    supabase_anon_key: str = _env(_str_env, "SUPABASE_ANON_KEY")

    # Wallet custody provider (Para)
    para_api_key: str = _env(_str_env, "PARA_API_KEY")
    para_base_url: str = _env(_str_env, "PARA_BASE_URL", "https://api.getpara.com")

    # Chain
    rpc_url: str = _env(_str_env, "SEPOLIA_RPC_URL")
    chain_id: int = _env(_int_env, "SEPOLIA_CHAIN_ID", "11155111")
    default_gas_limit: int = _env(_int_env, "DEFAULT_GAS_LIMIT", "21000")

    # API
    api_host: str = _env(_str_env, "API_HOST", "0.0.0.0")
    api_port: int = _env(_int_env, "PORT", "3000")
    app_env: str = _env(_str_env, "APP_ENV", "development")

    # Address book
    database_path: str = _env(_str_env, "DATABASE_PATH", "data/custody_gateway.db")

    # Timeouts (seconds)
    http_timeout: int = _env(_int_env, "HTTP_TIMEOUT", "30")

    # Wallet readiness polling
    wallet_poll_attempts: int = _env(_int_env, "WALLET_POLL_ATTEMPTS", "30")
    wallet_poll_interval_ms: int = _env(_int_env, "WALLET_POLL_INTERVAL_MS", "1000")
    wallet_watch_enabled: bool = _env(_bool_env, "WALLET_WATCH_ENABLED", "true")

    @property
    def is_production(self) -> bool:
        return self.app_env == "production"

    @property
    def wallet_poll_interval(self) -> float:
        """Polling interval in seconds."""
        return self.wallet_poll_interval_ms / 1000

    def validate(self) -> list[str]:
        """Validate config at startup. Raises ValueError on hard errors, returns warnings."""
        warnings: list[str] = []
        required = {
            "SUPABASE_URL": self.supabase_url,
            "SUPABASE_ANON_KEY": self.supabase_anon_key,
            "PARA_API_KEY": self.para_api_key,
            "PARA_BASE_URL": self.para_base_url,
            "SEPOLIA_RPC_URL": self.rpc_url,
        }
        for name, value in required.items():
            if not value:
                raise ValueError(f"Missing required environment variable: {name}")
        for name, url in (
            ("SUPABASE_URL", self.supabase_url),
            ("PARA_BASE_URL", self.para_base_url),
            ("SEPOLIA_RPC_URL", self.rpc_url),
        ):
            if not url.startswith(("http://", "https://")):
                raise ValueError(f"{name} must start with http:// or https://, got {url!r}")
            if self.is_production and url.startswith("http://"):
                warnings.append(f"{name} uses plain http in production")
        if self.chain_id < 1:
            raise ValueError(f"SEPOLIA_CHAIN_ID must be >= 1, got {self.chain_id}")
        if not (1 <= self.api_port <= 65535):
            raise ValueError(f"PORT must be 1-65535, got {self.api_port}")
        if self.default_gas_limit < 21000:
            raise ValueError(f"DEFAULT_GAS_LIMIT must be >= 21000, got {self.default_gas_limit}")
        if self.http_timeout < 1:
            raise ValueError(f"HTTP_TIMEOUT must be >= 1, got {self.http_timeout}")
        if self.wallet_poll_attempts < 1:
            raise ValueError(f"WALLET_POLL_ATTEMPTS must be >= 1, got {self.wallet_poll_attempts}")
        if self.wallet_poll_interval_ms < 0:
            raise ValueError(
                f"WALLET_POLL_INTERVAL_MS must be >= 0, got {self.wallet_poll_interval_ms}"
            )
        if not self.database_path:
            raise ValueError("DATABASE_PATH must not be empty")
        if self.app_env not in KNOWN_ENVIRONMENTS:
            warnings.append(
                f"APP_ENV={self.app_env!r} is not a recognized environment "
                f"({', '.join(KNOWN_ENVIRONMENTS)})"
            )
        return warnings
