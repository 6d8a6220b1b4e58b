#!/usr/bin/env python3
"""
Configuration for cassia-client.

SessionOptions is the single structured input for building a Session.
Config holds what the command line tool needs (target, credentials, gateway)
and is loaded from a JSON file with environment variable overrides.
"""
import json
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from .logging_setup import get_logger

logger = get_logger(__name__)

# ── Protocol constants (fixed by the remote API) ─────────────

DEFAULT_CONNECT_TIMEOUT_MS = 60000     # forwarded to the gateway, not a client timeout
DEFAULT_ADDRESS_TYPE = "public"        # "public" | "random"
AC_API_SUFFIX = "/api"                 # AC serves its REST surface below /api


@dataclass
class SessionOptions:
    """Connection options for a Session."""

    address: str = ""
    headers: dict[str, str] = field(default_factory=dict)
    query: dict[str, Any] = field(default_factory=dict)
    # Gateways ship self-signed certificates, so validation is off unless asked for
    verify_ssl: bool = False
    timeout: float | None = None  # None: no client-side timeout


@dataclass
class CredentialsConfig:
    """Developer key/secret from the AC settings page."""

    developer: str = ""
    secret: str = ""
    auto_refresh: bool = True

    @property
    def configured(self) -> bool:
        return bool(self.developer and self.secret)


@dataclass
class Config:
    """Main cassia-client configuration."""

    address: str = ""
    mode: str = "gateway"  # "gateway" | "ac"
    gateway_mac: str = ""
    verify_ssl: bool = False

    credentials: CredentialsConfig = field(default_factory=CredentialsConfig)

    _raw: dict = field(default_factory=dict, repr=False)

    @classmethod
    def load(cls, path: str | Path | None = None) -> "Config":
        """
        Load configuration from file.

        Args:
            path: Path to config file. If None, uses the per-user default.

        Returns:
            Config instance with loaded values.
        """
        if path is None:
            path = cls._get_default_path()

        path = Path(path)

        if not path.exists():
            logger.warning("Config file not found: %s, using defaults", path)
            return cls._from_dict({})

        with open(path, encoding="utf-8") as f:
            data = json.load(f)

        logger.info("Loaded config from %s", path)
        return cls._from_dict(data)

    @staticmethod
    def _get_default_path() -> Path:
        """Get default config path, CASSIA_CONFIG wins over the per-user file."""
        env_path = os.getenv("CASSIA_CONFIG")
        if env_path:
            return Path(env_path)
        return Path.home() / ".config" / "cassia-client" / "config.json"

    @classmethod
    def _from_dict(cls, data: dict[str, Any]) -> "Config":
        """Create Config from dictionary (JSON data), env vars take precedence."""
        credentials = CredentialsConfig(
            developer=os.getenv("CASSIA_DEVELOPER", data.get("DEVELOPER", "")),
            secret=os.getenv("CASSIA_SECRET", data.get("SECRET", "")),
            auto_refresh=bool(data.get("AUTO_REFRESH", True)),
        )

        mode = os.getenv("CASSIA_MODE", data.get("MODE", "gateway")).lower()
        if mode not in ("gateway", "ac"):
            logger.warning("Unknown mode '%s', falling back to 'gateway'", mode)
            mode = "gateway"

        return cls(
            address=os.getenv("CASSIA_ADDRESS", data.get("ADDRESS", "")),
            mode=mode,
            gateway_mac=os.getenv("CASSIA_GATEWAY_MAC", data.get("GATEWAY_MAC", "")),
            verify_ssl=bool(data.get("VERIFY_SSL", False)),
            credentials=credentials,
            _raw=data,
        )

    def session_options(self) -> SessionOptions:
        """Build SessionOptions for the configured target."""
        return SessionOptions(address=self.address, verify_ssl=self.verify_ssl)

    def to_dict(self) -> dict[str, Any]:
        """Export config to dictionary for saving (minimal keys only)."""
        return {
            "ADDRESS": self.address,
            "MODE": self.mode,
            "GATEWAY_MAC": self.gateway_mac,
            "VERIFY_SSL": self.verify_ssl,
            "DEVELOPER": self.credentials.developer,
            "SECRET": self.credentials.secret,
            "AUTO_REFRESH": self.credentials.auto_refresh,
        }

    def save(self, path: str | Path) -> None:
        """Save config to file."""
        path = Path(path)
        path.parent.mkdir(parents=True, exist_ok=True)
        with open(path, "w", encoding="utf-8") as f:
            json.dump(self.to_dict(), f, indent=2, ensure_ascii=False)
        logger.info("Saved config to %s", path)
