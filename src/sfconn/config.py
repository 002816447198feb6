from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

from .store import DEFAULT_STORE_FILE

DEFAULT_API_VERSION = "64.0"
DEFAULT_CLIENT_NAME = "sfconn"
DEFAULT_REDIRECT_URI = "http://localhost:8439/callback"


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    return raw.strip().lower() in {"1", "true", "yes", "on"}


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name, "").strip()
    return int(raw) if raw else default


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name, "").strip()
    return float(raw) if raw else default


def normalize_api_version(version: Optional[str]) -> str:
    """``"v60.0"`` -> ``"60.0"``; empty -> default; ``"latest"`` is kept as is."""
    if not version:
        return DEFAULT_API_VERSION
    version = version.strip()
    if version.lower().startswith("v"):
        version = version[1:]
    return version


# ----------------------------------------------------------------------
# Configuration dataclass
# ----------------------------------------------------------------------
@dataclass
class SFConfig:
    """Configuration for the Salesforce connection."""

    # Host the client talks to, e.g. "acme.my.salesforce.com"
    instance_host: Optional[str] = None

    # "64.0" style, or "latest" to discover on connect
    api_version: str = DEFAULT_API_VERSION

    # Sent as Sforce-Call-Options / CallOptions client name
    client_name: str = DEFAULT_CLIENT_NAME

    # External authority: "client_credentials" or "none"
    auth_flow: str = "client_credentials"
    login_url: str = "https://login.salesforce.com"
    client_id: Optional[str] = None
    client_secret: Optional[str] = None

    # Optional: pre-provided token / instance URL
    access_token: Optional[str] = None
    instance_url: Optional[str] = None

    redirect_uri: str = DEFAULT_REDIRECT_URI

    store_path: Path = field(default_factory=lambda: DEFAULT_STORE_FILE)

    timeout: float = 30.0
    retries: int = 2
    backoff: float = 0.8
    cache_bust: bool = True

    # Delete the persisted token when a request comes back 401
    forget_stale_tokens: bool = True

    # Cache sandbox / instance / trial info after connecting
    fetch_org_info: bool = True

    max_workers: int = 4

    @classmethod
    def from_env(cls) -> SFConfig:
        """Load configuration from environment variables."""
        instance_url = os.getenv("SF_INSTANCE_URL")
        store = os.getenv("SFCONN_STORE")
        return cls(
            instance_host=os.getenv("SF_INSTANCE_HOST") or instance_url,
            api_version=normalize_api_version(os.getenv("SF_API_VERSION")),
            client_name=os.getenv("SFCONN_CLIENT_NAME", DEFAULT_CLIENT_NAME),
            auth_flow=os.getenv("SF_AUTH_FLOW", "client_credentials"),
            login_url=os.getenv("SF_LOGIN_URL", "https://login.salesforce.com"),
            client_id=os.getenv("SF_CLIENT_ID"),
            client_secret=os.getenv("SF_CLIENT_SECRET"),
            access_token=os.getenv("SF_ACCESS_TOKEN"),
            instance_url=instance_url,
            redirect_uri=os.getenv("SF_REDIRECT_URI", DEFAULT_REDIRECT_URI),
            store_path=Path(store).expanduser() if store else DEFAULT_STORE_FILE,
            timeout=_env_float("SFCONN_TIMEOUT", 30.0),
            retries=_env_int("SFCONN_RETRIES", 2),
            backoff=_env_float("SFCONN_BACKOFF", 0.8),
            cache_bust=_env_bool("SFCONN_CACHE_BUST", True),
            forget_stale_tokens=_env_bool("SFCONN_FORGET_STALE_TOKENS", True),
            fetch_org_info=_env_bool("SFCONN_FETCH_ORG_INFO", True),
            max_workers=_env_int("SFCONN_MAX_WORKERS", 4),
        )
