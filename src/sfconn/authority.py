"""External authorities: the last resort when no token is known for a host.

An authority answers ``lookup(host)`` with ``{"hostname": ..., "key": ...}``
or ``None``. ``None`` is not an error; it just means no session exists.
"""

from __future__ import annotations

import logging
from typing import Dict, Mapping, Optional, Protocol

import requests

from .config import SFConfig
from .exceptions import MissingCredentialsError, NetworkError, ProtocolError
from .oauth import strip_scheme
from .session import normalize_host

_logger = logging.getLogger(__name__)


class SessionAuthority(Protocol):
    def lookup(self, host: str) -> Optional[Mapping[str, str]]: ...


class EnvAuthority:
    """Hands out a pre-provided token (``SF_ACCESS_TOKEN`` / ``SF_INSTANCE_URL``)."""

    def __init__(self, access_token: str, instance_url: Optional[str] = None) -> None:
        self.access_token = access_token
        self.instance_host = normalize_host(instance_url) if instance_url else None

    def lookup(self, host: str) -> Optional[Dict[str, str]]:
        if self.instance_host and host and normalize_host(host) != self.instance_host:
            _logger.debug("Configured token belongs to %s, not %s", self.instance_host, host)
            return None
        return {"hostname": self.instance_host or host, "key": self.access_token}


class ClientCredentialsAuthority:
    """OAuth2 client-credentials flow against ``SF_LOGIN_URL``."""

    def __init__(self, cfg: SFConfig, http: Optional[requests.Session] = None) -> None:
        self.cfg = cfg
        self.http = http or requests.Session()

    def lookup(self, host: str) -> Optional[Dict[str, str]]:
        missing = [
            k
            for k, v in {
                "SF_CLIENT_ID": self.cfg.client_id,
                "SF_CLIENT_SECRET": self.cfg.client_secret,
                "SF_LOGIN_URL": self.cfg.login_url,
            }.items()
            if not v
        ]
        if missing:
            raise MissingCredentialsError(missing)

        token_url = f"{self.cfg.login_url.rstrip('/')}/services/oauth2/token"
        data = {
            "grant_type": "client_credentials",
            "client_id": self.cfg.client_id,
            "client_secret": self.cfg.client_secret,
        }

        _logger.debug("Requesting access token from %s", token_url)
        try:
            r = self.http.post(token_url, data=data, timeout=self.cfg.timeout)
        except requests.RequestException as e:
            raise NetworkError(f"Token request failed: {e}") from e

        if r.status_code >= 500:
            raise ProtocolError(
                f"Token request failed ({r.status_code}): {r.text}",
                status=r.status_code,
                raw=r.text,
            )
        if r.status_code >= 400:
            _logger.warning("Token request rejected (%s): %s", r.status_code, r.text)
            return None

        payload = r.json()
        instance = strip_scheme(payload.get("instance_url") or host)
        return {"hostname": instance, "key": payload["access_token"]}


def authority_from_config(
    cfg: SFConfig, http: Optional[requests.Session] = None
) -> Optional[SessionAuthority]:
    """Pick the authority implied by the configuration, if any."""
    if cfg.access_token:
        return EnvAuthority(cfg.access_token, cfg.instance_url or cfg.instance_host)
    if cfg.auth_flow == "client_credentials" and (cfg.client_id or cfg.client_secret):
        return ClientCredentialsAuthority(cfg, http)
    if cfg.auth_flow not in ("client_credentials", "none"):
        raise RuntimeError(f"Unsupported SF_AUTH_FLOW: {cfg.auth_flow!r}")
    return None
