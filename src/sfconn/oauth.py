"""OAuth user-agent (implicit) flow helpers.

The flow finishes by redirecting to ``redirect_uri#access_token=...&instance_url=...``;
whoever receives that redirect hands the fragment (or the full URL) to
:meth:`sfconn.session.SessionProvider.resolve`.
"""

from __future__ import annotations

import re
from typing import NamedTuple, Optional
from urllib.parse import parse_qs, urlencode

ACCESS_TOKEN = "access_token"
INSTANCE_URL = "instance_url"
DEFAULT_SCOPE = "api refresh_token"

_SCHEME_RE = re.compile(r"^https?://", re.IGNORECASE)


class RedirectToken(NamedTuple):
    access_token: str
    instance_host: Optional[str]


def strip_scheme(url: str) -> str:
    return _SCHEME_RE.sub("", url).rstrip("/")


def build_authorize_url(
    host: str,
    client_id: str,
    redirect_uri: str,
    *,
    scope: str = DEFAULT_SCOPE,
) -> str:
    """URL that starts the user-agent flow against ``host``."""
    params = urlencode(
        {
            "response_type": "token",
            "client_id": client_id,
            "redirect_uri": redirect_uri,
            "scope": scope,
        }
    )
    return f"https://{strip_scheme(host)}/services/oauth2/authorize?{params}"


def parse_redirect_fragment(value: Optional[str]) -> Optional[RedirectToken]:
    """Extract the token and instance host from a redirect URL or its fragment.

    Returns ``None`` when ``value`` carries no ``access_token`` parameter.
    """
    if not value or ACCESS_TOKEN not in value:
        return None

    fragment = value.split("#", 1)[1] if "#" in value else value
    params = parse_qs(fragment, keep_blank_values=True)

    tokens = params.get(ACCESS_TOKEN)
    if not tokens or not tokens[0]:
        return None

    instance = params.get(INSTANCE_URL, [""])[0]
    return RedirectToken(
        access_token=tokens[0],
        instance_host=strip_scheme(instance) if instance else None,
    )
