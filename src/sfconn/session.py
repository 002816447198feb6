"""Session discovery for a Salesforce host.

Credentials are looked up by an ordered list of strategies, first hit wins:

1. an OAuth redirect fragment that carries ``access_token`` (a login that
   just completed, so it must beat anything cached),
2. a token persisted earlier for the host,
3. the external authority, if one is configured.
"""

from __future__ import annotations

import logging
import re
import threading
from concurrent.futures import Future
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Callable, Dict, List, Optional

from .oauth import RedirectToken, parse_redirect_fragment, strip_scheme
from .store import TokenStore, token_key

if TYPE_CHECKING:  # pragma: no cover
    from .authority import SessionAuthority

_logger = logging.getLogger(__name__)

_LIGHTNING_RE = re.compile(r"\.lightning\.force\.")
_MCAS_RE = re.compile(r"\.mcas\.ms$")


def normalize_host(host: Optional[str]) -> Optional[str]:
    """Canonical My Domain host for ``host``.

    Lightning hosts redirect to My Domain and the redirect drops the
    Authorization header, so requests go to My Domain directly. The Defender
    for Cloud Apps suffix (``.mcas.ms``) is removed.
    """
    if not host:
        return host
    host = strip_scheme(host.strip())
    host = _LIGHTNING_RE.sub(".my.salesforce.", host)
    return _MCAS_RE.sub("", host)


@dataclass(frozen=True)
class Credential:
    token: str = field(repr=False)
    host_scope: str
    source: str = "authority"


@dataclass(frozen=True)
class Session:
    credential: Credential
    bound_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def host(self) -> str:
        return self.credential.host_scope


Strategy = Callable[[str, Optional[RedirectToken]], Optional[Credential]]


class SessionProvider:
    """Resolves, caches in memory and invalidates credentials per host."""

    def __init__(
        self,
        store: TokenStore,
        authority: Optional["SessionAuthority"] = None,
    ) -> None:
        self.store = store
        self.authority = authority
        self.strategies: List[Strategy] = [
            self._from_redirect,
            self._from_store,
            self._from_authority,
        ]
        self._sessions: Dict[str, Session] = {}
        self._inflight: Dict[str, Future] = {}
        self._lock = threading.Lock()

    # --------------------------- Public methods -----------------------

    def resolve(self, host: str, redirect_fragment: Optional[str] = None) -> Optional[Credential]:
        """Return a credential for ``host`` or ``None`` if no session exists.

        Parallel first-time resolutions of the same host share one lookup.
        """
        host = normalize_host(host) or ""
        redirect = parse_redirect_fragment(redirect_fragment)
        if redirect is not None:
            return self._run(host, redirect)

        with self._lock:
            pending = self._inflight.get(host)
            owner = pending is None
            if owner:
                pending = Future()
                self._inflight[host] = pending

        if not owner:
            _logger.debug("Joining in-flight session lookup for %s", host)
            return pending.result()

        try:
            credential = self._run(host, None)
        except Exception as e:
            pending.set_exception(e)
            raise
        finally:
            with self._lock:
                self._inflight.pop(host, None)
        pending.set_result(credential)
        return credential

    def current(self, host: Optional[str]) -> Optional[Session]:
        """The in-memory session bound to ``host``, if any."""
        with self._lock:
            return self._sessions.get(normalize_host(host) or "")

    def has_persisted_token(self, host: Optional[str]) -> bool:
        if not host:
            return False
        return bool(self.store.get(token_key(normalize_host(host))))

    def invalidate(self, host: Optional[str], *, forget: bool = False) -> None:
        """Drop the in-memory session for ``host``.

        With ``forget=False`` a persisted token survives and the next
        :meth:`resolve` reuses it; ``forget=True`` deletes it as well.
        """
        host = normalize_host(host) or ""
        with self._lock:
            self._sessions.pop(host, None)
        if forget:
            self.store.delete(token_key(host))
        _logger.info("Session invalidated for %s (forget=%s)", host, forget)

    # --------------------------- Strategies ---------------------------

    def _run(self, host: str, redirect: Optional[RedirectToken]) -> Optional[Credential]:
        for strategy in self.strategies:
            credential = strategy(host, redirect)
            if credential is not None:
                self._bind(credential)
                _logger.debug(
                    "Session for %s from %s (token length %d)",
                    credential.host_scope,
                    credential.source,
                    len(credential.token),
                )
                return credential

        _logger.info("No session found for %s", host)
        with self._lock:
            self._sessions.pop(host, None)
        return None

    def _from_redirect(self, host: str, redirect: Optional[RedirectToken]) -> Optional[Credential]:
        if redirect is None:
            return None
        token_host = normalize_host(redirect.instance_host) or host
        self.store.set(token_key(token_host), redirect.access_token)
        _logger.info("OAuth redirect completed for %s; token stored", token_host)
        return Credential(redirect.access_token, token_host, source="redirect")

    def _from_store(self, host: str, redirect: Optional[RedirectToken]) -> Optional[Credential]:
        token = self.store.get(token_key(host))
        if not token:
            return None
        return Credential(token, host, source="store")

    def _from_authority(self, host: str, redirect: Optional[RedirectToken]) -> Optional[Credential]:
        if self.authority is None:
            return None
        message = self.authority.lookup(host)
        if not message or not message.get("key"):
            return None
        return Credential(
            message["key"],
            normalize_host(message.get("hostname")) or host,
            source="authority",
        )

    def _bind(self, credential: Credential) -> None:
        with self._lock:
            self._sessions[credential.host_scope] = Session(credential)
