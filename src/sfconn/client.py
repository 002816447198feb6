from __future__ import annotations

import logging
import threading
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass
from typing import Any, Callable, Dict, Iterator, Mapping, Optional
from urllib.parse import quote

import requests

from .authority import authority_from_config
from .config import SFConfig, normalize_api_version
from .exceptions import MissingSessionError, SalesforceApiError, UnauthorizedError
from .session import Credential, SessionProvider, normalize_host
from .store import (
    IS_SANDBOX,
    ORG_INSTANCE,
    TRIAL_EXPIRATION_DATE,
    JsonFileStore,
    TokenStore,
    host_key,
)
from .transport import AbortHandle, ProtocolTransport, RequestSpec, SessionNotice
from .wsdl import wsdl as wsdl_for
from .xml_codec import UNSET

_logger = logging.getLogger(__name__)

ORG_INFO_SOQL = "SELECT IsSandbox, InstanceName, TrialExpirationDate FROM Organization"


@dataclass(frozen=True)
class OrgInfo:
    is_sandbox: Any
    instance_name: Any
    trial_expiration_date: Any


# ----------------------------------------------------------------------
# Main API client
# ----------------------------------------------------------------------
class ApiClient:
    """Salesforce REST + SOAP client bound to one host.

    Construct one per org and pass it to whatever needs it; there is no
    shared module-level connection.
    """

    def __init__(
        self,
        cfg: Optional[SFConfig] = None,
        *,
        store: Optional[TokenStore] = None,
        sessions: Optional[SessionProvider] = None,
        transport: Optional[ProtocolTransport] = None,
        http: Optional[requests.Session] = None,
        on_notice: Optional[Callable[[SessionNotice], None]] = None,
    ) -> None:
        self.cfg = cfg or SFConfig.from_env()
        self.http = http or requests.Session()
        if sessions is None:
            store = store if store is not None else JsonFileStore(self.cfg.store_path)
            sessions = SessionProvider(store, authority_from_config(self.cfg, self.http))
        self.sessions = sessions
        self.store = sessions.store
        self.transport = transport or ProtocolTransport(
            self.cfg, self.sessions, http=self.http, on_notice=on_notice
        )
        self.host: Optional[str] = normalize_host(self.cfg.instance_host)
        self.api_version: str = normalize_api_version(self.cfg.api_version)
        self._pool: Optional[ThreadPoolExecutor] = None
        self._pool_lock = threading.Lock()

    # --------------------------- Session ------------------------------

    def connect(
        self, host: Optional[str] = None, redirect_fragment: Optional[str] = None
    ) -> Optional[Credential]:
        """Resolve a session for ``host`` (default: the configured host).

        Returns ``None`` when no session exists; authenticated calls made
        afterwards raise :class:`MissingSessionError`.
        """
        target = normalize_host(host) or self.host or ""
        credential = self.sessions.resolve(target, redirect_fragment)
        if credential is None:
            _logger.info("No session available for %s", target or "<no host>")
            return None

        self.host = credential.host_scope
        if self.api_version == "latest":
            self.api_version = self.discover_api_version()
        if self.cfg.fetch_org_info:
            self._schedule_org_info()

        _logger.info("Connected to Salesforce instance=%s api=%s", self.host, self.api_version)
        return credential

    @property
    def credential(self) -> Optional[Credential]:
        session = self.sessions.current(self.host)
        return session.credential if session else None

    def logout(self) -> None:
        """Drop the session and its persisted token."""
        self.sessions.invalidate(self.host, forget=True)

    def add_notice_listener(self, listener: Callable[[SessionNotice], None]) -> None:
        self.transport.listeners.append(listener)

    # --------------------------- REST ---------------------------------

    def rest(
        self,
        path: str,
        *,
        method: str = "GET",
        body: Any = UNSET,
        api: str = "normal",
        body_type: str = "json",
        headers: Optional[Mapping[str, str]] = None,
        cache_bust: Optional[bool] = None,
        abort: Optional[AbortHandle] = None,
    ) -> Any:
        """Call any REST path on the session host."""
        spec = RequestSpec.rest(
            path,
            method=method,
            body=body,
            api=api,
            body_type=body_type,
            headers=dict(headers or {}),
            cache_bust=cache_bust,
        )
        return self._execute(spec, abort)

    def query(
        self,
        soql: str,
        *,
        use_tooling: bool = False,
        include_deleted: bool = False,
        abort: Optional[AbortHandle] = None,
    ) -> Dict[str, Any]:
        """Run a SOQL query (Tooling API, or queryAll to include deleted rows)."""
        if use_tooling:
            endpoint = "tooling/query/"
        elif include_deleted:
            endpoint = "queryAll/"
        else:
            endpoint = "query/"
        return self.rest(f"{self._data_path(endpoint)}?q={_encode(soql)}", abort=abort)

    def query_all_iter(self, soql: str, **kwargs: Any) -> Iterator[Dict[str, Any]]:
        """Yield records across pages via nextRecordsUrl."""
        res = self.query(soql, **kwargs)
        yield from res.get("records", [])
        next_url = res.get("nextRecordsUrl")
        while next_url:
            res = self.rest(next_url, abort=kwargs.get("abort"))
            yield from res.get("records", [])
            next_url = res.get("nextRecordsUrl")

    def search(self, sosl: str, *, abort: Optional[AbortHandle] = None) -> Any:
        return self.rest(f"{self._data_path('search/')}?q={_encode(sosl)}", abort=abort)

    def describe(self, object_name: str, *, abort: Optional[AbortHandle] = None) -> Dict[str, Any]:
        return self.rest(self._data_path(f"sobjects/{object_name}/describe/"), abort=abort)

    def list_objects(self, *, abort: Optional[AbortHandle] = None) -> Dict[str, Any]:
        """Global describe (``/sobjects/``)."""
        return self.rest(self._data_path("sobjects/"), abort=abort)

    def limits(self, *, abort: Optional[AbortHandle] = None) -> Dict[str, Any]:
        return self.rest(self._data_path("limits/"), abort=abort)

    def discover_api_version(self) -> str:
        """Find the latest API version the org serves."""
        versions = self.rest("/services/data/")
        best = max(versions, key=lambda v: float(v.get("version", "0")))
        _logger.debug("Latest API version discovered: %s", best.get("version"))
        return str(best["version"])

    # --------------------------- SOAP ---------------------------------

    def wsdl(self, service_name: Optional[str] = None):
        return wsdl_for(self.api_version, service_name)

    def invoke(
        self,
        service_name: str,
        method: str,
        args: Any = UNSET,
        *,
        headers: Optional[Mapping[str, Any]] = None,
        abort: Optional[AbortHandle] = None,
    ) -> Any:
        """Call ``method`` on a SOAP service (Enterprise, Partner, Apex, Metadata, Tooling)."""
        spec = RequestSpec.soap(self.wsdl(service_name), method, args, headers)
        return self._execute(spec, abort)

    # --------------------------- Org metadata -------------------------

    def org_info(self) -> Optional[OrgInfo]:
        """Cached sandbox / instance / trial info for the current host."""
        if not self.host or not self.store.contains(host_key(self.host, TRIAL_EXPIRATION_DATE)):
            return None
        return OrgInfo(
            is_sandbox=self.store.get(host_key(self.host, IS_SANDBOX)),
            instance_name=self.store.get(host_key(self.host, ORG_INSTANCE)),
            trial_expiration_date=self.store.get(host_key(self.host, TRIAL_EXPIRATION_DATE)),
        )

    def refresh_org_info(self) -> Optional[OrgInfo]:
        """Query the Organization row and cache it; failures are logged only."""
        host = self.host
        try:
            res = self.query(ORG_INFO_SOQL)
            org = res["records"][0]
        except (SalesforceApiError, MissingSessionError, KeyError, IndexError, TypeError) as e:
            _logger.warning("Could not fetch organization info for %s: %s", host, e)
            return None

        self.store.set(host_key(host, IS_SANDBOX), org.get("IsSandbox"))
        self.store.set(host_key(host, ORG_INSTANCE), org.get("InstanceName"))
        self.store.set(host_key(host, TRIAL_EXPIRATION_DATE), org.get("TrialExpirationDate"))
        return self.org_info()

    # --------------------------- Concurrency --------------------------

    def submit(self, fn: Callable[..., Any], *args: Any, **kwargs: Any) -> Future:
        """Run ``fn`` (typically a bound method of this client) on the client pool."""
        with self._pool_lock:
            if self._pool is None:
                self._pool = ThreadPoolExecutor(
                    max_workers=self.cfg.max_workers, thread_name_prefix="sfconn-call"
                )
            return self._pool.submit(fn, *args, **kwargs)

    def close(self) -> None:
        with self._pool_lock:
            if self._pool is not None:
                self._pool.shutdown(wait=False, cancel_futures=True)
                self._pool = None
        self.transport.close()

    def __enter__(self) -> ApiClient:
        return self

    def __exit__(self, *exc: Any) -> None:
        self.close()

    # --------------------------- Internal helpers --------------------

    def _data_path(self, suffix: str) -> str:
        return f"/services/data/v{self.api_version}/{suffix}"

    def _credential(self) -> Credential:
        credential = self.credential
        if credential is None:
            credential = self.connect()
        if credential is None:
            raise MissingSessionError(self.host)
        return credential

    def _execute(self, spec: RequestSpec, abort: Optional[AbortHandle]) -> Any:
        credential = self._credential()
        try:
            return self.transport.execute(spec, credential, abort=abort)
        except UnauthorizedError:
            self.sessions.invalidate(
                credential.host_scope, forget=self.cfg.forget_stale_tokens
            )
            raise

    def _schedule_org_info(self) -> None:
        if self.store.contains(host_key(self.host, TRIAL_EXPIRATION_DATE)):
            return
        self.submit(self.refresh_org_info)


def _encode(value: str) -> str:
    """Percent-encode like JavaScript's encodeURIComponent."""
    return quote(value, safe="!*'()")
