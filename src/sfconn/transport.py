"""HTTP exchanges for the REST (JSON) and SOAP (XML) protocol families.

Every call turns into exactly one of: a parsed result, or a
:class:`~sfconn.exceptions.SalesforceApiError` subclass.
"""

from __future__ import annotations

import json
import logging
import random
import threading
import time
import xml.etree.ElementTree as ET
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, List, Mapping, Optional, Tuple
from urllib.parse import urljoin

import requests

from . import xml_codec
from .config import SFConfig
from .exceptions import (
    AbortedError,
    ErrorDetail,
    ForbiddenError,
    MissingSessionError,
    NetworkError,
    ProtocolError,
    UnauthorizedError,
)
from .session import Credential, SessionProvider
from .wsdl import WsdlDescriptor
from .xml_codec import UNSET

_logger = logging.getLogger(__name__)

RETRY_STATUSES = (429, 502, 503, 504)

ABORTED_MESSAGE = "The request was aborted."
NETWORK_MESSAGE = "Network error, offline or timeout"

JSON_CONTENT_TYPE = "application/json; charset=UTF-8"

SOAP_NAMESPACES = (
    'xmlns:soapenv="http://schemas.xmlsoap.org/soap/envelope/"',
    'xmlns:xsd="http://www.w3.org/2001/XMLSchema"',
    'xmlns:xsi="http://www.w3.org/2001/XMLSchema-instance"',
)
METADATA_NAMESPACE = 'xmlns:met="http://soap.sforce.com/2006/04/metadata"'


class ProtocolFamily(str, Enum):
    REST = "REST"
    SOAP = "SOAP"


@dataclass(frozen=True)
class RequestSpec:
    """One request, built per call (and per retry attempt).

    For REST ``target`` is the path and ``headers`` are extra HTTP headers.
    For SOAP ``target`` is the method name, ``body`` the arguments and
    ``headers`` extra SOAP header entries merged next to the session header.
    """

    protocol: ProtocolFamily
    target: str
    body: Any = UNSET
    headers: Mapping[str, Any] = field(default_factory=dict)
    method: str = "GET"
    api: str = "normal"
    body_type: str = "json"
    cache_bust: Optional[bool] = None
    wsdl: Optional[WsdlDescriptor] = None

    @classmethod
    def rest(cls, path: str, **kwargs: Any) -> RequestSpec:
        return cls(ProtocolFamily.REST, path, **kwargs)

    @classmethod
    def soap(
        cls,
        wsdl: WsdlDescriptor,
        method: str,
        args: Any = UNSET,
        headers: Optional[Mapping[str, Any]] = None,
    ) -> RequestSpec:
        return cls(
            ProtocolFamily.SOAP,
            method,
            body=args,
            headers=dict(headers or {}),
            method="POST",
            wsdl=wsdl,
        )


@dataclass(frozen=True)
class SessionNotice:
    """Something the user should see about their session (expired token, no access)."""

    text: str
    type: str
    host: Optional[str] = None
    title: Optional[str] = None
    icon: Optional[str] = None


# ----------------------------------------------------------------------
# Cancellation
# ----------------------------------------------------------------------
def _close_response(future: Future) -> None:
    if future.cancelled() or future.exception() is not None:
        return
    future.result().close()


class AbortHandle:
    """Lets another thread abort a pending call.

    ``abort()`` returns ``True`` only when it won the race, in which case the
    call raises :class:`AbortedError`. Once the call has settled ``abort()``
    is a no-op returning ``False``. A handle covers exactly one call; passing
    a settled handle to another call raises ``ValueError``.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._aborted = threading.Event()
        self._settled = False
        self._pending: Optional[Future] = None
        self._wake: Optional[threading.Event] = None

    @property
    def aborted(self) -> bool:
        return self._aborted.is_set()

    @property
    def settled(self) -> bool:
        return self._settled

    def abort(self) -> bool:
        with self._lock:
            if self._settled or self._aborted.is_set():
                return False
            self._aborted.set()
            pending, wake = self._pending, self._wake
        if pending is not None:
            pending.cancel()
            pending.add_done_callback(_close_response)
        if wake is not None:
            wake.set()
        _logger.debug("Request aborted by caller")
        return True

    def settle(self) -> bool:
        """Mark the call finished; ``False`` if an abort got there first."""
        with self._lock:
            if self._aborted.is_set():
                return False
            self._settled = True
            return True

    def check(self) -> None:
        if self._aborted.is_set():
            raise AbortedError(ABORTED_MESSAGE)

    def sleep(self, seconds: float) -> None:
        if self._aborted.wait(seconds):
            raise AbortedError(ABORTED_MESSAGE)

    def wait(self, future: Future) -> Any:
        """Block until ``future`` finishes or the handle is aborted."""
        wake = threading.Event()
        with self._lock:
            if self._aborted.is_set():
                if not future.cancel():
                    future.add_done_callback(_close_response)
                raise AbortedError(ABORTED_MESSAGE)
            self._pending, self._wake = future, wake
        future.add_done_callback(lambda _f: wake.set())
        wake.wait()
        with self._lock:
            self._pending, self._wake = None, None
        self.check()
        return future.result()


# ----------------------------------------------------------------------
# Response helpers
# ----------------------------------------------------------------------
def _json_or_text(r: requests.Response) -> Any:
    if not r.content:
        return None
    try:
        return r.json()
    except ValueError:
        return r.text


def _first_message(body: Any) -> Optional[str]:
    if isinstance(body, list) and body and isinstance(body[0], dict):
        return body[0].get("message")
    return None


def _error_details(body: Any) -> List[ErrorDetail]:
    """Map a REST error array to details; anything else yields ``[]``."""
    if not isinstance(body, list):
        return []
    details = []
    for item in body:
        if not isinstance(item, dict):
            return []
        details.append(
            ErrorDetail(
                code=item.get("errorCode"),
                message=str(item.get("message", "")),
                fields=[str(f) for f in item.get("fields") or []],
            )
        )
    return details


def _status_line(r: requests.Response) -> str:
    return f"HTTP {r.status_code} {r.reason or ''}".rstrip()


def _cache_param() -> str:
    return f"cache={random.random()}"


# ----------------------------------------------------------------------
# Transport
# ----------------------------------------------------------------------
class ProtocolTransport:
    """Executes single REST or SOAP exchanges against the session host."""

    def __init__(
        self,
        cfg: SFConfig,
        sessions: SessionProvider,
        *,
        http: Optional[requests.Session] = None,
        on_notice: Optional[Callable[[SessionNotice], None]] = None,
    ) -> None:
        self.cfg = cfg
        self.sessions = sessions
        self.http = http or requests.Session()
        self.listeners: List[Callable[[SessionNotice], None]] = []
        if on_notice is not None:
            self.listeners.append(on_notice)
        self._pool: Optional[ThreadPoolExecutor] = None
        self._pool_lock = threading.Lock()

    # --------------------------- Public methods -----------------------

    def execute(
        self,
        spec: RequestSpec,
        credential: Optional[Credential],
        *,
        abort: Optional[AbortHandle] = None,
    ) -> Any:
        """Dispatch ``spec`` on its protocol family."""
        if credential is None:
            raise MissingSessionError(None)
        if spec.protocol is ProtocolFamily.REST:
            return self._guarded(abort, self._rest, spec, credential, abort)
        return self._guarded(abort, self._soap, spec, credential, abort)

    def execute_rest(
        self,
        spec: RequestSpec,
        credential: Optional[Credential],
        *,
        abort: Optional[AbortHandle] = None,
    ) -> Any:
        if spec.protocol is not ProtocolFamily.REST:
            raise ValueError("execute_rest needs a REST request")
        return self.execute(spec, credential, abort=abort)

    def execute_soap(
        self,
        wsdl: WsdlDescriptor,
        method: str,
        args: Any,
        credential: Optional[Credential],
        *,
        headers: Optional[Mapping[str, Any]] = None,
        abort: Optional[AbortHandle] = None,
    ) -> Any:
        spec = RequestSpec.soap(wsdl, method, args, headers)
        return self.execute(spec, credential, abort=abort)

    def build_envelope(
        self,
        wsdl: WsdlDescriptor,
        method: str,
        args: Any,
        token: str,
        headers: Optional[Mapping[str, Any]] = None,
    ) -> str:
        """Serialize a SOAP envelope; the Metadata API wants ``met:`` prefixes."""
        if wsdl.is_metadata:
            session_header_key, session_id_key = "met:SessionHeader", "met:sessionId"
            request_method = f"met:{method}"
            attributes = SOAP_NAMESPACES + (METADATA_NAMESPACE,)
        else:
            session_header_key, session_id_key = "SessionHeader", "sessionId"
            request_method = method
            attributes = SOAP_NAMESPACES

        header: Dict[str, Any] = {session_header_key: {session_id_key: token}}
        header.update(headers or {})
        if args is UNSET:
            # The method element must be sent even when the call takes no arguments
            args = {}
        return xml_codec.encode(
            "soapenv:Envelope",
            " " + " ".join(attributes) + wsdl.target_namespaces,
            {"soapenv:Header": header, "soapenv:Body": {request_method: args}},
        )

    def close(self) -> None:
        with self._pool_lock:
            if self._pool is not None:
                self._pool.shutdown(wait=False, cancel_futures=True)
                self._pool = None
        self.http.close()

    # --------------------------- REST ---------------------------------

    def _rest(self, spec: RequestSpec, credential: Credential, abort: Optional[AbortHandle]) -> Any:
        host = credential.host_scope
        headers = {
            "Accept": JSON_CONTENT_TYPE,
            "Sforce-Call-Options": f"client={self.cfg.client_name}",
        }
        if spec.api == "bulk":
            headers["X-SFDC-Session"] = credential.token
        elif spec.api == "normal":
            headers["Authorization"] = f"Bearer {credential.token}"
        else:
            raise ValueError(f"Unknown api: {spec.api!r}")

        data: Any = None
        if spec.body is not UNSET and spec.body is not None:
            headers["Content-Type"] = JSON_CONTENT_TYPE
            if spec.body_type == "json":
                data = json.dumps(spec.body)
            elif spec.body_type == "raw":
                data = spec.body
            else:
                raise ValueError(f"Unknown body_type: {spec.body_type!r}")
        headers.update(spec.headers)

        cache_bust = self.cfg.cache_bust if spec.cache_bust is None else spec.cache_bust

        def build() -> Tuple[str, str, Dict[str, str], Any]:
            path = spec.target
            if cache_bust:
                path += ("&" if "?" in path else "?") + _cache_param()
            return spec.method, urljoin(f"https://{host}", path), dict(headers), data

        _logger.debug("REST %s %s api=%s", spec.method, spec.target, spec.api)
        r = self._send(build, abort)
        return self._classify_rest(r, host)

    def _classify_rest(self, r: requests.Response, host: str) -> Any:
        status = r.status_code
        if status == 0:
            raise NetworkError(NETWORK_MESSAGE, status=0)

        body = _json_or_text(r)
        if 200 <= status < 300:
            return body

        if status == 401:
            message = _first_message(body) or "New access token needed"
            # Only nag when the user generated a token before; anonymous
            # sessions without API access control would warn on every call.
            if self.sessions.has_persisted_token(host):
                self._notify(
                    SessionNotice(
                        text="Access token expired",
                        type="warning",
                        host=host,
                        title="Generate new token",
                        icon="warning",
                    )
                )
            raise UnauthorizedError(message, status=status, raw=body)

        if status == 403:
            message = _first_message(body) or "Error"
            self._notify(SessionNotice(text=message, type="error", host=host, icon="error"))
            raise ForbiddenError(message, status=status, raw=body)

        errors = _error_details(body)
        message = "\n".join(str(e) for e in errors) or _status_line(r)
        _logger.error("HTTP %s error for %s: %s", status, r.url, message)
        raise ProtocolError(message, errors=errors, status=status, raw=body)

    # --------------------------- SOAP ---------------------------------

    def _soap(self, spec: RequestSpec, credential: Credential, abort: Optional[AbortHandle]) -> Any:
        if spec.wsdl is None:
            raise ValueError("SOAP request needs a WSDL descriptor")
        wsdl = spec.wsdl
        envelope = self.build_envelope(
            wsdl, spec.target, spec.body, credential.token, spec.headers
        ).encode("utf-8")
        headers = {
            "Content-Type": "text/xml",
            "SOAPAction": '""',
            "CallOptions": f"client:{self.cfg.client_name}",
        }
        cache_bust = self.cfg.cache_bust if spec.cache_bust is None else spec.cache_bust

        def build() -> Tuple[str, str, Dict[str, str], Any]:
            url = f"https://{credential.host_scope}{wsdl.service_port_address}"
            if cache_bust:
                url += "?" + _cache_param()
            return "POST", url, dict(headers), envelope

        _logger.debug("SOAP %s.%s (%d bytes)", wsdl.api_name, spec.target, len(envelope))
        r = self._send(build, abort)
        return self._classify_soap(r, spec.target)

    def _classify_soap(self, r: requests.Response, method: str) -> Any:
        status = r.status_code
        if status == 0:
            raise NetworkError(NETWORK_MESSAGE, status=0)

        if status == 200:
            try:
                root = xml_codec.parse(r.content)
            except ET.ParseError as e:
                raise ProtocolError(
                    f"Malformed SOAP response: {e}", status=status, raw=r.text
                ) from e
            node = xml_codec.find_local(root, f"{method}Response")
            if node is None:
                raise ProtocolError(
                    f"SOAP response has no <{method}Response> element",
                    status=status,
                    raw=r.text,
                )
            parsed = xml_codec.decode(node)
            return parsed.get("result") if isinstance(parsed, dict) else None

        message = None
        try:
            fault = xml_codec.find_local(xml_codec.parse(r.content), "faultstring")
        except ET.ParseError:
            fault = None
        if fault is not None:
            message = "".join(fault.itertext())
        message = message or _status_line(r)
        _logger.error("SOAP %s failed with HTTP %s: %s", method, status, message)
        raise ProtocolError(message, status=status, raw=r.text)

    # --------------------------- Exchange -----------------------------

    def _guarded(self, abort: Optional[AbortHandle], fn: Callable[..., Any], *args: Any) -> Any:
        """Run ``fn`` so that a won abort always surfaces as AbortedError."""
        if abort is None:
            return fn(*args)
        if abort.settled:
            raise ValueError("AbortHandle already used for a finished call")
        abort.check()
        try:
            result = fn(*args)
        except AbortedError:
            raise
        except Exception:
            if not abort.settle():
                raise AbortedError(ABORTED_MESSAGE) from None
            raise
        if not abort.settle():
            raise AbortedError(ABORTED_MESSAGE)
        return result

    def _send(
        self,
        build: Callable[[], Tuple[str, str, Dict[str, str], Any]],
        abort: Optional[AbortHandle],
    ) -> requests.Response:
        """Exchange with retry; ``build`` is called again for every attempt."""
        attempts = max(0, self.cfg.retries) + 1
        for attempt in range(1, attempts + 1):
            method, url, headers, data = build()
            try:
                r = self._exchange(method, url, headers, data, abort)
            except requests.RequestException as e:
                _logger.warning("Request error (attempt %d/%d): %s", attempt, attempts, e)
                if attempt == attempts:
                    raise NetworkError(NETWORK_MESSAGE, raw=str(e)) from e
                self._backoff(attempt, abort)
                continue

            if r.status_code in RETRY_STATUSES and attempt < attempts:
                _logger.warning("HTTP %s -> retrying %d/%d", r.status_code, attempt, attempts)
                self._backoff(attempt, abort)
                continue
            return r
        raise RuntimeError("Exceeded maximum retries.")  # pragma: no cover

    def _exchange(
        self,
        method: str,
        url: str,
        headers: Dict[str, str],
        data: Any,
        abort: Optional[AbortHandle],
    ) -> requests.Response:
        kwargs = {"headers": headers, "data": data, "timeout": self.cfg.timeout}
        if abort is None:
            return self.http.request(method, url, **kwargs)
        future = self._executor().submit(self.http.request, method, url, **kwargs)
        return abort.wait(future)

    def _backoff(self, attempt: int, abort: Optional[AbortHandle]) -> None:
        delay = self.cfg.backoff * attempt
        if abort is not None:
            abort.sleep(delay)
        else:
            time.sleep(delay)

    def _executor(self) -> ThreadPoolExecutor:
        with self._pool_lock:
            if self._pool is None:
                self._pool = ThreadPoolExecutor(
                    max_workers=self.cfg.max_workers, thread_name_prefix="sfconn-http"
                )
            return self._pool

    def _notify(self, notice: SessionNotice) -> None:
        for listener in list(self.listeners):
            listener(notice)
