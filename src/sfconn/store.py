"""Persisted key/value store for access tokens and cached org metadata.

Keys follow the ``"<host>_<name>"`` convention, e.g.
``"acme.my.salesforce.com_access_token"``.
"""

from __future__ import annotations

import json
import logging
import threading
from pathlib import Path
from typing import Any, Dict, Optional, Protocol

_logger = logging.getLogger(__name__)

DEFAULT_STORE_FILE = Path.home() / ".sfconn_store.json"

ACCESS_TOKEN = "access_token"
IS_SANDBOX = "isSandbox"
ORG_INSTANCE = "orgInstance"
TRIAL_EXPIRATION_DATE = "trialExpirationDate"


def host_key(host: str, name: str) -> str:
    return f"{host}_{name}"


def token_key(host: str) -> str:
    return host_key(host, ACCESS_TOKEN)


class TokenStore(Protocol):
    def get(self, key: str) -> Optional[Any]: ...

    def set(self, key: str, value: Any) -> None: ...

    def delete(self, key: str) -> None: ...

    def contains(self, key: str) -> bool: ...


class MemoryStore:
    """Dict-backed store; handy for tests and short-lived scripts."""

    def __init__(self, initial: Optional[Dict[str, Any]] = None) -> None:
        self._data: Dict[str, Any] = dict(initial or {})
        self._lock = threading.Lock()

    def get(self, key: str) -> Optional[Any]:
        with self._lock:
            return self._data.get(key)

    def set(self, key: str, value: Any) -> None:
        with self._lock:
            self._data[key] = value

    def delete(self, key: str) -> None:
        with self._lock:
            self._data.pop(key, None)

    def contains(self, key: str) -> bool:
        with self._lock:
            return key in self._data


class JsonFileStore:
    """Store persisted as a single JSON object on disk (``~/.sfconn_store.json``)."""

    def __init__(self, path: Optional[Path] = None) -> None:
        self.path = Path(path) if path else DEFAULT_STORE_FILE
        self._lock = threading.Lock()

    def _load(self) -> Dict[str, Any]:
        if not self.path.exists():
            return {}
        try:
            data = json.loads(self.path.read_text(encoding="utf-8"))
        except (OSError, ValueError) as e:
            _logger.warning("Ignoring unreadable store file %s: %s", self.path, e)
            return {}
        return data if isinstance(data, dict) else {}

    def _save(self, data: Dict[str, Any]) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self.path.write_text(json.dumps(data, indent=2, sort_keys=True), encoding="utf-8")

    def get(self, key: str) -> Optional[Any]:
        with self._lock:
            return self._load().get(key)

    def set(self, key: str, value: Any) -> None:
        with self._lock:
            data = self._load()
            data[key] = value
            self._save(data)
        _logger.debug("Stored %s in %s", key, self.path)

    def delete(self, key: str) -> None:
        with self._lock:
            data = self._load()
            if key in data:
                del data[key]
                self._save(data)

    def contains(self, key: str) -> bool:
        with self._lock:
            return key in self._load()
