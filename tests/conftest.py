import json as jsonlib
from unittest.mock import MagicMock

import pytest

from sfconn.config import SFConfig
from sfconn.session import Credential, SessionProvider
from sfconn.store import MemoryStore

HOST = "acme.my.salesforce.com"


class DummyResponse:
    """Just enough of requests.Response for the transport."""

    def __init__(self, status_code=200, json_data=None, *, text=None, reason="OK", url=""):
        self.status_code = status_code
        self.reason = reason
        self.url = url
        if text is None:
            text = "" if json_data is None else jsonlib.dumps(json_data)
        self.text = text
        self.content = text.encode("utf-8")
        self.closed = False

    def json(self):
        return jsonlib.loads(self.text)

    def close(self):
        self.closed = True


@pytest.fixture
def make_response():
    return DummyResponse


@pytest.fixture
def cfg(tmp_path):
    return SFConfig(
        instance_host=HOST,
        api_version="64.0",
        client_name="sfconn-tests",
        auth_flow="none",
        store_path=tmp_path / "store.json",
        retries=0,
        backoff=0.0,
        cache_bust=False,
        fetch_org_info=False,
    )


@pytest.fixture
def store():
    return MemoryStore()


@pytest.fixture
def sessions(store):
    return SessionProvider(store)


@pytest.fixture
def credential():
    return Credential("00DTOKEN!abc", HOST, source="store")


@pytest.fixture
def http():
    """Stand-in for requests.Session; set ``http.request.return_value``."""
    return MagicMock()
