"""Tests for sfconn.client.ApiClient against a mocked requests.Session."""

import threading
import time
from concurrent.futures import Future

import pytest

import sfconn.client as client_mod
from sfconn.client import ApiClient, OrgInfo
from sfconn.exceptions import ForbiddenError, MissingSessionError, UnauthorizedError
from sfconn.session import SessionProvider
from sfconn.store import MemoryStore

HOST = "acme.my.salesforce.com"
TOKEN_KEY = f"{HOST}_access_token"
REDIRECT = "#access_token=00DNEW%21tok&instance_url=https%3A%2F%2Facme.my.salesforce.com"

PARTNER_RESPONSE = """<?xml version="1.0" encoding="UTF-8"?>
<soapenv:Envelope xmlns:soapenv="http://schemas.xmlsoap.org/soap/envelope/"
    xmlns="urn:partner.soap.sforce.com">
  <soapenv:Body>
    <getUserInfoResponse><result><userName>ada@acme.com</userName><orgId>00D000000000001</orgId></result></getUserInfoResponse>
  </soapenv:Body>
</soapenv:Envelope>"""


@pytest.fixture
def store():
    return MemoryStore({TOKEN_KEY: "00DTOKEN"})


@pytest.fixture
def client(cfg, store, http):
    c = ApiClient(cfg, sessions=SessionProvider(store), http=http)
    yield c
    c.close()


def urls(http):
    return [call.args[1] for call in http.request.call_args_list]


class TestQuery:
    def test_query_endpoints_and_encoding(self, client, http, make_response):
        http.request.return_value = make_response(200, {"records": []})

        client.query("SELECT Id FROM Account WHERE Name = 'A&B'")
        client.query("SELECT Id FROM ApexClass", use_tooling=True)
        client.query("SELECT Id FROM Account", include_deleted=True)

        assert urls(http) == [
            f"https://{HOST}/services/data/v64.0/query/"
            "?q=SELECT%20Id%20FROM%20Account%20WHERE%20Name%20%3D%20'A%26B'",
            f"https://{HOST}/services/data/v64.0/tooling/query/?q=SELECT%20Id%20FROM%20ApexClass",
            f"https://{HOST}/services/data/v64.0/queryAll/?q=SELECT%20Id%20FROM%20Account",
        ]

    def test_expired_token_raises_unauthorized_and_invalidates(
        self, client, http, make_response, store
    ):
        http.request.side_effect = [
            make_response(200, {"totalSize": 1, "records": [{"Id": "001"}]}),
            make_response(401, [{"message": "Session expired or invalid"}]),
        ]

        first = client.query("SELECT Id FROM Account")
        assert first["records"] == [{"Id": "001"}]

        with pytest.raises(UnauthorizedError, match="Session expired or invalid"):
            client.query("SELECT Id FROM Account")

        assert client.credential is None
        assert not store.contains(TOKEN_KEY)

    def test_keep_stale_token_when_configured(self, cfg, store, http, make_response):
        cfg.forget_stale_tokens = False
        client = ApiClient(cfg, sessions=SessionProvider(store), http=http)
        http.request.return_value = make_response(401, [])

        with pytest.raises(UnauthorizedError):
            client.query("SELECT Id FROM Account")

        assert client.credential is None
        assert store.get(TOKEN_KEY) == "00DTOKEN"

    def test_query_all_iter_follows_next_records_url(self, client, http, make_response):
        http.request.side_effect = [
            make_response(
                200,
                {
                    "records": [{"Id": "1"}, {"Id": "2"}],
                    "nextRecordsUrl": "/services/data/v64.0/query/01gXX-2000",
                },
            ),
            make_response(200, {"records": [{"Id": "3"}]}),
        ]

        ids = [r["Id"] for r in client.query_all_iter("SELECT Id FROM Account")]

        assert ids == ["1", "2", "3"]
        assert urls(http)[1] == f"https://{HOST}/services/data/v64.0/query/01gXX-2000"

    def test_describe_search_and_objects(self, client, http, make_response):
        http.request.return_value = make_response(200, {})

        client.describe("Account")
        client.list_objects()
        client.search("FIND {Acme}")
        client.limits()

        assert urls(http) == [
            f"https://{HOST}/services/data/v64.0/sobjects/Account/describe/",
            f"https://{HOST}/services/data/v64.0/sobjects/",
            f"https://{HOST}/services/data/v64.0/search/?q=FIND%20%7BAcme%7D",
            f"https://{HOST}/services/data/v64.0/limits/",
        ]


class TestSession:
    def test_no_session_raises_missing_session(self, cfg, http):
        client = ApiClient(cfg, sessions=SessionProvider(MemoryStore()), http=http)

        assert client.connect() is None
        with pytest.raises(MissingSessionError, match=HOST):
            client.query("SELECT Id FROM Account")

        http.request.assert_not_called()

    def test_connect_with_redirect(self, cfg, http):
        cfg.instance_host = None
        store = MemoryStore()
        client = ApiClient(cfg, sessions=SessionProvider(store), http=http)

        cred = client.connect("login.salesforce.com", REDIRECT)

        assert cred.token == "00DNEW!tok"
        assert client.host == HOST
        assert store.get(TOKEN_KEY) == "00DNEW!tok"

    def test_lightning_host_is_normalized(self, cfg, store, http):
        cfg.instance_host = "https://acme.lightning.force.com"
        client = ApiClient(cfg, sessions=SessionProvider(store), http=http)

        assert client.host == HOST
        assert client.connect().token == "00DTOKEN"

    def test_latest_api_version_is_discovered(self, cfg, store, http, make_response):
        cfg.api_version = "latest"
        client = ApiClient(cfg, sessions=SessionProvider(store), http=http)
        http.request.return_value = make_response(
            200,
            [
                {"version": "62.0", "url": "/services/data/v62.0"},
                {"version": "64.0", "url": "/services/data/v64.0"},
                {"version": "9.0", "url": "/services/data/v9.0"},
            ],
        )

        client.connect()

        assert client.api_version == "64.0"
        assert urls(http) == [f"https://{HOST}/services/data/"]

    def test_logout_forgets_token(self, client, store):
        client.connect()
        client.logout()

        assert client.credential is None
        assert not store.contains(TOKEN_KEY)

    def test_notice_listener(self, client, http, make_response):
        seen = []
        client.add_notice_listener(seen.append)
        http.request.return_value = make_response(403, [{"message": "No access"}])

        with pytest.raises(ForbiddenError):
            client.limits()

        assert [n.text for n in seen] == ["No access"]


class TestSoap:
    def test_invoke_partner(self, client, http, make_response):
        http.request.return_value = make_response(200, text=PARTNER_RESPONSE)

        result = client.invoke("Partner", "getUserInfo")

        assert result == {"userName": "ada@acme.com", "orgId": "00D000000000001"}
        assert urls(http) == [f"https://{HOST}/services/Soap/u/64.0"]
        body = http.request.call_args.kwargs["data"].decode("utf-8")
        assert "<sessionId>00DTOKEN</sessionId>" in body
        assert "<getUserInfo />" in body

    def test_wsdl_follows_api_version(self, client):
        assert client.wsdl("Tooling").service_port_address == "/services/Soap/T/64.0"
        assert set(client.wsdl()) == {"Enterprise", "Partner", "Apex", "Metadata", "Tooling"}

    def test_unknown_service(self, client):
        with pytest.raises(ValueError):
            client.invoke("Nope", "describeGlobal")


class TestOrgInfo:
    def test_refresh_caches_org_row(self, client, http, make_response, store):
        http.request.return_value = make_response(
            200,
            {
                "records": [
                    {
                        "IsSandbox": True,
                        "InstanceName": "CS42",
                        "TrialExpirationDate": None,
                    }
                ]
            },
        )
        client.connect()
        assert client.org_info() is None

        info = client.refresh_org_info()

        assert info == OrgInfo(is_sandbox=True, instance_name="CS42", trial_expiration_date=None)
        assert store.get(f"{HOST}_orgInstance") == "CS42"
        assert client.org_info() == info

    def test_refresh_failure_is_logged_not_raised(self, client, http, make_response, caplog):
        http.request.return_value = make_response(500, reason="Internal Server Error")

        assert client.refresh_org_info() is None
        assert "Could not fetch organization info" in caplog.text

    def test_connect_schedules_org_info_once(self, cfg, store, http, make_response):
        cfg.fetch_org_info = True
        http.request.return_value = make_response(
            200, {"records": [{"IsSandbox": False, "InstanceName": "NA1", "TrialExpirationDate": None}]}
        )
        client = ApiClient(cfg, sessions=SessionProvider(store), http=http)

        client.connect()
        client._pool.shutdown(wait=True)
        client._pool = None

        assert client.org_info().instance_name == "NA1"

        client.connect()
        assert client._pool is None
        client.close()


class TestConcurrency:
    def test_submit_runs_on_pool(self, client, http, make_response):
        http.request.return_value = make_response(200, {"records": [{"Id": "001"}]})

        future = client.submit(client.query, "SELECT Id FROM Account")

        assert isinstance(future, Future)
        assert future.result(timeout=5)["records"] == [{"Id": "001"}]

    def test_context_manager_closes_transport(self, cfg, store, http):
        with ApiClient(cfg, sessions=SessionProvider(store), http=http) as client:
            client.submit(lambda: None).result(timeout=5)

        http.close.assert_called_once()

    def test_concurrent_first_submit_builds_one_pool(self, client, monkeypatch):
        created = []
        real_pool = client_mod.ThreadPoolExecutor

        def slow_pool(*args, **kwargs):
            created.append(kwargs.get("thread_name_prefix"))
            time.sleep(0.05)
            return real_pool(*args, **kwargs)

        monkeypatch.setattr(client_mod, "ThreadPoolExecutor", slow_pool)
        start = threading.Barrier(4)
        futures = []

        def worker():
            start.wait(5)
            futures.append(client.submit(lambda: "ok"))

        threads = [threading.Thread(target=worker) for _ in range(4)]
        for t in threads:
            t.start()
        for t in threads:
            t.join(5)

        assert created == ["sfconn-call"]
        assert [f.result(timeout=5) for f in futures] == ["ok"] * 4
