import io
import json
import urllib.error

import pytest

from app.backoffice.modules.apps import client as client_mod
from app.backoffice.modules.apps.client import MarketplaceClient, MarketplaceError, client_from_config


class _Resp(io.BytesIO):
    def __enter__(self):
        return self

    def __exit__(self, *exc):
        self.close()


class Recorder:
    def __init__(self):
        self.requests = []
        self.responses = []  # bytes bodies or exceptions, consumed in order

    def urlopen(self, req, timeout=None):
        self.requests.append(req)
        item = self.responses.pop(0)
        if isinstance(item, Exception):
            raise item
        return _Resp(item)


@pytest.fixture()
def calls(monkeypatch):
    rec = Recorder()
    monkeypatch.setattr(client_mod.urllib.request, "urlopen", rec.urlopen)
    monkeypatch.setattr(client_mod.time, "sleep", lambda _s: None)
    return rec


@pytest.fixture()
def api():
    return MarketplaceClient(base_url="https://market.test/api/", api_token="sekret", timeout_seconds=5)


def _http_error(code):
    return urllib.error.HTTPError("https://market.test", code, "err", {}, io.BytesIO(b"boom"))


def test_get_module_sends_bearer_token(calls, api):
    calls.responses.append(json.dumps({"data": {"alias": "crm", "version": "1.0"}}).encode())
    assert api.get_module("crm") == {"alias": "crm", "version": "1.0"}
    req = calls.requests[0]
    assert req.full_url == "https://market.test/api/apps/crm"
    assert req.get_header("Authorization") == "Bearer sekret"


def test_get_module_missing_returns_none(calls, api):
    calls.responses.append(_http_error(404))
    assert api.get_module("nope") is None


def test_retries_after_rate_limit(calls, api):
    calls.responses.extend([_http_error(429), json.dumps({"data": [{"alias": "crm"}]}).encode()])
    assert api.list_modules() == [{"alias": "crm"}]
    assert len(calls.requests) == 2


def test_download_errors_never_leak_token(calls, api):
    calls.responses.append(_http_error(500))
    with pytest.raises(MarketplaceError) as exc:
        api.download("crm/1.0/2.1/sekret")
    assert "sekret" not in str(exc.value)
    assert "crm/1.0/2.1/***" in str(exc.value)


def test_check_token_false_on_failure(calls, api):
    calls.responses.append(_http_error(401))
    assert api.check_token() is False


def test_invalid_json_raises(calls, api):
    calls.responses.append(b"<html>")
    with pytest.raises(MarketplaceError):
        api.request_json("apps/items")


def test_client_from_config():
    c = client_from_config({"MARKETPLACE_URL": " https://m.test/api ", "MARKETPLACE_TIMEOUT": "7"}, api_token="t")
    assert (c.base_url, c.api_token, c.timeout_seconds) == ("https://m.test/api", "t", 7)
