import asyncio

import pytest

from solana_sniper_bundle.sniper.errors import AuthExpiredError, FunctionInvokeError
from solana_sniper_bundle.sniper.functions_client import FunctionClient


class _Resp:
    def __init__(self, status, data):
        self.status = status
        self._data = data

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc):
        return False

    async def text(self):
        return str(self._data)

    async def json(self, content_type=None):
        return self._data


class _Http:
    def __init__(self, responses):
        self.responses = list(responses)
        self.calls = []

    def post(self, url, json=None, headers=None, timeout=None):
        self.calls.append((url, json, dict(headers or {})))
        return _Resp(*self.responses.pop(0))


def _client(http, tokens, refreshed):
    state = {"token": tokens[0]}

    async def refresh():
        refreshed.append(True)
        state["token"] = tokens[1]
        return state["token"]

    return FunctionClient("https://fn.example/functions/v1/", http, lambda: state["token"], refresh=refresh)


def test_success_passes_bearer_and_body():
    http = _Http([(200, {"tokens": []})])
    client = _client(http, ["t1", "t2"], [])
    assert asyncio.run(client.invoke("token-scanner", {"minLiquidity": 5})) == {"tokens": []}
    url, body, headers = http.calls[0]
    assert url == "https://fn.example/functions/v1/token-scanner"
    assert body == {"minLiquidity": 5}
    assert headers["Authorization"] == "Bearer t1"


def test_auth_failure_refreshes_once_and_retries():
    http = _Http([(401, {"error": "JWT expired"}), (200, {"ok": True})])
    refreshed = []
    client = _client(http, ["old", "new"], refreshed)
    assert asyncio.run(client.invoke("trade-execution", {})) == {"ok": True}
    assert refreshed == [True]
    assert [h["Authorization"] for _, _, h in http.calls] == ["Bearer old", "Bearer new"]


def test_second_auth_failure_surfaces_auth_expired():
    http = _Http([(401, {"error": "JWT expired"}), (401, {"error": "JWT expired"})])
    refreshed = []
    client = _client(http, ["old", "new"], refreshed)
    with pytest.raises(AuthExpiredError):
        asyncio.run(client.invoke("trade-execution", {}))
    assert len(http.calls) == 2
    assert refreshed == [True]


def test_error_body_in_2xx_and_plain_failures():
    http = _Http([(200, {"error": "No routes found"}), (500, "upstream exploded")])
    client = _client(http, ["t", "t"], [])
    with pytest.raises(FunctionInvokeError) as e1:
        asyncio.run(client.invoke("token-scanner", {}))
    assert str(e1.value) == "No routes found"
    with pytest.raises(FunctionInvokeError) as e2:
        asyncio.run(client.invoke("token-scanner", {}))
    assert e2.value.status == 500
    assert str(e2.value) == "upstream exploded"


def test_missing_base_url():
    client = FunctionClient("", _Http([]), lambda: None)
    with pytest.raises(FunctionInvokeError):
        asyncio.run(client.invoke("token-scanner", {}))
