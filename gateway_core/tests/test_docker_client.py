import httpx
import pytest

from gateway_core.domain.exceptions import ApiError, NetworkError, ProviderStreamInterruptedError, RateLimitError
from gateway_core.domain.models import ChatMessage
from gateway_core.gateway.normalizer import normalize_settings
from gateway_core.providers.docker_client import DockerClient


class SettingsStub:
    docker_timeout = 5.0
    http_timeout = 1.0
    docker_base_url = "http://localhost:12434/v1/"
    docker_api_key = "tok"


class FakeResponse:
    def __init__(self, status_code=200, lines=(), body=b"", json_data=None, fail_after=None):
        self.status_code = status_code
        self._lines = list(lines)
        self._body = body
        self._json = json_data
        self._fail_after = fail_after
        self.closed = False

    async def aiter_lines(self):
        for i, line in enumerate(self._lines):
            if self._fail_after is not None and i == self._fail_after:
                raise httpx.ReadError("connection reset")
            yield line

    async def aread(self):
        return self._body

    async def aclose(self):
        self.closed = True

    def json(self):
        return self._json

    def raise_for_status(self):
        if self.status_code >= 400:
            raise httpx.HTTPStatusError("bad", request=None, response=None)


def install_client(monkeypatch, response=None, error=None):
    calls = {}

    class Client:
        def __init__(self, *a, **kw):
            calls["init"] = kw

        def build_request(self, method, url, json=None, headers=None):
            calls["request"] = {"method": method, "url": url, "json": json, "headers": headers}
            return calls["request"]

        async def send(self, request, stream=False):
            calls["stream"] = stream
            if error:
                raise error
            return response

        async def get(self, url, headers=None):
            calls["get"] = url
            return response

        async def aclose(self):
            calls["closed"] = True

        async def __aenter__(self):
            return self

        async def __aexit__(self, *a):
            return False

    monkeypatch.setattr("httpx.AsyncClient", Client)
    return calls


@pytest.mark.asyncio
async def test_docker_stream_parses_sse(monkeypatch):
    resp = FakeResponse(
        lines=[
            'data: {"choices": [{"index": 0, "delta": {"role": "assistant"}}]}',
            "",
            'data: {"choices": [{"index": 0, "delta": {"content": "Hel"}}]}',
            "data: not-json",
            'data: {"choices": [{"index": 0, "delta": {"content": "lo"}, "finish_reason": "stop"}]}',
            'data: {"choices": [{"index": 0, "delta": {"content": "ignored"}}]}',
        ]
    )
    calls = install_client(monkeypatch, response=resp)
    client = DockerClient(SettingsStub())
    settings = normalize_settings({"temperature": 0.3, "maxTokens": 64, "docker": {"stop": ["###"]}}, model="ai/llama3")
    handle = await client.stream([ChatMessage(role="user", content="hi")], settings)
    parts = [p async for p in handle]
    assert parts == ["Hel", "lo"]
    assert resp.closed and calls["closed"]
    req = calls["request"]
    assert req["url"] == "http://localhost:12434/v1/chat/completions"
    assert req["headers"]["Authorization"] == "Bearer tok"
    assert req["json"] == {
        "model": "ai/llama3",
        "messages": [{"role": "user", "content": "hi"}],
        "temperature": 0.3,
        "max_tokens": 64,
        "stream": True,
        "stop": ["###"],
    }
    assert calls["stream"] is True


@pytest.mark.asyncio
async def test_docker_stream_stops_at_done(monkeypatch):
    resp = FakeResponse(lines=['data: {"choices": [{"delta": {"content": "a"}}]}', "data: [DONE]", 'data: {"choices": [{"delta": {"content": "b"}}]}'])
    install_client(monkeypatch, response=resp)
    handle = await DockerClient(SettingsStub()).stream([ChatMessage(role="user", content="hi")], normalize_settings({}, model="m"))
    assert [p async for p in handle] == ["a"]


@pytest.mark.asyncio
async def test_docker_open_errors(monkeypatch):
    client = DockerClient(SettingsStub())
    msgs = [ChatMessage(role="user", content="hi")]
    settings = normalize_settings({}, model="m")

    install_client(monkeypatch, response=FakeResponse(status_code=429))
    with pytest.raises(RateLimitError):
        await client.stream(msgs, settings)

    install_client(monkeypatch, response=FakeResponse(status_code=500, body=b"model not loaded"))
    with pytest.raises(ApiError) as ei:
        await client.stream(msgs, settings)
    assert "model not loaded" in ei.value.message

    install_client(monkeypatch, error=httpx.ConnectError("refused"))
    with pytest.raises(NetworkError):
        await client.stream(msgs, settings)


@pytest.mark.asyncio
async def test_docker_mid_stream_failure(monkeypatch):
    resp = FakeResponse(lines=['data: {"choices": [{"delta": {"content": "a"}}]}', "data: x"], fail_after=1)
    install_client(monkeypatch, response=resp)
    handle = await DockerClient(SettingsStub()).stream([ChatMessage(role="user", content="hi")], normalize_settings({}, model="m"))
    got = []
    with pytest.raises(ProviderStreamInterruptedError):
        async for p in handle:
            got.append(p)
    assert got == ["a"]


@pytest.mark.asyncio
async def test_docker_list_models(monkeypatch):
    install_client(monkeypatch, response=FakeResponse(json_data={"data": [{"id": "ai/llama3"}, {"id": "ai/qwen"}]}))
    status = await DockerClient(SettingsStub()).is_available()
    assert status.available
    assert status.models == ["ai/llama3", "ai/qwen"]

    install_client(monkeypatch, error=None, response=FakeResponse(status_code=503))
    status = await DockerClient(SettingsStub()).is_available()
    assert status.available is False
