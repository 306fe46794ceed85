import json
from types import MappingProxyType

import pytest
from fastapi.testclient import TestClient

from gateway_core.api.app import create_app, replay_events
from gateway_core.domain.exceptions import ProviderUnavailableError
from gateway_core.domain.models import BackendStatus, StreamEvent
from gateway_core.gateway.context import ContextBuilder
from gateway_core.gateway.engine import ChatGateway
from gateway_core.infrastructure.storage.jsonl_store import JsonlConversationStore
from gateway_core.providers.mock_client import MOCK_RESPONSES, MockClient


class SettingsStub:
    mock_stream_delay = 0
    mock_timeout = 5.0
    max_context_messages = 50
    context_token_budget = 32000


class BrokenClaude:
    name = "claude"
    stateful = True
    timeout = 5.0

    def __init__(self):
        self.calls = 0

    async def stream(self, messages, settings, working_directory=None, session_handle=None):
        self.calls += 1
        raise ProviderUnavailableError(code="CLI_NOT_FOUND", message="claude not installed")

    async def is_available(self):
        return BackendStatus(backend="claude", available=False, error="claude not installed")


class CountingDocker(BrokenClaude):
    name = "docker"
    stateful = False

    async def is_available(self):
        return BackendStatus(backend="docker", available=True, models=["ai/llama3"])


@pytest.fixture
def ctx(tmp_path):
    store = JsonlConversationStore(root=tmp_path / ".storage")
    claude, docker = BrokenClaude(), CountingDocker()
    adapters = MappingProxyType({"mock": MockClient(SettingsStub()), "claude": claude, "docker": docker})
    gateway = ChatGateway(store, adapters, ContextBuilder(store, SettingsStub()))
    client = TestClient(create_app(gateway=gateway, store=store, adapters=adapters))
    return client, store, claude, docker


def parse_frames(text):
    frames = [f for f in text.split("\n\n") if f]
    assert all(f.startswith("data: ") for f in frames)
    return [json.loads(f[len("data: "):]) for f in frames]


def test_chat_streams_sse_frames(ctx):
    client, *_ = ctx
    resp = client.post("/api/ai/chat", json={"backend": "mock", "messages": [{"role": "user", "content": "debug this"}]})
    assert resp.status_code == 200
    assert resp.headers["content-type"].startswith("text/event-stream")
    assert resp.headers["cache-control"] == "no-cache"
    frames = parse_frames(resp.text)
    assert [f["done"] for f in frames].count(True) == 1
    assert frames[-1]["done"] is True
    assert "".join(f.get("content", "") for f in frames) == MOCK_RESPONSES["debug"]


def test_chat_falls_back_to_mock(ctx):
    client, _, claude, _ = ctx
    resp = client.post("/api/ai/chat", json={"backend": "claude", "messages": [{"role": "user", "content": "hi"}]})
    frames = parse_frames(resp.text)
    assert claude.calls == 1
    assert frames[-1]["done"] is True
    assert frames[-1]["model"] == "mock"
    assert "error" not in frames[-1]


def test_malformed_body_returns_single_error(ctx):
    client, store, *_ = ctx
    resp = client.post("/api/ai/chat", content=b"{not json", headers={"Content-Type": "application/json"})
    assert resp.status_code == 500
    assert resp.headers["content-type"].startswith("application/json")
    assert set(resp.json()) >= {"error"}


def test_docker_without_model_is_rejected(ctx):
    client, store, _, docker = ctx
    resp = client.post("/api/ai/chat", json={"backend": "docker", "messages": [{"role": "user", "content": "hi"}]})
    assert resp.status_code == 400
    assert resp.json()["error"] == "Model required for Docker backend"
    assert docker.calls == 0


def test_empty_request_and_bad_schema_are_400(ctx):
    client, *_ = ctx
    resp = client.post("/api/ai/chat", json={"backend": "mock", "messages": []})
    assert resp.status_code == 400
    assert resp.json()["error"] == "No messages or conversationId provided"
    resp = client.post("/api/ai/chat", json={"messages": [{"role": "robot", "content": "x"}]})
    assert resp.status_code == 400


def test_conversation_endpoints(ctx):
    client, store, *_ = ctx
    created = client.post("/api/ai/conversations", json={"name": "demo"}).json()
    cid = created["id"]
    assert created["name"] == "demo"

    resp = client.post(
        "/api/ai/chat",
        json={"backend": "mock", "conversationId": cid, "messages": [{"role": "user", "content": "review please"}]},
    )
    frames = parse_frames(resp.text)
    assert frames[-1]["conversationId"] == cid

    listed = client.get("/api/ai/conversations").json()["conversations"]
    assert listed[0]["id"] == cid and listed[0]["messageCount"] == 2 and listed[0]["updatedAt"] > 0

    conv = client.get(f"/api/ai/conversations/{cid}").json()
    assert [m["role"] for m in conv["messages"]] == ["user", "assistant"]
    assistant_id = conv["messages"][1]["id"]

    fb = client.post(f"/api/ai/conversations/{cid}/messages/{assistant_id}/feedback", json={"feedback": "up"})
    assert fb.status_code == 200 and fb.json()["feedback"] == "up"
    missing = client.post(f"/api/ai/conversations/{cid}/messages/m-nope/feedback", json={"feedback": "down"})
    assert missing.status_code == 404

    export = client.get(f"/api/ai/conversations/{cid}/export")
    assert export.headers["content-type"].startswith("text/markdown")
    assert export.text.startswith("**User**: review please\n\n---\n\n**Mock AI**: ")

    assert client.delete(f"/api/ai/conversations/{cid}?prune=1").status_code == 200
    assert len(client.get(f"/api/ai/conversations/{cid}").json()["messages"]) == 1
    assert client.delete(f"/api/ai/conversations/{cid}?prune=-1").status_code == 400

    assert client.delete(f"/api/ai/conversations/{cid}").json()["deleted"] is True
    assert client.get(f"/api/ai/conversations/{cid}").status_code == 404
    assert client.get("/api/ai/conversations/bad.id").status_code == 400


def test_new_conversation_via_chat(ctx):
    client, store, *_ = ctx
    resp = client.post("/api/ai/chat", json={"conversationId": "new", "messages": [{"role": "user", "content": "hi"}]})
    cid = parse_frames(resp.text)[-1]["conversationId"]
    assert cid.startswith("c-")
    assert client.get(f"/api/ai/conversations/{cid}").json()["messages"][0]["content"] == "hi"


def test_backends_endpoint(ctx):
    client, *_ = ctx
    data = client.get("/api/ai/backends").json()
    by_name = {b["backend"]: b for b in data["backends"]}
    assert by_name["mock"]["available"] is True
    assert by_name["claude"]["available"] is False
    assert by_name["docker"]["models"] == ["ai/llama3"]


@pytest.mark.asyncio
async def test_replay_closes_source_when_client_leaves_after_first_event():
    closed = []

    async def source():
        try:
            yield StreamEvent(model="claude", content="a")
            yield StreamEvent(model="claude", content="b")
            yield StreamEvent(model="claude", done=True)
        finally:
            closed.append(True)

    events = source()
    first = await events.__anext__()
    replay = replay_events(first, events)
    assert (await replay.__anext__()).content == "a"
    await replay.aclose()
    assert closed == [True]
