import asyncio
import tempfile
from pathlib import Path

import pytest

from gateway_core.domain.conversation import ConversationMessage, ProviderSession
from gateway_core.domain.exceptions import BusinessError, InvalidRequestError, StorageFailure
from gateway_core.infrastructure.storage.jsonl_store import JsonlConversationStore


@pytest.fixture
def store(tmp_path):
    return JsonlConversationStore(root=tmp_path / ".storage")


@pytest.mark.asyncio
async def test_append_then_read_round_trip(store):
    cid = await store.create("demo")
    contents = [("user", "hi"), ("assistant", "hello"), ("user", "again")]
    for role, content in contents:
        await store.append(cid, ConversationMessage(role=role, content=content))
    msgs = await store.read(cid)
    assert [(m.role, m.content) for m in msgs] == contents
    assert all(m.id.startswith("m-") for m in msgs)
    assert all(m.ts > 0 for m in msgs)
    assert len({m.id for m in msgs}) == 3


@pytest.mark.asyncio
async def test_read_missing_conversation_is_empty(store):
    assert await store.read("does-not-exist") == []


@pytest.mark.asyncio
async def test_append_creates_unknown_conversation(store):
    await store.append("client-id", ConversationMessage(role="user", content="hi"))
    conv = await store.get_conversation("client-id")
    assert [m.content for m in conv.messages] == ["hi"]


@pytest.mark.asyncio
async def test_prune_is_idempotent(store):
    cid = await store.create()
    for i in range(5):
        await store.append(cid, ConversationMessage(role="user", content=str(i)))
    await store.prune(cid, 2)
    once = await store.read(cid)
    await store.prune(cid, 2)
    twice = await store.read(cid)
    assert [m.content for m in once] == ["3", "4"]
    assert once == twice


@pytest.mark.asyncio
async def test_prune_to_zero_deletes(store, tmp_path):
    cid = await store.create()
    await store.append(cid, ConversationMessage(role="user", content="x"))
    await store.prune(cid, 0)
    assert await store.read(cid) == []
    assert not (tmp_path / ".storage" / "conversations" / cid).exists()
    await store.prune(cid, 0)
    with pytest.raises(InvalidRequestError):
        await store.prune(cid, -1)


@pytest.mark.asyncio
async def test_export_markdown(store):
    cid = await store.create()
    await store.append(cid, ConversationMessage(role="system", content="ignored"))
    await store.append(cid, ConversationMessage(role="user", content="hi"))
    await store.append(cid, ConversationMessage(role="assistant", content="hello", model="claude"))
    await store.append(cid, ConversationMessage(role="assistant", content="yo", model="docker"))
    text = await store.export(cid)
    assert text == "**User**: hi\n\n---\n\n**Claude**: hello\n\n---\n\n**Local Model**: yo"


@pytest.mark.asyncio
async def test_list_conversations_sorted_by_last_message(store):
    a = await store.create()
    b = await store.create()
    await store.append(a, ConversationMessage(role="user", content="old", ts=1000))
    await store.append(b, ConversationMessage(role="user", content="new", ts=2000))
    await store.append(b, ConversationMessage(role="assistant", content="r", ts=3000))
    summaries = await store.list_conversations()
    assert [s.id for s in summaries] == [b, a]
    assert summaries[0].message_count == 2
    assert summaries[0].updated_at == 3000


@pytest.mark.asyncio
async def test_feedback_and_provider_session(store):
    cid = await store.create()
    msg = await store.append(cid, ConversationMessage(role="assistant", content="r", model="mock"))
    updated = await store.set_feedback(cid, msg.id, "up")
    assert updated.feedback == "up"
    assert (await store.read(cid))[0].feedback == "up"
    with pytest.raises(BusinessError) as ei:
        await store.set_feedback(cid, "m-missing", "down")
    assert ei.value.http_status == 404

    await store.set_provider_session(cid, ProviderSession(backend="claude", handle="sess-1"))
    conv = await store.get_conversation(cid)
    assert conv.provider_session == ProviderSession(backend="claude", handle="sess-1")


@pytest.mark.asyncio
async def test_delete_and_missing_conversation(store):
    cid = await store.create()
    await store.delete(cid)
    with pytest.raises(StorageFailure) as ei:
        await store.get_conversation(cid)
    assert ei.value.code == "CONVERSATION_NOT_FOUND"
    with pytest.raises(BusinessError):
        await store.delete(cid)


@pytest.mark.asyncio
async def test_invalid_id_rejected(store):
    with pytest.raises(InvalidRequestError):
        await store.read("../etc")


@pytest.mark.asyncio
async def test_corrupt_line_raises_storage_failure():
    with tempfile.TemporaryDirectory() as d:
        root = Path(d) / ".storage"
        store = JsonlConversationStore(root=root)
        cid = await store.create()
        with open(root / "conversations" / cid / "messages.jsonl", "a", encoding="utf-8") as f:
            f.write("{not json\n")
        with pytest.raises(StorageFailure) as ei:
            await store.read(cid)
        assert ei.value.code == "STORE_CORRUPT"


@pytest.mark.asyncio
async def test_write_lock_serializes_writers(store):
    cid = await store.create()
    order = []

    async def writer(tag):
        async with store.write_lock(cid):
            order.append(f"{tag}-start")
            await asyncio.sleep(0.01)
            await store.append(cid, ConversationMessage(role="user", content=tag))
            order.append(f"{tag}-end")

    await asyncio.gather(writer("a"), writer("b"))
    assert order in (["a-start", "a-end", "b-start", "b-end"], ["b-start", "b-end", "a-start", "a-end"])
    assert len(await store.read(cid)) == 2
    assert len(store._locks) == 0
