"""基于 JSONL 的追加式会话存储。

目录结构::

    <storage_root>/conversations/<id>/messages.jsonl   每行一条消息记录
    <storage_root>/conversations/<id>/meta.json        标题、时间戳、provider 会话句柄

messages.jsonl 只追加；prune 与 feedback 通过临时文件 + os.replace 整体替换。
调用方需通过 write_lock(id) 保证同一会话同一时刻只有一个写者。
"""

import asyncio
import json
import os
import re
import shutil
import time
from dataclasses import asdict, replace
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, AsyncContextManager, Dict, List, Optional
from uuid import uuid4

import aiofiles
import aiofiles.os

from gateway_core.config.settings import settings
from gateway_core.domain.conversation import (
    Conversation,
    ConversationMessage,
    ConversationStore,
    ConversationSummary,
    ProviderSession,
)
from gateway_core.domain.exceptions import BusinessError, InvalidRequestError, StorageFailure
from gateway_core.domain.models import BACKEND_DISPLAY_NAMES, Feedback
from gateway_core.infrastructure.storage.locks import KeyedLocks

_ID_RE = re.compile(r"^[A-Za-z0-9_-]{1,128}$")


def _now_ms() -> int:
    return int(time.time() * 1000)


def _iso(dt: datetime) -> str:
    return dt.astimezone(timezone.utc).isoformat().replace("+00:00", "Z")


def _parse_iso(value: str) -> datetime:
    return datetime.fromisoformat(str(value).replace("Z", "+00:00"))


def validate_conversation_id(conversation_id: str) -> str:
    if not isinstance(conversation_id, str) or not _ID_RE.match(conversation_id):
        raise InvalidRequestError(code="INVALID_CONVERSATION_ID", message=f"Invalid conversation id: {conversation_id!r}")
    return conversation_id


class JsonlConversationStore(ConversationStore):
    def __init__(self, root: str | Path | None = None):
        self._root = Path(root or settings.storage_root).resolve()
        self._conv_root = self._root / "conversations"
        self._conv_root.mkdir(parents=True, exist_ok=True)
        self._locks = KeyedLocks()

    # ---- 写锁 ----

    def write_lock(self, conversation_id: str) -> AsyncContextManager[None]:
        return self._locks.hold(validate_conversation_id(conversation_id))

    # ---- 会话 ----

    async def create(self, name: Optional[str] = None) -> str:
        cid = f"c-{uuid4().hex}"
        cdir = self._conv_root / cid
        now = datetime.now(timezone.utc)
        conv = Conversation(id=cid, title=name or "", created_at=now, updated_at=now)
        try:
            await aiofiles.os.makedirs(cdir, exist_ok=True)
            async with aiofiles.open(cdir / "messages.jsonl", "a", encoding="utf-8"):
                pass
        except OSError as e:
            raise StorageFailure(code="STORE_WRITE_ERROR", message=str(e))
        await self._write_meta(cdir, conv)
        return cid

    async def get_conversation(self, conversation_id: str) -> Conversation:
        cdir = self._dir(conversation_id)
        if not await aiofiles.os.path.isdir(cdir):
            raise StorageFailure(code="CONVERSATION_NOT_FOUND", message=conversation_id, http_status=404)
        conv = await self._read_meta(cdir, conversation_id)
        conv.messages = await self.read(conversation_id)
        return conv

    async def list_conversations(self) -> List[ConversationSummary]:
        try:
            names = await aiofiles.os.listdir(self._conv_root)
        except OSError as e:
            raise StorageFailure(code="STORE_READ_ERROR", message=str(e))
        items: List[ConversationSummary] = []
        for name in names:
            if not _ID_RE.match(name) or not await aiofiles.os.path.isdir(self._conv_root / name):
                continue
            msgs = await self.read(name)
            items.append(
                ConversationSummary(
                    id=name,
                    message_count=len(msgs),
                    updated_at=msgs[-1].ts if msgs else 0,
                )
            )
        items.sort(key=lambda s: s.updated_at, reverse=True)
        return items

    async def set_provider_session(self, conversation_id: str, session: Optional[ProviderSession]) -> None:
        cdir = self._dir(conversation_id)
        conv = await self._read_meta(cdir, conversation_id)
        conv.provider_session = session
        conv.updated_at = datetime.now(timezone.utc)
        await self._write_meta(cdir, conv)

    async def delete(self, conversation_id: str) -> None:
        cdir = self._dir(conversation_id)
        if not await aiofiles.os.path.isdir(cdir):
            raise BusinessError(code="CONVERSATION_NOT_FOUND", message=conversation_id, http_status=404)
        try:
            await asyncio.to_thread(shutil.rmtree, cdir)
        except OSError as e:
            raise StorageFailure(code="STORE_DELETE_ERROR", message=str(e))

    # ---- 消息 ----

    async def read(self, conversation_id: str) -> List[ConversationMessage]:
        msgs_path = self._dir(conversation_id) / "messages.jsonl"
        if not await aiofiles.os.path.exists(msgs_path):
            return []
        try:
            async with aiofiles.open(msgs_path, "r", encoding="utf-8") as f:
                text = await f.read()
        except OSError as e:
            raise StorageFailure(code="STORE_READ_ERROR", message=str(e))
        items: List[ConversationMessage] = []
        for lineno, line in enumerate(text.splitlines(), start=1):
            if not line.strip():
                continue
            try:
                items.append(self._to_message(json.loads(line)))
            except (ValueError, KeyError, TypeError) as e:
                raise StorageFailure(
                    code="STORE_CORRUPT",
                    message=f"{conversation_id}: bad record at line {lineno}: {e}",
                )
        return items

    async def append(self, conversation_id: str, message: ConversationMessage) -> ConversationMessage:
        cdir = self._dir(conversation_id)
        stored = replace(
            message,
            id=message.id or f"m-{uuid4().hex}",
            ts=message.ts or _now_ms(),
            metadata=dict(message.metadata),
        )
        try:
            if not await aiofiles.os.path.isdir(cdir):
                # 首次写入未知 id 时隐式创建会话
                await aiofiles.os.makedirs(cdir, exist_ok=True)
                now = datetime.now(timezone.utc)
                await self._write_meta(cdir, Conversation(id=conversation_id, title="", created_at=now, updated_at=now))
            line = json.dumps(self._to_record(stored), ensure_ascii=False)
            async with aiofiles.open(cdir / "messages.jsonl", "a", encoding="utf-8") as f:
                await f.write(line + "\n")
                await f.flush()
                await asyncio.to_thread(os.fsync, f.fileno())
            conv = await self._read_meta(cdir, conversation_id)
            conv.updated_at = datetime.now(timezone.utc)
            await self._write_meta(cdir, conv)
        except BusinessError:
            raise
        except Exception as e:
            raise StorageFailure(code="STORE_WRITE_ERROR", message=str(e))
        return stored

    async def prune(self, conversation_id: str, keep_last: int) -> None:
        """只保留最近 keep_last 条消息；keep_last=0 等同于删除整个会话。"""
        if keep_last < 0:
            raise InvalidRequestError(code="INVALID_PRUNE", message="keep_last must be >= 0")
        if keep_last == 0:
            if await aiofiles.os.path.isdir(self._dir(conversation_id)):
                await self.delete(conversation_id)
            return
        msgs = await self.read(conversation_id)
        if len(msgs) <= keep_last:
            return
        await self._rewrite(conversation_id, msgs[-keep_last:])

    async def set_feedback(
        self, conversation_id: str, message_id: str, feedback: Optional[Feedback]
    ) -> ConversationMessage:
        """给已有消息打上 up/down 标记，这是消息落盘后唯一允许的修改。"""
        msgs = await self.read(conversation_id)
        for idx, msg in enumerate(msgs):
            if msg.id == message_id:
                msgs[idx] = replace(msg, feedback=feedback)
                await self._rewrite(conversation_id, msgs)
                return msgs[idx]
        raise BusinessError(code="MESSAGE_NOT_FOUND", message=message_id, http_status=404)

    async def export(self, conversation_id: str) -> str:
        msgs = await self.read(conversation_id)
        parts = []
        for msg in msgs:
            if msg.role == "system":
                continue
            if msg.role == "user":
                parts.append(f"**User**: {msg.content}")
            else:
                name = BACKEND_DISPLAY_NAMES.get(msg.model or "", "Assistant")
                parts.append(f"**{name}**: {msg.content}")
        return "\n\n---\n\n".join(parts)

    # ---- 内部 ----

    def _dir(self, conversation_id: str) -> Path:
        return self._conv_root / validate_conversation_id(conversation_id)

    async def _rewrite(self, conversation_id: str, msgs: List[ConversationMessage]) -> None:
        cdir = self._dir(conversation_id)
        tmp_path = cdir / f"messages.{uuid4().hex}.jsonl.tmp"
        body = "".join(json.dumps(self._to_record(m), ensure_ascii=False) + "\n" for m in msgs)
        try:
            async with aiofiles.open(tmp_path, "w", encoding="utf-8") as f:
                await f.write(body)
            await aiofiles.os.replace(tmp_path, cdir / "messages.jsonl")
            conv = await self._read_meta(cdir, conversation_id)
            conv.updated_at = datetime.now(timezone.utc)
            await self._write_meta(cdir, conv)
        except BusinessError:
            raise
        except Exception as e:
            raise StorageFailure(code="STORE_WRITE_ERROR", message=str(e))

    async def _read_meta(self, cdir: Path, conversation_id: str) -> Conversation:
        meta_path = cdir / "meta.json"
        try:
            async with aiofiles.open(meta_path, "r", encoding="utf-8") as f:
                data = json.loads(await f.read())
        except FileNotFoundError:
            raise StorageFailure(code="CONVERSATION_NOT_FOUND", message=conversation_id, http_status=404)
        except (OSError, ValueError) as e:
            raise StorageFailure(code="STORE_READ_ERROR", message=str(e))
        session_raw = data.get("provider_session")
        session = None
        if isinstance(session_raw, dict) and session_raw.get("backend") and session_raw.get("handle"):
            session = ProviderSession(backend=session_raw["backend"], handle=session_raw["handle"])
        return Conversation(
            id=data.get("id") or conversation_id,
            title=data.get("title") or "",
            created_at=_parse_iso(data["created_at"]),
            updated_at=_parse_iso(data["updated_at"]),
            provider_session=session,
        )

    async def _write_meta(self, cdir: Path, conv: Conversation) -> None:
        meta_path = cdir / "meta.json"
        tmp_path = cdir / f"meta.{uuid4().hex}.json.tmp"
        obj = {
            "id": conv.id,
            "title": conv.title,
            "created_at": _iso(conv.created_at),
            "updated_at": _iso(conv.updated_at),
            "provider_session": asdict(conv.provider_session) if conv.provider_session else None,
        }
        try:
            async with aiofiles.open(tmp_path, "w", encoding="utf-8") as f:
                await f.write(json.dumps(obj, ensure_ascii=False))
            await aiofiles.os.replace(tmp_path, meta_path)
        except OSError as e:
            raise StorageFailure(code="STORE_WRITE_ERROR", message=str(e))

    @staticmethod
    def _to_record(message: ConversationMessage) -> Dict[str, Any]:
        record: Dict[str, Any] = {
            "id": message.id,
            "ts": message.ts,
            "role": message.role,
            "content": message.content,
        }
        if message.model:
            record["model"] = message.model
        if message.feedback:
            record["feedback"] = message.feedback
        if message.metadata:
            record["metadata"] = message.metadata
        return record

    @staticmethod
    def _to_message(data: Dict[str, Any]) -> ConversationMessage:
        return ConversationMessage(
            id=data["id"],
            ts=int(data["ts"]),
            role=data["role"],
            content=data.get("content") or "",
            model=data.get("model"),
            feedback=data.get("feedback"),
            metadata=data.get("metadata") or {},
        )
