"""聊天网关编排器。

一次请求依次经过：

1. 校验：消息或会话 id 至少有一个，docker 后端必须给出 model，会话 id 格式合法。
   校验失败抛出 InvalidRequestError，不产生任何副作用。
2. 解析：归一化生成参数，查找适配器，为 "new" 创建会话，
   获取会话写锁，读取同一后端的会话句柄。
3. 流式：逐片段转发，单片段超过适配器 timeout 视为中断。
4. 收尾：把拼接后的回复和会话句柄落盘，发出唯一的终止事件，释放写锁。

在首个片段产出之前的任何失败都会用同样的输入在 mock 上重试一次；
首个片段之后的失败只会以带 error 的终止事件告知客户端，不写入回复。
客户端断开（生成器被关闭或任务被取消）时关闭上游，不写入回复。
"""

import asyncio
import logging
import time
from contextlib import aclosing
from typing import AsyncIterator, List, Mapping, Optional
from uuid import uuid4

from gateway_core.domain.conversation import ConversationMessage, ConversationStore, ProviderSession
from gateway_core.domain.exceptions import (
    BusinessError,
    InvalidRequestError,
    ProviderStreamInterruptedError,
    ProviderUnavailableError,
    StorageFailure,
)
from gateway_core.domain.models import (
    ChatRequest,
    GenerationSettings,
    ModelContext,
    StreamEvent,
    last_user_message,
)
from gateway_core.gateway.context import ContextBuilder
from gateway_core.gateway.normalizer import normalize_settings
from gateway_core.infrastructure.logging.logger import log_event
from gateway_core.infrastructure.storage.jsonl_store import validate_conversation_id
from gateway_core.providers.base import ProviderAdapter

FALLBACK_BACKEND = "mock"
NEW_CONVERSATION = "new"


class ChatGateway:
    """聊天网关：把一次 ChatRequest 变成 StreamEvent 流。"""

    def __init__(
        self,
        store: ConversationStore,
        adapters: Mapping[str, ProviderAdapter],
        context_builder: Optional[ContextBuilder] = None,
    ):
        self._store = store
        self._adapters = adapters
        self._context = context_builder or ContextBuilder(store)

    # ---- 校验 ----

    def validate(self, request: ChatRequest) -> None:
        if not request.messages and not request.conversation_id:
            raise InvalidRequestError(code="INVALID_REQUEST", message="No messages or conversationId provided")
        if request.backend == "docker" and not request.model:
            raise InvalidRequestError(code="MODEL_REQUIRED", message="Model required for Docker backend")
        if request.conversation_id and request.conversation_id != NEW_CONVERSATION:
            validate_conversation_id(request.conversation_id)
        if request.conversation_id == NEW_CONVERSATION and last_user_message(request.messages) is None:
            raise InvalidRequestError(code="INVALID_REQUEST", message="A new conversation needs a user message")

    # ---- 流式 ----

    async def stream(self, request: ChatRequest) -> AsyncIterator[StreamEvent]:
        """校验并执行一次请求。校验错误在第一次迭代时抛出。"""

        self.validate(request)
        log_ctx = {
            "trace_id": uuid4().hex,
            "backend": request.backend,
            "conversation_id": request.conversation_id,
        }
        gen_settings = normalize_settings(request.settings, request.model)

        if not request.conversation_id:
            async with aclosing(self._turn(request, gen_settings, None, log_ctx)) as events:
                async for event in events:
                    yield event
            return

        cid = request.conversation_id
        if cid == NEW_CONVERSATION:
            cid = await self._store.create()
            log_ctx["conversation_id"] = cid
            log_event(logging.INFO, "Conversation created", log_ctx)
        async with self._store.write_lock(cid):
            async with aclosing(self._turn(request, gen_settings, cid, log_ctx)) as events:
                async for event in events:
                    yield event

    async def _turn(
        self,
        request: ChatRequest,
        gen_settings: GenerationSettings,
        cid: Optional[str],
        log_ctx: dict,
    ) -> AsyncIterator[StreamEvent]:
        user_msg = last_user_message(request.messages)
        pending_user = ConversationMessage(role="user", content=user_msg.content) if cid and user_msg else None
        attempts: List[str] = [request.backend]
        if request.backend != FALLBACK_BACKEND:
            attempts.append(FALLBACK_BACKEND)

        for idx, backend in enumerate(attempts):
            is_last = idx == len(attempts) - 1
            adapter = self._adapters.get(backend)
            stateful = bool(adapter and adapter.stateful)
            # user 消息只在第一次尝试时落盘，回退时复用
            context = await self._build_context(request, gen_settings, cid, backend, stateful, pending_user)
            pending_user = None
            started = time.monotonic()

            try:
                if adapter is None:
                    raise ProviderUnavailableError(code="UNKNOWN_BACKEND", message=f"Unknown backend: {backend!r}")
                session_handle = await self._session_handle(request, cid, backend) if stateful else None
                handle = await adapter.stream(context.to_messages(), gen_settings, request.cwd, session_handle)
            except StorageFailure:
                raise
            except Exception as e:
                if is_last:
                    log_event(logging.ERROR, "Backend failed to start", log_ctx, attempt=backend, error=str(e))
                    yield StreamEvent(model=backend, done=True, error=_error_text(e), conversation_id=cid)
                    return
                log_event(logging.WARNING, "Backend unavailable, falling back", log_ctx, attempt=backend, error=str(e))
                continue

            parts: List[str] = []
            iterator = handle.__aiter__()
            try:
                while True:
                    try:
                        fragment = await asyncio.wait_for(iterator.__anext__(), timeout=adapter.timeout)
                    except StopAsyncIteration:
                        break
                    except asyncio.TimeoutError:
                        raise ProviderStreamInterruptedError(
                            code="STREAM_TIMEOUT", message=f"{backend} produced no output for {adapter.timeout}s"
                        )
                    if not fragment:
                        continue
                    parts.append(fragment)
                    yield StreamEvent(model=backend, content=fragment)
            except GeneratorExit:
                log_event(logging.INFO, "Client disconnected", log_ctx, attempt=backend, fragments=len(parts))
                raise
            except Exception as e:
                if not parts and not is_last and not isinstance(e, StorageFailure):
                    log_event(logging.WARNING, "Backend failed before output, falling back", log_ctx, attempt=backend, error=str(e))
                    continue
                log_event(logging.ERROR, "Stream interrupted", log_ctx, attempt=backend, error=str(e), fragments=len(parts))
                yield StreamEvent(model=backend, done=True, error=_error_text(e), conversation_id=cid)
                return
            finally:
                await handle.aclose()

            session_id = handle.session_id()
            duration_ms = int((time.monotonic() - started) * 1000)
            if cid:
                try:
                    await self._store.append(
                        cid,
                        ConversationMessage(
                            role="assistant",
                            content="".join(parts),
                            model=backend,
                            metadata={"durationMs": duration_ms, "cwd": request.cwd},
                        ),
                    )
                    if stateful and session_id:
                        await self._store.set_provider_session(cid, ProviderSession(backend=backend, handle=session_id))
                except BusinessError as e:
                    log_event(logging.ERROR, "Failed to persist reply", log_ctx, attempt=backend, error=str(e))
                    yield StreamEvent(model=backend, done=True, error=_error_text(e), conversation_id=cid)
                    return
            log_event(
                logging.INFO,
                "Chat completed",
                log_ctx,
                attempt=backend,
                fallback=idx > 0,
                duration_ms=duration_ms,
                chars=sum(len(p) for p in parts),
            )
            yield StreamEvent(model=backend, done=True, session_id=session_id, conversation_id=cid)
            return

    async def _build_context(
        self,
        request: ChatRequest,
        gen_settings: GenerationSettings,
        cid: Optional[str],
        backend: str,
        stateful: bool,
        pending_user: Optional[ConversationMessage],
    ) -> ModelContext:
        if cid:
            return await self._context.build(
                cid, pending_user, backend=backend, settings=gen_settings, stateful=stateful
            )
        return self._context.from_messages(request.messages, backend=backend, settings=gen_settings, stateful=stateful)

    async def _session_handle(self, request: ChatRequest, cid: Optional[str], backend: str) -> Optional[str]:
        """读取会话句柄：只复用属于同一后端的句柄；无会话的请求可直接携带 sessionId。"""

        if not cid:
            return request.session_id
        conv = await self._store.get_conversation(cid)
        session = conv.provider_session
        if session and session.backend == backend:
            return session.handle
        return None


def _error_text(e: Exception) -> str:
    if isinstance(e, BusinessError):
        return e.message
    return str(e) or type(e).__name__
