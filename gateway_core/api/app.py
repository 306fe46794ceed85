"""HTTP 接口（FastAPI）。

- POST /api/ai/chat                                   聊天，返回 text/event-stream
- GET/POST /api/ai/conversations                      列出 / 创建会话
- GET /api/ai/conversations/{id}                      读取会话全部消息
- GET /api/ai/conversations/{id}/export               导出为 Markdown
- DELETE /api/ai/conversations/{id}?prune=N           只保留最近 N 条；不带 prune 时删除会话
- POST /api/ai/conversations/{id}/messages/{mid}/feedback   消息反馈
- GET /api/ai/backends                                各后端可用性
"""

import asyncio
import logging
from contextlib import aclosing
from typing import AsyncGenerator, AsyncIterator, Mapping, Optional

import uvicorn
from fastapi import APIRouter, FastAPI, Query, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse, PlainTextResponse, StreamingResponse
from pydantic import ValidationError

from gateway_core.api import service
from gateway_core.api.schemas import (
    BackendStatusOut,
    ChatRequestBody,
    ConversationSummaryOut,
    CreateConversationBody,
    FeedbackBody,
    MessageOut,
)
from gateway_core.config.settings import settings
from gateway_core.domain.conversation import ConversationStore
from gateway_core.domain.exceptions import BusinessError
from gateway_core.domain.models import StreamEvent
from gateway_core.gateway.encoder import encode_stream
from gateway_core.gateway.engine import ChatGateway
from gateway_core.infrastructure.logging.logger import log_event, logger
from gateway_core.providers import ProviderAdapter

SSE_HEADERS = {"Cache-Control": "no-cache", "X-Accel-Buffering": "no"}


def _error(message: str, status_code: int, code: Optional[str] = None) -> JSONResponse:
    body = {"error": message}
    if code:
        body["code"] = code
    return JSONResponse(body, status_code=status_code)


async def replay_events(first: StreamEvent, events: AsyncGenerator[StreamEvent, None]) -> AsyncIterator[StreamEvent]:
    """先补发已取出的首个事件，再转发剩余事件；客户端断开时同样关闭 events。"""

    async with aclosing(events):
        yield first
        async for event in events:
            yield event


def build_router(
    gateway: ChatGateway,
    store: ConversationStore,
    adapters: Mapping[str, ProviderAdapter],
) -> APIRouter:
    router = APIRouter(prefix="/api/ai", tags=["AI"])

    @router.post("/chat")
    async def chat(request: Request):
        try:
            raw = await request.json()
        except ValueError as e:
            log_event(logging.WARNING, "Unparsable chat body", {}, error=str(e))
            return _error("Invalid JSON body", 500, "INVALID_JSON")
        try:
            body = ChatRequestBody.model_validate(raw)
        except ValidationError as e:
            return _error(str(e), 400, "INVALID_REQUEST")

        events = gateway.stream(body.to_domain())
        try:
            first = await events.__anext__()
        except StopAsyncIteration:
            return _error("Empty response stream", 500, "EMPTY_STREAM")
        except BusinessError as e:
            return _error(e.message, e.http_status, e.code)

        return StreamingResponse(
            encode_stream(replay_events(first, events)), media_type="text/event-stream", headers=SSE_HEADERS
        )

    @router.get("/conversations")
    async def list_conversations():
        summaries = await store.list_conversations()
        return {"conversations": [ConversationSummaryOut.from_domain(s).model_dump(by_alias=True) for s in summaries]}

    @router.post("/conversations")
    async def create_conversation(body: Optional[CreateConversationBody] = None):
        name = body.name if body else None
        cid = await store.create(name)
        return {"id": cid, "name": name or ""}

    @router.get("/conversations/{conversation_id}")
    async def get_conversation(conversation_id: str):
        conv = await store.get_conversation(conversation_id)
        return {
            "id": conv.id,
            "title": conv.title,
            "messages": [MessageOut.from_domain(m).model_dump(by_alias=True) for m in conv.messages],
        }

    @router.get("/conversations/{conversation_id}/export")
    async def export_conversation(conversation_id: str):
        await store.get_conversation(conversation_id)
        return PlainTextResponse(await store.export(conversation_id), media_type="text/markdown")

    @router.delete("/conversations/{conversation_id}")
    async def delete_conversation(conversation_id: str, prune: Optional[int] = Query(default=None, ge=0)):
        async with store.write_lock(conversation_id):
            if prune is None:
                await store.delete(conversation_id)
                return {"id": conversation_id, "deleted": True}
            await store.prune(conversation_id, prune)
        return {"id": conversation_id, "pruned": prune}

    @router.post("/conversations/{conversation_id}/messages/{message_id}/feedback")
    async def set_feedback(conversation_id: str, message_id: str, body: FeedbackBody):
        async with store.write_lock(conversation_id):
            msg = await store.set_feedback(conversation_id, message_id, body.feedback)
        return MessageOut.from_domain(msg).model_dump(by_alias=True)

    @router.get("/backends")
    async def list_backends():
        statuses = await asyncio.gather(*(a.is_available() for a in adapters.values()))
        return {
            "default": settings.default_backend,
            "backends": [BackendStatusOut.from_domain(s).model_dump(by_alias=True) for s in statuses],
        }

    return router


def create_app(
    gateway: Optional[ChatGateway] = None,
    store: Optional[ConversationStore] = None,
    adapters: Optional[Mapping[str, ProviderAdapter]] = None,
) -> FastAPI:
    store = store or service.get_default_store()
    adapters = adapters or service.get_default_adapters()
    gateway = gateway or service.get_default_gateway()

    app = FastAPI(title="AI Chat Gateway")
    app.include_router(build_router(gateway, store, adapters))

    @app.exception_handler(BusinessError)
    async def business_error_handler(request: Request, exc: BusinessError):
        if exc.http_status >= 500:
            logger.error(f"{exc.code}: {exc.message}", extra={"extra": {"path": request.url.path}})
        return _error(exc.message, exc.http_status, exc.code)

    @app.exception_handler(RequestValidationError)
    async def validation_error_handler(request: Request, exc: RequestValidationError):
        return _error(str(exc), 400, "INVALID_REQUEST")

    return app


def run() -> None:
    uvicorn.run(create_app(), host=settings.host, port=settings.port)


if __name__ == "__main__":
    run()
