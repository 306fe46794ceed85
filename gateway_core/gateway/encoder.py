"""StreamEvent 到 SSE 帧的编码。

每个事件编码为一帧 ``data: <json>\\n\\n``，字段使用 camelCase：
``{content?, model, done, sessionId?, error?, conversationId?}``。
可选字段为空时不输出。
"""

import json
from typing import Any, AsyncIterable, AsyncIterator, Dict

from gateway_core.domain.models import StreamEvent


def event_to_dict(event: StreamEvent) -> Dict[str, Any]:
    frame: Dict[str, Any] = {}
    if event.content is not None:
        frame["content"] = event.content
    frame["model"] = event.model
    frame["done"] = event.done
    if event.session_id:
        frame["sessionId"] = event.session_id
    if event.error:
        frame["error"] = event.error
    if event.conversation_id:
        frame["conversationId"] = event.conversation_id
    return frame


def encode(event: StreamEvent) -> str:
    return f"data: {json.dumps(event_to_dict(event), ensure_ascii=False)}\n\n"


async def encode_stream(events: AsyncIterable[StreamEvent]) -> AsyncIterator[str]:
    """按发出顺序逐个编码事件。"""

    async for event in events:
        yield encode(event)
