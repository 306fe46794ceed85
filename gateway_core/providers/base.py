"""Provider 适配器抽象接口。

网关不直接依赖具体后端的传输方式（子进程、HTTP、MCP），而是依赖此协议：

- 每个后端实现一个 ProviderAdapter（如 ClaudeClient）。
- stream(): 打开上游调用，返回惰性的 StreamHandle；打开阶段的失败
  以 ProviderUnavailableError 抛出，迭代阶段的失败以
  ProviderStreamInterruptedError 抛出。
- is_available(): 探测后端是否可用，供 /api/ai/backends 使用。
"""

from typing import AsyncIterator, Awaitable, Callable, List, Optional, Protocol

from gateway_core.domain.models import BackendStatus, ChatMessage, GenerationSettings


class StreamHandle:
    """一次上游调用产出的文本片段流。

    - 只能向前迭代一次；
    - session_id() 在流结束后返回后端分配的会话句柄（无状态后端为 None）；
    - aclose() 停止上游工作（终止子进程、关闭连接），可重复调用。
    """

    def __init__(
        self,
        fragments: AsyncIterator[str],
        session_resolver: Optional[Callable[[], Optional[str]]] = None,
        on_close: Optional[Callable[[], Awaitable[None]]] = None,
    ):
        self._fragments = fragments
        self._session_resolver = session_resolver
        self._on_close = on_close
        self._closed = False

    def __aiter__(self) -> AsyncIterator[str]:
        return self._fragments

    def session_id(self) -> Optional[str]:
        if self._session_resolver is None:
            return None
        return self._session_resolver()

    async def aclose(self) -> None:
        if self._closed:
            return
        self._closed = True
        aclose = getattr(self._fragments, "aclose", None)
        try:
            if aclose is not None:
                await aclose()
        finally:
            if self._on_close is not None:
                await self._on_close()


class ProviderAdapter(Protocol):
    """后端适配器协议。

    实现者需要提供：
    - name: 后端标签（mock/claude/gemini/docker/codex）。
    - stateful: 是否由上游维护会话（只需发送最新一轮 user 消息）。
    - timeout: 单个片段的空闲超时（秒）。
    """

    name: str
    stateful: bool
    timeout: float

    async def stream(
        self,
        messages: List[ChatMessage],
        settings: GenerationSettings,
        working_directory: Optional[str] = None,
        session_handle: Optional[str] = None,
    ) -> StreamHandle:
        ...

    async def is_available(self) -> BackendStatus:
        ...
