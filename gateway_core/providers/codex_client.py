"""Codex Provider 适配器（MCP stdio）。

启动 ``codex mcp-server``，通过 MCP 协议调用其暴露的工具：

- 首轮调用 ``codex`` 工具，参数 {prompt, cwd, sandbox, approval-policy}；
- 已有会话时调用 ``codex-reply`` 工具，参数 {conversationId, prompt}。

Codex 一次性返回整段回复，这里把它切成固定长度的片段输出，
使其与其他后端的流式行为一致。conversationId 并非总会返回，
拿不到时下一轮会重新开一个会话。
"""

import asyncio
from dataclasses import dataclass
from typing import Any, AsyncIterator, Dict, List, Optional

from mcp import ClientSession, StdioServerParameters
from mcp.client.stdio import stdio_client

from gateway_core.config.settings import settings
from gateway_core.domain.exceptions import BusinessError, ProviderUnavailableError
from gateway_core.domain.models import BackendStatus, ChatMessage, GenerationSettings, last_user_message
from gateway_core.providers import cli_process
from gateway_core.providers.base import StreamHandle
from gateway_core.providers.registry import CODEX_CONFIG


# 本地 sandbox 取值到 codex 工具参数的映射
SANDBOX_POLICY = {
    "read-only": "read-only",
    "full": "workspace-write",
    "off": "danger-full-access",
}

APPROVAL_POLICY = {
    "always": "untrusted",
    "never": "never",
    "dangerous": "on-failure",
}


@dataclass
class CodexReply:
    text: str
    conversation_id: Optional[str] = None


def chunk_text(text: str, size: int) -> List[str]:
    return [text[i:i + size] for i in range(0, len(text), size)]


def extract_text(result: Any) -> str:
    """拼接工具结果中所有 text 类型内容块。"""

    blocks = getattr(result, "content", None) or []
    return "".join(
        getattr(b, "text", "") for b in blocks if getattr(b, "type", None) == "text" and getattr(b, "text", None)
    )


def extract_conversation_id(result: Any) -> Optional[str]:
    candidates: List[Dict[str, Any]] = []
    structured = getattr(result, "structuredContent", None)
    if isinstance(structured, dict):
        candidates.append(structured)
    extra = getattr(result, "model_extra", None)
    if isinstance(extra, dict):
        candidates.append(extra)
        if isinstance(extra.get("result"), dict):
            candidates.append(extra["result"])
    for data in candidates:
        value = data.get("conversationId") or data.get("conversation_id")
        if isinstance(value, str) and value:
            return value
    return None


def find_tool(names: List[str], wanted: str) -> Optional[str]:
    """按名称查找工具：优先精确匹配，其次子串匹配。"""

    if wanted in names:
        return wanted
    for name in names:
        if wanted in name and (wanted != "codex" or "reply" not in name):
            return name
    return None


class CodexClient:
    """Codex MCP 后端实现。"""

    name = CODEX_CONFIG.name
    stateful = CODEX_CONFIG.stateful

    def __init__(self, cfg=settings):
        self._settings = cfg
        self.timeout = CODEX_CONFIG.timeout(cfg)
        self._bin = getattr(cfg, "codex_bin", None) or "codex"
        self._chunk_size = int(getattr(cfg, "codex_chunk_size", 50) or 50)

    def server_args(self, settings: GenerationSettings) -> List[str]:
        args = ["mcp-server"]
        model = settings.codex.model or settings.model
        if model:
            args += ["-m", model]
        args += ["-c", f'model_reasoning_effort="{settings.codex.reasoning_effort}"']
        return args

    def tool_arguments(
        self, prompt: str, settings: GenerationSettings, cwd: str, session_handle: Optional[str]
    ) -> Dict[str, Any]:
        if session_handle:
            return {"conversationId": session_handle, "prompt": prompt}
        arguments: Dict[str, Any] = {
            "prompt": prompt,
            "cwd": cwd,
            "sandbox": SANDBOX_POLICY[settings.codex.sandbox],
        }
        if settings.codex.approval_mode:
            arguments["approval-policy"] = APPROVAL_POLICY[settings.codex.approval_mode]
        return arguments

    async def call_codex(
        self, prompt: str, settings: GenerationSettings, cwd: str, session_handle: Optional[str]
    ) -> CodexReply:
        params = StdioServerParameters(command=self._bin, args=self.server_args(settings), cwd=cwd)
        async with stdio_client(params) as (read, write):
            async with ClientSession(read, write) as session:
                await session.initialize()
                listed = await session.list_tools()
                names = [t.name for t in listed.tools]
                tool = find_tool(names, "codex-reply" if session_handle else "codex")
                if tool is None:
                    raise ProviderUnavailableError(
                        code="CODEX_TOOL_MISSING", message=f"codex tools not found in {names}", backend=self.name
                    )
                result = await session.call_tool(tool, self.tool_arguments(prompt, settings, cwd, session_handle))
        if getattr(result, "isError", False):
            raise ProviderUnavailableError(
                code="CODEX_TOOL_ERROR", message=extract_text(result) or "codex tool error", backend=self.name
            )
        return CodexReply(text=extract_text(result), conversation_id=extract_conversation_id(result))

    async def stream(
        self,
        messages: List[ChatMessage],
        settings: GenerationSettings,
        working_directory: Optional[str] = None,
        session_handle: Optional[str] = None,
    ) -> StreamHandle:
        last = last_user_message(messages)
        if last is None:
            raise ProviderUnavailableError(code="NO_USER_MESSAGE", message="No user message found", backend=self.name)
        cwd = cli_process.resolve_working_directory(working_directory, settings)
        try:
            reply = await asyncio.wait_for(
                self.call_codex(last.content, settings, cwd, session_handle), timeout=self.timeout
            )
        except BusinessError:
            raise
        except asyncio.TimeoutError:
            raise ProviderUnavailableError(code="CODEX_TIMEOUT", message="codex call timed out", backend=self.name)
        except Exception as e:
            raise ProviderUnavailableError(code="CODEX_ERROR", message=str(e) or type(e).__name__, backend=self.name)

        pieces = chunk_text(reply.text, self._chunk_size)

        async def fragments() -> AsyncIterator[str]:
            for piece in pieces:
                yield piece

        def session_id() -> Optional[str]:
            return reply.conversation_id or session_handle

        return StreamHandle(fragments(), session_resolver=session_id)

    async def is_available(self) -> BackendStatus:
        ok, error = await cli_process.probe_version(self._bin)
        return BackendStatus(backend=self.name, available=ok, error=error)
