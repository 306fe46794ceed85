"""Claude CLI Provider 适配器。

通过本地 ``claude`` 命令行以订阅方式接入：

- 命令: claude --print --output-format stream-json --verbose [会话参数] [选项] <prompt>
- 首轮使用 ``--session-id <uuid>`` 预分配会话，后续轮次使用 ``--resume <id>``。
- stdout 每行一个 JSON 事件，会话 id 来自 system/init 与 result 事件。

Claude 自己维护会话历史，因此只需要发送最新一条 user 消息。
"""

import asyncio
import json
import os
from pathlib import Path
from typing import Any, AsyncIterator, Dict, List, Optional
from uuid import uuid4

from gateway_core.config.settings import settings
from gateway_core.domain.exceptions import ProviderStreamInterruptedError, ProviderUnavailableError
from gateway_core.domain.models import (
    BackendStatus,
    ChatMessage,
    GenerationSettings,
    last_user_message,
    system_prompt_of,
)
from gateway_core.providers import cli_process
from gateway_core.providers.base import StreamHandle
from gateway_core.providers.registry import CLAUDE_CONFIG


CLAUDE_PATHS = (
    Path.home() / ".local" / "bin" / "claude",
    Path.home() / ".claude" / "local" / "claude",
    Path("/usr/local/bin/claude"),
)


def detect_claude_bin(configured: Optional[str] = None) -> str:
    """优先使用配置的路径，其次检查常见安装位置，最后交给 PATH。"""

    if configured:
        return configured
    for path in CLAUDE_PATHS:
        if path.exists():
            return str(path)
    return "claude"


def build_claude_args(settings: GenerationSettings, system_prompt: str = "") -> List[str]:
    """把归一化后的 Claude 选项转换为 CLI 参数。"""

    opts = settings.claude
    args: List[str] = []
    prompt = "\n\n".join(p for p in (system_prompt, opts.system_prompt) if p)
    if prompt:
        args += ["--append-system-prompt", prompt]
    model = opts.model or settings.model
    if model:
        args += ["--model", model]
    if opts.agent:
        args += ["--agent", opts.agent]
    if opts.additional_dirs:
        args += ["--add-dir", *opts.additional_dirs]
    if opts.allowed_tools:
        args += ["--allowed-tools", *opts.allowed_tools]
    if opts.disallowed_tools:
        args += ["--disallowed-tools", *opts.disallowed_tools]
    if opts.permission_mode != "default":
        args += ["--permission-mode", opts.permission_mode]
    for path in opts.mcp_config:
        args += ["--mcp-config", path]
    if opts.strict_mcp_config:
        args.append("--strict-mcp-config")
    if opts.max_budget_usd is not None:
        args += ["--max-budget-usd", str(opts.max_budget_usd)]
    return args


class ClaudeEventParser:
    """解析 stream-json 事件流。

    CLI 在启用部分消息时会同时输出 content_block_delta 与完整的 assistant 消息，
    一旦见过增量事件，就不再重复输出 assistant 消息中的文本。
    """

    def __init__(self) -> None:
        self.session_id: Optional[str] = None
        self.completed = False
        self._saw_delta = False
        self._emitted = False

    def feed(self, line: str) -> List[str]:
        line = line.strip()
        if not line:
            return []
        try:
            event = json.loads(line)
        except json.JSONDecodeError:
            return []
        if not isinstance(event, dict):
            return []
        return self._handle(event)

    def _handle(self, event: Dict[str, Any]) -> List[str]:
        kind = event.get("type")
        if event.get("session_id") and kind in ("system", "result"):
            self.session_id = event["session_id"]

        if kind == "content_block_delta":
            delta = event.get("delta") or {}
            if delta.get("type") == "text_delta" and delta.get("text"):
                self._saw_delta = True
                return self._emit([delta["text"]])
            return []

        if kind == "assistant":
            if self._saw_delta:
                return []
            blocks = (event.get("message") or {}).get("content") or []
            texts = [b.get("text") for b in blocks if isinstance(b, dict) and b.get("type") == "text" and b.get("text")]
            return self._emit(texts)

        if kind == "result":
            self.completed = True
            if event.get("is_error"):
                raise ProviderStreamInterruptedError(
                    code="CLAUDE_ERROR", message=str(event.get("result") or event.get("subtype") or "claude error")
                )
            result = event.get("result")
            if not self._emitted and isinstance(result, str) and result:
                return self._emit([result])
            return []

        if kind == "error":
            err = event.get("error")
            if isinstance(err, dict):
                err = err.get("message")
            raise ProviderStreamInterruptedError(code="CLAUDE_ERROR", message=str(err or "claude error"))

        return []

    def _emit(self, texts: List[str]) -> List[str]:
        if texts:
            self._emitted = True
        return texts


class ClaudeClient:
    """Claude CLI 后端实现。"""

    name = CLAUDE_CONFIG.name
    stateful = CLAUDE_CONFIG.stateful

    def __init__(self, cfg=settings):
        self._settings = cfg
        self.timeout = CLAUDE_CONFIG.timeout(cfg)
        self._bin = detect_claude_bin(getattr(cfg, "claude_bin", None))

    def build_command(
        self,
        messages: List[ChatMessage],
        settings: GenerationSettings,
        session_handle: Optional[str],
        new_session_id: str,
    ) -> List[str]:
        last = last_user_message(messages)
        if last is None:
            raise ProviderUnavailableError(code="NO_USER_MESSAGE", message="No user message found", backend=self.name)
        args = ["--print", "--output-format", "stream-json", "--verbose"]
        if session_handle:
            args += ["--resume", session_handle]
        else:
            args += ["--session-id", new_session_id]
        args += build_claude_args(settings, system_prompt_of(messages))
        args.append(last.content)
        return args

    def _env(self) -> Dict[str, str]:
        env = dict(os.environ)
        if getattr(self._settings, "claude_use_subscription", True):
            env.pop("ANTHROPIC_API_KEY", None)
        return env

    async def stream(
        self,
        messages: List[ChatMessage],
        settings: GenerationSettings,
        working_directory: Optional[str] = None,
        session_handle: Optional[str] = None,
    ) -> StreamHandle:
        new_session_id = str(uuid4())
        args = self.build_command(messages, settings, session_handle, new_session_id)
        cwd = cli_process.resolve_working_directory(working_directory, settings)
        proc = await cli_process.spawn(self._bin, args, cwd=cwd, env=self._env(), backend=self.name)
        stderr_task = asyncio.create_task(cli_process.drain(proc.stderr))
        parser = ClaudeEventParser()

        async def close() -> None:
            await cli_process.terminate(proc)
            if not stderr_task.done():
                stderr_task.cancel()

        async def fragments() -> AsyncIterator[str]:
            try:
                async for line in cli_process.iter_lines(proc.stdout):
                    for text in parser.feed(line):
                        yield text
                code = await proc.wait()
                stderr = await stderr_task
                if code != 0 and not parser.completed:
                    raise ProviderStreamInterruptedError(
                        code="CLAUDE_EXIT",
                        message=stderr.strip() or f"claude exited with code {code}",
                    )
            finally:
                await close()

        def session_id() -> Optional[str]:
            return parser.session_id or session_handle or new_session_id

        return StreamHandle(fragments(), session_resolver=session_id, on_close=close)

    async def is_available(self) -> BackendStatus:
        ok, error = await cli_process.probe_version(self._bin)
        return BackendStatus(backend=self.name, available=ok, error=error)
