"""Gemini CLI Provider 适配器。

Gemini CLI 不维护会话，每次调用都把完整上下文拼成一个提示词：

    <system>
    ...系统提示词...
    </system>

    User: ...

    Assistant: ...

通过 ``gemini [选项] -p <prompt>`` 启动，stdout 原样作为片段输出。
"""

import asyncio
from typing import AsyncIterator, List, Optional

from gateway_core.config.settings import settings
from gateway_core.domain.exceptions import ProviderStreamInterruptedError, ProviderUnavailableError
from gateway_core.domain.models import BackendStatus, ChatMessage, GenerationSettings, system_prompt_of
from gateway_core.providers import cli_process
from gateway_core.providers.base import StreamHandle
from gateway_core.providers.registry import GEMINI_CONFIG


def build_gemini_prompt(messages: List[ChatMessage]) -> str:
    parts: List[str] = []
    system_prompt = system_prompt_of(messages)
    if system_prompt:
        parts.append(f"<system>\n{system_prompt}\n</system>\n")
    for msg in messages:
        if msg.role == "user":
            parts.append(f"User: {msg.content}")
        elif msg.role == "assistant":
            parts.append(f"Assistant: {msg.content}")
    return "\n\n".join(parts)


def build_gemini_args(settings: GenerationSettings) -> List[str]:
    opts = settings.gemini
    args: List[str] = []
    model = opts.model or settings.model
    if model:
        args += ["--model", model]
    if opts.temperature is not None:
        args += ["--temperature", str(opts.temperature)]
    if opts.max_output_tokens is not None:
        args += ["--max-output-tokens", str(opts.max_output_tokens)]
    if opts.system_instruction:
        args += ["--system-instruction", opts.system_instruction]
    if opts.harm_block_threshold:
        args += ["--harm-block-threshold", opts.harm_block_threshold]
    return args


class GeminiClient:
    """Gemini CLI 后端实现。"""

    name = GEMINI_CONFIG.name
    stateful = GEMINI_CONFIG.stateful

    def __init__(self, cfg=settings):
        self._settings = cfg
        self.timeout = GEMINI_CONFIG.timeout(cfg)
        self._bin = getattr(cfg, "gemini_bin", None) or "gemini"

    def build_command(self, messages: List[ChatMessage], settings: GenerationSettings) -> List[str]:
        if not any(m.role == "user" for m in messages):
            raise ProviderUnavailableError(code="NO_USER_MESSAGE", message="No user message found", backend=self.name)
        return build_gemini_args(settings) + ["-p", build_gemini_prompt(messages)]

    async def stream(
        self,
        messages: List[ChatMessage],
        settings: GenerationSettings,
        working_directory: Optional[str] = None,
        session_handle: Optional[str] = None,
    ) -> StreamHandle:
        args = self.build_command(messages, settings)
        cwd = cli_process.resolve_working_directory(working_directory, settings)
        proc = await cli_process.spawn(self._bin, args, cwd=cwd, backend=self.name)
        stderr_task = asyncio.create_task(cli_process.drain(proc.stderr))

        async def close() -> None:
            await cli_process.terminate(proc)
            if not stderr_task.done():
                stderr_task.cancel()

        async def fragments() -> AsyncIterator[str]:
            try:
                async for text in cli_process.iter_text(proc.stdout):
                    yield text
                code = await proc.wait()
                stderr = await stderr_task
                if code != 0:
                    raise ProviderStreamInterruptedError(
                        code="GEMINI_EXIT",
                        message=stderr.strip() or f"gemini exited with code {code}",
                    )
            finally:
                await close()

        return StreamHandle(fragments(), on_close=close)

    async def is_available(self) -> BackendStatus:
        ok, error = await cli_process.probe_version(self._bin)
        return BackendStatus(backend=self.name, available=ok, error=error)
