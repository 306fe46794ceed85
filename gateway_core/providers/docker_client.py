"""本地模型运行时 Provider 适配器（Docker Model Runner 等）。

接口与 OpenAI 兼容：
- URL: {base_url}/chat/completions
- 认证: 配置了 docker_api_key 时发送 Authorization: Bearer <token>

只依赖公共字段：model/messages/temperature/max_tokens/stop/stream。
"""

import json
from typing import Any, AsyncIterator, Dict, List, Optional

import httpx

from gateway_core.config.settings import settings
from gateway_core.domain.exceptions import (
    ApiError,
    NetworkError,
    ProviderStreamInterruptedError,
    ProviderUnavailableError,
    RateLimitError,
)
from gateway_core.domain.models import BackendStatus, ChatMessage, GenerationSettings
from gateway_core.providers.base import StreamHandle
from gateway_core.providers.registry import DOCKER_CONFIG


class DockerClient:
    """OpenAI 兼容本地运行时的流式客户端实现。"""

    name = DOCKER_CONFIG.name
    stateful = DOCKER_CONFIG.stateful

    def __init__(self, cfg=settings):
        self._settings = cfg
        self.timeout = DOCKER_CONFIG.timeout(cfg)
        self._base = (getattr(cfg, "docker_base_url", None) or "http://localhost:12434/v1").rstrip("/")

    # ---- 流式 ----

    async def stream(
        self,
        messages: List[ChatMessage],
        settings: GenerationSettings,
        working_directory: Optional[str] = None,
        session_handle: Optional[str] = None,
    ) -> StreamHandle:
        if not settings.model:
            raise ProviderUnavailableError(code="MODEL_REQUIRED", message="Model required for Docker backend")
        payload = self._build_payload(messages, settings)
        client = httpx.AsyncClient(timeout=self._settings.http_timeout, trust_env=False)
        try:
            request = client.build_request(
                "POST",
                f"{self._base}/chat/completions",
                json=payload,
                headers=self._headers(),
            )
            resp = await client.send(request, stream=True)
        except httpx.RequestError as e:
            await client.aclose()
            raise NetworkError(code="NETWORK_ERROR", message=str(e), backend=self.name)

        if resp.status_code >= 400:
            body = (await resp.aread()).decode("utf-8", errors="replace")
            await resp.aclose()
            await client.aclose()
            if resp.status_code == 429:
                raise RateLimitError(code="RATE_LIMIT", message="Local model rate limit", backend=self.name)
            raise ApiError(code="API_ERROR", message=body or f"HTTP {resp.status_code}", backend=self.name)

        async def close() -> None:
            await resp.aclose()
            await client.aclose()

        async def fragments() -> AsyncIterator[str]:
            try:
                async for line in resp.aiter_lines():
                    data_str = line.strip()
                    if not data_str:
                        continue
                    if data_str.startswith("data:"):
                        data_str = data_str[5:].strip()
                    if data_str == "[DONE]":
                        return
                    try:
                        chunk = json.loads(data_str)
                    except json.JSONDecodeError:
                        continue
                    text, finished = self._parse_stream_chunk(chunk)
                    if text:
                        yield text
                    if finished:
                        return
            except httpx.HTTPError as e:
                raise ProviderStreamInterruptedError(code="STREAM_INTERRUPTED", message=str(e), backend=self.name)
            finally:
                await close()

        return StreamHandle(fragments(), on_close=close)

    # ---- 探测 ----

    async def list_models(self) -> List[str]:
        async with httpx.AsyncClient(timeout=2.0, trust_env=False) as client:
            resp = await client.get(f"{self._base}/models", headers=self._headers())
        resp.raise_for_status()
        data = resp.json()
        return [m["id"] for m in data.get("data", []) if isinstance(m, dict) and m.get("id")]

    async def is_available(self) -> BackendStatus:
        try:
            models = await self.list_models()
        except (httpx.HTTPError, ValueError) as e:
            return BackendStatus(backend=self.name, available=False, error=str(e) or type(e).__name__)
        return BackendStatus(backend=self.name, available=True, models=models)

    # ---- 辅助方法 ----

    def _headers(self) -> Dict[str, str]:
        headers = {"Content-Type": "application/json"}
        api_key = getattr(self._settings, "docker_api_key", None)
        if api_key:
            headers["Authorization"] = f"Bearer {api_key}"
        return headers

    def _build_payload(self, messages: List[ChatMessage], settings: GenerationSettings) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "model": settings.model,
            "messages": [{"role": m.role, "content": m.content} for m in messages],
            "temperature": settings.temperature,
            "max_tokens": settings.max_tokens,
            "stream": True,
        }
        if settings.docker.stop:
            payload["stop"] = list(settings.docker.stop)
        return payload

    @staticmethod
    def _parse_stream_chunk(data: Dict[str, Any]) -> tuple[str, bool]:
        text = ""
        finished = False
        for ch in data.get("choices") or []:
            delta = ch.get("delta") or {}
            text += delta.get("content") or ""
            if ch.get("finish_reason"):
                finished = True
        return text, finished
