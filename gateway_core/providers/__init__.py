"""后端 Provider 集成层。

该包下的模块负责：
- 定义适配器抽象接口 (base)。
- 维护后端静态配置 (registry)。
- 提供五种后端的具体实现 (mock、claude、gemini、docker、codex)。
"""

from types import MappingProxyType
from typing import Mapping

from gateway_core.config.settings import settings
from gateway_core.providers.base import ProviderAdapter, StreamHandle
from gateway_core.providers.claude_client import ClaudeClient
from gateway_core.providers.codex_client import CodexClient
from gateway_core.providers.docker_client import DockerClient
from gateway_core.providers.gemini_client import GeminiClient
from gateway_core.providers.mock_client import MockClient


def build_adapter_registry(cfg=settings) -> Mapping[str, ProviderAdapter]:
    """构建只读的 标签 -> 适配器 映射，进程内只需构建一次。"""

    adapters = [MockClient(cfg), ClaudeClient(cfg), GeminiClient(cfg), DockerClient(cfg), CodexClient(cfg)]
    return MappingProxyType({a.name: a for a in adapters})


__all__ = ["ProviderAdapter", "StreamHandle", "build_adapter_registry"]
