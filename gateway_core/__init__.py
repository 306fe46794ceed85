"""Gateway Core 顶层包。

该包提供 AI 聊天流式网关的核心实现，
包括配置加载、领域模型、五种后端适配器、生成参数归一化、
上下文构建、流式编排、SSE 编码与追加式会话存储等能力。
"""

from gateway_core.gateway.engine import ChatGateway
from gateway_core.gateway.normalizer import normalize_settings

__all__ = ["ChatGateway", "normalize_settings"]
