"""对外服务装配模块。

负责按配置构建会话存储、适配器注册表与聊天网关，并以单例形式提供给 HTTP 层。
"""

from typing import Mapping, Optional

from gateway_core.config.settings import settings
from gateway_core.domain.conversation import ConversationStore
from gateway_core.gateway.context import ContextBuilder
from gateway_core.gateway.engine import ChatGateway
from gateway_core.infrastructure.storage.jsonl_store import JsonlConversationStore
from gateway_core.providers import ProviderAdapter, build_adapter_registry


_store: Optional[ConversationStore] = None
_adapters: Optional[Mapping[str, ProviderAdapter]] = None
_gateway: Optional[ChatGateway] = None


def get_default_store() -> ConversationStore:
    """获取默认的会话存储（单例）。"""
    global _store
    if _store is None:
        _store = JsonlConversationStore(root=settings.storage_root)
    return _store


def get_default_adapters() -> Mapping[str, ProviderAdapter]:
    """获取默认的适配器注册表（单例，只读）。"""
    global _adapters
    if _adapters is None:
        _adapters = build_adapter_registry(settings)
    return _adapters


def get_default_gateway() -> ChatGateway:
    """获取默认的聊天网关（单例）。"""
    global _gateway
    if _gateway is None:
        store = get_default_store()
        _gateway = ChatGateway(
            store=store,
            adapters=get_default_adapters(),
            context_builder=ContextBuilder(store, settings),
        )
    return _gateway
