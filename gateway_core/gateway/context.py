"""模型上下文构建。

把会话日志转换成目标后端看到的消息窗口：

- 有状态后端（claude、codex）自己保存历史，只发送最新一条 user 消息；
- 无状态后端需要完整历史：去掉 system 记录，把其他后端的回复改写成
  ``[<Name> responded]:`` 开头的 user 文本，合并相邻 user 消息，
  再按条数与估算 token 数截取尾部窗口，最新一条消息始终保留。
"""

from typing import List, Optional

from gateway_core.config.settings import settings as default_settings
from gateway_core.domain.conversation import ConversationMessage, ConversationStore
from gateway_core.domain.models import ChatMessage, GenerationSettings, ModelContext
from gateway_core.prompts import build_identity_prompt, display_name

CHARS_PER_TOKEN = 4


def estimate_tokens(text: str) -> int:
    return (len(text) + CHARS_PER_TOKEN - 1) // CHARS_PER_TOKEN


def merge_consecutive_user_messages(messages: List[ChatMessage]) -> List[ChatMessage]:
    merged: List[ChatMessage] = []
    for msg in messages:
        if merged and msg.role == "user" and merged[-1].role == "user":
            merged[-1] = ChatMessage(role="user", content=f"{merged[-1].content}\n\n{msg.content}")
        else:
            merged.append(ChatMessage(role=msg.role, content=msg.content))
    return merged


class ContextBuilder:
    def __init__(self, store: ConversationStore, cfg=default_settings):
        self._store = store
        self._max_messages = int(cfg.max_context_messages)
        self._token_budget = int(cfg.context_token_budget)

    async def build(
        self,
        conversation_id: str,
        new_user_message: Optional[ConversationMessage],
        *,
        backend: str,
        settings: GenerationSettings,
        stateful: bool,
    ) -> ModelContext:
        """先把新的 user 消息落盘（如有），再从日志读回并构建上下文。"""

        if new_user_message is not None:
            await self._store.append(conversation_id, new_user_message)
        history = await self._store.read(conversation_id)
        return self.from_history(history, backend=backend, settings=settings, stateful=stateful)

    def from_messages(
        self,
        messages: List[ChatMessage],
        *,
        backend: str,
        settings: GenerationSettings,
        stateful: bool,
    ) -> ModelContext:
        """无会话 id 的请求直接使用请求里的消息；请求自带的 system 消息并入系统提示词。"""

        base = "\n\n".join(p for p in [settings.system_prompt] + [m.content for m in messages if m.role == "system"] if p)
        history = [ConversationMessage(role=m.role, content=m.content) for m in messages if m.role != "system"]
        return self.from_history(history, backend=backend, settings=settings, stateful=stateful, base_prompt=base)

    def from_history(
        self,
        history: List[ConversationMessage],
        *,
        backend: str,
        settings: GenerationSettings,
        stateful: bool,
        base_prompt: Optional[str] = None,
    ) -> ModelContext:
        system_prompt = build_identity_prompt(
            backend, settings.system_prompt if base_prompt is None else base_prompt
        )
        if stateful:
            for msg in reversed(history):
                if msg.role == "user":
                    return ModelContext(system_prompt, [ChatMessage(role="user", content=msg.content)])
            return ModelContext(system_prompt, [])

        relabelled: List[ChatMessage] = []
        for msg in history:
            if msg.role == "system":
                continue
            if msg.role == "assistant" and msg.model and msg.model != backend:
                relabelled.append(
                    ChatMessage(role="user", content=f"[{display_name(msg.model)} responded]:\n{msg.content}")
                )
            else:
                relabelled.append(ChatMessage(role=msg.role, content=msg.content))
        merged = merge_consecutive_user_messages(relabelled)
        return ModelContext(system_prompt, self._window(merged, settings, system_prompt))

    def _window(self, messages: List[ChatMessage], settings: GenerationSettings, system_prompt: str) -> List[ChatMessage]:
        budget = self._token_budget - settings.max_tokens - estimate_tokens(system_prompt)
        kept: List[ChatMessage] = []
        used = 0
        for msg in reversed(messages):
            cost = estimate_tokens(msg.content)
            if kept and (len(kept) >= self._max_messages or used + cost > budget):
                break
            kept.append(msg)
            used += cost
        kept.reverse()
        return kept
