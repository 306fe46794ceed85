from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, AsyncContextManager, Dict, List, Optional, Protocol

from .models import Feedback, Role


@dataclass
class ConversationMessage:
    role: Role
    content: str
    id: str = ""  # 为空时由 store 分配
    ts: int = 0  # Unix 毫秒，为 0 时由 store 分配
    model: Optional[str] = None
    feedback: Optional[Feedback] = None
    metadata: Dict[str, Any] = field(default_factory=dict)


@dataclass
class ProviderSession:
    """有状态后端的续接句柄，按后端区分。"""

    backend: str
    handle: str


@dataclass
class Conversation:
    id: str
    title: str
    created_at: datetime
    updated_at: datetime
    messages: List[ConversationMessage] = field(default_factory=list)
    provider_session: Optional[ProviderSession] = None


@dataclass
class ConversationSummary:
    id: str
    message_count: int
    updated_at: int  # 最后一条消息的 ts，无消息时为 0


class ConversationStore(Protocol):
    async def create(self, name: Optional[str] = None) -> str:
        ...

    async def read(self, conversation_id: str) -> List[ConversationMessage]:
        ...

    async def append(self, conversation_id: str, message: ConversationMessage) -> ConversationMessage:
        ...

    async def prune(self, conversation_id: str, keep_last: int) -> None:
        ...

    async def export(self, conversation_id: str) -> str:
        ...

    async def list_conversations(self) -> List[ConversationSummary]:
        ...

    async def get_conversation(self, conversation_id: str) -> Conversation:
        ...

    async def set_provider_session(self, conversation_id: str, session: Optional[ProviderSession]) -> None:
        ...

    async def set_feedback(self, conversation_id: str, message_id: str, feedback: Optional[Feedback]) -> ConversationMessage:
        ...

    async def delete(self, conversation_id: str) -> None:
        ...

    def write_lock(self, conversation_id: str) -> AsyncContextManager[None]:
        ...
