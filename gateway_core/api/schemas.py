"""HTTP 层的请求/响应模型（字段使用 camelCase 别名）。"""

from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field

from gateway_core.config.settings import settings
from gateway_core.domain.conversation import ConversationMessage, ConversationSummary
from gateway_core.domain.models import BackendStatus, ChatMessage, ChatRequest


class WireModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")


class ChatMessageBody(WireModel):
    role: Literal["system", "user", "assistant"]
    content: str


class ChatRequestBody(WireModel):
    messages: List[ChatMessageBody] = Field(default_factory=list)
    backend: str = Field(default_factory=lambda: settings.default_backend)
    model: Optional[str] = None
    conversation_id: Optional[str] = Field(default=None, alias="conversationId")
    settings: Dict[str, Any] = Field(default_factory=dict)
    cwd: Optional[str] = None
    session_id: Optional[str] = Field(default=None, alias="sessionId")

    def to_domain(self) -> ChatRequest:
        return ChatRequest(
            backend=self.backend.lower(),
            model=self.model,
            messages=[ChatMessage(role=m.role, content=m.content) for m in self.messages],
            conversation_id=self.conversation_id,
            settings=dict(self.settings),
            cwd=self.cwd,
            session_id=self.session_id,
        )


class CreateConversationBody(WireModel):
    name: Optional[str] = None


class FeedbackBody(WireModel):
    feedback: Optional[Literal["up", "down"]] = None


class MessageOut(WireModel):
    id: str
    ts: int
    role: str
    content: str
    model: Optional[str] = None
    feedback: Optional[str] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)

    @classmethod
    def from_domain(cls, msg: ConversationMessage) -> "MessageOut":
        return cls(
            id=msg.id,
            ts=msg.ts,
            role=msg.role,
            content=msg.content,
            model=msg.model,
            feedback=msg.feedback,
            metadata=msg.metadata,
        )


class ConversationSummaryOut(WireModel):
    id: str
    message_count: int = Field(alias="messageCount")
    updated_at: int = Field(alias="updatedAt")

    @classmethod
    def from_domain(cls, summary: ConversationSummary) -> "ConversationSummaryOut":
        return cls(id=summary.id, message_count=summary.message_count, updated_at=summary.updated_at)


class BackendStatusOut(WireModel):
    backend: str
    available: bool
    error: Optional[str] = None
    models: List[str] = Field(default_factory=list)

    @classmethod
    def from_domain(cls, status: BackendStatus) -> "BackendStatusOut":
        return cls(backend=status.backend, available=status.available, error=status.error, models=status.models)
