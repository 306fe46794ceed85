"""统一的对话与流式数据模型。

本模块定义了网关内部在不同 Provider 之间共享的标准数据结构：

- ChatMessage: 一条发给 Provider 的对话消息（system/user/assistant）。
- GenerationSettings: 经过归一化的生成参数，每次请求都会重新计算。
- ChatRequest: 网关接收到的一次聊天请求（已脱离 HTTP 层）。
- StreamEvent: 网关产出的流式事件，只存在于线路上，不落盘。

所有 Provider 适配器都只依赖这些模型，
并负责在各自的上游协议和这些模型之间做转换。
"""

from dataclasses import dataclass, field
from typing import Any, Dict, List, Literal, Optional, Tuple


# 消息角色（与 OpenAI 风格 role 字段对应）
Role = Literal["system", "user", "assistant"]

BACKEND_DISPLAY_NAMES: Dict[str, str] = {
    "claude": "Claude",
    "gemini": "Gemini",
    "codex": "Codex",
    "docker": "Local Model",
    "mock": "Mock AI",
}

Feedback = Literal["up", "down"]

PermissionMode = Literal["acceptEdits", "bypassPermissions", "default", "plan"]
ReasoningEffort = Literal["low", "medium", "high"]
SandboxMode = Literal["read-only", "full", "off"]
ApprovalMode = Literal["always", "never", "dangerous"]
HarmBlockThreshold = Literal[
    "BLOCK_NONE",
    "BLOCK_LOW_AND_ABOVE",
    "BLOCK_MEDIUM_AND_ABOVE",
    "BLOCK_HIGH_AND_ABOVE",
]
AgentMode = Literal["dev", "user"]


@dataclass
class ChatMessage:
    """一条对话消息。

    - role: 消息角色，如 system/user/assistant。
    - content: 纯文本内容。
    """

    role: Role
    content: str


@dataclass(frozen=True)
class ClaudeOptions:
    """Claude CLI 专属参数（对应 claude --help 中的 flag）。"""

    model: Optional[str] = None
    agent: Optional[str] = None
    permission_mode: PermissionMode = "default"
    allowed_tools: Tuple[str, ...] = ()
    disallowed_tools: Tuple[str, ...] = ()
    additional_dirs: Tuple[str, ...] = ()
    mcp_config: Tuple[str, ...] = ()
    strict_mcp_config: bool = False
    max_budget_usd: Optional[float] = None
    system_prompt: Optional[str] = None


@dataclass(frozen=True)
class CodexOptions:
    """Codex MCP server 专属参数。"""

    model: Optional[str] = None
    reasoning_effort: ReasoningEffort = "high"
    sandbox: SandboxMode = "read-only"
    approval_mode: Optional[ApprovalMode] = None


@dataclass(frozen=True)
class GeminiOptions:
    """Gemini CLI 专属参数。"""

    model: Optional[str] = None
    temperature: Optional[float] = None
    max_output_tokens: Optional[int] = None
    system_instruction: Optional[str] = None
    harm_block_threshold: Optional[HarmBlockThreshold] = None


@dataclass(frozen=True)
class DockerOptions:
    """本地模型运行时（OpenAI 兼容接口）专属参数。"""

    stop: Tuple[str, ...] = ()


@dataclass(frozen=True)
class GenerationSettings:
    """归一化后的生成参数。

    temperature 恒在 [0, 2]，max_tokens 恒在 [1, 128000]，
    枚举字段只会是已知取值。
    """

    model: Optional[str] = None
    temperature: float = 0.7
    max_tokens: int = 2048
    system_prompt: str = ""
    agent_mode: AgentMode = "dev"
    agent_dir: Optional[str] = None
    claude: ClaudeOptions = field(default_factory=ClaudeOptions)
    codex: CodexOptions = field(default_factory=CodexOptions)
    gemini: GeminiOptions = field(default_factory=GeminiOptions)
    docker: DockerOptions = field(default_factory=DockerOptions)


@dataclass
class ChatRequest:
    """一次聊天请求。

    settings 保留原始输入，由网关在每次请求时重新归一化。
    """

    backend: str = "mock"
    model: Optional[str] = None
    messages: List[ChatMessage] = field(default_factory=list)
    conversation_id: Optional[str] = None
    settings: Dict[str, Any] = field(default_factory=dict)
    cwd: Optional[str] = None
    session_id: Optional[str] = None


@dataclass
class ModelContext:
    """某个后端看到的上下文：系统提示词 + 有界消息窗口。"""

    system_prompt: str
    messages: List[ChatMessage]

    def to_messages(self) -> List[ChatMessage]:
        """把系统提示词放在首位，得到交给适配器的消息列表。"""

        if not self.system_prompt:
            return list(self.messages)
        return [ChatMessage(role="system", content=self.system_prompt)] + list(self.messages)


@dataclass
class StreamEvent:
    """网关产出的单个流式事件。

    每次响应恰好有一个 done=True 的终止事件；
    error 只会出现在终止事件上。
    """

    model: str
    done: bool = False
    content: Optional[str] = None
    session_id: Optional[str] = None
    error: Optional[str] = None
    conversation_id: Optional[str] = None


@dataclass
class BackendStatus:
    """后端可用性探测结果。"""

    backend: str
    available: bool
    error: Optional[str] = None
    models: List[str] = field(default_factory=list)


def last_user_message(messages: List[ChatMessage]) -> Optional[ChatMessage]:
    """返回最后一条 user 消息。"""

    for msg in reversed(messages):
        if msg.role == "user":
            return msg
    return None


def system_prompt_of(messages: List[ChatMessage]) -> str:
    """拼接所有 system 消息作为系统提示词。"""

    return "\n\n".join(m.content for m in messages if m.role == "system" and m.content)
