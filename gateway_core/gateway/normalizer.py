"""生成参数归一化。

客户端传来的 settings 是任意 JSON，这里把它收敛成 GenerationSettings：
数值夹到合法区间，枚举回退到安全默认值，列表只保留字符串。
兼容旧版扁平字段（如顶层的 permissionMode、claudeModel）。
"""

import math
from typing import Any, Dict, Iterable, Mapping, Optional, Tuple

from gateway_core.domain.models import (
    ClaudeOptions,
    CodexOptions,
    DockerOptions,
    GeminiOptions,
    GenerationSettings,
)

DEFAULT_TEMPERATURE = 0.7
DEFAULT_MAX_TOKENS = 2048
MIN_TEMPERATURE, MAX_TEMPERATURE = 0.0, 2.0
MIN_TOKENS, MAX_TOKENS = 1, 128000

PERMISSION_MODES = ("acceptEdits", "bypassPermissions", "default", "plan")
REASONING_EFFORTS = ("low", "medium", "high")
SANDBOX_MODES = ("read-only", "full", "off")
APPROVAL_MODES = ("always", "never", "dangerous")
HARM_BLOCK_THRESHOLDS = (
    "BLOCK_NONE",
    "BLOCK_LOW_AND_ABOVE",
    "BLOCK_MEDIUM_AND_ABOVE",
    "BLOCK_HIGH_AND_ABOVE",
)
AGENT_MODES = ("dev", "user")


def _number(value: Any) -> Optional[float]:
    if isinstance(value, bool) or value is None:
        return None
    try:
        num = float(value)
    except (TypeError, ValueError):
        return None
    if math.isnan(num):
        return None
    return num


def clamp_temperature(value: Any, default: Optional[float] = DEFAULT_TEMPERATURE) -> Optional[float]:
    num = _number(value)
    if num is None:
        return default
    return min(MAX_TEMPERATURE, max(MIN_TEMPERATURE, num))


def clamp_tokens(value: Any, default: Optional[int] = DEFAULT_MAX_TOKENS) -> Optional[int]:
    num = _number(value)
    if num is None:
        return default
    return int(min(MAX_TOKENS, max(MIN_TOKENS, num)))


def _enum(value: Any, allowed: Tuple[str, ...], default: Optional[str]) -> Optional[str]:
    return value if isinstance(value, str) and value in allowed else default


def _text(value: Any) -> Optional[str]:
    return value if isinstance(value, str) and value else None


def _strings(value: Any) -> Tuple[str, ...]:
    if isinstance(value, str):
        return (value,) if value else ()
    if not isinstance(value, Iterable) or isinstance(value, Mapping):
        return ()
    return tuple(v for v in value if isinstance(v, str) and v)


def _section(raw: Mapping[str, Any], key: str) -> Mapping[str, Any]:
    value = raw.get(key)
    return value if isinstance(value, Mapping) else {}


def _pick(*sources: Tuple[Mapping[str, Any], str]) -> Any:
    """按顺序返回第一个存在且非 None 的字段。"""

    for source, key in sources:
        value = source.get(key)
        if value is not None:
            return value
    return None


def _claude(raw: Mapping[str, Any]) -> ClaudeOptions:
    c = _section(raw, "claude")
    budget = _number(c.get("maxBudgetUsd"))
    return ClaudeOptions(
        model=_text(_pick((c, "model"), (raw, "claudeModel"))),
        agent=_text(_pick((c, "agent"), (raw, "claudeAgent"))),
        permission_mode=_enum(_pick((c, "permissionMode"), (raw, "permissionMode")), PERMISSION_MODES, "default"),
        allowed_tools=_strings(_pick((c, "allowedTools"), (raw, "allowedTools"))),
        disallowed_tools=_strings(_pick((c, "disallowedTools"), (raw, "disallowedTools"))),
        additional_dirs=_strings(_pick((c, "additionalDirs"), (raw, "additionalDirs"))),
        mcp_config=_strings(c.get("mcpConfig")),
        strict_mcp_config=c.get("strictMcpConfig") is True,
        max_budget_usd=budget if budget is not None and 0 < budget < math.inf else None,
        system_prompt=_text(c.get("systemPrompt")),
    )


def _codex(raw: Mapping[str, Any]) -> CodexOptions:
    c = _section(raw, "codex")
    return CodexOptions(
        model=_text(c.get("model")),
        reasoning_effort=_enum(_pick((c, "reasoningEffort"), (raw, "reasoningEffort")), REASONING_EFFORTS, "high"),
        sandbox=_enum(_pick((c, "sandbox"), (raw, "sandbox")), SANDBOX_MODES, "read-only"),
        approval_mode=_enum(c.get("approvalMode"), APPROVAL_MODES, None),
    )


def _gemini(raw: Mapping[str, Any]) -> GeminiOptions:
    g = _section(raw, "gemini")
    return GeminiOptions(
        model=_text(g.get("model")),
        temperature=clamp_temperature(g.get("temperature"), default=None),
        max_output_tokens=clamp_tokens(g.get("maxOutputTokens"), default=None),
        system_instruction=_text(g.get("systemInstruction")),
        harm_block_threshold=_enum(g.get("harmBlockThreshold"), HARM_BLOCK_THRESHOLDS, None),
    )


def _docker(raw: Mapping[str, Any]) -> DockerOptions:
    return DockerOptions(stop=_strings(_section(raw, "docker").get("stop")))


def normalize_settings(raw: Any, model: Optional[str] = None) -> GenerationSettings:
    """把任意输入归一化为 GenerationSettings。纯函数，相同输入得到相同输出。

    顶层请求中的 model 优先于 settings.model。
    """

    data: Dict[str, Any] = dict(raw) if isinstance(raw, Mapping) else {}
    return GenerationSettings(
        model=_text(model) or _text(data.get("model")),
        temperature=clamp_temperature(data.get("temperature")),
        max_tokens=clamp_tokens(_pick((data, "maxTokens"), (data, "max_tokens"))),
        system_prompt=_text(data.get("systemPrompt")) or "",
        agent_mode=_enum(data.get("agentMode"), AGENT_MODES, "dev"),
        agent_dir=_text(data.get("agentDir")),
        claude=_claude(data),
        codex=_codex(data),
        gemini=_gemini(data),
        docker=_docker(data),
    )
