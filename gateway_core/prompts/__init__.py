"""多模型会话的身份提示词。

同一个会话可能先后由不同后端作答，每个后端需要知道
哪些历史回复是自己说的、哪些来自其他助手。
"""

from gateway_core.domain.models import BACKEND_DISPLAY_NAMES


def display_name(backend: str | None) -> str:
    """后端标签对应的展示名，未知标签返回 "Assistant"。"""

    return BACKEND_DISPLAY_NAMES.get(backend or "", "Assistant")


def build_identity_prompt(backend: str, base_prompt: str = "") -> str:
    """构造目标后端的身份提示词，并在其后追加用户自定义的系统提示词。"""

    name = display_name(backend)
    others = [v for k, v in BACKEND_DISPLAY_NAMES.items() if k != backend]
    prompt = (
        f"You are {name}, an AI assistant participating in a multi-model conversation.\n"
        "\n"
        "IMPORTANT - Understanding this conversation:\n"
        f"- Messages marked [{name}] are YOUR previous responses - you said these\n"
        f"- Messages marked with other names like [{'], ['.join(others)}] are from OTHER AI assistants\n"
        "- You can reference, agree with, or respectfully disagree with other assistants' responses\n"
        "- Be yourself - don't try to mimic other models' styles\n"
        f"- If asked \"what did you say earlier?\", only reference [{name}] messages"
    )
    if base_prompt:
        return f"{prompt}\n\n{base_prompt}"
    return prompt
