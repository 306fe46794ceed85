"""后端配置。

本模块集中描述五种后端的静态属性：

- name: 请求中使用的后端标签，例如 "claude"。
- display_name: 会话导出与身份提示词中使用的展示名。
- stateful: 上游是否自己维护会话（claude、codex）。
- timeout_field: 对应的超时配置项，实际数值从 settings 读取。

各适配器从这里读取自己的属性，具体传输与超时由这里集中配置。"""

from dataclasses import dataclass

from gateway_core.domain.models import BACKEND_DISPLAY_NAMES


@dataclass(frozen=True)
class BackendConfig:
    """单个后端的配置。"""

    name: str
    display_name: str
    stateful: bool
    timeout_field: str

    def timeout(self, cfg) -> float:
        return float(getattr(cfg, self.timeout_field))


MOCK_CONFIG = BackendConfig("mock", BACKEND_DISPLAY_NAMES["mock"], stateful=False, timeout_field="mock_timeout")
CLAUDE_CONFIG = BackendConfig("claude", BACKEND_DISPLAY_NAMES["claude"], stateful=True, timeout_field="claude_timeout")
GEMINI_CONFIG = BackendConfig("gemini", BACKEND_DISPLAY_NAMES["gemini"], stateful=False, timeout_field="gemini_timeout")
DOCKER_CONFIG = BackendConfig("docker", BACKEND_DISPLAY_NAMES["docker"], stateful=False, timeout_field="docker_timeout")
# codex 一次性返回整段回复，超时覆盖整个 MCP 调用
CODEX_CONFIG = BackendConfig("codex", BACKEND_DISPLAY_NAMES["codex"], stateful=True, timeout_field="codex_timeout")
