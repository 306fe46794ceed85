"""统一业务异常模型。

所有跨模块抛出的业务级错误都应该继承自 BusinessError，
便于在 API 层做统一捕获并转换为 ``{"error": ...}`` 响应。

按发生阶段划分：
- InvalidRequestError: 请求不完整或格式错误，不产生任何副作用。
- ProviderUnavailableError: 首个片段产出之前的认证/配置/网络错误，由网关回退到 mock。
- ProviderStreamInterruptedError: 已有输出之后的上游失败，以终止帧告知客户端。
- StorageFailure: 会话日志读写失败，直接上抛。
"""


class BusinessError(Exception):
    """业务异常基类。

    Attributes:
        code: 机器可读错误码（如 "STORE_READ_ERROR"）。
        message: 用户可读错误信息。
        http_status: 映射到 HTTP 时可用的状态码，默认 400。
        extra: 其他补充字段（例如 trace_id、backend 等）。
    """

    def __init__(self, code: str, message: str, http_status: int = 400, **extra):
        self.code = code
        self.message = message
        self.http_status = http_status
        self.extra = extra
        super().__init__(message)


class InvalidRequestError(BusinessError):
    """请求参数校验失败。"""


class ProviderUnavailableError(BusinessError):
    """Provider 在产出首个片段之前失败（缺少 CLI、鉴权失败、连接失败等）。"""

    def __init__(self, code: str, message: str, http_status: int = 503, **extra):
        super().__init__(code, message, http_status, **extra)


class NetworkError(ProviderUnavailableError):
    """网络层错误，例如连接失败、超时等。"""


class ApiError(ProviderUnavailableError):
    """上游 API 返回非 2xx/429 错误时抛出。"""


class RateLimitError(ProviderUnavailableError):
    """Provider 限流错误。"""


class ProviderStreamInterruptedError(BusinessError):
    """流式输出过程中上游失败或超时。"""

    def __init__(self, code: str, message: str, http_status: int = 502, **extra):
        super().__init__(code, message, http_status, **extra)


class StorageFailure(BusinessError):
    """会话存储读写失败。"""

    def __init__(self, code: str, message: str, http_status: int = 500, **extra):
        super().__init__(code, message, http_status, **extra)
