"""统一业务异常模型。

所有跨模块抛出的业务级错误都应该继承自 BusinessError，
便于在 API 层或 UI 层做统一捕获与用户提示。

调度相关的错误按“能否重试 / 能否切换 Provider”分为三组：

- 可重试：RateLimitError、ServerError、NetworkError（同一 Provider 退避后重试，用尽后切换）。
- 仅对当前 Provider 致命：AuthError、ProviderUnavailable（立即切换到下一个 Provider）。
- 对整个请求致命：BadRequest、ConfigurationError（不重试、不切换，直接交给调用方）。
"""


class BusinessError(Exception):
    """业务异常基类。

    Attributes:
        code: 机器可读错误码（如 "STORE_READ_ERROR"）。
        message: 错误信息（可能包含上游原始信息，只用于日志，不直接展示给用户）。
        http_status: 映射到 HTTP 时可用的状态码，默认 400。
        extra: 其他补充字段（例如 provider、model、attempts 等）。
    """

    retryable = False
    failover = False

    def __init__(self, code: str, message: str, http_status: int = 400, **extra):
        self.code = code
        self.message = message
        self.http_status = http_status
        self.extra = extra
        super().__init__(message)


class ConfigurationError(BusinessError):
    """配置错误：致命、不重试，必须同步抛给调用方。"""


class NoProviderConfigured(ConfigurationError):
    """ProviderCatalog 为空。"""

    def __init__(self, message: str = "No AI providers configured", **extra):
        super().__init__(code="NO_PROVIDER_CONFIGURED", message=message, http_status=500, **extra)


class BadRequest(BusinessError):
    """请求体被拒绝或响应体格式错误：对所有 Provider 都无效，不切换。"""


class PayloadTooLarge(BadRequest):
    """内联附件超过上限。"""


class AuthError(BusinessError):
    """凭证被拒绝（401/403），仅对当前 Provider 致命。"""

    failover = True


class ProviderUnavailable(BusinessError):
    """Provider 无法服务该请求（欠费、模型不存在等），仅对当前 Provider 致命。"""

    failover = True


class RateLimitError(BusinessError):
    """Provider 限流错误，由调度器负责退避重试。"""

    retryable = True
    failover = True


class ServerError(BusinessError):
    """Provider 服务端错误（5xx / 408）。"""

    retryable = True
    failover = True


class NetworkError(BusinessError):
    """网络层错误，例如连接失败、DNS 失败、超时等。"""

    retryable = True
    failover = True


class DispatchExhausted(BusinessError):
    """候选链上所有 Provider 均失败。

    extra 中携带 last_error（最后一次失败的分类异常）与 attempts（全部尝试记录），
    调用方不应再次重试。
    """


class RequestCancelled(BusinessError):
    """调用方主动取消了进行中的请求。"""


class AlreadyInFlight(BusinessError):
    """同一会话已有进行中的请求。"""


class StoreError(BusinessError):
    """会话存储读写失败，核心层不做重试。"""


class ValidationError(BusinessError):
    """参数或配置校验失败。"""
