"""统一业务异常模型。

所有跨模块抛出的业务级错误都应该继承自 BusinessError，
便于在 API 层或 UI 层做统一捕获与用户提示。
"""


class BusinessError(Exception):
    """业务异常基类。

    Attributes:
        code: 机器可读错误码（如 "STORE_READ_ERROR"）。
        message: 用户可读错误信息。
        http_status: 映射到 HTTP 时可用的状态码，默认 400。
        extra: 其他补充字段（例如 conversation_id、status 等）。
    """

    def __init__(self, code: str, message: str, http_status: int = 400, **extra):
        self.code = code
        self.message = message
        self.http_status = http_status
        self.extra = extra
        super().__init__(message)


class NetworkError(BusinessError):
    """网络层错误，例如连接失败、中途断开、读超时等。"""


class ApiError(BusinessError):
    """后端在发出任何事件之前返回非 2xx/429 状态时抛出。"""


class RateLimitError(BusinessError):
    """后端限流错误，由上层决定是否稍后重试。"""


class ValidationError(BusinessError):
    """参数或配置校验失败。"""


class StoreError(BusinessError):
    """会话存储读写失败。"""


class ConversationCreateError(StoreError):
    """发送前创建会话失败；此时不会打开任何流。"""


class SessionBusyError(BusinessError):
    """同一会话上已有进行中的流式会话。"""

    def __init__(self, conversation_id: str):
        super().__init__(
            code="SESSION_BUSY",
            message=f"conversation {conversation_id} already has an active stream",
            http_status=409,
            conversation_id=conversation_id,
        )
