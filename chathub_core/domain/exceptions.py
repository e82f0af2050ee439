"""统一业务异常模型。

所有跨模块抛出的业务级错误都应该继承自 BusinessError，
便于在 API 层或调用方做统一捕获与用户提示。

一次对话轮次（turn）只会以一个类型化异常失败，核心层不做任何自动重试，
重试策略交给调用方决定。
"""


class BusinessError(Exception):
    """业务异常基类。

    Attributes:
        code: 机器可读错误码（如 "INVALID_SESSION"）。
        message: 用户可读错误信息。
        http_status: 映射到 HTTP 时可用的状态码，默认 400。
        extra: 其他补充字段（例如 trace_id、event_type 等）。
    """

    def __init__(self, code: str, message: str, http_status: int = 400, **extra):
        self.code = code
        self.message = message
        self.http_status = http_status
        self.extra = extra
        super().__init__(message)


class NetworkError(BusinessError):
    """HTTP 网络层错误，例如连接失败、超时等。"""


class ApiError(BusinessError):
    """第三方 HTTP 接口返回非 2xx 时抛出。"""


class ValidationError(BusinessError):
    """参数或配置校验失败。"""


class StoreError(BusinessError):
    """会话存储读写失败。"""


class BootstrapError(BusinessError):
    """服务端拒绝创建会话，code/message 直接取自服务端返回。"""


class MalformedResponseError(BusinessError):
    """会话创建接口返回的 body 无法解析。"""


class ProtocolError(BusinessError):
    """流式事件形态不符合预期（未知作者、没有生成消息等）。"""


class SessionInvalidError(BusinessError):
    """服务端判定会话/签名已失效，调用方应重新 bootstrap 后整体重试。"""


class ModerationError(BusinessError):
    """内容被服务端审核拒绝，且此前没有任何可用的部分回复。"""


class TurnTimeoutError(BusinessError):
    """在总时限内没有收到终止事件。"""


class TurnCancelledError(BusinessError):
    """调用方通过取消信号中止了本轮对话。"""


class TransportError(BusinessError):
    """全双工连接层面的错误（握手失败、连接异常关闭等）。"""
