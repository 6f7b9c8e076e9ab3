"""
wikisync 错误分类。

上游错误按可恢复性分为三类，调度器据此决定等待、重试或放弃:
- RateLimitedError: 上游限流，等待 retry_after 后重新入队，不计入重试次数
- TransientError: 网络或服务端暂时性错误，指数退避重试
- PermanentError: 请求本身无效，不再重试
"""
from typing import Optional


class SyncError(Exception):
    """所有同步错误的基类。"""


class ConfigurationError(SyncError):
    """配置缺失或无效。"""


class UpstreamError(SyncError):
    """上游接口错误基类。"""

    retryable: bool = False

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class RateLimitedError(UpstreamError):
    """上游限流 (HTTP 429 或 GraphQL 限流错误)。"""

    retryable = True

    def __init__(self, message: str, retry_after: float, status_code: Optional[int] = 429):
        super().__init__(message, status_code)
        self.retry_after = retry_after


class TransientError(UpstreamError):
    """暂时性错误 (5xx、超时、连接失败)。"""

    retryable = True


class PermanentError(UpstreamError):
    """永久性错误 (4xx、查询无效)。"""


class IntegrityViolation(SyncError):
    """
    数据一致性冲突。

    例如同一 URL 下上游 ID 发生变化，需要人工处理，不会自动合并。
    """

    def __init__(self, message: str, page_id: Optional[int] = None):
        super().__init__(message)
        self.page_id = page_id
