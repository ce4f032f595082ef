"""
错误类型

所有面向客户端的错误都继承 ProxyError，并能转换为结构化 API 的错误体：
{"type": "error", "error": {"type": "...", "message": "..."}}
"""

import math
from typing import Any, Dict, Optional


class ProxyError(Exception):
    """代理错误基类"""

    status_code = 500
    error_type = "api_error"
    headers: Optional[Dict[str, str]] = None

    def __init__(self, message: str):
        self.message = message
        super().__init__(message)

    def to_response_body(self) -> Dict[str, Any]:
        return {
            "type": "error",
            "error": {"type": self.error_type, "message": self.message},
        }


class InvalidRequestError(ProxyError):
    """请求缺少必填字段或字段非法，在任何网络调用之前拒绝，不重试"""

    status_code = 400
    error_type = "invalid_request_error"


class AuthenticationError(ProxyError):
    status_code = 401
    error_type = "authentication_error"


class RateLimitError(ProxyError):
    status_code = 429
    error_type = "rate_limit_error"

    def __init__(self, message: str, retry_after: Optional[float] = None):
        super().__init__(message)
        if retry_after is not None:
            self.headers = {"Retry-After": str(max(1, math.ceil(retry_after)))}


class UpstreamError(ProxyError):
    """上游返回非 2xx 或连接失败"""

    error_type = "api_error"

    def __init__(self, *, status_code: int, message: str) -> None:
        self.upstream_status = int(status_code)
        # 上游的 4xx 原样透传，其余统一视为网关错误
        if 400 <= self.upstream_status < 500:
            self.status_code = self.upstream_status
            if self.upstream_status == 429:
                self.error_type = "rate_limit_error"
            else:
                self.error_type = "invalid_request_error"
        else:
            self.status_code = 502
        super().__init__(message)


class ParserFinishedError(RuntimeError):
    """解析器 finish() 之后又被喂入字符"""
    pass
