"""Error taxonomy for reply generation.

Every error carries a ``message`` that is already formatted for display;
callers show it as-is without further translation.
"""

from __future__ import annotations

import json

NETWORK_FAILURE_MESSAGE = "网络连接失败，请检查网络连接或稍后重试"
INVALID_JSON_MESSAGE = "API返回数据格式无效"
INVALID_SHAPE_MESSAGE = "API返回数据格式错误"
UNKNOWN_ERROR = "未知错误"


class RetortError(Exception):
    """Base class for all terminal generation failures."""

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class ConfigurationError(RetortError):
    """One or more required upstream settings are empty."""

    def __init__(self, missing: list[str]) -> None:
        self.missing = list(missing)
        super().__init__(f"API配置验证失败，请检查环境变量：{', '.join(self.missing)}")


class NetworkError(RetortError):
    """Transport failure: refused connection, DNS, broken read."""

    def __init__(self, cause: Exception | None = None) -> None:
        super().__init__(NETWORK_FAILURE_MESSAGE)
        self.cause = cause


class UpstreamHTTPError(RetortError):
    """Non-2xx status from the provider."""

    def __init__(self, status_code: int, detail: str) -> None:
        self.status_code = status_code
        self.detail = detail
        super().__init__(f"API请求失败 ({status_code}): {detail}")


class ProtocolError(RetortError):
    """2xx response whose body is not a usable completion."""

    def __init__(self, message: str = INVALID_SHAPE_MESSAGE) -> None:
        super().__init__(message)


class StreamParseError(RetortError):
    """A single SSE data line could not be parsed. Never escapes the decoder."""

    def __init__(self, line: str) -> None:
        self.line = line
        super().__init__(f"无法解析的流数据: {line[:100]}")


class GenerationCancelled(RetortError):
    """The caller cancelled an in-flight generation."""

    def __init__(self) -> None:
        super().__init__("已取消生成")


def upstream_error_from_body(status_code: int, body: str) -> UpstreamHTTPError:
    """Build an UpstreamHTTPError from a provider error body.

    JSON bodies contribute ``error.message``; anything else contributes the
    raw text.
    """
    try:
        data = json.loads(body)
    except ValueError:
        return UpstreamHTTPError(status_code, body or UNKNOWN_ERROR)

    detail = None
    if isinstance(data, dict) and isinstance(data.get("error"), dict):
        detail = data["error"].get("message")
    return UpstreamHTTPError(status_code, str(detail) if detail else UNKNOWN_ERROR)
