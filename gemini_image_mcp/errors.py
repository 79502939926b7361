"""Failure taxonomy shared by every stage of the request pipeline.

Each kind carries a stable JSON-RPC error code. Stages raise these at the
failure site; only the dispatcher turns them into wire error objects.
"""

from typing import Any

PARSE_ERROR = -32700
INVALID_REQUEST = -32600
METHOD_NOT_FOUND = -32601
INVALID_PARAMS = -32602
INTERNAL_ERROR = -32603


class BridgeError(Exception):
    code: int = INTERNAL_ERROR
    retryable: bool = False

    def __init__(self, message: str, **data: Any) -> None:
        super().__init__(message)
        self.message = message
        self.data = {key: value for key, value in data.items() if value is not None}
        self.attempts: int | None = None

    @property
    def kind(self) -> str:
        return type(self).__name__

    def to_error_object(self) -> dict[str, Any]:
        data: dict[str, Any] = {"kind": self.kind, **self.data}
        if self.attempts is not None:
            data["attempts"] = self.attempts
        return {"code": self.code, "message": self.message, "data": data}


class ParseError(BridgeError):
    code = PARSE_ERROR


class ProtocolError(BridgeError):
    code = INVALID_REQUEST


class MethodNotFound(BridgeError):
    code = METHOD_NOT_FOUND


class ValidationError(BridgeError):
    code = INVALID_PARAMS


class ConfigurationError(BridgeError):
    code = -32001


class UpstreamAuthError(BridgeError):
    code = -32002


class UpstreamRateLimited(BridgeError):
    code = -32003
    retryable = True


class UpstreamUnavailable(BridgeError):
    code = -32004
    retryable = True


class UpstreamTimeout(BridgeError):
    code = -32005
    retryable = True


class UpstreamApiError(BridgeError):
    code = -32006

    def __init__(self, message: str, status: int | None = None, **data: Any) -> None:
        super().__init__(message, status=status, **data)
        self.status = status
        # Server-side failures are worth another attempt; client errors are not.
        self.retryable = status is not None and status >= 500


class SourceUnavailable(BridgeError):
    code = -32010


class SizeLimitExceeded(BridgeError):
    code = -32011


class UnsupportedFormat(BridgeError):
    code = -32012


class OutputWriteError(BridgeError):
    code = -32013


class MalformedUpstreamResponse(BridgeError):
    code = INTERNAL_ERROR
