"""Custom exception hierarchy for hookwire.

Two branches hang off HookwireError:

- ApiError and its subclasses are *structured* failures. They carry an
  HTTP status code and a machine-readable type, and serialize to the
  platform's error body ``{id, code, type, message}``. Routing misses
  raised by the dispatcher belong here, as do RuntimeApiErrors raised on
  purpose by integration authors.
- Everything else is *opaque*. The normalizer replaces opaque failures
  with a generic message so that internal details never reach the caller.

Key functions:
    normalize_error: Classify any exception into the RuntimeApiError that
        is returned to the host runtime.
    error_from_json: Rebuild an ApiError from a platform error body.
"""

import random
import time
from typing import Any, Dict, Optional

UNEXPECTED_ERROR_MESSAGE = (
    "An unexpected error occurred in the integration. "
    "Bot owners: Check logs for more informations. "
    "Integration owners: throw a RuntimeApiError to return a custom error message instead."
)


class HookwireError(Exception):
    """Base exception for all hookwire errors.

    Attributes:
        message: Human-readable error description.
        module: Originating module name (e.g. "context", "client").
        context: Arbitrary key-value pairs for structured logging.
    """

    def __init__(
        self,
        message: str = "",
        *,
        module: Optional[str] = None,
        **context: Any,
    ) -> None:
        self.message = message
        self.module = module
        self.context = context
        super().__init__(message)

    def __str__(self) -> str:
        parts = [self.message or self.__class__.__name__]
        if self.module:
            parts.append(f"[module={self.module}]")
        if self.context:
            ctx = ", ".join(f"{k}={v}" for k, v in self.context.items())
            parts.append(f"({ctx})")
        return " ".join(parts)

    def __repr__(self) -> str:
        cls = self.__class__.__name__
        return f"{cls}({self.message!r}, module={self.module!r})"


class ConfigurationError(HookwireError):
    """Invalid settings or an invalid handler registration."""

    def __init__(
        self,
        message: str = "",
        *,
        setting_name: Optional[str] = None,
        module: Optional[str] = None,
        **context: Any,
    ) -> None:
        self.setting_name = setting_name
        super().__init__(message, module=module or "config", **context)


def _generate_error_id() -> str:
    """Error ids look like ``err_1700000000000x1A2B3C4D5E``."""
    return "err_{}x{:010X}".format(int(time.time() * 1000), random.getrandbits(40))


# ---------------------------------------------------------------------------
# Structured API errors
# ---------------------------------------------------------------------------

class ApiError(HookwireError):
    """Structured failure with its own status code and type.

    Subclasses override the ``code`` and ``type`` class attributes.
    An instance may override ``code`` (used when wrapping another error).

    Attributes:
        id: Unique error id, generated unless supplied.
        code: HTTP status code returned to the caller.
        type: Machine-readable error type (e.g. "Runtime").
        cause: The error this one wraps, if any.
    """

    code: int = 500
    type: str = "Unknown"

    def __init__(
        self,
        message: str = "",
        *,
        code: Optional[int] = None,
        id: Optional[str] = None,
        cause: Optional[BaseException] = None,
        module: Optional[str] = None,
        **context: Any,
    ) -> None:
        if code is not None:
            self.code = code
        self.id = id or _generate_error_id()
        self.cause = cause
        super().__init__(message, module=module, **context)

    @property
    def is_runtime(self) -> bool:
        """Whether this error is already in the normalized runtime form."""
        return self.type == RuntimeApiError.type

    def to_json(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "code": self.code,
            "type": self.type,
            "message": self.message,
        }

    def __repr__(self) -> str:
        cls = self.__class__.__name__
        return f"{cls}({self.message!r}, code={self.code}, type={self.type!r})"


class RuntimeApiError(ApiError):
    """Error an integration author raises to return a custom message."""

    code = 400
    type = "Runtime"


class InvalidPayloadError(ApiError):
    """The request carried data the dispatcher cannot accept."""

    code = 400
    type = "InvalidPayload"


class ResourceNotFoundError(ApiError):
    """A named resource (channel, message type, action) is not registered."""

    code = 404
    type = "ResourceNotFound"


class UnauthorizedError(ApiError):
    code = 401
    type = "Unauthorized"


class ForbiddenError(ApiError):
    code = 403
    type = "Forbidden"


class RateLimitedError(ApiError):
    code = 429
    type = "RateLimited"


class InternalError(ApiError):
    code = 500
    type = "Internal"


# ---------------------------------------------------------------------------
# Dispatcher errors
# ---------------------------------------------------------------------------

class ContextExtractionError(InvalidPayloadError):
    """Mandatory context headers are missing or malformed.

    Attributes:
        header: The offending header name.
    """

    def __init__(self, message: str = "", *, header: Optional[str] = None, **context: Any) -> None:
        self.header = header
        super().__init__(message, module="context", header=header, **context)


class PayloadValidationError(InvalidPayloadError):
    """The request body failed to decode into the expected payload shape."""

    def __init__(self, message: str = "", *, payload_type: Optional[str] = None, **context: Any) -> None:
        self.payload_type = payload_type
        super().__init__(message, module="payloads", **context)


class UnknownOperationError(InvalidPayloadError):
    """The operation kind is not part of the flow table."""

    def __init__(self, operation: str) -> None:
        self.operation = operation
        super().__init__(f"Unknown operation {operation}", module="server")


class MissingActionTypeError(InvalidPayloadError):
    """An action_triggered payload did not name an action."""

    def __init__(self) -> None:
        super().__init__("Missing action type", module="server")


class ChannelNotFoundError(ResourceNotFoundError):
    def __init__(self, channel: str) -> None:
        self.channel = channel
        super().__init__(f"Channel {channel} not found", module="server")


class MessageTypeNotFoundError(ResourceNotFoundError):
    def __init__(self, channel: str, message_type: str) -> None:
        self.channel = channel
        self.message_type = message_type
        super().__init__(
            f"Message of type {message_type} not found in channel {channel}",
            module="server",
        )


class ActionNotFoundError(ResourceNotFoundError):
    def __init__(self, action: str) -> None:
        self.action = action
        super().__init__(f"Action {action} not found", module="server")


# ---------------------------------------------------------------------------
# Normalization
# ---------------------------------------------------------------------------

_ERRORS_BY_TYPE = {
    cls.type: cls
    for cls in (
        RuntimeApiError,
        InvalidPayloadError,
        ResourceNotFoundError,
        UnauthorizedError,
        ForbiddenError,
        RateLimitedError,
        InternalError,
    )
}


def error_from_json(data: Any, status: int = 500) -> ApiError:
    """Rebuild an ApiError from a platform error body.

    Unknown types fall back to a plain ApiError that keeps the reported
    type and code, so nothing the platform said is lost.

    Args:
        data: Decoded JSON body of an error response.
        status: HTTP status of the response, used when the body has no code.
    """
    if not isinstance(data, dict):
        return ApiError(f"Request failed with status {status}", code=status)

    message = str(data.get("message") or f"Request failed with status {status}")
    code = data.get("code")
    if not isinstance(code, int):
        code = status
    error_type = data.get("type")

    cls = _ERRORS_BY_TYPE.get(error_type)
    if cls is not None:
        return cls(message, code=code, id=data.get("id"))

    error = ApiError(message, code=code, id=data.get("id"))
    if isinstance(error_type, str) and error_type:
        error.type = error_type
    return error


def normalize_error(error: BaseException) -> RuntimeApiError:
    """Classify an exception into the error returned to the caller.

    Runtime errors pass through unchanged. Other structured errors are
    wrapped, keeping their message and status code. Opaque errors are
    replaced by a generic message with status 500.
    """
    if isinstance(error, ApiError):
        if error.is_runtime and isinstance(error, RuntimeApiError):
            return error
        return RuntimeApiError(error.message, code=error.code, cause=error)
    return RuntimeApiError(UNEXPECTED_ERROR_MESSAGE, code=500, cause=error)
