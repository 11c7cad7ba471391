"""Per-request logger handed to integration handlers.

Wraps a structlog bound logger. Every builder method returns a new
IntegrationLogger, so context bound for one request or one handler
never leaks into another.
"""

from typing import Any, Optional

import structlog

LOGGER_NAME = "hookwire.integration"


class IntegrationLogger:
    """Structured logger scoped to one request.

    Args:
        trace_id: Trace id of the inbound request, bound to every line.
    """

    def __init__(self, trace_id: Optional[str] = None, _logger: Any = None):
        self.trace_id = trace_id
        if _logger is None:
            _logger = structlog.get_logger(LOGGER_NAME).bind(trace_id=trace_id)
        self._logger = _logger

    def _with(self, **values: Any) -> "IntegrationLogger":
        return IntegrationLogger(self.trace_id, _logger=self._logger.bind(**values))

    def with_user_id(self, user_id: str) -> "IntegrationLogger":
        return self._with(user_id=user_id)

    def with_conversation_id(self, conversation_id: str) -> "IntegrationLogger":
        return self._with(conversation_id=conversation_id)

    def with_visible_to_bot(self, visible: bool) -> "IntegrationLogger":
        return self._with(visible_to_bot=visible)

    def for_bot(self) -> "IntegrationLogger":
        """Logger whose lines are shown to the bot owner."""
        return self.with_visible_to_bot(True)

    def debug(self, message: str, **kw: Any) -> None:
        self._logger.debug(message, **kw)

    def info(self, message: str, **kw: Any) -> None:
        self._logger.info(message, **kw)

    def warning(self, message: str, **kw: Any) -> None:
        self._logger.warning(message, **kw)

    warn = warning

    def error(self, message: str, **kw: Any) -> None:
        self._logger.error(message, **kw)
