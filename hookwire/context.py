"""Execution context extraction from inbound request headers.

The platform describes each operation through ``x-bp-*`` / ``x-bot-*``
headers. This module turns those headers into an immutable
ExecutionContext and pulls out the tracing headers that are forwarded
to the request's outbound client.

Key classes:
    ExecutionContext: Frozen per-request context.
    Operation: The operation kinds the flow table knows about.

Key functions:
    extract_context: Build an ExecutionContext or raise ContextExtractionError.
    extract_tracing_headers: Allow-listed tracing propagation headers.
    trace_id_from_headers: Trace id from a W3C ``traceparent`` header.
"""

import base64
import binascii
import json
from dataclasses import dataclass, field
from enum import Enum
from types import MappingProxyType
from typing import Any, Dict, Mapping, Optional

from .exceptions import ContextExtractionError

BOT_ID_HEADER = "x-bot-id"
BOT_USER_ID_HEADER = "x-bot-user-id"
INTEGRATION_ID_HEADER = "x-integration-id"
INTEGRATION_ALIAS_HEADER = "x-integration-alias"
WEBHOOK_ID_HEADER = "x-webhook-id"
OPERATION_HEADER = "x-bp-operation"
CONFIGURATION_TYPE_HEADER = "x-bp-configuration-type"
CONFIGURATION_HEADER = "x-bp-configuration"

TRACEPARENT_HEADER = "traceparent"
TRACING_HEADERS = ("traceparent", "tracestate", "sentry-trace")


class Operation(str, Enum):
    """Operation kinds routed by the dispatcher."""
    WEBHOOK_RECEIVED = "webhook_received"
    REGISTER = "register"
    UNREGISTER = "unregister"
    MESSAGE_CREATED = "message_created"
    ACTION_TRIGGERED = "action_triggered"
    PING = "ping"
    CREATE_USER = "create_user"
    CREATE_CONVERSATION = "create_conversation"


@dataclass(frozen=True)
class ExecutionContext:
    """Immutable context for one inbound request.

    ``operation`` is kept as the raw header string so that operations
    outside the flow table can still reach the unknown-operation
    fallback handler.
    """

    operation: str
    bot_id: str
    integration_id: str
    trace_id: Optional[str] = None
    bot_user_id: Optional[str] = None
    webhook_id: Optional[str] = None
    integration_alias: Optional[str] = None
    configuration_type: Optional[str] = None
    configuration: Mapping[str, Any] = field(default_factory=lambda: MappingProxyType({}))

    @property
    def known_operation(self) -> Optional[Operation]:
        """The operation as an Operation member, or None if unknown."""
        try:
            return Operation(self.operation)
        except ValueError:
            return None


def _lower_keys(headers: Mapping[str, Any]) -> Dict[str, str]:
    """Case-insensitive view of the headers (copy, input untouched)."""
    return {
        str(key).lower(): value
        for key, value in headers.items()
        if isinstance(value, str)
    }


def _optional(headers: Dict[str, str], name: str) -> Optional[str]:
    value = headers.get(name, "").strip()
    return value or None


def _required(headers: Dict[str, str], name: str) -> str:
    value = _optional(headers, name)
    if value is None:
        raise ContextExtractionError(f"Missing required header {name}", header=name)
    return value


def _decode_configuration(raw: Optional[str]) -> Mapping[str, Any]:
    """Decode the base64 JSON configuration header (empty when absent)."""
    if raw is None:
        return MappingProxyType({})
    try:
        decoded = json.loads(base64.b64decode(raw, validate=True).decode("utf-8"))
    except (binascii.Error, UnicodeDecodeError, ValueError) as e:
        raise ContextExtractionError(
            "Invalid configuration header, expected base64 encoded JSON",
            header=CONFIGURATION_HEADER,
        ) from e
    if not isinstance(decoded, dict):
        raise ContextExtractionError(
            "Invalid configuration header, expected a JSON object",
            header=CONFIGURATION_HEADER,
        )
    return MappingProxyType(decoded)


def trace_id_from_headers(headers: Mapping[str, Any]) -> Optional[str]:
    """Second dash-separated field of ``traceparent``, or None."""
    traceparent = _lower_keys(headers).get(TRACEPARENT_HEADER, "")
    parts = traceparent.split("-")
    if len(parts) < 2 or not parts[1]:
        return None
    return parts[1]


def extract_tracing_headers(headers: Mapping[str, Any]) -> Dict[str, str]:
    """Return only the allow-listed tracing headers that are set."""
    lowered = _lower_keys(headers)
    return {name: lowered[name] for name in TRACING_HEADERS if lowered.get(name)}


def extract_context(headers: Mapping[str, Any]) -> ExecutionContext:
    """Build the ExecutionContext for a request.

    Args:
        headers: Raw inbound headers. Not modified.

    Raises:
        ContextExtractionError: If the operation, bot id or integration id
            header is missing, or the configuration header is malformed.
    """
    lowered = _lower_keys(headers)
    return ExecutionContext(
        operation=_required(lowered, OPERATION_HEADER),
        bot_id=_required(lowered, BOT_ID_HEADER),
        integration_id=_required(lowered, INTEGRATION_ID_HEADER),
        trace_id=trace_id_from_headers(lowered),
        bot_user_id=_optional(lowered, BOT_USER_ID_HEADER),
        webhook_id=_optional(lowered, WEBHOOK_ID_HEADER),
        integration_alias=_optional(lowered, INTEGRATION_ALIAS_HEADER),
        configuration_type=_optional(lowered, CONFIGURATION_TYPE_HEADER),
        configuration=_decode_configuration(_optional(lowered, CONFIGURATION_HEADER)),
    )
