"""Operation dispatch layer for bot-platform integrations.

Receives platform operations over HTTP, routes them to typed
integration handlers and normalizes every outcome into a
``{status, body}`` response.
"""

from .action_metadata import ActionMetadataStore
from .client import IntegrationClient, create_client
from .context import ExecutionContext, Operation, extract_context, extract_tracing_headers
from .exceptions import (
    ActionNotFoundError,
    ApiError,
    ChannelNotFoundError,
    ContextExtractionError,
    HookwireError,
    InvalidPayloadError,
    MessageTypeNotFoundError,
    MissingActionTypeError,
    PayloadValidationError,
    ResourceNotFoundError,
    RuntimeApiError,
    UnknownOperationError,
)
from .handlers import (
    ActionProps,
    Channel,
    CreateConversationProps,
    CreateUserProps,
    IntegrationHandlers,
    MessageProps,
    RegisterProps,
    UnknownOperationProps,
    UnregisterProps,
    WebhookProps,
)
from .integration import Integration
from .integration_logger import IntegrationLogger
from .payloads import parse_body
from .serve import Request, Response
from .server import IntegrationServer, integration_handler

__version__ = "0.1.0"

__all__ = [
    # Entry point
    "Integration",
    "IntegrationServer",
    "integration_handler",
    "Request",
    "Response",
    # Registration
    "IntegrationHandlers",
    "Channel",
    "WebhookProps",
    "RegisterProps",
    "UnregisterProps",
    "CreateUserProps",
    "CreateConversationProps",
    "MessageProps",
    "ActionProps",
    "UnknownOperationProps",
    # Collaborators
    "ActionMetadataStore",
    "IntegrationClient",
    "create_client",
    "IntegrationLogger",
    # Context & payloads
    "ExecutionContext",
    "Operation",
    "extract_context",
    "extract_tracing_headers",
    "parse_body",
    # Errors
    "HookwireError",
    "ApiError",
    "RuntimeApiError",
    "InvalidPayloadError",
    "ResourceNotFoundError",
    "ContextExtractionError",
    "PayloadValidationError",
    "UnknownOperationError",
    "ChannelNotFoundError",
    "MessageTypeNotFoundError",
    "ActionNotFoundError",
    "MissingActionTypeError",
]
