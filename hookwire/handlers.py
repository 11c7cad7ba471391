"""Handler registration surface for integrations.

An integration author supplies an IntegrationHandlers instance: a few
optional lifecycle handlers, a mandatory webhook handler, and two
dispatch tables (channels -> message types, and actions). Every handler
is an async callable receiving a single props object.

Key classes:
    IntegrationHandlers: The registration surface consumed by the server.
    Channel: Message-type table for one channel.
    *Props: Arguments passed to each kind of handler.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from types import MappingProxyType
from typing import TYPE_CHECKING, Any, Awaitable, Callable, Dict, Mapping, Optional

import structlog

from .exceptions import ConfigurationError

if TYPE_CHECKING:
    from .action_metadata import ActionMetadataStore
    from .client import IntegrationClient
    from .context import ExecutionContext
    from .integration_logger import IntegrationLogger
    from .payloads import Conversation, IncomingRequest, Message, User
    from .serve import Request, Response

logger = structlog.get_logger("hookwire.dispatch")


# ---------------------------------------------------------------------------
# Handler props
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class CommonProps:
    """Fields every handler receives."""
    ctx: "ExecutionContext"
    client: "IntegrationClient"
    logger: "IntegrationLogger"


@dataclass(frozen=True)
class WebhookProps(CommonProps):
    req: "IncomingRequest"


@dataclass(frozen=True)
class RegisterProps(CommonProps):
    webhook_url: str


@dataclass(frozen=True)
class UnregisterProps(CommonProps):
    webhook_url: str


@dataclass(frozen=True)
class CreateUserProps(CommonProps):
    tags: Dict[str, str]


@dataclass(frozen=True)
class CreateConversationProps(CommonProps):
    channel: str
    tags: Dict[str, str]


@dataclass(frozen=True)
class MessageProps(CommonProps):
    """Props for a channel message handler.

    ``ack`` tags the message being processed; it is bound to that
    message's id.
    """
    conversation: "Conversation"
    user: "User"
    message: "Message"
    type: str
    payload: Dict[str, Any]
    ack: Callable[[Mapping[str, str]], Awaitable[None]]


@dataclass(frozen=True)
class ActionProps(CommonProps):
    type: str
    input: Any
    metadata: "ActionMetadataStore"


@dataclass(frozen=True)
class UnknownOperationProps(CommonProps):
    req: "Request"


WebhookHandler = Callable[[WebhookProps], Awaitable[Optional["Response"]]]
RegisterHandler = Callable[[RegisterProps], Awaitable[None]]
UnregisterHandler = Callable[[UnregisterProps], Awaitable[None]]
CreateUserHandler = Callable[[CreateUserProps], Awaitable[Optional["Response"]]]
CreateConversationHandler = Callable[[CreateConversationProps], Awaitable[Optional["Response"]]]
MessageHandler = Callable[[MessageProps], Awaitable[None]]
ActionHandler = Callable[[ActionProps], Awaitable[Any]]
UnknownOperationHandler = Callable[[UnknownOperationProps], Awaitable[Optional["Response"]]]


# ---------------------------------------------------------------------------
# Registration surface
# ---------------------------------------------------------------------------

def _check_handler(name: str, handler: Any) -> None:
    if not callable(handler):
        raise ConfigurationError(f"Handler {name} is not callable", setting_name=name)


def _check_name(kind: str, name: Any) -> None:
    if not isinstance(name, str) or not name:
        raise ConfigurationError(f"{kind} names must be non-empty strings, got {name!r}")


@dataclass
class Channel:
    """Message handlers of one channel, keyed by message type."""
    messages: Dict[str, MessageHandler] = field(default_factory=dict)


@dataclass
class IntegrationHandlers:
    """Everything an integration plugs into the dispatcher.

    Tables can be filled at construction time or through the
    ``message`` / ``action`` decorators before the server is built.
    The server freezes them, so later changes are not seen by a
    running server.
    """

    webhook: WebhookHandler
    channels: Dict[str, Channel] = field(default_factory=dict)
    actions: Dict[str, ActionHandler] = field(default_factory=dict)
    register: Optional[RegisterHandler] = None
    unregister: Optional[UnregisterHandler] = None
    create_user: Optional[CreateUserHandler] = None
    create_conversation: Optional[CreateConversationHandler] = None
    unknown_operation_handler: Optional[UnknownOperationHandler] = None

    def message(self, channel: str, message_type: str) -> Callable[[MessageHandler], MessageHandler]:
        """Decorator registering a message handler.

        Usage:
            @handlers.message("channel", "text")
            async def send_text(props: MessageProps) -> None: ...
        """
        _check_name("Channel", channel)
        _check_name("Message type", message_type)

        def decorator(func: MessageHandler) -> MessageHandler:
            _check_handler(f"{channel}.{message_type}", func)
            messages = self.channels.setdefault(channel, Channel()).messages
            if message_type in messages:
                logger.warning("message_handler_conflict", channel=channel, message_type=message_type)
            messages[message_type] = func
            return func
        return decorator

    def action(self, name: str) -> Callable[[ActionHandler], ActionHandler]:
        """Decorator registering an action handler."""
        _check_name("Action", name)

        def decorator(func: ActionHandler) -> ActionHandler:
            _check_handler(name, func)
            if name in self.actions:
                logger.warning("action_handler_conflict", action=name)
            self.actions[name] = func
            return func
        return decorator

    def validate(self) -> None:
        """Check every registered handler and table key.

        Raises:
            ConfigurationError: On a missing webhook handler, a non-callable
                handler, or a blank/non-string table key.
        """
        _check_handler("webhook", self.webhook)
        for name in ("register", "unregister", "create_user", "create_conversation",
                     "unknown_operation_handler"):
            handler = getattr(self, name)
            if handler is not None:
                _check_handler(name, handler)

        for channel_name, channel in self.channels.items():
            _check_name("Channel", channel_name)
            if not isinstance(channel, Channel):
                raise ConfigurationError(f"Channel {channel_name} must be a Channel instance")
            for message_type, handler in channel.messages.items():
                _check_name("Message type", message_type)
                _check_handler(f"{channel_name}.{message_type}", handler)

        for action_name, handler in self.actions.items():
            _check_name("Action", action_name)
            _check_handler(action_name, handler)

    def frozen_channels(self) -> Mapping[str, Mapping[str, MessageHandler]]:
        """Read-only snapshot of the channel/message table."""
        return MappingProxyType({
            name: MappingProxyType(dict(channel.messages))
            for name, channel in self.channels.items()
        })

    def frozen_actions(self) -> Mapping[str, ActionHandler]:
        """Read-only snapshot of the action table."""
        return MappingProxyType(dict(self.actions))
