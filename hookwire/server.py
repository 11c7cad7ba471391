"""Operation dispatcher for platform integrations.

A single entry point receives every platform request. The dispatcher
extracts the execution context from the headers, offers the request to
the integration's unknown-operation fallback, then routes it through
the fixed flow table:

    webhook_received     -> handlers.webhook
    register             -> handlers.register             (optional)
    unregister           -> handlers.unregister           (optional)
    create_user          -> handlers.create_user          (optional)
    create_conversation  -> handlers.create_conversation  (optional)
    message_created      -> handlers.channels[channel].messages[type]
    action_triggered     -> handlers.actions[type]
    ping                 -> no-op

Every outcome, including every failure, becomes exactly one Response.
The dispatcher keeps no per-request state on the server object; each
request gets its own context, client, logger and metadata store.

Key classes:
    IntegrationServer: Router and entry point (callable).

Key functions:
    integration_handler: Build the request handler for a set of handlers.
"""

import json
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, Mapping, Optional

import structlog

from .action_metadata import ActionMetadataStore
from .client import IntegrationClient, create_client
from .context import (
    ExecutionContext,
    Operation,
    extract_context,
    extract_tracing_headers,
    trace_id_from_headers,
)
from .exceptions import (
    ActionNotFoundError,
    ApiError,
    ChannelNotFoundError,
    MessageTypeNotFoundError,
    MissingActionTypeError,
    UnknownOperationError,
    normalize_error,
)
from .handlers import (
    ActionProps,
    CreateConversationProps,
    CreateUserProps,
    IntegrationHandlers,
    MessageProps,
    RegisterProps,
    UnknownOperationProps,
    UnregisterProps,
    WebhookProps,
)
from .integration_logger import IntegrationLogger
from .payloads import (
    ActionTriggeredPayload,
    CreateConversationPayload,
    CreateUserPayload,
    MessageCreatedPayload,
    RegisterPayload,
    UnregisterPayload,
    WebhookPayload,
    parse_body,
)
from .serve import Request, Response

logger = structlog.get_logger("hookwire.dispatch")

DEFAULT_STATUS = 200

ClientFactory = Callable[..., IntegrationClient]


@dataclass(frozen=True)
class ServerProps:
    """Everything one request's flow needs."""
    ctx: ExecutionContext
    req: Request
    client: IntegrationClient
    logger: IntegrationLogger


def _with_default_status(response: Response) -> Response:
    """Fill in the default status when the handler left it unset.

    Values that are not valid HTTP status codes are also defaulted.
    """
    status = response.status
    if status is None:
        return Response(status=DEFAULT_STATUS, body=response.body, headers=response.headers)
    if not isinstance(status, int) or not 100 <= status <= 599:
        logger.warning("invalid_handler_status", status=status, default=DEFAULT_STATUS)
        return Response(status=DEFAULT_STATUS, body=response.body, headers=response.headers)
    return response


def _as_response(result: Any, source: str) -> Optional[Response]:
    """Accept a Response or None from a handler."""
    if result is None or isinstance(result, Response):
        return result
    raise TypeError(f"{source} handler must return a Response or None, got {type(result).__name__}")


class IntegrationServer:
    """Routes platform operations to integration handlers.

    Every handler slot and table is validated and captured at
    construction time and is read-only afterwards.

    Args:
        handlers: The integration's registration surface.
        client_factory: Builds the per-request client from
            ``bot_id``, ``integration_id`` and ``headers`` keyword
            arguments. Defaults to create_client.
    """

    def __init__(
        self,
        handlers: IntegrationHandlers,
        client_factory: Optional[ClientFactory] = None,
    ):
        handlers.validate()
        self._webhook = handlers.webhook
        self._register = handlers.register
        self._unregister = handlers.unregister
        self._create_user = handlers.create_user
        self._create_conversation = handlers.create_conversation
        self._unknown_operation = handlers.unknown_operation_handler
        self._channels = handlers.frozen_channels()
        self._actions = handlers.frozen_actions()
        self._client_factory = client_factory or create_client
        self._flows: Mapping[Operation, Callable[[ServerProps], Awaitable[Optional[Response]]]] = {
            Operation.WEBHOOK_RECEIVED: self._on_webhook,
            Operation.REGISTER: self._on_register,
            Operation.UNREGISTER: self._on_unregister,
            Operation.MESSAGE_CREATED: self._on_message_created,
            Operation.ACTION_TRIGGERED: self._on_action_triggered,
            Operation.PING: self._on_ping,
            Operation.CREATE_USER: self._on_create_user,
            Operation.CREATE_CONVERSATION: self._on_create_conversation,
        }
        logger.info(
            "integration_server_ready",
            channels=sorted(self._channels),
            actions=sorted(self._actions),
        )

    async def __call__(self, req: Request) -> Response:
        """Handle one request. Never raises."""
        request_logger = IntegrationLogger(trace_id=trace_id_from_headers(req.headers))
        client: Optional[IntegrationClient] = None
        try:
            ctx = extract_context(req.headers)
            client = self._client_factory(
                bot_id=ctx.bot_id,
                integration_id=ctx.integration_id,
                headers=extract_tracing_headers(req.headers),
            )
            props = ServerProps(ctx=ctx, req=req, client=client, logger=request_logger)

            # The fallback takes precedence over the flow table.
            response = await self._on_unknown_operation(props)
            if response is not None:
                return _with_default_status(response)

            response = await self._handle_operation(props)
            if response is None:
                return Response(status=DEFAULT_STATUS)
            return _with_default_status(response)

        except Exception as error:
            return self._error_response(error, request_logger)

        finally:
            if client is not None:
                await self._close_client(client)

    async def _close_client(self, client: IntegrationClient) -> None:
        try:
            await client.close()
        except Exception:
            # The response is already decided at this point.
            logger.warning("client_close_failed", exc_info=True)

    # -- Routing -----------------------------------------------------------

    async def _handle_operation(self, props: ServerProps) -> Optional[Response]:
        operation = props.ctx.known_operation
        flow = self._flows.get(operation) if operation is not None else None
        if flow is None:
            raise UnknownOperationError(props.ctx.operation)

        logger.debug(
            "operation_dispatched",
            operation=operation.value,
            bot_id=props.ctx.bot_id,
            integration_id=props.ctx.integration_id,
            trace_id=props.ctx.trace_id,
        )
        return await flow(props)

    async def _on_unknown_operation(self, props: ServerProps) -> Optional[Response]:
        handler = self._unknown_operation
        if handler is None:
            return None
        result = await handler(
            UnknownOperationProps(ctx=props.ctx, client=props.client, logger=props.logger, req=props.req)
        )
        return _as_response(result, "unknown_operation")

    async def _on_ping(self, props: ServerProps) -> None:
        return None

    async def _on_webhook(self, props: ServerProps) -> Optional[Response]:
        payload = parse_body(props.req, WebhookPayload)
        result = await self._webhook(
            WebhookProps(ctx=props.ctx, client=props.client, logger=props.logger, req=payload.req)
        )
        return _as_response(result, "webhook")

    async def _on_register(self, props: ServerProps) -> None:
        if self._register is None:
            return None
        payload = parse_body(props.req, RegisterPayload)
        await self._register(
            RegisterProps(ctx=props.ctx, client=props.client, logger=props.logger,
                          webhook_url=payload.webhook_url)
        )
        return None

    async def _on_unregister(self, props: ServerProps) -> None:
        if self._unregister is None:
            return None
        payload = parse_body(props.req, UnregisterPayload)
        await self._unregister(
            UnregisterProps(ctx=props.ctx, client=props.client, logger=props.logger,
                            webhook_url=payload.webhook_url)
        )
        return None

    async def _on_create_user(self, props: ServerProps) -> Optional[Response]:
        if self._create_user is None:
            return None
        payload = parse_body(props.req, CreateUserPayload)
        result = await self._create_user(
            CreateUserProps(ctx=props.ctx, client=props.client, logger=props.logger, tags=payload.tags)
        )
        return _as_response(result, "create_user")

    async def _on_create_conversation(self, props: ServerProps) -> Optional[Response]:
        if self._create_conversation is None:
            return None
        payload = parse_body(props.req, CreateConversationPayload)
        result = await self._create_conversation(
            CreateConversationProps(ctx=props.ctx, client=props.client, logger=props.logger,
                                    channel=payload.channel, tags=payload.tags)
        )
        return _as_response(result, "create_conversation")

    async def _on_message_created(self, props: ServerProps) -> None:
        payload = parse_body(props.req, MessageCreatedPayload)
        channel_name = payload.conversation.channel

        messages = self._channels.get(channel_name)
        if messages is None:
            raise ChannelNotFoundError(channel_name)

        handler = messages.get(payload.type)
        if handler is None:
            raise MessageTypeNotFoundError(channel_name, payload.type)

        client = props.client
        message_id = payload.message.id

        async def ack(tags: Mapping[str, str]) -> None:
            await client.update_message(id=message_id, tags=dict(tags))

        await handler(
            MessageProps(
                ctx=props.ctx,
                client=client,
                logger=props.logger,
                conversation=payload.conversation,
                user=payload.user,
                message=payload.message,
                type=payload.type,
                payload=payload.payload,
                ack=ack,
            )
        )
        return None

    async def _on_action_triggered(self, props: ServerProps) -> Response:
        payload = parse_body(props.req, ActionTriggeredPayload)
        if not payload.type or not payload.type.strip():
            raise MissingActionTypeError()

        action = self._actions.get(payload.type)
        if action is None:
            raise ActionNotFoundError(payload.type)

        metadata = ActionMetadataStore()
        output = await action(
            ActionProps(
                ctx=props.ctx,
                client=props.client,
                logger=props.logger,
                type=payload.type,
                input=payload.input,
                metadata=metadata,
            )
        )
        return Response(body=json.dumps({"output": output, "meta": metadata.to_json()}))

    # -- Errors ------------------------------------------------------------

    def _error_response(self, error: Exception, request_logger: IntegrationLogger) -> Response:
        """Turn any failure into the error envelope, logging it once."""
        if not isinstance(error, ApiError):
            # Original detail stays in the process logs only.
            logger.exception("integration_unexpected_error", error_type=type(error).__name__)

        runtime_error = normalize_error(error)
        request_logger.for_bot().error(runtime_error.message)

        body: Dict[str, Any] = runtime_error.to_json()
        return Response(status=runtime_error.code, body=json.dumps(body))


def integration_handler(
    handlers: IntegrationHandlers,
    client_factory: Optional[ClientFactory] = None,
) -> IntegrationServer:
    """Build the request handler exposed to the host runtime."""
    return IntegrationServer(handlers, client_factory=client_factory)
