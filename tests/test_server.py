"""Tests for the operation dispatcher."""

import asyncio
import json
from unittest.mock import AsyncMock

import pytest
from structlog.testing import capture_logs

from hookwire.exceptions import (
    UNEXPECTED_ERROR_MESSAGE,
    ForbiddenError,
    RuntimeApiError,
)
from hookwire.handlers import Channel, IntegrationHandlers
from hookwire.serve import Request, Response
from hookwire.server import IntegrationServer, integration_handler


class FakeClient:
    """Stand-in for IntegrationClient that records what it was built with."""

    def __init__(self, bot_id, integration_id, headers=None):
        self.bot_id = bot_id
        self.integration_id = integration_id
        self.headers = dict(headers or {})
        self.update_message = AsyncMock()
        self.closed = False

    async def close(self):
        self.closed = True


class ClientRecorder:
    def __init__(self):
        self.clients = []

    def __call__(self, **kwargs):
        client = FakeClient(**kwargs)
        self.clients.append(client)
        return client


def _request(operation, body=None, **headers):
    all_headers = {
        "x-bp-operation": operation,
        "x-bot-id": "bot-1",
        "x-integration-id": "integration-1",
        **headers,
    }
    raw = body if isinstance(body, str) or body is None else json.dumps(body)
    return Request(body=raw, headers=all_headers)


def _message_body(channel="channel", message_type="text", message_id="msg-1"):
    return {
        "conversation": {"id": "conv-1", "channel": channel, "tags": {}},
        "user": {"id": "user-1", "tags": {}},
        "message": {"id": message_id, "type": message_type, "payload": {"text": "hi"}, "tags": {}},
        "type": message_type,
        "payload": {"text": "hi"},
    }


def _full_handlers():
    """Handlers where every slot is a distinct AsyncMock."""
    return IntegrationHandlers(
        webhook=AsyncMock(return_value=None),
        register=AsyncMock(return_value=None),
        unregister=AsyncMock(return_value=None),
        create_user=AsyncMock(return_value=None),
        create_conversation=AsyncMock(return_value=None),
        channels={"channel": Channel(messages={"text": AsyncMock(return_value=None)})},
        actions={"doThing": AsyncMock(return_value={"ok": True})},
    )


def _all_mocks(handlers):
    return {
        "webhook": handlers.webhook,
        "register": handlers.register,
        "unregister": handlers.unregister,
        "create_user": handlers.create_user,
        "create_conversation": handlers.create_conversation,
        "message": handlers.channels["channel"].messages["text"],
        "action": handlers.actions["doThing"],
    }


def _error_body(response):
    return json.loads(response.body)


# -------------------------------------------------------------------
# Flow table
# -------------------------------------------------------------------

FLOW_CASES = [
    ("webhook_received", {"req": {"body": "{}", "path": "/", "method": "POST", "headers": {}}}, "webhook"),
    ("register", {"webhookUrl": "https://example.com/hook"}, "register"),
    ("unregister", {"webhookUrl": "https://example.com/hook"}, "unregister"),
    ("create_user", {"tags": {"id": "u-1"}}, "create_user"),
    ("create_conversation", {"channel": "channel", "tags": {"id": "c-1"}}, "create_conversation"),
    ("message_created", _message_body(), "message"),
    ("action_triggered", {"type": "doThing", "input": {"a": 1}}, "action"),
]


@pytest.mark.asyncio
@pytest.mark.parametrize("operation,body,expected", FLOW_CASES)
async def test_operation_invokes_only_its_handler(operation, body, expected):
    handlers = _full_handlers()
    server = IntegrationServer(handlers, client_factory=ClientRecorder())

    response = await server(_request(operation, body))

    assert response.status == 200
    for name, mock in _all_mocks(handlers).items():
        if name == expected:
            mock.assert_awaited_once()
        else:
            mock.assert_not_awaited()


@pytest.mark.asyncio
async def test_ping_invokes_nothing_and_succeeds():
    handlers = _full_handlers()
    server = IntegrationServer(handlers, client_factory=ClientRecorder())

    response = await server(_request("ping"))

    assert response.status == 200
    assert response.body is None
    for mock in _all_mocks(handlers).values():
        mock.assert_not_awaited()


@pytest.mark.asyncio
async def test_props_carry_decoded_fields():
    handlers = _full_handlers()
    server = IntegrationServer(handlers, client_factory=ClientRecorder())

    await server(_request("register", {"webhookUrl": "https://example.com/hook", "extra": 1}))

    props = handlers.register.await_args.args[0]
    assert props.webhook_url == "https://example.com/hook"
    assert props.ctx.bot_id == "bot-1"
    assert props.ctx.integration_id == "integration-1"


@pytest.mark.asyncio
@pytest.mark.parametrize("operation", ["register", "unregister", "create_user", "create_conversation"])
async def test_absent_optional_handler_skips_without_parsing(operation):
    """A missing optional handler returns empty success, even for a bad body."""
    server = IntegrationServer(IntegrationHandlers(webhook=AsyncMock()), client_factory=ClientRecorder())

    response = await server(_request(operation, "not json"))

    assert response.status == 200
    assert response.body is None


@pytest.mark.asyncio
async def test_webhook_response_is_returned_with_default_status():
    handlers = IntegrationHandlers(webhook=AsyncMock(return_value=Response(body="pong")))
    server = IntegrationServer(handlers, client_factory=ClientRecorder())

    response = await server(_request("webhook_received", {"req": {"body": "x"}}))

    assert response.status == 200
    assert response.body == "pong"


@pytest.mark.asyncio
async def test_explicit_status_is_honored():
    handlers = IntegrationHandlers(webhook=AsyncMock(return_value=Response(status=202, body="later")))
    server = IntegrationServer(handlers, client_factory=ClientRecorder())

    response = await server(_request("webhook_received", {"req": {}}))

    assert response.status == 202


@pytest.mark.asyncio
async def test_out_of_range_status_is_defaulted():
    handlers = IntegrationHandlers(webhook=AsyncMock(return_value=Response(status=0)))
    server = IntegrationServer(handlers, client_factory=ClientRecorder())

    response = await server(_request("webhook_received", {"req": {}}))

    assert response.status == 200


# -------------------------------------------------------------------
# Unknown operations and the fallback handler
# -------------------------------------------------------------------

@pytest.mark.asyncio
async def test_unknown_operation_yields_client_error():
    server = IntegrationServer(_full_handlers(), client_factory=ClientRecorder())

    response = await server(_request("teleport"))

    assert response.status == 400
    body = _error_body(response)
    assert body["type"] == "Runtime"
    assert body["message"] == "Unknown operation teleport"


@pytest.mark.asyncio
async def test_fallback_response_short_circuits_routing():
    """The flow table is never entered when the fallback answers."""
    handlers = IntegrationHandlers(
        webhook=AsyncMock(side_effect=AssertionError("webhook must not run")),
        unknown_operation_handler=AsyncMock(return_value=Response(body="intercepted")),
    )
    server = IntegrationServer(handlers, client_factory=ClientRecorder())

    response = await server(_request("webhook_received", {"req": {}}))

    assert response.status == 200
    assert response.body == "intercepted"
    handlers.webhook.assert_not_awaited()


@pytest.mark.asyncio
async def test_fallback_can_serve_custom_operation():
    handlers = IntegrationHandlers(
        webhook=AsyncMock(),
        unknown_operation_handler=AsyncMock(return_value=Response(status=201)),
    )
    server = IntegrationServer(handlers, client_factory=ClientRecorder())

    response = await server(_request("custom_op", "raw"))

    assert response.status == 201
    props = handlers.unknown_operation_handler.await_args.args[0]
    assert props.req.body == "raw"
    assert props.ctx.operation == "custom_op"


@pytest.mark.asyncio
async def test_fallback_returning_none_falls_through():
    handlers = IntegrationHandlers(
        webhook=AsyncMock(return_value=None),
        unknown_operation_handler=AsyncMock(return_value=None),
    )
    server = IntegrationServer(handlers, client_factory=ClientRecorder())

    response = await server(_request("webhook_received", {"req": {}}))

    assert response.status == 200
    handlers.unknown_operation_handler.assert_awaited_once()
    handlers.webhook.assert_awaited_once()


# -------------------------------------------------------------------
# Message flow
# -------------------------------------------------------------------

@pytest.mark.asyncio
async def test_unknown_channel_yields_channel_not_found():
    server = IntegrationServer(_full_handlers(), client_factory=ClientRecorder())

    response = await server(_request("message_created", _message_body(channel="fax")))

    assert response.status == 404
    assert _error_body(response)["message"] == "Channel fax not found"


@pytest.mark.asyncio
async def test_unknown_message_type_yields_message_type_not_found():
    server = IntegrationServer(_full_handlers(), client_factory=ClientRecorder())

    response = await server(_request("message_created", _message_body(message_type="video")))

    assert response.status == 404
    assert _error_body(response)["message"] == "Message of type video not found in channel channel"


@pytest.mark.asyncio
async def test_ack_updates_only_the_triggering_message():
    async def on_text(props):
        await props.ack({"ticket": "1"})
        await props.ack({"ticket": "2", "status": "sent"})

    handlers = IntegrationHandlers(
        webhook=AsyncMock(),
        channels={"channel": Channel(messages={"text": on_text})},
    )
    recorder = ClientRecorder()
    server = IntegrationServer(handlers, client_factory=recorder)

    response = await server(_request("message_created", _message_body(message_id="msg-42")))

    assert response.status == 200
    update = recorder.clients[0].update_message
    assert update.await_count == 2
    assert update.await_args_list[0].kwargs == {"id": "msg-42", "tags": {"ticket": "1"}}
    assert update.await_args_list[1].kwargs == {"id": "msg-42", "tags": {"ticket": "2", "status": "sent"}}


@pytest.mark.asyncio
async def test_ack_does_not_accept_a_message_id():
    async def on_text(props):
        await props.ack({"a": "b"}, id="other")

    handlers = IntegrationHandlers(
        webhook=AsyncMock(),
        channels={"channel": Channel(messages={"text": on_text})},
    )
    recorder = ClientRecorder()
    server = IntegrationServer(handlers, client_factory=recorder)

    response = await server(_request("message_created", _message_body()))

    assert response.status == 500
    recorder.clients[0].update_message.assert_not_awaited()


@pytest.mark.asyncio
async def test_message_handler_receives_payload_fields():
    handler = AsyncMock(return_value=None)
    handlers = IntegrationHandlers(webhook=AsyncMock(), channels={"channel": Channel(messages={"text": handler})})
    server = IntegrationServer(handlers, client_factory=ClientRecorder())

    await server(_request("message_created", _message_body()))

    props = handler.await_args.args[0]
    assert props.conversation.id == "conv-1"
    assert props.user.id == "user-1"
    assert props.message.id == "msg-1"
    assert props.type == "text"
    assert props.payload == {"text": "hi"}


# -------------------------------------------------------------------
# Action flow
# -------------------------------------------------------------------

@pytest.mark.asyncio
@pytest.mark.parametrize("body", [{"input": {}}, {"type": "", "input": {}}, {"type": "   "}])
async def test_missing_action_type(body):
    server = IntegrationServer(_full_handlers(), client_factory=ClientRecorder())

    response = await server(_request("action_triggered", body))

    assert response.status == 400
    assert _error_body(response)["message"] == "Missing action type"


@pytest.mark.asyncio
async def test_unknown_action_yields_action_not_found():
    server = IntegrationServer(_full_handlers(), client_factory=ClientRecorder())

    response = await server(_request("action_triggered", {"type": "nope", "input": {}}))

    assert response.status == 404
    assert _error_body(response)["message"] == "Action nope not found"


@pytest.mark.asyncio
async def test_action_response_contains_output_and_metadata():
    async def create_ticket(props):
        props.metadata.set("cost", 0.5)
        props.metadata.set("tickets", 1)
        props.metadata.set("cost", 0.75)
        return {"id": "T-1", "echo": props.input}

    handlers = IntegrationHandlers(webhook=AsyncMock(), actions={"createTicket": create_ticket})
    server = IntegrationServer(handlers, client_factory=ClientRecorder())

    response = await server(_request("action_triggered", {"type": "createTicket", "input": {"title": "x"}}))

    assert response.status == 200
    assert json.loads(response.body) == {
        "output": {"id": "T-1", "echo": {"title": "x"}},
        "meta": {"cost": 0.75, "tickets": 1},
    }


@pytest.mark.asyncio
async def test_each_action_call_gets_fresh_metadata():
    seen = []

    async def action(props):
        seen.append(props.metadata)
        props.metadata.set("n", len(seen))
        return None

    handlers = IntegrationHandlers(webhook=AsyncMock(), actions={"count": action})
    server = IntegrationServer(handlers, client_factory=ClientRecorder())

    first = await server(_request("action_triggered", {"type": "count"}))
    second = await server(_request("action_triggered", {"type": "count"}))

    assert seen[0] is not seen[1]
    assert json.loads(first.body)["meta"] == {"n": 1}
    assert json.loads(second.body)["meta"] == {"n": 2}


# -------------------------------------------------------------------
# Error normalization
# -------------------------------------------------------------------

@pytest.mark.asyncio
async def test_opaque_error_message_never_leaks():
    handlers = IntegrationHandlers(webhook=AsyncMock(side_effect=KeyError("db password is hunter2")))
    server = IntegrationServer(handlers, client_factory=ClientRecorder())

    with capture_logs() as logs:
        response = await server(_request("webhook_received", {"req": {}}))

    assert response.status == 500
    assert "hunter2" not in response.body
    body = _error_body(response)
    assert body["message"] == UNEXPECTED_ERROR_MESSAGE
    assert body["type"] == "Runtime"
    events = [entry["event"] for entry in logs]
    assert "integration_unexpected_error" in events


@pytest.mark.asyncio
async def test_runtime_error_passes_through():
    handlers = IntegrationHandlers(
        webhook=AsyncMock(side_effect=RuntimeApiError("Slack token expired", code=401))
    )
    server = IntegrationServer(handlers, client_factory=ClientRecorder())

    response = await server(_request("webhook_received", {"req": {}}))

    assert response.status == 401
    body = _error_body(response)
    assert body["message"] == "Slack token expired"
    assert body["type"] == "Runtime"


@pytest.mark.asyncio
async def test_structured_error_is_wrapped_keeping_message_and_status():
    handlers = IntegrationHandlers(webhook=AsyncMock(side_effect=ForbiddenError("not allowed")))
    server = IntegrationServer(handlers, client_factory=ClientRecorder())

    response = await server(_request("webhook_received", {"req": {}}))

    assert response.status == 403
    body = _error_body(response)
    assert body["message"] == "not allowed"
    assert body["type"] == "Runtime"


@pytest.mark.asyncio
async def test_failures_are_logged_for_the_bot():
    server = IntegrationServer(_full_handlers(), client_factory=ClientRecorder())

    with capture_logs() as logs:
        await server(_request("teleport", traceparent="00-abc123-def-01"))

    bot_errors = [entry for entry in logs if entry.get("visible_to_bot")]
    assert len(bot_errors) == 1
    assert bot_errors[0]["log_level"] == "error"
    assert bot_errors[0]["event"] == "Unknown operation teleport"
    assert bot_errors[0]["trace_id"] == "abc123"


@pytest.mark.asyncio
async def test_invalid_payload_yields_client_error():
    server = IntegrationServer(_full_handlers(), client_factory=ClientRecorder())

    response = await server(_request("register", {"url": "missing webhookUrl"}))

    assert response.status == 400
    assert "webhookUrl" in _error_body(response)["message"]


@pytest.mark.asyncio
async def test_missing_context_header_yields_envelope():
    recorder = ClientRecorder()
    server = IntegrationServer(_full_handlers(), client_factory=recorder)

    response = await server(Request(body="{}", headers={"x-bp-operation": "ping"}))

    assert response.status == 400
    assert "x-bot-id" in _error_body(response)["message"]
    assert recorder.clients == []


@pytest.mark.asyncio
async def test_non_response_return_is_a_server_error():
    handlers = IntegrationHandlers(webhook=AsyncMock(return_value={"status": 200}))
    server = IntegrationServer(handlers, client_factory=ClientRecorder())

    response = await server(_request("webhook_received", {"req": {}}))

    assert response.status == 500


# -------------------------------------------------------------------
# Per-request isolation
# -------------------------------------------------------------------

@pytest.mark.asyncio
async def test_client_is_closed_after_every_request():
    handlers = IntegrationHandlers(webhook=AsyncMock(side_effect=ValueError("boom")))
    recorder = ClientRecorder()
    server = IntegrationServer(handlers, client_factory=recorder)

    await server(_request("webhook_received", {"req": {}}))
    await server(_request("ping"))

    assert len(recorder.clients) == 2
    assert all(client.closed for client in recorder.clients)


@pytest.mark.asyncio
async def test_concurrent_requests_keep_their_own_tracing_headers():
    seen = {}

    async def webhook(props):
        await asyncio.sleep(0)
        seen[props.ctx.trace_id] = dict(props.client.headers)
        return None

    recorder = ClientRecorder()
    server = IntegrationServer(IntegrationHandlers(webhook=webhook), client_factory=recorder)

    first = _request("webhook_received", {"req": {}}, traceparent="00-aaaa-01", tracestate="a=1")
    second = _request("webhook_received", {"req": {}}, traceparent="00-bbbb-01", **{"sentry-trace": "b"})

    responses = await asyncio.gather(server(first), server(second))

    assert [r.status for r in responses] == [200, 200]
    assert seen["aaaa"] == {"traceparent": "00-aaaa-01", "tracestate": "a=1"}
    assert seen["bbbb"] == {"traceparent": "00-bbbb-01", "sentry-trace": "b"}
    assert len(recorder.clients) == 2
    assert recorder.clients[0] is not recorder.clients[1]


def test_tables_are_frozen_at_construction():
    handlers = _full_handlers()
    server = integration_handler(handlers, client_factory=ClientRecorder())

    handlers.actions["late"] = AsyncMock()

    assert "late" not in server._actions
    with pytest.raises(TypeError):
        server._actions["other"] = AsyncMock()


def test_handler_slots_are_captured_at_construction():
    handlers = _full_handlers()
    server = integration_handler(handlers, client_factory=ClientRecorder())
    original_register = handlers.register

    handlers.register = None
    handlers.unknown_operation_handler = AsyncMock(return_value=Response(body="late"))

    assert server._register is original_register
    assert server._unknown_operation is None


@pytest.mark.asyncio
async def test_reassigned_handlers_do_not_change_routing():
    handlers = _full_handlers()
    server = IntegrationServer(handlers, client_factory=ClientRecorder())
    original_webhook = handlers.webhook
    late_webhook = AsyncMock(return_value=Response(body="late"))

    handlers.webhook = late_webhook
    handlers.unknown_operation_handler = AsyncMock(return_value=Response(body="late"))
    response = await server(_request("webhook_received", {"req": {}}))

    assert response.status == 200
    assert response.body is None
    original_webhook.assert_awaited_once()
    late_webhook.assert_not_awaited()


class FailingCloseClient(FakeClient):
    async def close(self):
        raise RuntimeError("close failed with secret-detail")


@pytest.mark.asyncio
async def test_failing_client_close_still_returns_response():
    server = IntegrationServer(
        IntegrationHandlers(webhook=AsyncMock()),
        client_factory=lambda **kwargs: FailingCloseClient(**kwargs),
    )

    with capture_logs() as logs:
        response = await server(_request("ping"))

    assert response.status == 200
    assert any(log["event"] == "client_close_failed" for log in logs)


@pytest.mark.asyncio
async def test_failing_client_close_keeps_error_envelope():
    server = IntegrationServer(
        IntegrationHandlers(webhook=AsyncMock(side_effect=ForbiddenError("nope"))),
        client_factory=lambda **kwargs: FailingCloseClient(**kwargs),
    )

    response = await server(_request("webhook_received", {"req": {}}))

    assert response.status == 403
    body = _error_body(response)
    assert body["message"] == "nope"
    assert "secret-detail" not in response.body
