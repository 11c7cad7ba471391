"""Typed request payloads and the generic body parser.

Each operation kind has a pydantic model describing its body. Wire
names are camelCase (``webhookUrl``); attributes are snake_case.
Unknown fields are ignored, missing required fields fail validation.

Key functions:
    parse_body: Decode a Request body into a given payload model.
"""

from typing import Any, Dict, Optional, Type, TypeVar

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from .exceptions import PayloadValidationError
from .serve import Request

T = TypeVar("T", bound=BaseModel)


class PayloadModel(BaseModel):
    """Base for all payload shapes."""

    model_config = ConfigDict(extra="ignore", populate_by_name=True)


# ---------------------------------------------------------------------------
# Platform records
# ---------------------------------------------------------------------------

class Conversation(PayloadModel):
    id: str
    channel: str
    integration: Optional[str] = None
    tags: Dict[str, str] = Field(default_factory=dict)


class User(PayloadModel):
    id: str
    name: Optional[str] = None
    tags: Dict[str, str] = Field(default_factory=dict)


class Message(PayloadModel):
    id: str
    type: Optional[str] = None
    direction: Optional[str] = None
    conversation_id: Optional[str] = Field(default=None, alias="conversationId")
    user_id: Optional[str] = Field(default=None, alias="userId")
    payload: Dict[str, Any] = Field(default_factory=dict)
    tags: Dict[str, str] = Field(default_factory=dict)


class IncomingRequest(PayloadModel):
    """The third-party HTTP request wrapped in a webhook_received body."""

    body: Optional[str] = None
    path: str = ""
    query: str = ""
    method: str = "POST"
    headers: Dict[str, str] = Field(default_factory=dict)


# ---------------------------------------------------------------------------
# Operation payloads
# ---------------------------------------------------------------------------

class WebhookPayload(PayloadModel):
    req: IncomingRequest


class RegisterPayload(PayloadModel):
    webhook_url: str = Field(alias="webhookUrl")


class UnregisterPayload(PayloadModel):
    webhook_url: str = Field(alias="webhookUrl")


class MessageCreatedPayload(PayloadModel):
    conversation: Conversation
    user: User
    message: Message
    type: str
    payload: Dict[str, Any] = Field(default_factory=dict)


class ActionTriggeredPayload(PayloadModel):
    """Action body. ``type`` stays optional so a blank name is reported
    as a missing action type instead of a validation failure."""

    type: Optional[str] = None
    input: Any = Field(default_factory=dict)


class CreateUserPayload(PayloadModel):
    tags: Dict[str, str] = Field(default_factory=dict)


class CreateConversationPayload(PayloadModel):
    channel: str
    tags: Dict[str, str] = Field(default_factory=dict)


def parse_body(request: Request, model: Type[T]) -> T:
    """Decode ``request.body`` as JSON into ``model``.

    Args:
        request: Inbound request; its body must be a JSON object.
        model: Pydantic model class to validate against.

    Raises:
        PayloadValidationError: Missing body, invalid JSON, or a body that
            does not satisfy the model.
    """
    if not request.body:
        raise PayloadValidationError("Missing body", payload_type=model.__name__)
    try:
        return model.model_validate_json(request.body)
    except ValidationError as e:
        problems = "; ".join(
            "{}: {}".format(".".join(str(p) for p in err["loc"]) or "body", err["msg"])
            for err in e.errors()
        )
        raise PayloadValidationError(
            f"Invalid {model.__name__}: {problems}",
            payload_type=model.__name__,
        ) from e
