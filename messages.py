"""
Chat message payloads: the inbound send request and the composed message
that is archived, queued and pushed to clients.
"""
from datetime import datetime, timezone
from typing import Any, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator
from pydantic import ValidationError as PydanticValidationError

from errors import ValidationError

# Value of "from" in the copy echoed back to the sender
SELF_SENDER = "Me"
IMAGE_PREVIEW = "📷 Photo"

MessageKind = Literal["text", "image"]


def _has_text(value: Optional[str]) -> bool:
    return bool(value and value.strip())


class SendMessageRequest(BaseModel):
    to: str
    body: Optional[str] = None
    kind: Optional[MessageKind] = None
    image_payload: Optional[str] = None
    reply_to: Optional[Any] = None

    @field_validator("to")
    @classmethod
    def validate_to(cls, v):
        v = v.strip().lower()
        if not v:
            raise ValueError("Recipient is required")
        return v

    @model_validator(mode="after")
    def require_content(self):
        has_body = _has_text(self.body)
        if not has_body and not self.image_payload:
            raise ValueError("Message needs a body or an image")
        if has_body and self.image_payload:
            raise ValueError("Send the text and the image as separate messages")
        if self.kind is not None and self.kind != self.resolved_kind:
            raise ValueError(f"kind={self.kind} does not match the payload")
        return self

    @property
    def resolved_kind(self) -> str:
        return "image" if self.image_payload else "text"


class ChatMessage(BaseModel):
    """Immutable composed message; exactly one of body / image_payload is set"""

    model_config = ConfigDict(populate_by_name=True, frozen=True)

    sender: str = Field(alias="from")
    sender_display_name: str = Field(alias="from_display_name")
    to: str
    kind: MessageKind
    body: Optional[str] = None
    image_payload: Optional[str] = None
    reply_to: Optional[Any] = None
    sent_at: str
    created_at: datetime

    @model_validator(mode="after")
    def check_variant(self):
        has_body = _has_text(self.body)
        has_image = bool(self.image_payload)
        if has_body == has_image:
            raise ValueError("Exactly one of body or image_payload must be set")
        if self.kind != ("image" if has_image else "text"):
            raise ValueError(f"kind={self.kind} does not match the payload")
        return self

    def to_wire(self, sender: Optional[str] = None) -> dict:
        data = self.model_dump(by_alias=True, mode="json")
        if sender is not None:
            data["from"] = sender
        return data

    def preview(self, limit: int) -> str:
        """Short notification text: truncated body, or a placeholder for images"""
        if self.kind == "image":
            return IMAGE_PREVIEW
        body = self.body.strip()
        if len(body) <= limit:
            return body
        return body[:limit].rstrip() + "…"


def format_sent_at(now: datetime) -> str:
    """HH:MM in the server's local time zone; `now` is naive UTC"""
    return now.replace(tzinfo=timezone.utc).astimezone().strftime("%H:%M")


def parse_send_request(data: dict) -> SendMessageRequest:
    try:
        return SendMessageRequest.model_validate(data)
    except PydanticValidationError as exc:
        raise ValidationError(_first_error(exc)) from exc


def compose_message(
    sender: str,
    sender_display_name: str,
    request: SendMessageRequest,
    now: datetime,
    max_image_bytes: int,
) -> ChatMessage:
    if request.image_payload and len(request.image_payload) > max_image_bytes:
        raise ValidationError("Image is too large", reason="image_too_large")

    kind = request.resolved_kind
    try:
        return ChatMessage(
            sender=sender,
            sender_display_name=sender_display_name,
            to=request.to,
            kind=kind,
            body=request.body if _has_text(request.body) else None,
            image_payload=request.image_payload,
            reply_to=request.reply_to,
            sent_at=format_sent_at(now),
            created_at=now,
        )
    except PydanticValidationError as exc:
        raise ValidationError(_first_error(exc)) from exc


def _first_error(exc: PydanticValidationError) -> str:
    errors = exc.errors()
    if not errors:
        return "Invalid message"
    return str(errors[0].get("msg", "Invalid message"))
