"""
Broker envelope codec.

Envelopes travel as base64-encoded UTF-8 JSON ``{"name": ..., "key": ...}``.
"""

import base64
import binascii
import json
from typing import Any

from pydantic import ValidationError as PydanticValidationError

from relayjobs.core.exceptions import EnvelopeError
from relayjobs.jobs.schemas import JobEnvelope


def encode_envelope(envelope: JobEnvelope) -> str:
    """Serialize an envelope to the base64 message body."""
    data = json.dumps(envelope.model_dump(), separators=(",", ":"))
    return base64.b64encode(data.encode("utf-8")).decode("ascii")


def _message_data(raw: Any) -> str | bytes:
    """Find the data field in the shapes a delivery can take."""
    if isinstance(raw, dict):
        # Push deliveries nest the message under "message"
        if "message" in raw and isinstance(raw["message"], dict):
            raw = raw["message"]
        data = raw.get("data", raw.get(b"data"))
        if data is None:
            raise EnvelopeError("No data in message")
        return data
    if isinstance(raw, (str, bytes)):
        return raw
    raise EnvelopeError(f"Unsupported message type {type(raw).__name__}")


def decode_envelope(raw: Any) -> JobEnvelope:
    """
    Decode a received message into an envelope.

    Accepts a raw body (str or bytes), a ``{"data": ...}`` mapping, or a
    push-subscription ``{"message": {"data": ...}}`` mapping. The body is
    base64 text; bare JSON bytes are accepted too.
    """
    data = _message_data(raw)
    if isinstance(data, str):
        data = data.encode("utf-8")

    try:
        text = base64.b64decode(data, validate=True).decode("utf-8")
    except (binascii.Error, UnicodeDecodeError):
        text = data.decode("utf-8", errors="replace")

    try:
        return JobEnvelope.model_validate(json.loads(text))
    except (json.JSONDecodeError, PydanticValidationError) as e:
        raise EnvelopeError(f"Invalid message: {e}") from e
