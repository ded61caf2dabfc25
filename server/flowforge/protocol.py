"""Protocol primitives shared by the FlowForge server."""

from __future__ import annotations

import json
from dataclasses import dataclass
from typing import Any, Dict

from .flow_runner import to_jsonable


class ProtocolError(Exception):
    """Raised when a message violates the FlowForge protocol."""

    def __init__(self, message: str, error_code: int) -> None:
        super().__init__(message)
        self.error_code = error_code


@dataclass
class FlowMessage:
    """Typed representation of a FlowForge protocol frame."""

    message_id: int
    request_id: int
    type_code: int
    content: Dict[str, Any]

    @classmethod
    def parse(cls, raw_payload: str | bytes, *, error_code: int) -> "FlowMessage":
        """Parse and validate the incoming JSON payload."""
        try:
            decoded = json.loads(raw_payload)
        except json.JSONDecodeError as exc:
            raise ProtocolError("Payload is not valid JSON", error_code) from exc

        try:
            message_id = int(decoded["id"])
            request_id = int(decoded["requestId"])
            type_code = int(decoded["type"])
            content_raw = decoded["content"]
        except (KeyError, TypeError, ValueError) as exc:
            raise ProtocolError(
                "Missing or non-integer protocol fields", error_code
            ) from exc

        if not isinstance(content_raw, str):
            raise ProtocolError("Content field must be a JSON-encoded string", error_code)

        try:
            content = json.loads(content_raw or "{}")
        except json.JSONDecodeError as exc:
            raise ProtocolError("Content must contain valid JSON", error_code) from exc
        if not isinstance(content, dict):
            raise ProtocolError("Content must decode to an object", error_code)

        return cls(
            message_id=message_id,
            request_id=request_id,
            type_code=type_code,
            content=content,
        )

    def to_json(self) -> str:
        payload = {
            "id": self.message_id,
            "requestId": self.request_id,
            "type": self.type_code,
            "content": json.dumps(to_jsonable(self.content)),
        }
        return json.dumps(payload)


def build_status_response(
    *,
    message_id: int,
    request_id: int,
    type_code: int,
    content: Dict[str, Any],
) -> FlowMessage:
    """Helper for constructing FlowForge messages."""
    return FlowMessage(
        message_id=message_id,
        request_id=request_id,
        type_code=type_code,
        content=content,
    )
