"""Decoding of raw invocation payloads into event models."""

import json
import logging
from typing import Any, BinaryIO, Dict, Union

from pydantic import ValidationError

from core.errors import MalformedEvent
from core.events import EVENT_MODELS, EventShape, InvocationEvent

logger = logging.getLogger(__name__)

RawEvent = Union[bytes, bytearray, str, Dict[str, Any]]


def classify_event(payload: Dict[str, Any]) -> EventShape:
    """Determine which producer sent an event.

    Load balancer events carry ``requestContext.elb``; API Gateway REST
    events carry ``httpMethod`` at the top level and no ``elb`` block.

    Args:
        payload: Parsed event document

    Returns:
        Detected event shape

    Raises:
        MalformedEvent: If neither shape's markers are present
    """
    request_context = payload.get("requestContext")
    if isinstance(request_context, dict) and isinstance(request_context.get("elb"), dict):
        return EventShape.LOAD_BALANCER

    if "httpMethod" in payload:
        return EventShape.GATEWAY

    if payload.get("version"):
        raise MalformedEvent(f"Unsupported event payload version {payload.get('version')!r}")
    raise MalformedEvent("Unrecognized event payload: no proxy integration markers")


def payload_multi_value(payload: Dict[str, Any]) -> bool:
    """Whether a parsed event uses the multi-value header/query fields."""
    return (
        payload.get("multiValueHeaders") is not None
        or payload.get("multiValueQueryStringParameters") is not None
    )


def parse_payload(raw: RawEvent) -> Dict[str, Any]:
    """Parse raw invocation bytes or text into a JSON object.

    Raises:
        MalformedEvent: If the payload is not a JSON object
    """
    if isinstance(raw, dict):
        return raw

    if isinstance(raw, (bytes, bytearray)):
        try:
            raw = bytes(raw).decode("utf-8")
        except UnicodeDecodeError as e:
            raise MalformedEvent(f"Event payload is not UTF-8: {e}") from e

    try:
        payload = json.loads(raw)
    except json.JSONDecodeError as e:
        raise MalformedEvent(f"Event payload is not valid JSON: {e}") from e

    if not isinstance(payload, dict):
        raise MalformedEvent(
            f"Event payload must be a JSON object, got {type(payload).__name__}"
        )
    return payload


def decode_event(raw: RawEvent) -> InvocationEvent:
    """Decode a raw invocation payload into an event model.

    A null or missing ``path`` is valid. Unknown fields are ignored.

    Args:
        raw: Raw bytes, JSON text, or an already parsed event dictionary

    Returns:
        GatewayProxyEvent or LoadBalancerProxyEvent

    Raises:
        MalformedEvent: If the payload cannot be parsed or validated. The
            exception carries the detected shape when classification succeeded.
    """
    payload = parse_payload(raw)
    shape = classify_event(payload)
    model = EVENT_MODELS[shape]

    try:
        event = model.model_validate(payload)
    except ValidationError as e:
        logger.warning(
            "Event failed validation",
            extra={"event_shape": shape.value, "error_count": e.error_count()},
        )
        raise MalformedEvent(
            f"Invalid {shape.value} event: {e}",
            shape=shape,
            multi_value=payload_multi_value(payload),
        ) from e

    logger.debug(
        "Decoded invocation event",
        extra={"event_shape": shape.value, "multi_value": event.multi_value},
    )
    return event


def read_event(stream: BinaryIO) -> InvocationEvent:
    """Read and decode an event from a binary input stream."""
    return decode_event(stream.read())
