"""Container error taxonomy and the mapping of failures to proxy responses.

Every failure that this layer recovers from is turned into a response in the
shape of the originating event, so the invoking service never receives a
structurally invalid payload.
"""

import json
import logging
from http import HTTPStatus
from typing import Any, Dict, Optional

from core.events import EventShape, ResponseEvent, make_response_event
from core.validators import ContainerConfig

logger = logging.getLogger(__name__)


class ContainerError(Exception):
    """Base class for errors raised by the proxy container."""

    status_code: int = HTTPStatus.INTERNAL_SERVER_ERROR


class MalformedEvent(ContainerError):
    """The invocation payload is not parsable or has an unrecognized shape."""

    status_code = HTTPStatus.NOT_FOUND

    def __init__(
        self,
        message: str,
        shape: Optional[EventShape] = None,
        multi_value: bool = True,
    ) -> None:
        super().__init__(message)
        self.shape = shape
        self.multi_value = multi_value


class UnroutableRequest(ContainerError):
    """No downstream route matches the request.

    Raised by handlers and framework adapters; also covers requests whose
    path was missing from the event.
    """

    status_code = HTTPStatus.NOT_FOUND

    def __init__(self, method: str, path: str) -> None:
        super().__init__(f"No route for {method} {path}")
        self.method = method
        self.path = path


class InitializationFailure(ContainerError):
    """The downstream handler factory failed."""

    status_code = HTTPStatus.INTERNAL_SERVER_ERROR


class HandlerFailure(ContainerError):
    """The downstream handler raised while processing a request."""

    status_code = HTTPStatus.INTERNAL_SERVER_ERROR


def status_for_error(exc: BaseException) -> int:
    """Get the HTTP status an exception maps to.

    Args:
        exc: Exception raised while handling an invocation

    Returns:
        HTTP status code
    """
    if isinstance(exc, ContainerError):
        return int(exc.status_code)
    return int(HTTPStatus.INTERNAL_SERVER_ERROR)


def error_body(status_code: int, exc: BaseException, expose_details: bool = False) -> str:
    """Build the JSON body of an error response.

    Args:
        status_code: HTTP status of the response
        exc: Exception being mapped
        expose_details: Whether to include the exception text

    Returns:
        JSON string
    """
    try:
        message = HTTPStatus(status_code).phrase
    except ValueError:
        message = "Error"

    payload: Dict[str, Any] = {"message": message}
    if expose_details:
        payload["error"] = type(exc).__name__
        payload["detail"] = str(exc)
    return json.dumps(payload)


def error_response(
    exc: BaseException,
    shape: Optional[EventShape] = None,
    multi_value: bool = True,
    config: Optional[ContainerConfig] = None,
) -> ResponseEvent:
    """Map a failure to a well-formed response event.

    Args:
        exc: Exception raised while decoding or handling the invocation
        shape: Shape of the originating event, if it was detected
        multi_value: Whether the originating event used multi-value fields
        config: Container configuration

    Returns:
        Response event matching the originating shape (gateway when unknown)
    """
    config = config or ContainerConfig()
    if shape is None and isinstance(exc, MalformedEvent):
        shape = exc.shape
        multi_value = exc.multi_value
    if shape is None:
        shape = EventShape.GATEWAY

    status_code = status_for_error(exc)
    headers = [("Content-Type", "application/json")]
    headers.extend(config.error_headers.items())

    return make_response_event(
        shape=shape,
        status_code=status_code,
        headers=headers,
        body=error_body(status_code, exc, config.expose_error_details),
        is_base64=False,
        multi_value=multi_value,
    )
