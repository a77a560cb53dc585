"""Conversion of decoded events into framework-neutral requests.

The request model never varies by event shape: headers are always a
case-insensitive ordered multi-map, query parameters an ordered multi-map,
and the body a binary stream.
"""

import base64
import binascii
import io
import json
import logging
from typing import Any, BinaryIO, Dict, Iterable, List, Mapping, Optional, Tuple
from urllib.parse import unquote_plus, urlencode

from multidict import CIMultiDict, CIMultiDictProxy, MultiDict, MultiDictProxy

from core.errors import MalformedEvent
from core.events import EventShape, GatewayProxyEvent, InvocationEvent
from core.validators import ContainerConfig

logger = logging.getLogger(__name__)

ROOT_PATH = "/"


def _pairs(
    single: Optional[Mapping[str, Optional[str]]],
    multi: Optional[Mapping[str, Optional[List[Optional[str]]]]],
) -> List[Tuple[str, str]]:
    """Flatten single- or multi-value event fields into ordered pairs.

    The multi-value field is authoritative when present; API Gateway sends
    both and the single-value one only holds the last value of each name.
    """
    pairs: List[Tuple[str, str]] = []
    if multi is not None:
        for name, values in multi.items():
            for value in values or []:
                if value is not None:
                    pairs.append((name, value))
        return pairs

    for name, value in (single or {}).items():
        if value is not None:
            pairs.append((name, value))
    return pairs


def fold_headers(event: InvocationEvent) -> CIMultiDict:
    """Build the request header multi-map from either header field."""
    return CIMultiDict(_pairs(event.headers, event.multiValueHeaders))


def fold_query(event: InvocationEvent) -> MultiDict:
    """Build the query parameter multi-map.

    The load balancer forwards query keys and values exactly as the client
    sent them, still percent-encoded. API Gateway decodes them first.
    """
    pairs = _pairs(event.queryStringParameters, event.multiValueQueryStringParameters)
    if event.shape is EventShape.LOAD_BALANCER:
        pairs = [(unquote_plus(k), unquote_plus(v)) for k, v in pairs]
    return MultiDict(pairs)


def parse_cookies(cookie_headers: Iterable[str]) -> MultiDict:
    """Parse Cookie header values into name/value pairs.

    Args:
        cookie_headers: Every Cookie header value on the request

    Returns:
        Ordered multi-map of cookie names to values
    """
    cookies: MultiDict = MultiDict()
    for header in cookie_headers:
        for part in header.split(";"):
            part = part.strip()
            if not part or "=" not in part:
                continue
            name, value = part.split("=", 1)
            name = name.strip()
            if not name:
                continue
            value = value.strip()
            if len(value) >= 2 and value[0] == value[-1] == '"':
                value = value[1:-1]
            cookies.add(name, value)
    return cookies


def decode_body(event: InvocationEvent) -> bytes:
    """Get the raw request body bytes.

    Raises:
        MalformedEvent: If the body is flagged base64 but does not decode
    """
    if event.body is None:
        return b""
    if event.isBase64Encoded:
        try:
            return base64.b64decode(event.body, validate=True)
        except (binascii.Error, ValueError) as e:
            raise MalformedEvent(
                f"Invalid base64-encoded body: {e}",
                shape=event.shape,
                multi_value=event.multi_value,
            ) from e
    return event.body.encode("utf-8")


def normalize_path(path: Optional[str], config: Optional[ContainerConfig] = None) -> Tuple[str, str]:
    """Normalize the request path and strip the service base path.

    Args:
        path: Path from the event, possibly null or empty
        config: Container configuration

    Returns:
        Tuple of (path, stripped_base_path)
    """
    if not path:
        return ROOT_PATH, ""

    base = config.service_base_path if config and config.strip_base_path else None
    if base and (path == base or path.startswith(base + "/")):
        stripped = path[len(base):] or ROOT_PATH
        return stripped, base

    return path, ""


class Request:
    """An HTTP request decoded from one invocation event."""

    def __init__(
        self,
        method: str,
        path: str,
        query: Optional[MultiDict] = None,
        headers: Optional[CIMultiDict] = None,
        body: Optional[BinaryIO] = None,
        cookies: Optional[MultiDict] = None,
        security_context: Optional[Dict[str, Any]] = None,
        stage: Optional[str] = None,
        resource_path: Optional[str] = None,
        path_parameters: Optional[Dict[str, str]] = None,
        stage_variables: Optional[Dict[str, str]] = None,
        source_ip: Optional[str] = None,
        request_id: Optional[str] = None,
        base_path: str = "",
        event_shape: EventShape = EventShape.GATEWAY,
        lambda_context: Optional[Any] = None,
    ) -> None:
        headers = headers if headers is not None else CIMultiDict()
        self.method = method.upper()
        self.path = path or ROOT_PATH
        self.query = MultiDictProxy(query if query is not None else MultiDict())
        self.headers = CIMultiDictProxy(headers)
        self.body = body if body is not None else io.BytesIO()
        if cookies is None:
            cookies = parse_cookies(headers.getall("Cookie", []))
        self.cookies = MultiDictProxy(cookies)
        self.security_context = security_context or {}
        self.stage = stage
        self.resource_path = resource_path
        self.path_parameters = path_parameters or {}
        self.stage_variables = stage_variables or {}
        self.source_ip = source_ip
        self.request_id = request_id
        self.base_path = base_path
        self.event_shape = event_shape
        self.lambda_context = lambda_context

    def __repr__(self) -> str:
        return f"<Request {self.method} {self.path}>"

    def header(self, name: str, default: Optional[str] = None) -> Optional[str]:
        """Get the first value of a header."""
        return self.headers.get(name, default)

    @property
    def content_type(self) -> Optional[str]:
        return self.headers.get("Content-Type")

    @property
    def query_string(self) -> str:
        """Query parameters re-encoded as a query string."""
        return urlencode(list(self.query.items()))

    def read(self, size: int = -1) -> bytes:
        return self.body.read(size)

    def text(self, encoding: str = "utf-8") -> str:
        return self.read().decode(encoding)

    def json(self) -> Any:
        return json.loads(self.read() or b"null")


def build_request(
    event: InvocationEvent,
    config: Optional[ContainerConfig] = None,
    lambda_context: Optional[Any] = None,
) -> Request:
    """Convert a decoded event into a Request.

    Args:
        event: Decoded gateway or load balancer event
        config: Container configuration (base path stripping)
        lambda_context: Lambda context of the invocation

    Returns:
        Request owned by this invocation
    """
    path, base_path = normalize_path(event.path, config)
    headers = fold_headers(event)

    request_id = getattr(lambda_context, "aws_request_id", None)
    stage = resource_path = source_ip = None
    security_context: Dict[str, Any] = {}
    path_parameters: Dict[str, str] = {}
    stage_variables: Dict[str, str] = {}

    if isinstance(event, GatewayProxyEvent):
        ctx = event.requestContext
        stage = ctx.stage
        resource_path = ctx.resourcePath or event.resource
        source_ip = ctx.identity.sourceIp
        request_id = ctx.requestId or request_id
        security_context = dict(ctx.authorizer or {})
        path_parameters = dict(event.pathParameters or {})
        stage_variables = dict(event.stageVariables or {})
    else:
        forwarded = headers.get("X-Forwarded-For")
        if forwarded:
            source_ip = forwarded.split(",")[0].strip()

    return Request(
        method=event.httpMethod,
        path=path,
        query=fold_query(event),
        headers=headers,
        body=io.BytesIO(decode_body(event)),
        security_context=security_context,
        stage=stage,
        resource_path=resource_path,
        path_parameters=path_parameters,
        stage_variables=stage_variables,
        source_ip=source_ip,
        request_id=request_id,
        base_path=base_path,
        event_shape=event.shape,
        lambda_context=lambda_context,
    )
