"""Pydantic models for the Lambda proxy integration payloads.

Two request shapes are supported:

- API Gateway REST API proxy integration events
- Application Load Balancer target group events

Both carry the same core HTTP fields. Neither carries an explicit tag naming
its producer, so the decoder classifies them structurally (see
``core.decoder.classify_event``). Responses must be written back in the shape
of the request that produced them.

Reference:
https://docs.aws.amazon.com/apigateway/latest/developerguide/set-up-lambda-proxy-integrations.html
https://docs.aws.amazon.com/elasticloadbalancing/latest/application/lambda-functions.html
"""

import logging
from enum import Enum
from http import HTTPStatus
from typing import Any, ClassVar, Dict, Iterable, List, Optional, Tuple, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator

logger = logging.getLogger(__name__)

SET_COOKIE = "set-cookie"


class EventShape(str, Enum):
    """Producers of proxy integration events."""

    GATEWAY = "gateway"
    LOAD_BALANCER = "load_balancer"


class _EventModel(BaseModel):
    # Unknown fields are dropped so newer event versions still decode.
    model_config = ConfigDict(extra="ignore", populate_by_name=True)


class GatewayIdentity(_EventModel):
    """Caller identity attached by API Gateway."""

    sourceIp: Optional[str] = None
    userAgent: Optional[str] = None
    user: Optional[str] = None
    userArn: Optional[str] = None
    caller: Optional[str] = None
    accountId: Optional[str] = None
    apiKey: Optional[str] = None
    cognitoIdentityId: Optional[str] = None
    cognitoIdentityPoolId: Optional[str] = None
    cognitoAuthenticationType: Optional[str] = None
    cognitoAuthenticationProvider: Optional[str] = None


class GatewayRequestContext(_EventModel):
    """API Gateway request context."""

    accountId: Optional[str] = None
    apiId: Optional[str] = None
    resourceId: Optional[str] = None
    resourcePath: Optional[str] = None
    stage: Optional[str] = None
    requestId: Optional[str] = None
    httpMethod: Optional[str] = None
    path: Optional[str] = None
    protocol: Optional[str] = None
    identity: GatewayIdentity = Field(default_factory=GatewayIdentity)
    # Claims for Cognito authorizers, arbitrary keys for custom authorizers.
    authorizer: Optional[Dict[str, Any]] = None

    @field_validator("identity", mode="before")
    @classmethod
    def null_identity(cls, v: Any) -> Any:
        return {} if v is None else v


class ElbContext(_EventModel):
    """Target group metadata attached by the load balancer."""

    targetGroupArn: Optional[str] = None


class LoadBalancerRequestContext(_EventModel):
    """Load balancer request context."""

    elb: ElbContext


class _ProxyEvent(_EventModel):
    """Fields shared by both request shapes."""

    shape: ClassVar[EventShape]

    httpMethod: str
    path: Optional[str] = None
    headers: Optional[Dict[str, Optional[str]]] = None
    multiValueHeaders: Optional[Dict[str, Optional[List[Optional[str]]]]] = None
    queryStringParameters: Optional[Dict[str, Optional[str]]] = None
    multiValueQueryStringParameters: Optional[Dict[str, Optional[List[Optional[str]]]]] = None
    body: Optional[str] = None
    isBase64Encoded: bool = False

    @field_validator("isBase64Encoded", mode="before")
    @classmethod
    def null_means_false(cls, v: Any) -> Any:
        return False if v is None else v

    @property
    def multi_value(self) -> bool:
        """Whether the event used the multi-value header/query representation."""
        return (
            self.multiValueHeaders is not None
            or self.multiValueQueryStringParameters is not None
        )


class GatewayProxyEvent(_ProxyEvent):
    """API Gateway REST API proxy integration event."""

    shape: ClassVar[EventShape] = EventShape.GATEWAY

    resource: Optional[str] = None
    pathParameters: Optional[Dict[str, str]] = None
    stageVariables: Optional[Dict[str, str]] = None
    requestContext: GatewayRequestContext = Field(default_factory=GatewayRequestContext)

    @field_validator("requestContext", mode="before")
    @classmethod
    def null_request_context(cls, v: Any) -> Any:
        return {} if v is None else v


class LoadBalancerProxyEvent(_ProxyEvent):
    """Application Load Balancer target group event."""

    shape: ClassVar[EventShape] = EventShape.LOAD_BALANCER

    requestContext: LoadBalancerRequestContext


InvocationEvent = Union[GatewayProxyEvent, LoadBalancerProxyEvent]

EVENT_MODELS: Dict[EventShape, type] = {
    EventShape.GATEWAY: GatewayProxyEvent,
    EventShape.LOAD_BALANCER: LoadBalancerProxyEvent,
}


class GatewayProxyResponse(BaseModel):
    """Response payload expected by API Gateway."""

    statusCode: int
    multiValueHeaders: Dict[str, List[str]] = Field(default_factory=dict)
    body: str = ""
    isBase64Encoded: bool = False

    def to_payload(self) -> Dict[str, Any]:
        return self.model_dump(exclude_none=True)


class LoadBalancerProxyResponse(BaseModel):
    """Response payload expected by the load balancer.

    Exactly one of ``headers`` and ``multiValueHeaders`` is set, matching
    whether multi-value headers are enabled on the target group.
    """

    statusCode: int
    statusDescription: str
    headers: Optional[Dict[str, str]] = None
    multiValueHeaders: Optional[Dict[str, List[str]]] = None
    body: str = ""
    isBase64Encoded: bool = False

    def to_payload(self) -> Dict[str, Any]:
        return self.model_dump(exclude_none=True)


ResponseEvent = Union[GatewayProxyResponse, LoadBalancerProxyResponse]


def status_description(status_code: int) -> str:
    """Format the load balancer status line, e.g. '404 Not Found'."""
    try:
        return f"{status_code} {HTTPStatus(status_code).phrase}"
    except ValueError:
        return str(status_code)


def fold_multi_value_headers(headers: Iterable[Tuple[str, str]]) -> Dict[str, List[str]]:
    """Group header pairs by case-insensitive name, keeping order and repeats.

    The first spelling seen for a name is used as the key.
    """
    folded: Dict[str, List[str]] = {}
    spelling: Dict[str, str] = {}
    for name, value in headers:
        key = spelling.setdefault(name.lower(), name)
        folded.setdefault(key, []).append(value)
    return folded


def _case_permutations(name: str) -> Iterable[str]:
    letters = [i for i, ch in enumerate(name) if ch.isalpha()]
    for n in range(2 ** len(letters)):
        chars = list(name.lower())
        for bit, pos in enumerate(letters):
            if n & (1 << bit):
                chars[pos] = chars[pos].upper()
        yield "".join(chars)


def fold_single_value_headers(headers: Iterable[Tuple[str, str]]) -> Dict[str, str]:
    """Collapse header pairs into a flat mapping.

    Repeated headers are comma-joined. Set-Cookie values cannot be joined, so
    each one is keyed under a different capitalization of the header name;
    HTTP header names are case-insensitive, so clients see every cookie.
    """
    multi = fold_multi_value_headers(headers)
    flat: Dict[str, str] = {}
    for name, values in multi.items():
        if name.lower() == SET_COOKIE:
            variants = list(_case_permutations(name))
            for variant, value in zip(variants, values):
                flat[variant] = value
            if len(values) > len(variants):
                logger.warning(
                    "Too many Set-Cookie headers for single-value response; dropping extras",
                    extra={"cookie_count": len(values), "cookies_kept": len(variants)},
                )
        else:
            flat[name] = ", ".join(values)
    return flat


def make_response_event(
    shape: EventShape,
    status_code: int,
    headers: Iterable[Tuple[str, str]],
    body: str,
    is_base64: bool,
    multi_value: bool = True,
) -> ResponseEvent:
    """Build the response payload for the given originating shape.

    Args:
        shape: Shape of the request event
        status_code: HTTP status code
        headers: Ordered header pairs, repeats allowed
        body: Body text (base64 text when is_base64 is set)
        is_base64: Whether body holds base64-encoded bytes
        multi_value: Whether the request used multi-value fields

    Returns:
        Response model matching the request shape
    """
    headers = list(headers)
    if shape is EventShape.LOAD_BALANCER:
        response = LoadBalancerProxyResponse(
            statusCode=status_code,
            statusDescription=status_description(status_code),
            body=body,
            isBase64Encoded=is_base64,
        )
        if multi_value:
            response.multiValueHeaders = fold_multi_value_headers(headers)
        else:
            response.headers = fold_single_value_headers(headers)
        return response

    return GatewayProxyResponse(
        statusCode=status_code,
        multiValueHeaders=fold_multi_value_headers(headers),
        body=body,
        isBase64Encoded=is_base64,
    )
