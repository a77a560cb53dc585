"""Shared fixtures: proxy event builders, a Lambda context stub, a demo app."""

import base64
import io
import json
from typing import Any, Dict, List, Optional
from urllib.parse import quote_plus

import pytest

from core.errors import UnroutableRequest
from core.response import Cookie

CUSTOM_HEADER_KEY = "X-Custom-Header"
CUSTOM_HEADER_VALUE = "My Header Value"
BODY_TEXT_RESPONSE = "Hello World"
COOKIE_NAME = "MyCookie"
COOKIE_VALUE = "CookieValue"
COOKIE_DOMAIN = "mydomain.com"
COOKIE_PATH = "/"
BINARY_BODY = bytes(range(256))


class MockLambdaContext:
    """Mock Lambda context object."""

    def __init__(self, request_id: str = "test-request-id-123") -> None:
        self.aws_request_id = request_id
        self.function_name = "test-function"
        self.memory_limit_in_mb = 512

    def get_remaining_time_in_millis(self) -> int:
        return 30000


def _group(pairs: List[tuple]) -> Dict[str, List[str]]:
    grouped: Dict[str, List[str]] = {}
    for name, value in pairs:
        grouped.setdefault(name, []).append(value)
    return grouped


class EventBuilder:
    """Builds API Gateway or load balancer proxy events."""

    def __init__(self, alb: bool = False, multi_value: bool = True) -> None:
        self.alb = alb
        self.multi_value = multi_value
        self._method = "GET"
        self._path: Optional[str] = "/"
        self._headers: List[tuple] = []
        self._query: List[tuple] = []
        self._body: Optional[str] = None
        self._base64 = False
        self._authorizer: Optional[Dict[str, Any]] = None
        self._stage = "test"

    def method(self, method: str) -> "EventBuilder":
        self._method = method
        return self

    def path(self, path: Optional[str]) -> "EventBuilder":
        self._path = path
        return self

    def header(self, name: str, value: str) -> "EventBuilder":
        self._headers.append((name, value))
        return self

    def query(self, name: str, value: str) -> "EventBuilder":
        self._query.append((name, value))
        return self

    def cookie(self, name: str, value: str) -> "EventBuilder":
        return self.header("Cookie", f"{name}={value}")

    def body(self, text: str) -> "EventBuilder":
        self._body = text
        self._base64 = False
        return self

    def binary_body(self, data: bytes) -> "EventBuilder":
        self._body = base64.b64encode(data).decode("ascii")
        self._base64 = True
        return self

    def authorizer(self, claims: Dict[str, Any]) -> "EventBuilder":
        self._authorizer = {"claims": claims}
        return self

    def stage(self, stage: str) -> "EventBuilder":
        self._stage = stage
        return self

    def _fields(self, pairs: List[tuple], prefix: str) -> Dict[str, Any]:
        grouped = _group(pairs)
        if self.multi_value:
            return {f"multiValue{prefix}": grouped}
        single = {name: values[-1] for name, values in grouped.items()}
        return {prefix[0].lower() + prefix[1:]: single}

    def build(self) -> Dict[str, Any]:
        query = self._query
        if self.alb:
            query = [(quote_plus(k), quote_plus(v)) for k, v in query]

        event: Dict[str, Any] = {
            "httpMethod": self._method,
            "path": self._path,
            "body": self._body,
            "isBase64Encoded": self._base64,
        }
        if self.alb:
            event["requestContext"] = {
                "elb": {
                    "targetGroupArn": "arn:aws:elasticloadbalancing:us-east-1:123456789012:targetgroup/lambda/abc"
                }
            }
            event.update(self._fields(self._headers, "Headers"))
            event.update(self._fields(query, "QueryStringParameters"))
        else:
            event["resource"] = "/{proxy+}"
            event["headers"] = {name: value for name, value in self._headers} or None
            event["queryStringParameters"] = {name: value for name, value in query} or None
            event["multiValueHeaders"] = _group(self._headers)
            event["multiValueQueryStringParameters"] = _group(query) or None
            event["pathParameters"] = None
            event["stageVariables"] = None
            event["requestContext"] = {
                "resourcePath": "/{proxy+}",
                "httpMethod": self._method,
                "stage": self._stage,
                "requestId": "gateway-request-id",
                "identity": {"sourceIp": "127.0.0.1", "userAgent": "pytest"},
                "authorizer": self._authorizer,
            }
        return event

    def build_json(self) -> str:
        return json.dumps(self.build())

    def build_stream(self) -> io.BytesIO:
        return io.BytesIO(self.build_json().encode("utf-8"))


def make_app():
    """A small routing handler used across container tests."""

    def hello(request, response):
        response.set_status(200)
        response.add_header(CUSTOM_HEADER_KEY, CUSTOM_HEADER_VALUE)
        return BODY_TEXT_RESPONSE

    def cookie(request, response):
        response.add_cookie(
            Cookie(name=COOKIE_NAME, value=COOKIE_VALUE, domain=COOKIE_DOMAIN, path=COOKIE_PATH)
        )
        return BODY_TEXT_RESPONSE

    def multi_cookie(request, response):
        response.add_cookie(
            Cookie(name=COOKIE_NAME, value=COOKIE_VALUE, domain=COOKIE_DOMAIN, path=COOKIE_PATH)
        )
        response.add_cookie(
            Cookie(
                name=COOKIE_NAME + "2",
                value=COOKIE_VALUE + "2",
                domain=COOKIE_DOMAIN,
                path=COOKIE_PATH,
            )
        )
        return BODY_TEXT_RESPONSE

    def binary(request, response):
        response.set_header("Content-Type", "application/octet-stream")
        response.write(BINARY_BODY)

    def echo(request, response):
        response.set_header("Content-Type", request.content_type or "text/plain")
        response.write(request.read())

    def chunked(request, response):
        response.set_header("Content-Type", "text/plain")
        for i in range(5):
            response.write(f"chunk-{i};")
            response.flush()

    def boom(request, response):
        raise ValueError("database password is hunter2")

    async def async_hello(request, response):
        return "async " + BODY_TEXT_RESPONSE

    routes = {
        ("GET", "/hello"): hello,
        ("GET", "/cookie"): cookie,
        ("GET", "/multi-cookie"): multi_cookie,
        ("GET", "/binary"): binary,
        ("POST", "/echo"): echo,
        ("GET", "/chunked"): chunked,
        ("GET", "/boom"): boom,
        ("GET", "/async"): async_hello,
    }

    def app(request, response):
        route = routes.get((request.method, request.path))
        if route is None:
            raise UnroutableRequest(request.method, request.path)
        return route(request, response)

    return app


@pytest.fixture
def lambda_context():
    return MockLambdaContext()


@pytest.fixture(params=[False, True], ids=["gateway", "alb"])
def is_alb(request):
    return request.param


@pytest.fixture
def builder(is_alb):
    def make() -> EventBuilder:
        return EventBuilder(alb=is_alb)

    return make
