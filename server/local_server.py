"""Run the proxy container locally behind an aiohttp server (no Lambda needed).

Each HTTP request is replayed as an API Gateway (or load balancer) proxy
event through the same ``ContainerHandler`` the Lambda entry point uses, and
the response payload is turned back into an HTTP response.

    python -m server.local_server --config config.yaml --port 8000
"""

import argparse
import asyncio
import base64
import logging
import time
import uuid
from typing import Any, Dict, List, Optional

from aiohttp import web
from multidict import CIMultiDict

from core.events import EventShape
from core.logging_utils import configure_json_logging
from core.validators import load_and_validate_config, load_handler_factory
from server.container_handler import ContainerHandler

logger = logging.getLogger(__name__)

CONTAINER_KEY = web.AppKey("container", ContainerHandler)
SHAPE_KEY = web.AppKey("event_shape", EventShape)

LOCAL_TARGET_GROUP = "arn:aws:elasticloadbalancing:local:000000000000:targetgroup/local/0"


def _group(pairs: Any) -> Dict[str, List[str]]:
    grouped: Dict[str, List[str]] = {}
    for name, value in pairs:
        grouped.setdefault(name, []).append(value)
    return grouped


async def build_event(request: web.Request, shape: EventShape = EventShape.GATEWAY) -> Dict[str, Any]:
    """Convert an aiohttp request into a multi-value proxy event.

    Args:
        request: Incoming aiohttp request
        shape: Event shape to emulate

    Returns:
        Event dictionary
    """
    raw_body = await request.read()
    body: Optional[str] = None
    is_base64 = False
    if raw_body:
        try:
            body = raw_body.decode("utf-8")
        except UnicodeDecodeError:
            body = base64.b64encode(raw_body).decode("ascii")
            is_base64 = True

    if shape is EventShape.LOAD_BALANCER:
        # The load balancer does not decode the path or query string
        path = request.raw_path.split("?", 1)[0]
        query_pairs = [
            tuple(part.split("=", 1)) if "=" in part else (part, "")
            for part in request.query_string.split("&")
            if part
        ]
        request_context: Dict[str, Any] = {"elb": {"targetGroupArn": LOCAL_TARGET_GROUP}}
    else:
        path = request.path
        query_pairs = list(request.query.items())
        request_context = {
            "stage": "local",
            "requestId": str(uuid.uuid4()),
            "httpMethod": request.method,
            "path": path,
            "protocol": f"HTTP/{request.version.major}.{request.version.minor}",
            "identity": {
                "sourceIp": request.remote,
                "userAgent": request.headers.get("User-Agent"),
            },
        }

    return {
        "httpMethod": request.method,
        "path": path,
        "multiValueHeaders": _group(request.headers.items()),
        "multiValueQueryStringParameters": _group(query_pairs) or None,
        "body": body,
        "isBase64Encoded": is_base64,
        "requestContext": request_context,
    }


def build_response(payload: Dict[str, Any]) -> web.Response:
    """Convert a proxy response payload into an aiohttp response."""
    headers: CIMultiDict = CIMultiDict()
    for name, values in (payload.get("multiValueHeaders") or {}).items():
        for value in values:
            headers.add(name, value)
    for name, value in (payload.get("headers") or {}).items():
        headers.add(name, value)

    body = payload.get("body") or ""
    if payload.get("isBase64Encoded"):
        data = base64.b64decode(body)
    else:
        data = body.encode("utf-8")

    # Content-Type travels in headers; aiohttp would otherwise add its own
    return web.Response(body=data, status=payload["statusCode"], headers=headers)


async def handle_request(request: web.Request) -> web.Response:
    """Replay an HTTP request through the container."""
    start_time = time.perf_counter()
    container = request.app[CONTAINER_KEY]
    event = await build_event(request, request.app[SHAPE_KEY])

    loop = asyncio.get_running_loop()
    payload = await loop.run_in_executor(None, container.proxy, event, None)

    logger.info(
        "Local request processed",
        extra={
            "http_method": request.method,
            "request_path": request.path,
            "status_code": payload["statusCode"],
            "duration_ms": round((time.perf_counter() - start_time) * 1000, 2),
        },
    )
    return build_response(payload)


def create_app(container: ContainerHandler, shape: EventShape = EventShape.GATEWAY) -> web.Application:
    """Create the aiohttp application forwarding every route to the container."""
    app = web.Application()
    app[CONTAINER_KEY] = container
    app[SHAPE_KEY] = shape
    app.router.add_route("*", "/{tail:.*}", handle_request)
    return app


def main(argv: Optional[List[str]] = None) -> None:
    parser = argparse.ArgumentParser(description="Run the Lambda proxy container locally")
    parser.add_argument("--config", default="config.yaml", help="Path to config.yaml")
    parser.add_argument("--host", default="localhost")
    parser.add_argument("--port", type=int, default=8000)
    parser.add_argument(
        "--alb",
        action="store_true",
        help="Emulate load balancer events instead of API Gateway events",
    )
    args = parser.parse_args(argv)

    config = load_and_validate_config(args.config)
    configure_json_logging(level=config.logging.level, pretty=True)

    container = ContainerHandler(load_handler_factory(config.handler), config)
    container.initialize()

    shape = EventShape.LOAD_BALANCER if args.alb else EventShape.GATEWAY
    print(f"Local proxy container on http://{args.host}:{args.port} ({shape.value} events)")
    web.run_app(create_app(container, shape), host=args.host, port=args.port, print=None)


if __name__ == "__main__":
    main()
