"""Run a WSGI application as the container's downstream handler.

Usage::

    from server.adapters.wsgi import WsgiHandler
    from myapp import app

    def create_handler():
        return WsgiHandler(app)

then set ``handler: "mymodule:create_handler"`` in the container configuration.
"""

import io
import logging
import sys
from typing import Any, Callable, Dict, Iterable, List, Optional, Tuple
from urllib.parse import unquote

from core.events import EventShape
from core.request import Request
from core.response import ResponseWriter

logger = logging.getLogger(__name__)

WSGIApp = Callable[[Dict[str, Any], Callable[..., Any]], Iterable[bytes]]

# Headers that WSGI exposes without the HTTP_ prefix
_UNPREFIXED = {"CONTENT_TYPE", "CONTENT_LENGTH"}


def _wsgi_str(value: str) -> str:
    # PEP 3333: native strings hold latin-1 decoded bytes
    return value.encode("utf-8").decode("latin-1")


def _body_length(body: Any) -> Optional[int]:
    try:
        position = body.tell()
        body.seek(0, io.SEEK_END)
        end = body.tell()
        body.seek(position)
    except (AttributeError, OSError):
        return None
    return end - position


def build_environ(request: Request) -> Dict[str, Any]:
    """Build a WSGI environ for a request.

    Args:
        request: Request decoded from the invocation event

    Returns:
        WSGI environ dictionary
    """
    path = request.path
    if request.event_shape is EventShape.LOAD_BALANCER:
        # The load balancer forwards the path exactly as the client sent it
        path = unquote(path)

    headers = request.headers
    host = headers.get("Host", "lambda")
    server_name, _, host_port = host.partition(":")
    scheme = headers.get("X-Forwarded-Proto", "https")
    port = headers.get("X-Forwarded-Port") or host_port or ("443" if scheme == "https" else "80")

    environ: Dict[str, Any] = {
        "REQUEST_METHOD": request.method,
        "SCRIPT_NAME": _wsgi_str(request.base_path),
        "PATH_INFO": _wsgi_str(path),
        "QUERY_STRING": request.query_string,
        "SERVER_NAME": server_name,
        "SERVER_PORT": port,
        "SERVER_PROTOCOL": "HTTP/1.1",
        "REMOTE_ADDR": request.source_ip or "127.0.0.1",
        "wsgi.version": (1, 0),
        "wsgi.url_scheme": scheme,
        "wsgi.input": request.body,
        "wsgi.errors": sys.stderr,
        "wsgi.multithread": False,
        "wsgi.multiprocess": False,
        "wsgi.run_once": False,
        "lambda.request": request,
        "lambda.context": request.lambda_context,
        "lambda.security_context": request.security_context,
    }

    length = _body_length(request.body)
    if length is not None:
        environ["CONTENT_LENGTH"] = str(length)

    for name in set(k.upper() for k in headers.keys()):
        key = name.replace("-", "_")
        if key not in _UNPREFIXED:
            key = "HTTP_" + key
        separator = "; " if name == "COOKIE" else ","
        environ[key] = _wsgi_str(separator.join(headers.getall(name)))

    return environ


class WsgiHandler:
    """Adapts a WSGI application to the (Request, ResponseWriter) contract."""

    def __init__(self, app: WSGIApp) -> None:
        self.app = app

    def __repr__(self) -> str:
        return f"<WsgiHandler {self.app!r}>"

    def __call__(self, request: Request, response: ResponseWriter) -> None:
        environ = build_environ(request)
        started: List[bool] = []

        def start_response(
            status: str,
            headers: List[Tuple[str, str]],
            exc_info: Optional[Any] = None,
        ) -> Callable[[bytes], None]:
            if exc_info:
                try:
                    if response.committed:
                        raise exc_info[1].with_traceback(exc_info[2])
                finally:
                    exc_info = None
                for name in set(response.headers.keys()):
                    response.remove_header(name)
            elif started:
                raise AssertionError("start_response called twice without exc_info")

            response.set_status(int(status.split(" ", 1)[0]))
            for name, value in headers:
                response.add_header(name, value)
            started.append(True)
            return response.write

        result = self.app(environ, start_response)
        try:
            for chunk in result:
                if chunk:
                    response.write(chunk)
        finally:
            close = getattr(result, "close", None)
            if close is not None:
                close()
