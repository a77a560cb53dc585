"""Hello world handler for the proxy container.

Run locally with:

    python -m server.local_server --config examples/hello_world/config.yaml
"""

import json
from typing import Callable, Dict, Tuple

from core.errors import UnroutableRequest
from core.request import Request
from core.response import Cookie, ResponseWriter

Route = Callable[[Request, ResponseWriter], object]


class HelloWorldApp:
    """A tiny method/path dispatch table."""

    def __init__(self) -> None:
        self.routes: Dict[Tuple[str, str], Route] = {}

    def route(self, method: str, path: str) -> Callable[[Route], Route]:
        def register(func: Route) -> Route:
            self.routes[(method.upper(), path)] = func
            return func

        return register

    def __call__(self, request: Request, response: ResponseWriter) -> object:
        route = self.routes.get((request.method, request.path))
        if route is None:
            raise UnroutableRequest(request.method, request.path)
        return route(request, response)


def create_app() -> HelloWorldApp:
    app = HelloWorldApp()

    @app.route("GET", "/hello")
    def hello(request: Request, response: ResponseWriter) -> str:
        response.set_status(200)
        response.set_header("Content-Type", "text/plain")
        return "Hello World"

    @app.route("GET", "/cookie")
    def cookie(request: Request, response: ResponseWriter) -> str:
        response.add_cookie(Cookie(name="MyCookie", value="CookieValue", domain="mydomain.com", path="/"))
        return "Hello World"

    @app.route("POST", "/echo")
    def echo(request: Request, response: ResponseWriter) -> None:
        response.set_header("Content-Type", "application/json")
        response.write(
            json.dumps(
                {
                    "path": request.path,
                    "query": {k: request.query.getall(k) for k in request.query.keys()},
                    "cookies": dict(request.cookies.items()),
                    "body": request.text(),
                }
            )
        )

    return app
