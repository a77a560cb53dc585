"""Contracts between the proxy container and its collaborators.

The container consumes a downstream request handler through a single call
contract and receives runtime metadata through the Lambda context object.
Routing, handler registration and everything else about the downstream
framework stays on the other side of ``RequestHandler``.
"""

from typing import TYPE_CHECKING, Any, Callable, Optional, Protocol, runtime_checkable

if TYPE_CHECKING:
    from core.request import Request
    from core.response import ResponseWriter


@runtime_checkable
class RequestHandler(Protocol):
    """A downstream handler: populates the writer for one request.

    Implementations may return ``str`` or ``bytes`` instead of writing the
    body, and may be coroutine functions. Unmatched routes should raise
    ``core.errors.UnroutableRequest``.
    """

    def __call__(self, request: "Request", response: "ResponseWriter") -> Any:
        ...


HandlerFactory = Callable[[], RequestHandler]


class LambdaContext(Protocol):
    """Protocol for AWS Lambda context object.

    This defines the expected interface for Lambda context objects,
    which provide runtime information about the Lambda execution environment.
    """

    aws_request_id: str
    function_name: Optional[str]
    memory_limit_in_mb: Optional[int]

    def get_remaining_time_in_millis(self) -> int:
        ...
