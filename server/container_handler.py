"""Lambda proxy container: drives one downstream handler per process.

The container owns a lazily initialized downstream handler for the life of
the process and exposes two entry points:

- ``proxy``: takes an event, returns the response payload as a dictionary
- ``proxy_stream``: reads the event from a binary stream and writes the
  response payload to an output stream as the handler produces body bytes

Each invocation decodes the event, builds a fresh Request and ResponseWriter,
calls the handler, and serializes the response in the shape of the event.
"""

import asyncio
import logging
import threading
import time
from typing import Any, BinaryIO, Callable, Dict, Optional, Tuple

from tenacity import Retrying, stop_after_attempt, wait_exponential

from core.decoder import RawEvent, decode_event
from core.errors import (
    HandlerFailure,
    InitializationFailure,
    MalformedEvent,
    UnroutableRequest,
    error_response,
)
from core.events import EventShape, ResponseEvent
from core.interfaces import LambdaContext, RequestHandler
from core.logging_utils import format_request_log, format_response_log
from core.request import Request, build_request
from core.response import (
    ResponseStreamEncoder,
    ResponseWriter,
    StreamingBodySink,
    build_response_event,
)
from core.validators import ContainerConfig

logger = logging.getLogger(__name__)


class ContainerState:
    """Process-wide state: the downstream handler and its initialization guard.

    Create one per process (or one per test). Invocations never reset it.
    """

    def __init__(self) -> None:
        self.lock = threading.Lock()
        self.handler: Optional[RequestHandler] = None
        self.init_error: Optional[InitializationFailure] = None
        self.factory_calls = 0

    @property
    def initialized(self) -> bool:
        return self.handler is not None


class ContainerHandler:
    """Bridges Lambda proxy events to a downstream request handler."""

    def __init__(
        self,
        factory: Callable[[], RequestHandler],
        config: Optional[ContainerConfig] = None,
        state: Optional[ContainerState] = None,
    ) -> None:
        """Create a container.

        Args:
            factory: Zero-argument callable that builds the downstream handler
            config: Container configuration
            state: Shared container state; a fresh one is created if omitted
        """
        self.factory = factory
        self.config = config or ContainerConfig()
        self.state = state or ContainerState()

    def _call_factory(self) -> RequestHandler:
        self.state.factory_calls += 1
        handler = self.factory()
        if not callable(handler):
            raise TypeError(f"Handler factory returned non-callable {type(handler).__name__}")
        return handler

    def _run_factory(self) -> RequestHandler:
        retrying = Retrying(
            stop=stop_after_attempt(self.config.init_attempts),
            wait=wait_exponential(multiplier=0.1, max=self.config.init_retry_wait_max),
            reraise=True,
            before_sleep=lambda retry_state: logger.warning(
                "Handler initialization attempt failed, retrying",
                extra={"attempt": retry_state.attempt_number},
            ),
        )
        return retrying(self._call_factory)

    def initialize(self) -> RequestHandler:
        """Initialize the downstream handler once and return it.

        Concurrent callers on a cold container block until the first one
        finishes. Under the "sticky" policy a failure is remembered and
        re-raised to every later caller; under "retry" the next caller runs
        the factory again.

        Returns:
            The downstream handler

        Raises:
            InitializationFailure: If the factory failed
        """
        state = self.state
        handler = state.handler
        if handler is not None:
            return handler

        with state.lock:
            if state.handler is not None:
                return state.handler
            if state.init_error is not None:
                raise state.init_error

            start_time = time.perf_counter()
            try:
                handler = self._run_factory()
            except Exception as e:
                failure = InitializationFailure(f"Handler initialization failed: {e}")
                failure.__cause__ = e
                logger.error(
                    f"Failed to initialize handler: {e}",
                    extra={
                        "error_type": type(e).__name__,
                        "init_failure_policy": self.config.init_failure_policy,
                    },
                    exc_info=True,
                )
                if self.config.init_failure_policy == "sticky":
                    state.init_error = failure
                raise failure

            state.handler = handler
            logger.info(
                "Downstream handler initialized",
                extra={"duration_ms": round((time.perf_counter() - start_time) * 1000, 2)},
            )
            return handler

    def _invoke(self, request: Request, writer: ResponseWriter) -> None:
        handler = self.initialize()
        result = handler(request, writer)
        if asyncio.iscoroutine(result):
            result = asyncio.run(result)
        if isinstance(result, (str, bytes, bytearray)) and not writer.body_written:
            writer.write(result)

    def _decode(
        self, raw: RawEvent, context: Optional[LambdaContext]
    ) -> Tuple[Request, EventShape, bool]:
        event = decode_event(raw)
        request = build_request(event, self.config, context)
        logger.info(
            "Incoming proxy request",
            extra=format_request_log(
                request_id=request.request_id,
                http_method=request.method,
                request_path=request.path,
                headers=request.headers,
                event_shape=event.shape.value,
                lambda_context=context,
            ),
        )
        return request, event.shape, event.multi_value

    def _map_failure(
        self,
        exc: Exception,
        request: Request,
        shape: EventShape,
        multi_value: bool,
    ) -> ResponseEvent:
        if isinstance(exc, UnroutableRequest):
            logger.info(
                f"No route for {request.method} {request.path}",
                extra={"request_id": request.request_id},
            )
        elif isinstance(exc, InitializationFailure):
            # Already logged with its cause by initialize()
            pass
        else:
            logger.error(
                f"Error processing request {request.request_id}: {exc}",
                extra={"request_id": request.request_id, "error_type": type(exc).__name__},
                exc_info=exc,
            )
            failure = HandlerFailure(str(exc))
            failure.__cause__ = exc
            exc = failure
        return error_response(exc, shape, multi_value, self.config)

    def _malformed(self, exc: MalformedEvent) -> ResponseEvent:
        logger.warning(
            f"Malformed invocation event: {exc}",
            extra={"event_shape": exc.shape.value if exc.shape else None},
        )
        return error_response(exc, config=self.config)

    def _log_completion(
        self,
        request: Request,
        status_code: int,
        start_time: float,
        streamed: bool,
        success: bool,
    ) -> None:
        logger.info(
            "Proxy request completed",
            extra=format_response_log(
                request_id=request.request_id,
                http_method=request.method,
                request_path=request.path,
                status_code=status_code,
                duration_ms=(time.perf_counter() - start_time) * 1000,
                streamed=streamed,
                success=success,
            ),
        )

    def proxy(self, event: RawEvent, context: Optional[LambdaContext] = None) -> Dict[str, Any]:
        """Handle one invocation and return the response payload.

        Args:
            event: Raw event bytes, JSON text, or the parsed event dictionary
            context: Lambda context object

        Returns:
            Response payload in the shape of the event
        """
        start_time = time.perf_counter()
        try:
            request, shape, multi_value = self._decode(event, context)
        except MalformedEvent as e:
            return self._malformed(e).to_payload()

        writer = ResponseWriter(self.config)
        success = True
        try:
            self._invoke(request, writer)
            response = build_response_event(writer, shape, multi_value)
        except Exception as e:
            success = False
            response = self._map_failure(e, request, shape, multi_value)

        self._log_completion(request, response.statusCode, start_time, False, success)
        return response.to_payload()

    def proxy_stream(
        self,
        input_stream: BinaryIO,
        output_stream: BinaryIO,
        context: Optional[LambdaContext] = None,
    ) -> None:
        """Handle one invocation from a stream, streaming the response.

        The response commits once the handler flushes or its body outgrows
        ``stream_buffer_size``; after that, body bytes are written as they are
        produced. When the call returns the output holds one complete JSON
        document.

        Args:
            input_stream: Binary stream holding the raw event
            output_stream: Binary stream receiving the response payload
            context: Lambda context object
        """
        start_time = time.perf_counter()
        try:
            request, shape, multi_value = self._decode(input_stream.read(), context)
        except MalformedEvent as e:
            ResponseStreamEncoder(
                output_stream, e.shape or EventShape.GATEWAY, e.multi_value
            ).write_complete(self._malformed(e))
            return

        encoder = ResponseStreamEncoder(output_stream, shape, multi_value)
        writer = ResponseWriter(
            self.config, sink=StreamingBodySink(encoder, self.config.stream_buffer_size)
        )
        try:
            self._invoke(request, writer)
            writer.finish()
        except Exception as e:
            if writer.committed:
                logger.error(
                    f"Handler failed after response was committed: {e}",
                    extra={"request_id": request.request_id, "error_type": type(e).__name__},
                    exc_info=True,
                )
                writer.finish()
                self._log_completion(request, writer.status_code, start_time, True, False)
                return
            response = self._map_failure(e, request, shape, multi_value)
            encoder.write_complete(response)
            self._log_completion(request, response.statusCode, start_time, True, False)
            return

        self._log_completion(request, writer.status_code, start_time, True, True)
