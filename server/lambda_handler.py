"""AWS Lambda entry points for the proxy container.

Point the function's handler setting at ``server.lambda_handler.handler``
(buffered) or ``server.lambda_handler.stream_handler`` (streaming runtimes
that pass input and output streams). The downstream handler factory comes
from configuration:

- ``LAMBDA_CONTAINER_CONFIG``: JSON configuration document
- ``LAMBDA_CONTAINER_CONFIG_FILE``: YAML file path (default ``config.yaml``)
"""

import json
import logging
import os
from typing import Any, BinaryIO, Dict, Optional, Tuple

from core.decoder import RawEvent, classify_event, parse_payload, payload_multi_value
from core.errors import InitializationFailure, MalformedEvent, error_response
from core.events import EventShape
from core.interfaces import LambdaContext, RequestHandler
from core.logging_utils import configure_json_logging
from core.validators import (
    ConfigurationError,
    ContainerConfig,
    load_and_validate_config,
    load_config_from_json,
    load_handler_factory,
)
from server.container_handler import ContainerHandler

logger = logging.getLogger(__name__)

CONFIG_ENV = "LAMBDA_CONTAINER_CONFIG"
CONFIG_FILE_ENV = "LAMBDA_CONTAINER_CONFIG_FILE"

# Global variables for Lambda container reuse
_config: Optional[ContainerConfig] = None
_container: Optional[ContainerHandler] = None


def _load_config() -> ContainerConfig:
    """Load configuration from environment or config file.

    Returns:
        Validated configuration
    """
    global _config

    if _config is not None:
        return _config

    config_json = os.environ.get(CONFIG_ENV)
    if config_json:
        config = load_config_from_json(config_json)
        source = CONFIG_ENV
    else:
        source = os.environ.get(CONFIG_FILE_ENV, "config.yaml")
        config = load_and_validate_config(source)

    configure_json_logging(level=config.logging.level, pretty=config.logging.pretty)
    logger.info("Loaded container configuration", extra={"config_source": source})
    _config = config
    return _config


def _handler_factory(import_path: Optional[str]):
    def factory() -> RequestHandler:
        return load_handler_factory(import_path)()

    return factory


def get_container() -> ContainerHandler:
    """Get or create the process-wide container.

    The downstream handler itself is built on the first invocation.

    Returns:
        ContainerHandler instance

    Raises:
        ConfigurationError: If the configuration cannot be loaded
        FileNotFoundError: If no configuration source exists
    """
    global _container

    if _container is None:
        config = _load_config()
        _container = ContainerHandler(_handler_factory(config.handler), config)
        logger.info("Created proxy container", extra={"handler": config.handler})

    return _container


def _detect_shape(event: RawEvent) -> Tuple[Optional[EventShape], bool]:
    try:
        payload = parse_payload(event)
        shape = classify_event(payload)
    except MalformedEvent:
        return None, True
    return shape, payload_multi_value(payload)


def _startup_failure(e: Exception, event: RawEvent) -> Dict[str, Any]:
    logger.error(f"Proxy container could not start: {e}", exc_info=True)
    failure = InitializationFailure(str(e))
    shape, multi_value = _detect_shape(event)
    return error_response(failure, shape=shape, multi_value=multi_value).to_payload()


def handler(event: Dict[str, Any], context: Optional[LambdaContext]) -> Dict[str, Any]:
    """AWS Lambda handler function.

    Args:
        event: API Gateway or load balancer proxy event
        context: Lambda context object

    Returns:
        Response payload in the shape of the event
    """
    try:
        container = get_container()
    except (ConfigurationError, FileNotFoundError) as e:
        return _startup_failure(e, event)
    return container.proxy(event, context)


def stream_handler(
    input_stream: BinaryIO,
    output_stream: BinaryIO,
    context: Optional[LambdaContext],
) -> None:
    """Streaming Lambda handler function.

    Args:
        input_stream: Binary stream holding the raw event
        output_stream: Binary stream receiving the response payload
        context: Lambda context object
    """
    try:
        container = get_container()
    except (ConfigurationError, FileNotFoundError) as e:
        payload = _startup_failure(e, input_stream.read())
        output_stream.write(json.dumps(payload).encode("utf-8"))
        return
    container.proxy_stream(input_stream, output_stream, context)
