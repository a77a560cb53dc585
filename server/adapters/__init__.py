"""Downstream framework adapters for the proxy container.

Each adapter wraps an application written for a Python web interface so it
satisfies the container's (Request, ResponseWriter) handler contract:

- Translating the container Request into the framework's request form
- Feeding the framework's status, headers and body into the ResponseWriter
"""

from .wsgi import WsgiHandler, build_environ

__all__ = ["WsgiHandler", "build_environ"]
