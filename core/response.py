"""Response capture handed to downstream handlers.

A ``ResponseWriter`` records status, headers, cookies and body. The body goes
to a sink: ``BufferedBodySink`` keeps it in memory for ``build_response_event``,
``StreamingBodySink`` writes the serialized proxy response to an output stream
as the handler produces bytes.
"""

import base64
import codecs
import json
import logging
from abc import ABC, abstractmethod
from datetime import datetime
from email.utils import formatdate
from fnmatch import fnmatch
from typing import BinaryIO, Iterable, List, Optional, Tuple, Union

from multidict import CIMultiDict, CIMultiDictProxy
from pydantic import BaseModel, Field

from core.events import EventShape, ResponseEvent, make_response_event
from core.validators import ContainerConfig

logger = logging.getLogger(__name__)

_REPLACEMENT = "\ufffd"
_REPLACEMENT_BYTES = _REPLACEMENT.encode("utf-8")


class Cookie(BaseModel):
    """A cookie to be sent with Set-Cookie."""

    name: str = Field(..., min_length=1)
    value: str = ""
    domain: Optional[str] = None
    path: Optional[str] = None
    max_age: Optional[int] = None
    expires: Optional[datetime] = None
    secure: bool = False
    http_only: bool = False
    same_site: Optional[str] = None

    def to_header(self) -> str:
        """Render the cookie as a Set-Cookie header value."""
        parts = [f"{self.name}={self.value}"]
        if self.domain:
            parts.append(f"Domain={self.domain}")
        if self.path:
            parts.append(f"Path={self.path}")
        if self.max_age is not None:
            parts.append(f"Max-Age={self.max_age}")
        if self.expires is not None:
            parts.append(f"Expires={formatdate(self.expires.timestamp(), usegmt=True)}")
        if self.secure:
            parts.append("Secure")
        if self.http_only:
            parts.append("HttpOnly")
        if self.same_site:
            parts.append(f"SameSite={self.same_site}")
        return "; ".join(parts)


def is_binary_content_type(content_type: Optional[str], patterns: Iterable[str]) -> bool:
    """Check a Content-Type against binary media type patterns.

    Args:
        content_type: Content-Type header value, parameters allowed
        patterns: fnmatch patterns such as 'image/*'

    Returns:
        True if the media type matches any pattern
    """
    if not content_type:
        return False
    media_type = content_type.split(";", 1)[0].strip().lower()
    return any(fnmatch(media_type, pattern.lower()) for pattern in patterns)


def is_utf8(data: bytes, final: bool = True) -> bool:
    """Check that data decodes as UTF-8.

    With final=False a truncated multi-byte sequence at the end is allowed.
    """
    decoder = codecs.getincrementaldecoder("utf-8")()
    try:
        decoder.decode(data, final=final)
    except UnicodeDecodeError:
        return False
    return True


class BodySink(ABC):
    """Destination of response body bytes."""

    committed: bool = False

    def bind(self, writer: "ResponseWriter") -> None:
        self.writer = writer

    @abstractmethod
    def write(self, data: bytes) -> None:
        pass

    @abstractmethod
    def flush(self) -> None:
        pass

    @abstractmethod
    def close(self) -> None:
        pass


class BufferedBodySink(BodySink):
    """Keeps the whole body in memory."""

    def __init__(self) -> None:
        self._chunks: List[bytes] = []

    def write(self, data: bytes) -> None:
        self._chunks.append(data)

    def flush(self) -> None:
        pass

    def close(self) -> None:
        pass

    def getvalue(self) -> bytes:
        return b"".join(self._chunks)


class ResponseStreamEncoder:
    """Writes one proxy response document to a binary stream incrementally.

    The status and headers are written first, then the body as JSON string
    content, either escaped text or base64, and finally the closing quote
    and brace.
    """

    def __init__(self, output: BinaryIO, shape: EventShape, multi_value: bool = True) -> None:
        self.output = output
        self.shape = shape
        self.multi_value = multi_value
        self.started = False
        self.ended = False
        self._is_base64 = False
        self._remainder = b""
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self._replaced = False

    def start(self, status_code: int, headers: Iterable[Tuple[str, str]], is_base64: bool) -> None:
        event = make_response_event(
            shape=self.shape,
            status_code=status_code,
            headers=headers,
            body="",
            is_base64=is_base64,
            multi_value=self.multi_value,
        )
        payload = event.to_payload()
        payload.pop("body", None)
        prefix = json.dumps(payload)[:-1] + ', "body": "'
        self.output.write(prefix.encode("utf-8"))
        self._is_base64 = is_base64
        self.started = True

    def write_body(self, data: bytes) -> None:
        if not data:
            return
        if self._is_base64:
            data = self._remainder + data
            cut = len(data) - len(data) % 3
            self._remainder = data[cut:]
            if cut:
                self.output.write(base64.b64encode(data[:cut]))
            return

        text = self._decoder.decode(data)
        self._check_replaced(text, data)
        self._write_text(text)

    def _check_replaced(self, text: str, data: bytes) -> None:
        if self._replaced:
            return
        if text.count(_REPLACEMENT) > data.count(_REPLACEMENT_BYTES):
            logger.warning(
                "Streamed text body contains invalid UTF-8; replacing undecodable bytes"
            )
            self._replaced = True

    def _write_text(self, text: str) -> None:
        if text:
            self.output.write(json.dumps(text)[1:-1].encode("utf-8"))

    def end(self) -> None:
        if self.ended:
            return
        if self._is_base64:
            if self._remainder:
                self.output.write(base64.b64encode(self._remainder))
                self._remainder = b""
        else:
            text = self._decoder.decode(b"", final=True)
            self._check_replaced(text, b"")
            self._write_text(text)
        self.output.write(b'"}')
        self.flush()
        self.ended = True

    def write_complete(self, event: ResponseEvent) -> None:
        """Write a fully built response document in one go."""
        self.output.write(json.dumps(event.to_payload()).encode("utf-8"))
        self.flush()
        self.started = self.ended = True

    def flush(self) -> None:
        flush = getattr(self.output, "flush", None)
        if flush is not None:
            flush()


class StreamingBodySink(BodySink):
    """Streams the body through a ResponseStreamEncoder.

    Bytes are held until ``buffer_size`` is reached or the handler flushes;
    at that point the response commits: status, headers and the body
    encoding are fixed and sent.
    """

    def __init__(self, encoder: ResponseStreamEncoder, buffer_size: int = 65536) -> None:
        self.encoder = encoder
        self.buffer_size = buffer_size
        self._pending = bytearray()
        self.committed = False

    def _commit(self, final: bool) -> None:
        body = bytes(self._pending)
        is_base64 = self.writer.is_binary(body, final=final)
        self.encoder.start(self.writer.status_code, self.writer.header_pairs(), is_base64)
        self.committed = True
        self._pending.clear()
        self.encoder.write_body(body)
        logger.debug(
            "Response committed",
            extra={"status_code": self.writer.status_code, "is_base64": is_base64},
        )

    def write(self, data: bytes) -> None:
        if self.committed:
            self.encoder.write_body(data)
            return
        self._pending += data
        if len(self._pending) >= self.buffer_size:
            self._commit(final=False)

    def flush(self) -> None:
        if not self.committed:
            self._commit(final=False)
        self.encoder.flush()

    def close(self) -> None:
        if not self.committed:
            self._commit(final=True)
        self.encoder.end()


class ResponseWriter:
    """Captures the response produced by a downstream handler.

    Status defaults to 200. Headers keep every value added, in order.
    After the response commits (streaming only) status, header and cookie
    changes are ignored.

    The body encoding is also fixed at commit. A streamed body that commits
    as text stays text: invalid UTF-8 written afterwards is replaced with
    U+FFFD rather than switching to base64. Handlers streaming binary data
    should set a binary Content-Type or call ``set_binary()`` before the
    first flush.
    """

    def __init__(
        self,
        config: Optional[ContainerConfig] = None,
        sink: Optional[BodySink] = None,
    ) -> None:
        self.config = config or ContainerConfig()
        self._status = 200
        self._headers: CIMultiDict = CIMultiDict()
        self._cookies: List[Cookie] = []
        self._binary = False
        self.sink = sink or BufferedBodySink()
        self.sink.bind(self)
        self.body_written = False
        self.finished = False

    def __repr__(self) -> str:
        return f"<ResponseWriter {self._status}>"

    @property
    def status_code(self) -> int:
        return self._status

    @property
    def headers(self) -> CIMultiDictProxy:
        return CIMultiDictProxy(self._headers)

    @property
    def cookies(self) -> Tuple[Cookie, ...]:
        return tuple(self._cookies)

    @property
    def committed(self) -> bool:
        return self.sink.committed

    def _check_open(self, action: str) -> bool:
        if self.finished:
            raise RuntimeError(f"Cannot {action}: response already finished")
        if self.committed:
            logger.warning(f"Ignoring {action} after response was committed")
            return False
        return True

    def set_status(self, code: int) -> None:
        if not 100 <= int(code) <= 599:
            raise ValueError(f"Invalid HTTP status code: {code}")
        if self._check_open("set status"):
            self._status = int(code)

    def add_header(self, name: str, value: str) -> None:
        if self._check_open("add header"):
            self._headers.add(name, str(value))

    def set_header(self, name: str, value: str) -> None:
        if self._check_open("set header"):
            self._headers[name] = str(value)

    def remove_header(self, name: str) -> None:
        if self._check_open("remove header"):
            self._headers.popall(name, None)

    def add_cookie(self, cookie: Cookie) -> None:
        if self._check_open("add cookie"):
            self._cookies.append(cookie)

    def set_binary(self, binary: bool = True) -> None:
        """Force (or stop forcing) base64 encoding of the body."""
        if self._check_open("set binary"):
            self._binary = binary

    def write(self, data: Union[str, bytes, bytearray]) -> None:
        if self.finished:
            raise RuntimeError("Cannot write: response already finished")
        if isinstance(data, str):
            data = data.encode("utf-8")
        if not data:
            return
        self.body_written = True
        self.sink.write(bytes(data))

    def writelines(self, chunks: Iterable[Union[str, bytes]]) -> None:
        for chunk in chunks:
            self.write(chunk)

    def flush(self) -> None:
        if not self.finished:
            self.sink.flush()

    def finish(self) -> None:
        if self.finished:
            return
        self.sink.close()
        self.finished = True

    def header_pairs(self) -> List[Tuple[str, str]]:
        """Headers in order, followed by one Set-Cookie per cookie."""
        pairs = list(self._headers.items())
        pairs.extend(("Set-Cookie", cookie.to_header()) for cookie in self._cookies)
        return pairs

    def is_binary(self, body: bytes, final: bool = True) -> bool:
        """Decide whether the body must be base64 encoded."""
        if self._binary:
            return True
        if is_binary_content_type(self._headers.get("Content-Type"), self.config.binary_content_types):
            return True
        return not is_utf8(body, final=final)


def build_response_event(
    writer: ResponseWriter,
    shape: EventShape,
    multi_value: bool = True,
) -> ResponseEvent:
    """Serialize a finished, buffered response into a response event.

    Args:
        writer: Finished ResponseWriter with a BufferedBodySink
        shape: Shape of the originating request event
        multi_value: Whether the request used multi-value fields

    Returns:
        Response event matching the request shape
    """
    if not isinstance(writer.sink, BufferedBodySink):
        raise TypeError("build_response_event requires a buffered response")
    writer.finish()

    body = writer.sink.getvalue()
    is_base64 = writer.is_binary(body)
    if is_base64:
        text = base64.b64encode(body).decode("ascii")
    else:
        text = body.decode("utf-8")

    return make_response_event(
        shape=shape,
        status_code=writer.status_code,
        headers=writer.header_pairs(),
        body=text,
        is_base64=is_base64,
        multi_value=multi_value,
    )
