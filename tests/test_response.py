"""Tests for ResponseWriter, body sinks and response serialization."""

import base64
import io
import json
from datetime import datetime, timezone

import pytest

from core.events import EventShape, fold_single_value_headers, make_response_event
from core.response import (
    BufferedBodySink,
    Cookie,
    ResponseStreamEncoder,
    ResponseWriter,
    StreamingBodySink,
    build_response_event,
    is_binary_content_type,
    is_utf8,
)
from core.validators import ContainerConfig


def streaming_writer(shape=EventShape.GATEWAY, buffer_size=65536, multi_value=True):
    output = io.BytesIO()
    encoder = ResponseStreamEncoder(output, shape, multi_value)
    writer = ResponseWriter(sink=StreamingBodySink(encoder, buffer_size))
    return writer, output


class TestResponseWriter:
    """Test status, header and cookie handling."""

    def test_defaults(self):
        writer = ResponseWriter()

        assert writer.status_code == 200
        assert len(writer.headers) == 0
        assert writer.cookies == ()
        assert not writer.committed

    def test_add_header_keeps_every_value(self):
        writer = ResponseWriter()
        writer.add_header("Vary", "Accept")
        writer.add_header("vary", "Origin")

        assert writer.headers.getall("Vary") == ["Accept", "Origin"]

    def test_set_header_replaces(self):
        writer = ResponseWriter()
        writer.add_header("X-A", "1")
        writer.add_header("X-A", "2")
        writer.set_header("x-a", "3")

        assert writer.headers.getall("X-A") == ["3"]

    def test_remove_header(self):
        writer = ResponseWriter()
        writer.add_header("X-A", "1")
        writer.remove_header("X-A")
        writer.remove_header("X-Missing")

        assert "X-A" not in writer.headers

    @pytest.mark.parametrize("code", [99, 600, -1])
    def test_invalid_status_rejected(self, code):
        with pytest.raises(ValueError):
            ResponseWriter().set_status(code)

    def test_header_pairs_append_cookies(self):
        writer = ResponseWriter()
        writer.add_header("Content-Type", "text/plain")
        writer.add_cookie(Cookie(name="a", value="1"))
        writer.add_cookie(Cookie(name="b", value="2", http_only=True))

        assert writer.header_pairs() == [
            ("Content-Type", "text/plain"),
            ("Set-Cookie", "a=1"),
            ("Set-Cookie", "b=2; HttpOnly"),
        ]

    def test_write_after_finish_raises(self):
        writer = ResponseWriter()
        writer.finish()

        with pytest.raises(RuntimeError):
            writer.write("late")
        with pytest.raises(RuntimeError):
            writer.set_status(404)

    def test_empty_write_does_not_mark_body(self):
        writer = ResponseWriter()
        writer.write("")

        assert not writer.body_written

    def test_changes_after_commit_are_ignored(self):
        writer, _ = streaming_writer()
        writer.set_status(201)
        writer.write("x")
        writer.flush()

        writer.set_status(500)
        writer.add_header("X-Late", "1")
        writer.add_cookie(Cookie(name="late"))

        assert writer.committed
        assert writer.status_code == 201
        assert "X-Late" not in writer.headers
        assert writer.cookies == ()


class TestCookie:
    """Test Set-Cookie rendering."""

    def test_all_attributes(self):
        cookie = Cookie(
            name="session",
            value="abc",
            domain="example.com",
            path="/",
            max_age=3600,
            expires=datetime(2030, 1, 1, tzinfo=timezone.utc),
            secure=True,
            http_only=True,
            same_site="Lax",
        )

        assert cookie.to_header() == (
            "session=abc; Domain=example.com; Path=/; Max-Age=3600; "
            "Expires=Tue, 01 Jan 2030 00:00:00 GMT; Secure; HttpOnly; SameSite=Lax"
        )

    def test_empty_name_rejected(self):
        with pytest.raises(ValueError):
            Cookie(name="")


class TestBinaryDetection:
    """Test the base64 decision."""

    @pytest.mark.parametrize(
        "content_type,expected",
        [
            ("image/png", True),
            ("application/octet-stream; charset=binary", True),
            ("IMAGE/JPEG", True),
            ("text/html; charset=utf-8", False),
            ("application/json", False),
            (None, False),
        ],
    )
    def test_content_type_patterns(self, content_type, expected):
        patterns = ContainerConfig().binary_content_types

        assert is_binary_content_type(content_type, patterns) is expected

    def test_truncated_utf8_allowed_when_not_final(self):
        data = "é".encode("utf-8")[:1]

        assert is_utf8(data, final=False)
        assert not is_utf8(data, final=True)

    def test_set_binary_forces_base64(self):
        writer = ResponseWriter()
        writer.set_binary()
        writer.write("plain text")

        event = build_response_event(writer, EventShape.GATEWAY)

        assert event.isBase64Encoded is True
        assert base64.b64decode(event.body) == b"plain text"


class TestBuildResponseEvent:
    """Test buffered serialization."""

    def test_gateway_event(self):
        writer = ResponseWriter()
        writer.set_status(201)
        writer.add_header("X-A", "1")
        writer.add_header("X-A", "2")
        writer.write("created")

        payload = build_response_event(writer, EventShape.GATEWAY).to_payload()

        assert payload == {
            "statusCode": 201,
            "multiValueHeaders": {"X-A": ["1", "2"]},
            "body": "created",
            "isBase64Encoded": False,
        }

    def test_load_balancer_single_value(self):
        writer = ResponseWriter()
        writer.add_header("X-A", "1")
        writer.add_header("X-A", "2")
        writer.add_cookie(Cookie(name="a", value="1"))
        writer.add_cookie(Cookie(name="b", value="2"))

        payload = build_response_event(writer, EventShape.LOAD_BALANCER, multi_value=False).to_payload()

        assert payload["statusDescription"] == "200 OK"
        assert "multiValueHeaders" not in payload
        assert payload["headers"]["X-A"] == "1, 2"
        cookies = sorted(v for k, v in payload["headers"].items() if k.lower() == "set-cookie")
        assert cookies == ["a=1", "b=2"]

    def test_streaming_writer_rejected(self):
        writer, _ = streaming_writer()

        with pytest.raises(TypeError):
            build_response_event(writer, EventShape.GATEWAY)

    def test_buffered_sink_is_default(self):
        assert isinstance(ResponseWriter().sink, BufferedBodySink)


class TestHeaderFolding:
    """Test single and multi-value header folding."""

    def test_first_spelling_wins(self):
        event = make_response_event(
            EventShape.GATEWAY, 200, [("Content-Type", "a"), ("content-type", "b")], "", False
        )

        assert event.multiValueHeaders == {"Content-Type": ["a", "b"]}

    def test_set_cookie_names_are_distinct(self):
        pairs = [("Set-Cookie", f"c{i}=v") for i in range(4)]

        flat = fold_single_value_headers(pairs)

        assert len(flat) == 4
        assert len({name.lower() for name in flat}) == 1

    def test_cookies_beyond_name_spellings_are_dropped_with_warning(self, caplog):
        pairs = [("Set-Cookie", f"c{i}=v") for i in range(515)]

        flat = fold_single_value_headers(pairs)

        assert len(flat) == 512
        assert any("Too many Set-Cookie" in r.getMessage() for r in caplog.records)


class TestStreamingSink:
    """Test the incremental response document."""

    def test_small_body_committed_on_finish(self):
        writer, output = streaming_writer()
        writer.add_header("Content-Type", "text/plain")
        writer.write('say "hi"\n')

        assert output.getvalue() == b""
        writer.finish()

        payload = json.loads(output.getvalue())
        assert payload["body"] == 'say "hi"\n'
        assert payload["isBase64Encoded"] is False

    def test_buffer_size_commits(self):
        writer, output = streaming_writer(buffer_size=4)
        writer.write("abcdef")

        assert writer.committed
        assert output.getvalue().startswith(b'{"statusCode": 200')

    def test_split_multibyte_character(self):
        writer, output = streaming_writer(buffer_size=1)
        data = "naïve ☃".encode("utf-8")
        for i in range(len(data)):
            writer.write(data[i:i + 1])
        writer.finish()

        payload = json.loads(output.getvalue())
        assert payload["body"] == "naïve ☃"
        assert payload["isBase64Encoded"] is False

    def test_binary_stream_in_odd_chunks(self):
        writer, output = streaming_writer(buffer_size=1)
        writer.set_header("Content-Type", "image/png")
        data = bytes(range(50))
        for i in range(0, len(data), 7):
            writer.write(data[i:i + 7])
        writer.finish()

        payload = json.loads(output.getvalue())
        assert payload["isBase64Encoded"] is True
        assert base64.b64decode(payload["body"]) == data

    def test_invalid_utf8_after_commit_is_replaced(self):
        writer, output = streaming_writer(buffer_size=1)
        writer.write("ok")
        writer.write(b"\xff\xfe")
        writer.finish()

        payload = json.loads(output.getvalue())
        assert payload["body"].startswith("ok")
        assert "\ufffd" in payload["body"]

    def test_split_character_survives_following_invalid_byte(self):
        writer, output = streaming_writer(buffer_size=1)
        writer.write(b"a")
        writer.write(b"\xc3")
        writer.write(b"\xa9\xff")
        writer.finish()

        assert json.loads(output.getvalue())["body"] == "aé\ufffd"

    def test_replacement_warning_logged_once(self, caplog):
        writer, _ = streaming_writer(buffer_size=1)
        writer.write("ok")
        writer.write(b"\xff")
        writer.write(b"\xfe")
        writer.finish()

        warnings = [r for r in caplog.records if "invalid UTF-8" in r.getMessage()]
        assert len(warnings) == 1

    def test_literal_replacement_character_is_not_warned(self, caplog):
        writer, output = streaming_writer(buffer_size=1)
        writer.write("ok \ufffd")
        writer.finish()

        assert json.loads(output.getvalue())["body"] == "ok \ufffd"
        assert not [r for r in caplog.records if "invalid UTF-8" in r.getMessage()]

    def test_truncated_character_at_end_is_replaced(self):
        writer, output = streaming_writer(buffer_size=1)
        writer.write("x")
        writer.write(b"\xe2\x98")
        writer.finish()

        assert json.loads(output.getvalue())["body"] == "x\ufffd"

    def test_load_balancer_stream(self):
        writer, output = streaming_writer(EventShape.LOAD_BALANCER, multi_value=False)
        writer.set_status(404)
        writer.write("nope")
        writer.finish()

        payload = json.loads(output.getvalue())
        assert payload["statusDescription"] == "404 Not Found"
        assert payload["headers"] == {}
        assert payload["body"] == "nope"

    def test_finish_is_idempotent(self):
        writer, output = streaming_writer()
        writer.finish()
        writer.finish()

        assert json.loads(output.getvalue())["body"] == ""
