"""Tests for inbound response post-processing."""

import gzip
import logging

import httpx
import pytest

from response_postprocess import is_event_stream, postprocess_response, replace_body

REQUEST = httpx.Request("POST", "http://upstream.test/v1/messages")

SNAPSHOT_STREAM = (
    b'data: {"type":"text","text":"I\'m open","snapshot":"I\'m open"}\n'
    b"data: [DONE]\n"
)


class TrackingStream(httpx.AsyncByteStream):
    """Response stream that records whether anyone read it."""

    def __init__(self, chunks: list[bytes]) -> None:
        self.chunks = chunks
        self.read = False

    async def __aiter__(self):
        self.read = True
        for chunk in self.chunks:
            yield chunk


class FailingStream(httpx.AsyncByteStream):
    async def __aiter__(self):
        yield b'{"error":'
        raise httpx.ReadError("upstream reset")


def streamed_response(
    status_code: int, body: bytes, headers: dict[str, str] | None = None
) -> tuple[httpx.Response, TrackingStream]:
    stream = TrackingStream([body[: len(body) // 2], body[len(body) // 2 :]])
    response = httpx.Response(
        status_code, headers=headers or {}, stream=stream, request=REQUEST
    )
    return response, stream


class TestIsEventStream:
    @pytest.mark.parametrize(
        "content_type",
        ["text/event-stream", "text/event-stream; charset=utf-8", "Text/Event-Stream"],
    )
    def test_matches(self, content_type: str) -> None:
        assert is_event_stream(content_type) is True

    @pytest.mark.parametrize("content_type", [None, "", "application/json", "text/plain"])
    def test_does_not_match(self, content_type: str | None) -> None:
        assert is_event_stream(content_type) is False


class TestSuccessResponses:
    """2xx handling."""

    @pytest.mark.asyncio
    async def test_snapshot_frames_removed(self) -> None:
        """Test the documented snapshot scenario through the post-processor."""
        response, _ = streamed_response(
            200,
            SNAPSHOT_STREAM,
            {
                "content-type": "text/event-stream; charset=utf-8",
                "transfer-encoding": "chunked",
                "x-request-id": "req_1",
            },
        )

        result = await postprocess_response(response, filter_snapshots=True)

        assert result.status_code == 200
        assert result.content == b"data: [DONE]\n"
        assert result.headers["content-length"] == str(len(b"data: [DONE]\n"))
        assert "transfer-encoding" not in result.headers
        assert result.headers["content-type"] == "text/event-stream; charset=utf-8"
        assert result.headers["x-request-id"] == "req_1"

    @pytest.mark.asyncio
    async def test_unchanged_stream_keeps_headers(self) -> None:
        """Test that a stream with nothing to drop is returned as-is."""
        body = b'data: {"type":"text","text":"hi"}\n'
        response, _ = streamed_response(
            200, body, {"content-type": "text/event-stream", "content-length": "99"}
        )

        result = await postprocess_response(response, filter_snapshots=True)

        assert result is response
        assert result.content == body
        assert result.headers["content-length"] == "99"

    @pytest.mark.asyncio
    async def test_filter_disabled_leaves_stream_unread(self) -> None:
        response, stream = streamed_response(
            200, SNAPSHOT_STREAM, {"content-type": "text/event-stream"}
        )

        result = await postprocess_response(response, filter_snapshots=False)

        assert result is response
        assert stream.read is False
        assert not result.is_stream_consumed

    @pytest.mark.asyncio
    async def test_non_sse_success_left_unread(self) -> None:
        response, stream = streamed_response(
            200, SNAPSHOT_STREAM, {"content-type": "application/json"}
        )

        result = await postprocess_response(response, filter_snapshots=True)

        assert result is response
        assert stream.read is False

    @pytest.mark.asyncio
    async def test_compressed_stream_filtered_decoded(self) -> None:
        """Test that a gzip event stream is filtered and served uncompressed."""
        response, _ = streamed_response(
            200,
            gzip.compress(SNAPSHOT_STREAM),
            {"content-type": "text/event-stream", "content-encoding": "gzip"},
        )

        result = await postprocess_response(response, filter_snapshots=True)

        assert result.content == b"data: [DONE]\n"
        assert "content-encoding" not in result.headers
        assert result.headers["content-length"] == str(len(result.content))


class TestErrorResponses:
    """Status >= 300 handling."""

    @pytest.mark.asyncio
    async def test_error_body_forwarded_with_fixed_framing(
        self, caplog: pytest.LogCaptureFixture
    ) -> None:
        """Test the documented 404 scenario."""
        body = b'{"error":"not found"}'
        response, stream = streamed_response(
            404,
            body,
            {"content-type": "application/json", "transfer-encoding": "chunked"},
        )

        with caplog.at_level(logging.WARNING):
            result = await postprocess_response(response, filter_snapshots=False)

        assert stream.read is True
        assert result.status_code == 404
        assert result.content == body
        assert result.headers["content-length"] == str(len(body))
        assert "transfer-encoding" not in result.headers
        assert 'Upstream returned 404: {"error":"not found"}' in caplog.text

    @pytest.mark.asyncio
    async def test_error_event_stream_not_filtered(self) -> None:
        """Test that filtering only applies to successful responses."""
        response, _ = streamed_response(
            500, SNAPSHOT_STREAM, {"content-type": "text/event-stream"}
        )

        result = await postprocess_response(response, filter_snapshots=True)

        assert result.status_code == 500
        assert result.content == SNAPSHOT_STREAM

    @pytest.mark.asyncio
    async def test_redirect_is_buffered(self) -> None:
        response, stream = streamed_response(
            302, b"moved", {"location": "http://elsewhere.test/"}
        )

        result = await postprocess_response(response, filter_snapshots=False)

        assert stream.read is True
        assert result.headers["location"] == "http://elsewhere.test/"
        assert result.headers["content-length"] == "5"

    @pytest.mark.asyncio
    async def test_error_body_read_failure_escalates(self) -> None:
        response = httpx.Response(503, stream=FailingStream(), request=REQUEST)

        with pytest.raises(httpx.ReadError):
            await postprocess_response(response, filter_snapshots=False)


class TestReplaceBody:
    def test_sets_length_and_clears_framing(self) -> None:
        response = httpx.Response(
            200,
            headers={
                "content-type": "text/event-stream",
                "content-length": "1000",
                "transfer-encoding": "chunked",
                "cache-control": "no-cache",
            },
            content=b"x" * 1000,
            request=REQUEST,
        )

        result = replace_body(response, "héllo".encode())

        assert result.content == "héllo".encode()
        assert result.headers["content-length"] == "6"
        assert "transfer-encoding" not in result.headers
        assert result.headers["cache-control"] == "no-cache"
        assert result.request is REQUEST
        assert result.is_stream_consumed
