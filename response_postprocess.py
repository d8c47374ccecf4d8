"""
Inbound response post-processing.

Successful event streams may be filtered (see sse_filter); error responses are
buffered so their bodies reach the log. Whenever a body is replaced the framing
headers are rewritten to describe the new bytes exactly.
"""

import logging

import httpx

from sse_filter import filter_sse

logger = logging.getLogger(__name__)

EVENT_STREAM_CONTENT_TYPE = "text/event-stream"

# Buffered bodies are held decoded, so the upstream's framing and coding no
# longer describe them.
REPLACED_BODY_HEADERS = ("content-length", "transfer-encoding", "content-encoding")


def is_event_stream(content_type: str | None) -> bool:
    """Match bare and parameterized text/event-stream content types."""
    if not content_type:
        return False
    return EVENT_STREAM_CONTENT_TYPE in content_type.lower()


def replace_body(response: httpx.Response, body: bytes) -> httpx.Response:
    """
    Build a fully read response carrying body in place of the original.

    Status and every other header are kept; Content-Length is set to
    len(body) and chunked transfer framing is cleared.
    """
    headers = response.headers.copy()
    for name in REPLACED_BODY_HEADERS:
        headers.pop(name, None)
    headers["Content-Length"] = str(len(body))

    return httpx.Response(
        response.status_code,
        headers=headers,
        content=body,
        request=response.request,
    )


async def postprocess_response(
    response: httpx.Response, filter_snapshots: bool
) -> httpx.Response:
    """
    Apply status and content-type dependent handling to an upstream response.

    - 2xx event streams with filter_snapshots on: buffered and filtered; the
      body is only replaced when a frame was dropped.
    - Other 2xx responses: returned untouched and unread.
    - Status >= 300: buffered, logged and replaced with the same bytes. A read
      failure propagates to the caller.
    """
    status = response.status_code
    content_type = response.headers.get("content-type")

    if 200 <= status < 300:
        if not filter_snapshots or not is_event_stream(content_type):
            return response

        body = await response.aread()
        new_body, changed = filter_sse(body)
        if not changed:
            return response
        logger.debug(f"SSE body rewritten: {len(body)} -> {len(new_body)} bytes")
        return replace_body(response, new_body)

    if status >= 300:
        body = await response.aread()
        logger.warning(
            f"Upstream returned {status}: {body.decode('utf-8', errors='replace')}"
        )
        return replace_body(response, body)

    return response
