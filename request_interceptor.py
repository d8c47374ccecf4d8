"""
Outbound request interception.

Buffers each request body, rewrites the model name on qualifying JSON posts,
then hands the request to an injected forwarding function. Errors from the
forwarding function are never retried or replaced.
"""

import logging
import time
from collections.abc import Awaitable, Callable, Mapping

import httpx

from model_remap import is_json_content_type, remap_model

logger = logging.getLogger(__name__)

Forward = Callable[[httpx.Request], Awaitable[httpx.Response]]

SENSITIVE_HEADERS = {"authorization", "proxy-authorization", "x-api-key", "api-key"}


def mask_secret(value: str) -> str:
    """Mask a secret value for display."""
    if not value:
        return "(not set)"
    if len(value) <= 8:
        return "*" * len(value)
    return f"{value[:4]}...{value[-4:]}"


def format_headers(headers: httpx.Headers) -> dict[str, str]:
    """Headers as a plain dict with credentials masked, for logging."""
    return {
        key: mask_secret(value) if key.lower() in SENSITIVE_HEADERS else value
        for key, value in headers.items()
    }


def with_body(request: httpx.Request, body: bytes) -> httpx.Request:
    """Copy of request carrying body, with Content-Length matching it."""
    headers = request.headers.copy()
    headers.pop("transfer-encoding", None)
    headers["Content-Length"] = str(len(body))
    return httpx.Request(
        request.method,
        request.url,
        headers=headers,
        content=body,
        extensions=request.extensions,
    )


def log_response(response: httpx.Response, start: float) -> None:
    duration = time.monotonic() - start
    content_length = response.headers.get("content-length", "-1")
    logger.info(
        f"Response: {response.status_code} {response.reason_phrase}, "
        f"ContentLength: {content_length}, Duration: {duration:.3f}s"
    )


class RequestInterceptor:
    """
    Rewrites outbound requests before forwarding them.

    The mapping table is copied at construction and only read afterwards, so a
    single instance is safe to share across concurrent requests.
    """

    def __init__(self, model_map: Mapping[str, str], forward: Forward):
        self.model_map = dict(model_map)
        self.forward = forward

    async def __call__(self, request: httpx.Request) -> httpx.Response:
        start = time.monotonic()
        logger.info(f"Request: {request.method} {request.url}")

        try:
            # aread() leaves request.stream replayable from the buffered bytes
            body = await request.aread()
        except Exception as e:
            logger.warning(f"Error reading request body for logging: {e}")
            response = await self.forward(request)
            log_response(response, start)
            return response

        logger.debug(f"Headers: {format_headers(request.headers)}")
        logger.debug(f"Body: {body.decode('utf-8', errors='replace')}")

        content_type = request.headers.get("content-type")
        if request.method == "POST" and is_json_content_type(content_type):
            new_body, changed = remap_model(body, content_type, self.model_map)
            if changed:
                request = with_body(request, new_body)

        response = await self.forward(request)
        log_response(response, start)
        return response
