#!/usr/bin/env python3
"""
LLM Proxy

A reverse proxy that sits between an LLM client and an upstream LLM API:

- Outbound JSON requests have their "model" field remapped (--model FROM=TO).
- Inbound text/event-stream responses can have text events carrying a
  "snapshot" field removed (--filter-snapshots), for clients whose SSE
  validator rejects them.

Everything else passes through unchanged.

Usage:
    python llm_proxy.py --base-url http://localhost:8081 --model model-alias=actual-model
"""

import argparse
import logging
from collections.abc import AsyncGenerator, Iterable
from contextlib import asynccontextmanager

import httpx
from fastapi import FastAPI, Request, Response
from fastapi.responses import StreamingResponse
from pydantic import Field, ValidationError, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict
from starlette.background import BackgroundTask
from starlette.routing import request_response
from starlette.types import Receive, Scope, Send

from model_remap import parse_model_mappings
from request_interceptor import RequestInterceptor
from response_postprocess import postprocess_response

# Configure logging
logging.basicConfig(
    level=logging.INFO, format="%(asctime)s - %(levelname)s - %(message)s"
)
logger = logging.getLogger(__name__)

HOP_BY_HOP_HEADERS = {
    "connection",
    "keep-alive",
    "proxy-authenticate",
    "proxy-authorization",
    "te",
    "trailer",
    "transfer-encoding",
    "upgrade",
}

# =============================================================================
# Configuration
# =============================================================================


class ProxyConfig(BaseSettings):
    """Proxy configuration settings.

    Configuration can be set via:
    1. CLI arguments (highest priority)
    2. Environment variables (LLM_PROXY_<SETTING_NAME>)
    3. .env file in the working directory
    4. Default values (lowest priority)
    """

    model_config = SettingsConfigDict(
        env_prefix="LLM_PROXY_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Connection settings
    base_url: str | None = Field(
        default=None,
        description="Upstream LLM API base URL (required)",
    )
    port: int = Field(
        default=8080,
        description="Port to listen on",
    )
    host: str = Field(
        default="0.0.0.0",
        description="Host to bind to",
    )
    timeout: float = Field(
        default=600.0,
        description="Upstream request timeout in seconds",
    )

    # Rewriting settings
    model_map: dict[str, str] = Field(
        default_factory=dict,
        description="Model name remapping, source -> target",
    )
    filter_snapshots: bool = Field(
        default=False,
        description="Drop SSE text events carrying a snapshot field",
    )

    # Debug settings
    verbose: bool = Field(
        default=False,
        description="Log request headers and bodies",
    )

    @field_validator("base_url")
    @classmethod
    def _check_base_url(cls, value: str | None) -> str | None:
        if value is None:
            return None
        try:
            url = httpx.URL(value)
        except httpx.InvalidURL as e:
            raise ValueError(f"invalid base URL: {e}") from e
        if url.scheme not in ("http", "https") or not url.host:
            raise ValueError(f"base URL must be an absolute http(s) URL: {value}")
        return value


def load_config(**overrides: object) -> ProxyConfig:
    """Load configuration from environment variables and .env file.

    Keyword overrides (from the CLI) take precedence over both.
    """
    return ProxyConfig(**overrides)


# =============================================================================
# Proxy Front
# =============================================================================


def build_upstream_url(base_url: str, path: str, query: bytes) -> httpx.URL:
    """Join the upstream base path and the client path, keeping the query."""
    base = httpx.URL(base_url)
    return base.copy_with(
        path=base.path.rstrip("/") + path,
        query=query or None,
    )


def forwardable_headers(items: Iterable[tuple[str, str]]) -> list[tuple[str, str]]:
    """Drop Host and hop-by-hop headers; repeated headers are kept."""
    return [
        (key, value)
        for key, value in items
        if key.lower() not in HOP_BY_HOP_HEADERS and key.lower() != "host"
    ]


def set_raw_headers(client_response: Response, headers: httpx.Headers) -> None:
    """Replace client_response's headers, writing repeated ones as separate lines."""
    raw_headers = [
        (key.encode("latin-1"), value.encode("latin-1"))
        for key, value in headers.multi_items()
    ]
    if "content-length" not in headers:
        # Keep the length Starlette computed for a complete body
        raw_headers.extend(
            (key, value)
            for key, value in client_response.raw_headers
            if key == b"content-length"
        )
    client_response.raw_headers = raw_headers


def to_client_response(response: httpx.Response) -> Response:
    """Write an upstream response back to the client."""
    headers = httpx.Headers(forwardable_headers(response.headers.multi_items()))

    if response.is_stream_consumed:
        if "content-encoding" in headers:
            # A buffered body is decoded; let the server frame it afresh
            del headers["content-encoding"]
            headers.pop("content-length", None)
        client_response = Response(
            content=response.content, status_code=response.status_code
        )
    else:
        client_response = StreamingResponse(
            response.aiter_raw(),
            status_code=response.status_code,
            background=BackgroundTask(response.aclose),
        )

    set_raw_headers(client_response, headers)
    return client_response


class AnyMethodEndpoint:
    """
    ASGI endpoint for a Starlette Route.

    Routes only restrict methods for function endpoints, so wrapping the
    handler in an instance lets every method through, PROPFIND included.
    """

    def __init__(self, handler):
        self.app = request_response(handler)

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        await self.app(scope, receive, send)


def create_app(
    config: ProxyConfig, transport: httpx.AsyncBaseTransport | None = None
) -> FastAPI:
    """
    Build the proxy application.

    Args:
        config: Settings; base_url must be set.
        transport: Optional httpx transport for the upstream client (tests pass
            an httpx.MockTransport).
    """
    if not config.base_url:
        raise ValueError("missing --base-url")

    # Requests are built directly rather than through client.build_request so
    # no client default headers are added; the timeout travels with each one.
    timeout = httpx.Timeout(config.timeout).as_dict()

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
        """Open the shared upstream client for the lifetime of the server."""
        async with httpx.AsyncClient(transport=transport) as client:

            async def forward(request: httpx.Request) -> httpx.Response:
                return await client.send(request, stream=True)

            app.state.interceptor = RequestInterceptor(config.model_map, forward)
            yield

    # No docs or schema routes: every path belongs to the upstream
    app = FastAPI(
        title="LLM Proxy",
        lifespan=lifespan,
        docs_url=None,
        redoc_url=None,
        openapi_url=None,
    )

    async def proxy(request: Request) -> Response:
        """Forward any request to the upstream."""
        path = request.path_params["path"]
        url = build_upstream_url(
            config.base_url, "/" + path, request.scope.get("query_string", b"")
        )
        has_body = (
            "content-length" in request.headers
            or "transfer-encoding" in request.headers
        )
        upstream_request = httpx.Request(
            request.method,
            url,
            headers=forwardable_headers(request.headers.items()),
            content=request.stream() if has_body else None,
            extensions={"timeout": timeout},
        )

        try:
            response = await app.state.interceptor(upstream_request)
            response = await postprocess_response(response, config.filter_snapshots)
        except httpx.HTTPError as e:
            logger.error(f"Proxy error: {request.method} {url}: {e!r}")
            return Response(status_code=502)

        return to_client_response(response)

    app.add_route("/{path:path}", AnyMethodEndpoint(proxy), include_in_schema=False)
    return app


# =============================================================================
# Main
# =============================================================================


def _env_help(env_var: str, description: str, default: str | None = None) -> str:
    """Format help text with environment variable name."""
    if default is not None:
        return f"{description} [env: {env_var}, default: {default}]"
    return f"{description} [env: {env_var}]"


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="LLM Proxy: model remapping and SSE filtering reverse proxy",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Configuration Priority (highest to lowest):
  1. CLI arguments
  2. Environment variables (LLM_PROXY_*)
  3. .env file in working directory
  4. Default values

Environment Variables:
  LLM_PROXY_BASE_URL           Upstream LLM API base URL
  LLM_PROXY_PORT               Port to listen on
  LLM_PROXY_HOST               Host to bind to
  LLM_PROXY_TIMEOUT            Upstream request timeout in seconds
  LLM_PROXY_MODEL_MAP          Model remapping as a JSON object
  LLM_PROXY_FILTER_SNAPSHOTS   Drop SSE text events with a snapshot field (true/false)
  LLM_PROXY_VERBOSE            Log request headers and bodies (true/false)

Examples:
  # Remap a model alias
  python llm_proxy.py --base-url http://localhost:8081 --model model-alias=actual-model

  # Remap several models and filter snapshot events
  python llm_proxy.py --base-url https://api.example.com --model a=b --model c=d --filter-snapshots

  # Using environment variables
  LLM_PROXY_BASE_URL=http://localhost:8081 python llm_proxy.py
""",
    )

    # Connection settings - use None as default to detect if CLI was used
    parser.add_argument(
        "--base-url",
        default=None,
        help=_env_help("LLM_PROXY_BASE_URL", "Upstream LLM API base URL"),
    )
    parser.add_argument(
        "--port",
        "-p",
        type=int,
        default=None,
        help=_env_help("LLM_PROXY_PORT", "Port to listen on", "8080"),
    )
    parser.add_argument(
        "--host",
        default=None,
        help=_env_help("LLM_PROXY_HOST", "Host to bind to", "0.0.0.0"),
    )
    parser.add_argument(
        "--timeout",
        type=float,
        default=None,
        help=_env_help("LLM_PROXY_TIMEOUT", "Upstream request timeout in seconds", "600"),
    )

    # Rewriting settings
    parser.add_argument(
        "--model",
        action="append",
        default=[],
        metavar="FROM=TO",
        help="Remap model FROM to TO, can be repeated "
        "[env: LLM_PROXY_MODEL_MAP as JSON object]",
    )
    parser.add_argument(
        "--filter-snapshots",
        action="store_true",
        help="Drop SSE text events carrying a snapshot field "
        "[env: LLM_PROXY_FILTER_SNAPSHOTS=true]",
    )

    # Debug settings
    parser.add_argument(
        "-v",
        "--verbose",
        action="store_true",
        help="Show verbose info (request headers and bodies) "
        "[env: LLM_PROXY_VERBOSE=true]",
    )

    return parser


def parse_config(argv: list[str] | None = None) -> ProxyConfig:
    """
    Resolve the effective configuration from CLI arguments and environment.

    Configuration errors (missing or invalid base URL, malformed --model
    entries, unknown arguments) exit through argparse with status 2.
    """
    parser = build_parser()
    args = parser.parse_args(argv)

    # Apply CLI overrides - only if explicitly provided (not None)
    overrides: dict[str, object] = {}
    if args.base_url is not None:
        overrides["base_url"] = args.base_url
    if args.port is not None:
        overrides["port"] = args.port
    if args.host is not None:
        overrides["host"] = args.host
    if args.timeout is not None:
        overrides["timeout"] = args.timeout
    # Boolean flags - CLI flags override env vars when explicitly set
    if args.filter_snapshots:
        overrides["filter_snapshots"] = True
    if args.verbose:
        overrides["verbose"] = True

    try:
        model_map = parse_model_mappings(args.model)
        config = load_config(**overrides)
    except (ValidationError, ValueError) as e:
        parser.error(str(e))

    if not config.base_url:
        parser.error("missing --base-url")

    # CLI mappings extend any LLM_PROXY_MODEL_MAP entries
    config.model_map = {**config.model_map, **model_map}
    return config


def main(argv: list[str] | None = None) -> None:
    config = parse_config(argv)

    if config.verbose:
        logging.getLogger().setLevel(logging.DEBUG)

    app = create_app(config)

    # Log startup configuration
    logger.info("Starting LLM Proxy")
    logger.info(f"  Upstream: {config.base_url}")
    logger.info(f"  Listening: {config.host}:{config.port}")
    if config.model_map:
        for source, target in config.model_map.items():
            logger.info(f"  Model mapping: {source} -> {target}")
    else:
        logger.info("  Model mapping: none")
    logger.info(
        f"  Snapshot filter: {'enabled' if config.filter_snapshots else 'disabled'}"
    )

    import uvicorn

    uvicorn.run(app, host=config.host, port=config.port, log_level="info")


if __name__ == "__main__":
    main()
