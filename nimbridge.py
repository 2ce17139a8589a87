#!/usr/bin/env python3
"""
NimBridge - OpenAI-compatible proxy for NVIDIA NIM

Accepts OpenAI chat completion requests, rewrites them for the NIM API and
translates the responses back:

- Resolves OpenAI-style model names to NIM models (alias table, live probe,
  keyword fallback)
- Prepends selected role-play modifier prompts to the system message
- Re-frames streamed responses, merging or dropping the reasoning channel

Usage:
    python nimbridge.py --port 3000

Client configuration:
    Point your client's API base URL to http://localhost:3000/v1
"""

import argparse
import logging
import time
import uuid
from collections.abc import AsyncGenerator
from dataclasses import dataclass, field
from typing import Any

import httpx
from fastapi import FastAPI, Request, Response
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, StreamingResponse
from pydantic import AliasChoices, Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from augment import augment, extract_prompt_selection
from completions import (
    DEFAULT_MAX_TOKENS,
    DEFAULT_TEMPERATURE,
    build_upstream_request,
    map_completion,
)
from model_resolver import MODEL_MAPPING, ModelResolver
from prompts import PromptCatalog, catalog_path, load_catalog
from transcoder import StreamTranscoder, transcode_stream

# Configure logging
logging.basicConfig(
    level=logging.INFO, format="%(asctime)s - %(levelname)s - %(message)s"
)
logger = logging.getLogger(__name__)

SERVICE_NAME = "OpenAI to NVIDIA NIM Proxy"

# =============================================================================
# Stats Tracking
# =============================================================================


@dataclass
class ProxyStats:
    """Track proxy statistics for observability"""

    total_requests: int = 0
    streaming_requests: int = 0
    non_streaming_requests: int = 0
    upstream_errors: int = 0  # Upstream failed before a response could be relayed
    malformed_frames: int = 0  # Stream lines forwarded verbatim after a parse failure
    resolutions: dict[str, int] = field(
        default_factory=lambda: {"alias": 0, "probe": 0, "fallback": 0}
    )

    def record_request(self, streaming: bool) -> None:
        self.total_requests += 1
        if streaming:
            self.streaming_requests += 1
        else:
            self.non_streaming_requests += 1

    def record_resolution(self, source: str) -> None:
        self.resolutions[source] = self.resolutions.get(source, 0) + 1

    def record_upstream_error(self) -> None:
        self.upstream_errors += 1

    def record_malformed_frames(self, count: int) -> None:
        self.malformed_frames += count

    def to_dict(self) -> dict[str, Any]:
        return {
            "total_requests": self.total_requests,
            "streaming_requests": self.streaming_requests,
            "non_streaming_requests": self.non_streaming_requests,
            "upstream_errors": self.upstream_errors,
            "malformed_frames": self.malformed_frames,
            "model_resolution": dict(self.resolutions),
        }


# Global stats instance
stats = ProxyStats()


# =============================================================================
# Configuration
# =============================================================================


class ProxyConfig(BaseSettings):
    """Proxy configuration settings.

    Configuration can be set via:
    1. CLI arguments (highest priority)
    2. Environment variables (NIMBRIDGE_<SETTING_NAME>)
    3. .env file in the working directory
    4. Default values (lowest priority)

    NIM_API_BASE, NIM_API_KEY and PORT are also honoured.
    """

    model_config = SettingsConfigDict(
        env_prefix="NIMBRIDGE_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        populate_by_name=True,
    )

    # Upstream settings
    api_base: str = Field(
        default="https://integrate.api.nvidia.com/v1",
        validation_alias=AliasChoices("NIMBRIDGE_API_BASE", "NIM_API_BASE"),
        description="NIM API base URL",
    )
    api_key: str | None = Field(
        default=None,
        validation_alias=AliasChoices("NIMBRIDGE_API_KEY", "NIM_API_KEY"),
        description="NIM API key (when unset, the client's Authorization header is forwarded)",
    )
    request_timeout: float = Field(
        default=600.0,
        description="Upstream request timeout in seconds",
    )

    # Connection settings
    host: str = Field(
        default="0.0.0.0",
        description="Host to bind to",
    )
    port: int = Field(
        default=3000,
        validation_alias=AliasChoices("NIMBRIDGE_PORT", "PORT"),
        description="Port to listen on",
    )

    # Reasoning settings
    show_reasoning: bool = Field(
        default=False,
        description="Merge reasoning into content between <think> tags",
    )
    thinking_mode: bool = Field(
        default=False,
        description="Ask thinking-capable models to reason (chat_template_kwargs)",
    )

    # Request defaults
    default_temperature: float = Field(
        default=DEFAULT_TEMPERATURE,
        description="Temperature when the client sends none",
    )
    default_max_tokens: int = Field(
        default=DEFAULT_MAX_TOKENS,
        description="max_tokens when the client sends none",
    )

    # Model resolution
    probe_enabled: bool = Field(
        default=True,
        description="Probe the upstream for unknown model names",
    )
    probe_timeout: float = Field(
        default=10.0,
        description="Capability probe timeout in seconds",
    )
    probe_cache_ttl: float = Field(
        default=300.0,
        description="Seconds to remember probe outcomes (0 = no caching)",
    )
    probe_cache_size: int = Field(
        default=1024,
        description="Most model names to keep probe outcomes for",
    )

    # Prompt catalog
    prompts_file: str | None = Field(
        default=None,
        description="JSON file overlaying the built-in prompt catalog",
    )

    # CORS settings
    cors_enabled: bool = Field(
        default=True,
        description="Enable CORS on all routes",
    )
    cors_origins: list[str] | None = Field(
        default=None,
        description="Allowed CORS origins (None = allow all '*')",
    )

    # Debug settings
    debug: bool = Field(
        default=False,
        description="Enable debug logging",
    )


def load_config() -> ProxyConfig:
    """Load configuration from environment variables and .env file."""
    return ProxyConfig()


config: ProxyConfig
catalog: PromptCatalog
resolver: ModelResolver

# Transport override for the upstream client (in-process upstreams in tests)
upstream_transport: httpx.AsyncBaseTransport | None = None


def configure(new_config: ProxyConfig) -> None:
    """Install a configuration and rebuild the catalog and resolver from it."""
    global config, catalog, resolver
    config = new_config
    catalog = load_catalog(catalog_path(config.prompts_file))
    resolver = ModelResolver(
        api_base=config.api_base,
        api_key=config.api_key,
        aliases=MODEL_MAPPING,
        probe_enabled=config.probe_enabled,
        probe_timeout=config.probe_timeout,
        probe_cache_ttl=config.probe_cache_ttl,
        probe_cache_size=config.probe_cache_size,
    )


configure(load_config())

app = FastAPI(title="NimBridge")


def create_client() -> httpx.AsyncClient:
    return httpx.AsyncClient(transport=upstream_transport, timeout=config.request_timeout)


def upstream_headers(request: Request) -> dict[str, str]:
    """Headers for upstream calls: configured key, else the client's bearer credential."""
    headers = {"Content-Type": "application/json"}
    if config.api_key:
        headers["Authorization"] = f"Bearer {config.api_key}"
    else:
        authorization = request.headers.get("authorization")
        if authorization:
            headers["Authorization"] = authorization
    return headers


def error_response(message: str, code: int) -> JSONResponse:
    return JSONResponse(
        status_code=code,
        content={
            "error": {
                "message": message,
                "type": "invalid_request_error",
                "code": code,
            }
        },
    )


# =============================================================================
# Request Handlers
# =============================================================================


async def stream_frames(
    upstream: httpx.Response, client: httpx.AsyncClient, request_id: str
) -> AsyncGenerator[str, None]:
    """Relay an open upstream stream through a fresh transcoder."""
    transcoder = StreamTranscoder(show_reasoning=config.show_reasoning)
    try:
        async for frame in transcode_stream(upstream.aiter_bytes(), transcoder):
            yield frame
    finally:
        await upstream.aclose()
        await client.aclose()
        stats.record_malformed_frames(transcoder.malformed_frames)
        logger.info(
            f"[{request_id}] Stream complete: frames={transcoder.frames}, "
            f"malformed={transcoder.malformed_frames}, done={transcoder.done}"
        )


async def open_upstream_stream(
    client: httpx.AsyncClient, url: str, body: dict[str, Any], headers: dict[str, str]
) -> httpx.Response:
    """
    Start a streaming upstream call and check its status before relaying.

    Raises:
        httpx.HTTPStatusError: If the upstream answered with an error status
        httpx.HTTPError: If the call could not be established
    """
    upstream = await client.send(
        client.build_request("POST", url, json=body, headers=headers), stream=True
    )
    if upstream.status_code >= 400:
        error_body = await upstream.aread()
        await upstream.aclose()
        raise httpx.HTTPStatusError(
            f"Upstream error: {error_body.decode(errors='replace')}",
            request=upstream.request,
            response=upstream,
        )
    return upstream


# =============================================================================
# API Endpoints
# =============================================================================


@app.post("/v1/chat/completions", response_model=None)
async def chat_completions(request: Request) -> Response:
    """OpenAI-compatible chat completions, proxied to NIM."""
    request_id = uuid.uuid4().hex[:8]

    try:
        body = await request.json()
    except ValueError:
        return error_response("Invalid JSON in request body", 400)
    if not isinstance(body, dict):
        return error_response("Request body must be a JSON object", 400)

    requested_model = body.get("model") if isinstance(body.get("model"), str) else ""
    is_streaming = bool(body.get("stream", False))
    stats.record_request(is_streaming)

    keys, levels = extract_prompt_selection(body)
    messages = augment(body.get("messages") or [], keys, levels, catalog)
    if keys:
        logger.info(f"[{request_id}] Prompts: {keys} (intensity: {levels or 'default'})")

    headers = upstream_headers(request)
    client = create_client()
    handed_off = False
    try:
        resolved = await resolver.resolve(client, requested_model, headers)
        stats.record_resolution(resolved.source)
        logger.info(
            f"[{request_id}] Request: model={requested_model!r} -> {resolved.upstream} "
            f"({resolved.source}), streaming={is_streaming}, messages={len(messages)}"
        )

        upstream_body = build_upstream_request(
            body,
            resolved.upstream,
            messages,
            default_temperature=config.default_temperature,
            default_max_tokens=config.default_max_tokens,
            thinking_mode=config.thinking_mode,
        )
        url = f"{config.api_base.rstrip('/')}/chat/completions"

        if is_streaming:
            upstream = await open_upstream_stream(client, url, upstream_body, headers)
            handed_off = True
            return StreamingResponse(
                stream_frames(upstream, client, request_id),
                media_type="text/event-stream",
                headers={
                    "Cache-Control": "no-cache",
                    "Connection": "keep-alive",
                    "X-Accel-Buffering": "no",
                },
            )

        response = await client.post(url, json=upstream_body, headers=headers)
        response.raise_for_status()
        result = map_completion(response.json(), requested_model, config.show_reasoning)
        logger.info(f"[{request_id}] Request complete: usage={result['usage']}")
        return JSONResponse(result)

    except httpx.HTTPStatusError as e:
        stats.record_upstream_error()
        logger.error(f"[{request_id}] HTTP error from upstream: {e}")
        return error_response(str(e), e.response.status_code)
    except httpx.HTTPError as e:
        stats.record_upstream_error()
        logger.error(f"[{request_id}] Error communicating with upstream: {e}")
        return error_response(str(e) or type(e).__name__, 500)
    except ValueError as e:
        stats.record_upstream_error()
        logger.error(f"[{request_id}] Invalid JSON from upstream: {e}")
        return error_response(f"Invalid response from upstream: {e}", 500)
    finally:
        if not handed_off:
            await client.aclose()


@app.get("/v1/models")
async def list_models() -> dict[str, Any]:
    """Caller-facing model names (OpenAI compatible)."""
    created = int(time.time())
    return {
        "object": "list",
        "data": [
            {
                "id": model,
                "object": "model",
                "created": created,
                "owned_by": "nvidia-nim-proxy",
            }
            for model in MODEL_MAPPING
        ],
    }


@app.get("/v1/prompts")
async def list_prompts() -> dict[str, Any]:
    """Available modifier prompts."""
    prompts = catalog.to_list()
    return {"object": "list", "data": prompts, "total": len(prompts)}


@app.get("/health")
async def health_check() -> dict[str, Any]:
    """Health check."""
    return {
        "status": "ok",
        "service": SERVICE_NAME,
        "reasoning_display": config.show_reasoning,
        "thinking_mode": config.thinking_mode,
        "custom_prompts": len(catalog),
    }


@app.get("/stats")
async def get_stats() -> dict[str, Any]:
    """Proxy statistics."""
    return {"proxy_stats": stats.to_dict()}


@app.post("/stats/reset")
async def reset_stats() -> dict[str, Any]:
    """Reset proxy statistics."""
    global stats
    stats = ProxyStats()
    resolver.clear_cache()
    return {"status": "reset", "stats": stats.to_dict()}


@app.api_route(
    "/{path:path}", methods=["GET", "POST", "PUT", "DELETE", "PATCH", "HEAD", "OPTIONS"]
)
async def not_found(request: Request, path: str) -> Response:
    """Anything else is an unknown endpoint."""
    return error_response(f"Endpoint {request.url.path} not found", 404)


# =============================================================================
# Main
# =============================================================================


def _env_help(env_var: str, description: str, default: str | None = None) -> str:
    """Format help text with environment variable name."""
    if default is not None:
        return f"{description} [env: {env_var}, default: {default}]"
    return f"{description} [env: {env_var}]"


def main() -> None:
    # Load config from environment variables / .env file first
    cli_config = load_config()

    parser = argparse.ArgumentParser(
        description="NimBridge - OpenAI to NVIDIA NIM proxy",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Configuration Priority (highest to lowest):
  1. CLI arguments
  2. Environment variables (NIMBRIDGE_*)
  3. .env file in working directory
  4. Default values

Examples:
  # Basic usage (reads NIM_API_KEY / NIMBRIDGE_* from env or .env)
  python nimbridge.py

  # Show reasoning between <think> tags and enable thinking mode
  python nimbridge.py --show-reasoning --thinking

  # Custom prompt catalog
  python nimbridge.py --prompts-file ./prompts.json
""",
    )

    # Upstream settings
    parser.add_argument(
        "--api-base",
        default=None,
        help=_env_help(
            "NIMBRIDGE_API_BASE", "NIM API base URL", "https://integrate.api.nvidia.com/v1"
        ),
    )
    parser.add_argument(
        "--timeout",
        type=float,
        default=None,
        help=_env_help("NIMBRIDGE_REQUEST_TIMEOUT", "Upstream timeout in seconds", "600"),
    )

    # Connection settings
    parser.add_argument(
        "--port",
        "-p",
        type=int,
        default=None,
        help=_env_help("NIMBRIDGE_PORT", "Port to listen on", "3000"),
    )
    parser.add_argument(
        "--host",
        default=None,
        help=_env_help("NIMBRIDGE_HOST", "Host to bind to", "0.0.0.0"),
    )

    # Reasoning settings
    parser.add_argument(
        "--show-reasoning",
        action="store_true",
        help="Show reasoning in <think> tags [env: NIMBRIDGE_SHOW_REASONING=true]",
    )
    parser.add_argument(
        "--thinking",
        action="store_true",
        help="Enable thinking mode for supporting models "
        "[env: NIMBRIDGE_THINKING_MODE=true]",
    )

    # Request defaults
    defaults = parser.add_argument_group("request defaults (used when the client sends none)")
    defaults.add_argument(
        "--temperature",
        type=float,
        default=None,
        help=_env_help("NIMBRIDGE_DEFAULT_TEMPERATURE", "Default temperature", "0.6"),
    )
    defaults.add_argument(
        "--max-tokens",
        type=int,
        default=None,
        help=_env_help("NIMBRIDGE_DEFAULT_MAX_TOKENS", "Default max_tokens", "9024"),
    )

    # Model resolution
    resolution = parser.add_argument_group("model resolution")
    resolution.add_argument(
        "--no-probe",
        action="store_true",
        help="Skip the upstream probe for unknown models "
        "[env: NIMBRIDGE_PROBE_ENABLED=false]",
    )
    resolution.add_argument(
        "--probe-timeout",
        type=float,
        default=None,
        help=_env_help("NIMBRIDGE_PROBE_TIMEOUT", "Probe timeout in seconds", "10"),
    )

    # Prompt catalog
    parser.add_argument(
        "--prompts-file",
        default=None,
        help=_env_help(
            "NIMBRIDGE_PROMPTS_FILE",
            "Prompt catalog JSON file",
            "${XDG_CONFIG_HOME:-~/.config}/nimbridge/prompts.json",
        ),
    )

    # CORS settings
    cors_group = parser.add_argument_group("CORS settings")
    cors_group.add_argument(
        "--no-cors",
        action="store_true",
        help="Disable CORS [env: NIMBRIDGE_CORS_ENABLED=false]",
    )
    cors_group.add_argument(
        "--cors-origins",
        type=str,
        default=None,
        help="Comma-separated allowed origins (default: *) "
        "[env: NIMBRIDGE_CORS_ORIGINS as JSON array]",
    )

    parser.add_argument(
        "--debug",
        action="store_true",
        help="Enable debug logging [env: NIMBRIDGE_DEBUG=true]",
    )

    args = parser.parse_args()

    # Apply CLI overrides - only if explicitly provided (not None)
    if args.api_base is not None:
        cli_config.api_base = args.api_base
    if args.timeout is not None:
        cli_config.request_timeout = args.timeout
    if args.port is not None:
        cli_config.port = args.port
    if args.host is not None:
        cli_config.host = args.host
    if args.show_reasoning:
        cli_config.show_reasoning = True
    if args.thinking:
        cli_config.thinking_mode = True
    if args.temperature is not None:
        cli_config.default_temperature = args.temperature
    if args.max_tokens is not None:
        cli_config.default_max_tokens = args.max_tokens
    if args.no_probe:
        cli_config.probe_enabled = False
    if args.probe_timeout is not None:
        cli_config.probe_timeout = args.probe_timeout
    if args.prompts_file is not None:
        cli_config.prompts_file = args.prompts_file
    if args.no_cors:
        cli_config.cors_enabled = False
    if args.cors_origins:
        cli_config.cors_origins = [o.strip() for o in args.cors_origins.split(",")]
    if args.debug:
        cli_config.debug = True

    configure(cli_config)

    if config.debug:
        logging.getLogger().setLevel(logging.DEBUG)

    if config.cors_enabled:
        app.add_middleware(
            CORSMiddleware,
            allow_origins=config.cors_origins or ["*"],
            allow_credentials=True,
            allow_methods=["*"],
            allow_headers=["*"],
        )

    # Log startup configuration
    logger.info(f"Starting {SERVICE_NAME}")
    logger.info(f"  Upstream: {config.api_base}")
    logger.info(f"  Listening: {config.host}:{config.port}")
    logger.info(f"  API key: {'configured' if config.api_key else 'pass-through from client'}")
    logger.info(f"  Reasoning display: {'ENABLED' if config.show_reasoning else 'DISABLED'}")
    logger.info(f"  Thinking mode: {'ENABLED' if config.thinking_mode else 'DISABLED'}")
    logger.info(f"  Model probe: {'enabled' if config.probe_enabled else 'disabled'}")
    logger.info(f"  Custom prompts: {len(catalog)}")
    if config.cors_enabled:
        origins_display = ", ".join(config.cors_origins) if config.cors_origins else "*"
        logger.info(f"  CORS: enabled ({origins_display})")
    else:
        logger.info("  CORS: disabled")

    import uvicorn

    uvicorn.run(app, host=config.host, port=config.port, log_level="info")


if __name__ == "__main__":
    main()
