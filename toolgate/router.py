"""
title: toolgate - an Ollama/OpenAI compatibility gateway with tool-call repair
author: toolgate contributors
author_url: https://github.com/toolgate
version: 0.1
license: AGPL
"""
# -------------------------------------------------------------
import json, ssl, logging, sys
from typing import Optional

import aiohttp
import uvicorn
from fastapi import Depends, FastAPI, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from starlette.responses import JSONResponse, Response, StreamingResponse

from .auth import TokenAuthenticator
from .chat import ChatClient, ChatExchange
from .config import Config
from .errors import ConfigurationError, GatewayError, UpstreamError
from .headers import HeaderPurpose, build_backend_headers
from .logs import redact_headers, setup_logging, timed
from .metadata import MetadataSynthesizer
from .reinjection import ReinjectionPolicy
from .streaming import StreamBridge

logger = logging.getLogger(__name__)

# ------------------------------------------------------------------
# Global state
# ------------------------------------------------------------------
app_state = {
    "session": None,
    "auth": TokenAuthenticator(),
    "policy": None,
}

# Set by init_state(); startup loads it from the environment when missing
config: Optional[Config] = None

# Response headers that must not be copied from the backend
HOP_HEADERS = {"content-encoding", "transfer-encoding", "content-length", "connection", "keep-alive"}

SYNTHETIC_HEADER = "X-Toolgate-Synthetic"

# -------------------------------------------------------------
# 1. FastAPI application
# -------------------------------------------------------------
app = FastAPI()
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["GET", "POST", "DELETE"],
    allow_headers=["Authorization", "Content-Type"],
)

# -------------------------------------------------------------
# 2. Helperfunctions
# -------------------------------------------------------------
async def require_token(request: Request) -> None:
    """Dependency gating a route behind the bearer-token allow-list."""
    auth: TokenAuthenticator = app_state["auth"]
    await auth.authenticate(request.headers.get("authorization"))


def forward_client_auth() -> bool:
    # With the gate enabled the client's Authorization header holds a gateway
    # token, not a backend key.
    return not app_state["auth"].enabled


def filter_headers(headers) -> dict:
    return {k: v for k, v in headers.items() if k.lower() not in HOP_HEADERS}


def metadata() -> MetadataSynthesizer:
    return MetadataSynthesizer(config, app_state["session"])


def synthetic_headers(synthetic: bool) -> Optional[dict]:
    return {SYNTHETIC_HEADER: "true"} if synthetic else None


async def read_json(request: Request):
    body_bytes = await request.body()
    try:
        return json.loads(body_bytes.decode("utf-8") or "null")
    except (json.JSONDecodeError, UnicodeDecodeError) as e:
        raise HTTPException(status_code=400, detail=f"Invalid JSON: {e}") from e

# -------------------------------------------------------------
# 3. Error handlers
# -------------------------------------------------------------
@app.exception_handler(GatewayError)
async def gateway_error_handler(request: Request, exc: GatewayError):
    if exc.status_code >= 500:
        logger.error("[%s %s] %s", request.method, request.url.path, exc.message)
    return JSONResponse(content=exc.to_payload(), status_code=exc.status_code)


@app.exception_handler(Exception)
async def unexpected_error_handler(request: Request, exc: Exception):
    logger.exception("[%s %s] Unhandled error", request.method, request.url.path)
    return JSONResponse(
        content={"error": f"Error processing request: {exc}"},
        status_code=500,
    )

# -------------------------------------------------------------
# 4. Info route
# -------------------------------------------------------------
@app.get("/")
async def index(request: Request):
    return {
        "message": "toolgate is running.",
        "status": "OK",
        "chat_endpoint": "/v1/chat/completions",
        "generic_proxy_base": "/v1",
        "target_backend": config.backend_base_url,
        "target_chat_endpoint": config.chat_completions_url,
    }

# -------------------------------------------------------------
# 5. API route – Show
# -------------------------------------------------------------
@app.post("/api/show", dependencies=[Depends(require_token)])
@timed("OLLAMA SHOW")
async def show_proxy(request: Request):
    """
    Reply with an Ollama ShowResponse for the requested model.

    Forwarded to a native Ollama backend when one is configured (with the
    template patched to expose tool calls), synthesized from /v1/models
    otherwise.
    """
    payload = await read_json(request)
    name = payload.get("model") or payload.get("name") if isinstance(payload, dict) else None
    if not isinstance(name, str) or not name.strip():
        logger.error("[OLLAMA SHOW] Missing model name in request body field 'model'")
        return JSONResponse(
            content={"error": "Missing model name in request body field 'model'"},
            status_code=400,
        )

    logger.debug("[OLLAMA SHOW] Requested model: %s", name)
    status, body, synthetic = await metadata().show(
        name, request.headers.get("authorization"), request.headers, forward_client_auth()
    )
    return JSONResponse(content=body, status_code=status, headers=synthetic_headers(synthetic))

# -------------------------------------------------------------
# 6. API route – tags
# -------------------------------------------------------------
@app.get("/api/tags", dependencies=[Depends(require_token)])
@timed("OLLAMA TAGS")
async def tags_proxy(request: Request):
    """
    Reply with the Ollama model list, forwarded or synthesized from /v1/models.
    """
    status, body, synthetic = await metadata().tags(
        request.headers.get("authorization"), request.headers, forward_client_auth()
    )
    return JSONResponse(content=body, status_code=status, headers=synthetic_headers(synthetic))

# -------------------------------------------------------------
# 7. OpenAI API compatible models endpoint
# -------------------------------------------------------------
@app.get("/v1/models", dependencies=[Depends(require_token)])
@timed("MODELS")
async def openai_models_proxy(request: Request):
    """
    Pass the backend's model listing through with a forced JSON content type.
    """
    headers = build_backend_headers(
        config, request.headers.get("authorization"), request.headers, HeaderPurpose.MODELS,
        forward_client_auth=forward_client_auth(),
    )
    logger.debug("[MODELS REQUEST] Backend Headers: %s", redact_headers(headers))

    client: aiohttp.ClientSession = app_state["session"]
    try:
        async with client.get(f"{config.backend_base_url}/v1/models", headers=headers,
                              params=list(request.query_params.multi_items())) as resp:
            text = await resp.text()
            status = resp.status
            upstream_headers = filter_headers(resp.headers)
    except aiohttp.ClientError as e:
        logger.error("[MODELS ERROR] %s", e)
        return JSONResponse(
            content={"error": {"message": f"Error proxying to models endpoint: {e}", "type": "proxy_error"}},
            status_code=500,
        )

    try:
        text = json.dumps(json.loads(text))
    except ValueError:
        logger.debug("[MODELS RESPONSE] Body (text): %s", text)

    upstream_headers = {k: v for k, v in upstream_headers.items() if k.lower() != "content-type"}
    return Response(content=text, status_code=status, headers=upstream_headers, media_type="application/json")

# -------------------------------------------------------------
# 8. API route – OpenAI compatible Chat Completions
# -------------------------------------------------------------
@app.post("/v1/chat/completions", dependencies=[Depends(require_token)])
@timed("CHAT COMPLETIONS")
async def openai_chat_completions_proxy(request: Request):
    """
    Relay a chat completion to the backend, buffered or as server-sent events.
    """
    # 1. Parse and validate request
    exchange = ChatExchange.from_payload(await read_json(request))

    # 2. Tool reinjection and headers
    policy: ReinjectionPolicy = app_state["policy"]
    messages = policy.apply(exchange)
    headers = build_backend_headers(
        config, request.headers.get("authorization"), request.headers, HeaderPurpose.CHAT,
        forward_client_auth=forward_client_auth(),
    )
    chat = ChatClient(config, app_state["session"])

    if not exchange.stream:
        status, body = await chat.complete(exchange, messages, headers)
        if isinstance(body, str):
            return Response(content=body, status_code=status, media_type="text/plain")
        return JSONResponse(content=body, status_code=status)

    # 3. Open the stream and pull the first event while an error status can still be sent
    resp = await chat.open_stream(exchange, messages, headers)
    bridge = StreamBridge(config.max_buffer_size, config.idle_timeout)
    relay = bridge.relay(resp.content.iter_any())
    try:
        first = await relay.__anext__()
    except StopAsyncIteration:
        first = None
    except aiohttp.ClientError as e:
        resp.close()
        raise UpstreamError(f"Error reading backend stream: {e}") from e
    except BaseException:
        resp.close()
        raise

    # 4. Async generator relaying the rest; closing it aborts the backend call
    async def stream_chat_response():
        try:
            if first is not None:
                yield first
                async for piece in relay:
                    yield piece
        except GatewayError as e:
            logger.error("[CHAT COMPLETIONS (stream)] %s, closing connection", e.message)
        except aiohttp.ClientError as e:
            logger.error("[CHAT COMPLETIONS (stream)] Backend stream failed: %s", e)
        finally:
            await relay.aclose()
            resp.close()
            logger.info(
                "[CHAT COMPLETIONS (stream)] closed, %d tool call(s) reconstructed",
                len(bridge.tool_calls),
            )

    # 5. Return a StreamingResponse backed by the generator
    return StreamingResponse(
        stream_chat_response(),
        media_type="text/event-stream",
        headers={"Cache-Control": "no-cache"},
    )

# -------------------------------------------------------------
# 9. Generic /v1 relay
# -------------------------------------------------------------
@app.api_route(
    "/v1/{path:path}",
    methods=["GET", "POST", "PUT", "PATCH", "DELETE"],
    dependencies=[Depends(require_token)],
)
@timed("PROXY")
async def generic_proxy(request: Request, path: str):
    """
    Relay any other /v1 call to the backend unmodified.
    """
    headers = build_backend_headers(
        config, request.headers.get("authorization"), request.headers, HeaderPurpose.CHAT,
        forward_client_auth=forward_client_auth(),
    )
    if request.headers.get("content-type"):
        headers["Content-Type"] = request.headers["content-type"]
    body = await request.body()

    client: aiohttp.ClientSession = app_state["session"]
    try:
        async with client.request(
            request.method,
            f"{config.backend_base_url}/v1/{path}",
            params=list(request.query_params.multi_items()),
            data=body or None,
            headers=headers,
        ) as resp:
            content = await resp.read()
            return Response(content=content, status_code=resp.status, headers=filter_headers(resp.headers))
    except aiohttp.ClientError as e:
        raise UpstreamError(f"Error proxying to /v1/{path}: {e}") from e

# -------------------------------------------------------------
# 10. Undefined routes
# -------------------------------------------------------------
@app.api_route("/{path:path}", methods=["GET", "POST", "PUT", "PATCH", "DELETE", "HEAD"])
async def undefined_route(request: Request, path: str):
    logger.debug("[UNDEFINED ROUTE] %s %s", request.method, request.url)
    return JSONResponse(
        content={
            "error": f"Undefined route: {request.method} {request.url.path}",
            "message": "This route is not handled by the proxy server.",
        },
        status_code=404,
    )

# -------------------------------------------------------------
# 11. FastAPI startup/shutdown events
# -------------------------------------------------------------
async def init_state(cfg: Config) -> None:
    global config
    config = cfg

    auth = TokenAuthenticator()
    auth.initialize(cfg.proxy_auth_tokens_file)
    app_state["auth"] = auth
    app_state["policy"] = ReinjectionPolicy(
        enabled=cfg.enable_tool_reinjection,
        message_threshold=cfg.tool_reinjection_message_count,
        token_threshold=cfg.tool_reinjection_token_count,
        mode=cfg.tool_reinjection_type,
    )

    ssl_context = ssl.create_default_context()
    connector = aiohttp.TCPConnector(limit=0, limit_per_host=512, ssl=ssl_context)
    timeout = aiohttp.ClientTimeout(total=None, connect=10, sock_read=cfg.idle_timeout, sock_connect=10)
    session = aiohttp.ClientSession(connector=connector, timeout=timeout)

    app_state["session"] = session


async def close_state() -> None:
    session: Optional[aiohttp.ClientSession] = app_state["session"]
    if session is not None:
        await session.close()
    app_state["session"] = None


@app.on_event("startup")
async def startup_event() -> None:
    cfg = config
    if cfg is None:
        cfg = Config.load()
        setup_logging(cfg.debug_mode)
        cfg.validate_settings()
    await init_state(cfg)
    logger.info(
        "Proxying to %s (mode=%s, auth=%s)",
        cfg.backend_base_url, cfg.mode, "enabled" if app_state["auth"].enabled else "disabled",
    )


@app.on_event("shutdown")
async def shutdown_event() -> None:
    await close_state()


def main() -> None:
    global config
    cfg = Config.load()
    setup_logging(cfg.debug_mode)
    try:
        cfg.validate_settings()
    except ConfigurationError as e:
        logger.error("Error: %s", e.message)
        sys.exit(1)
    config = cfg
    uvicorn.run(app, host=cfg.proxy_host, port=cfg.proxy_port)


if __name__ == "__main__":
    main()
