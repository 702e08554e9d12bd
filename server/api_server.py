"""FastAPI application entry point for the RAG gateway."""

import os
import time
import uuid
from contextlib import asynccontextmanager
from typing import AsyncGenerator

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from shared.logging.logging_setup import setup_logging, trace_id_var
from shared.helper.HelperConfig import HelperConfig
from shared.metrics.metrics import HTTP_REQUESTS, safe_metric
from shared.models.errors import GatewayError, PayloadTooLargeError
from shared.clients.llm.LLMOperations import LLMOperations
from shared.clients.llm.LLMClientManager import LLMClientManager
from shared.clients.llm.ResilientLLMClient import ResilientLLMClient
from shared.clients.pool.OutboundPool import OutboundPool
from services.registry.ModelRegistry import ModelRegistry
from services.rag.RAGDocumentStore import RAGDocumentStore
from services.conversation.ConversationStore import ConversationStore
from server.core.ChatService import ChatService
from server.core.StartupWatchdog import run_with_watchdog
from server.dependencies.rate_limit import FixedWindowRateLimiter
from server.routers.HealthRouter import router as health_router
from server.routers.ModelsRouter import router as models_router
from server.routers.ChatRouter import router as chat_router
from server.routers.InferenceRouter import router as inference_router
from server.routers.RAGRouter import router as rag_router
from server.routers.ConversationRouter import router as conversation_router

app_version = os.getenv("APP_VERSION", "unknown")


def create_app(upstream: LLMOperations | None = None) -> FastAPI:
    """Build the gateway application.

    Args:
        upstream (LLMOperations | None): Upstream client to wrap. When omitted the
            client for ``LLM_ENGINE`` is instantiated, attached to the shared
            outbound pool and booted during startup.

    Returns:
        FastAPI: The configured application.
    """
    logging = setup_logging()
    helper_config = HelperConfig(logger=logging)

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
        # when the app starts
        app.state.logging = logging
        app.state.helper_config = helper_config
        app.state.started_at = time.time()
        app.state.rate_limiter = FixedWindowRateLimiter(helper_config)
        app.state.outbound_pool = None
        app.state.raw_client = None

        await run_with_watchdog(helper_config, startup(app))

        # while the app is running...
        yield

        # when the app shuts down, persist state and close all connections
        logging.info("Shutting down, persisting RAG index and closing clients...")
        await app.state.conversation_store.shutdown()
        await app.state.rag_store.shutdown()
        if app.state.raw_client is not None:
            await app.state.raw_client.close()
        if app.state.outbound_pool is not None:
            await app.state.outbound_pool.shutdown()
        logging.info("Shutdown complete.")

    async def startup(app: FastAPI) -> None:
        registry = ModelRegistry(helper_config)
        app.state.model_registry = registry

        if upstream is None:
            pool = OutboundPool(helper_config)
            pool.apply_global()
            manager = LLMClientManager(helper_config=helper_config)
            raw_client = manager.get_client()
            raw_client.pool = pool
            logging.info("Booting upstream client...")
            await raw_client.boot()
            logging.info("Upstream client booted (pool option: %s).", raw_client.accepted_pool_option, color="green")
            app.state.outbound_pool = pool
            app.state.raw_client = raw_client
            llm_client = manager.get_resilient_client(ttl_resolver=registry.get_ttl_ms)
        else:
            llm_client = ResilientLLMClient(helper_config, upstream=upstream, ttl_resolver=registry.get_ttl_ms)
        app.state.llm_client = llm_client

        rag_store = RAGDocumentStore(
            helper_config,
            upstream=llm_client,
            embed_model=helper_config.get_string_val("RAG_EMBED_MODEL", default=registry.get_default_model("embed") or "embed-english-v3.0"),
        )
        rag_store.load_snapshot()
        await rag_store.load_embeddings()
        app.state.rag_store = rag_store

        conversation_store = ConversationStore(helper_config, rag_store=rag_store)
        conversation_store.start_cleanup()
        app.state.conversation_store = conversation_store

        app.state.chat_service = ChatService(
            helper_config,
            llm_client=llm_client,
            conversation_store=conversation_store,
            model_registry=registry,
        )

        await check_connections(helper_config, llm_client)

    app = FastAPI(
        title="rag_gateway",
        description=(
            "Resilient gateway in front of a hosted LLM provider. Serves OpenAI-style chat "
            "completions enriched with conversation memory and retrieval over an indexed "
            "codebase, plus embedding, rerank and vision pass-through endpoints."
        ),
        version=app_version,
        lifespan=lifespan,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=helper_config.get_list_val("ALLOWED_ORIGINS", default=["*"]),
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    max_body_bytes = int(helper_config.get_number_val("MAX_REQUEST_BODY_BYTES", default=10 * 1024 * 1024))
    log_requests = not helper_config.get_bool_val("SKIP_DIAGNOSTICS", default=False)

    @app.middleware("http")
    async def diagnostics(request: Request, call_next):
        trace_id = request.headers.get("x-trace-id") or uuid.uuid4().hex
        token = trace_id_var.set(trace_id)
        started = time.perf_counter()
        try:
            content_length = request.headers.get("content-length")
            if content_length and content_length.isdigit() and int(content_length) > max_body_bytes:
                error = PayloadTooLargeError(f"Request body exceeds {max_body_bytes} bytes")
                response = JSONResponse(status_code=error.status_code, content=error.to_envelope())
            else:
                response = await call_next(request)
            response.headers["x-trace-id"] = trace_id
            route = request.scope.get("route")
            route_path = getattr(route, "path", "unmatched")
            if log_requests:
                logging.info(
                    "%s %s -> %d (%.1f ms)",
                    request.method, request.url.path, response.status_code, (time.perf_counter() - started) * 1000,
                )
            safe_metric(
                lambda: HTTP_REQUESTS.labels(method=request.method, route=route_path, status=str(response.status_code)).inc()
            )
            return response
        finally:
            trace_id_var.reset(token)

    register_exception_handlers(app, logging)

    app.include_router(health_router)
    app.include_router(models_router)
    app.include_router(chat_router)
    app.include_router(inference_router)
    app.include_router(rag_router)
    app.include_router(conversation_router)
    return app


def register_exception_handlers(app: FastAPI, logging) -> None:
    """Map every failure onto the ``{"error": {"message", "type"}}`` envelope."""

    @app.exception_handler(GatewayError)
    async def gateway_error_handler(request: Request, exc: GatewayError) -> JSONResponse:
        if exc.status_code == 500:
            # upstream details stay in the log
            logging.error("%s %s failed: %s", request.method, request.url.path, exc.message)
            return JSONResponse(
                status_code=exc.status_code,
                content={"error": {"message": "Internal server error", "type": exc.error_type}},
            )
        return JSONResponse(status_code=exc.status_code, content=exc.to_envelope())

    @app.exception_handler(RequestValidationError)
    async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
        details = "; ".join(
            f"{'.'.join(str(p) for p in err.get('loc', ()) if p != 'body') or 'body'}: {err.get('msg')}"
            for err in exc.errors()
        )
        return JSONResponse(
            status_code=400,
            content={"error": {"message": details or "Invalid request body", "type": "invalid_request_error"}},
        )

    @app.exception_handler(StarletteHTTPException)
    async def http_error_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
        if exc.status_code == 404:
            content = {"error": {"message": f"Route {request.method} {request.url.path} not found", "type": "not_found"}}
        else:
            error_type = "client_error" if exc.status_code < 500 else "internal_server_error"
            content = {"error": {"message": str(exc.detail), "type": error_type}}
        return JSONResponse(status_code=exc.status_code, content=content, headers=getattr(exc, "headers", None))

    @app.exception_handler(Exception)
    async def unhandled_error_handler(request: Request, exc: Exception) -> JSONResponse:
        logging.exception("Unhandled error on %s %s: %s", request.method, request.url.path, exc)
        return JSONResponse(
            status_code=500,
            content={"error": {"message": "Internal server error", "type": "internal_server_error"}},
        )


async def check_connections(helper_config: HelperConfig, llm_client: LLMOperations) -> None:
    """Check upstream connectivity on startup by listing its models.

    Failures are non-fatal: the server stays up and individual requests
    report upstream errors through the circuit breaker.
    """
    logging = helper_config.get_logger()
    if helper_config.get_bool_val("SKIP_DIAGNOSTICS", default=False):
        return
    try:
        models = await llm_client.models.list()
        logging.info("Upstream reachable, %d models available.", len(models or []), color="green")
    except Exception as e:
        logging.warning("Upstream is not reachable at startup: %s. Requests may fail until it recovers.", e)


if __name__ == "__main__":
    import uvicorn

    port = int(os.getenv("PORT", "8000"))
    setup_logging().info(
        "Starting rag_gateway API Server v%s from root dir: %s on port %d...",
        app_version,
        os.environ.get("ROOT_DIR", "unknown"),
        port,
    )
    uvicorn.run("server.api_server:create_app", factory=True, host="0.0.0.0", port=port)
