"""Main entry point for the LLM chat relay API."""
import logging
import time
from fastapi import Depends, FastAPI, HTTPException, Request, Response, WebSocket, WebSocketDisconnect
import pydantic
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, StreamingResponse
from starlette.concurrency import run_in_threadpool

from config import (
    CACHE_ENABLED,
    CORS_ORIGINS,
    LOG_FORMAT,
    LOG_LEVEL,
    MAX_EXCHANGES,
    MAX_TOKENS,
    PORT,
    REDIS_PASSWORD,
    REDIS_URL,
    TOKEN_CACHE_TTL,
    TOKENIZER_ENCODING,
)
from logger import setup_logging
from models.api import ChatRequest, ChatResponse, HistoryResponse, Message
from services.chat_relay import ChatRelay, validate_request
from services.errors import ChatServiceError, InternalError, ValidationError
from services.history_store import HistoryStore
from services.llm_client import LLMClient
from services.token_cache import TokenCache, TokenCounter, create_cache_store
from services.transports import SSE_HEADERS, RelayStream, sse_events, websocket_message

# Initialize logging
logger = logging.getLogger(__name__)

# Initialize FastAPI app
app = FastAPI(
    title="LLM Chat Relay",
    description="Relays chat turns to a Groq-hosted LLM with shared bounded history",
    version="1.0.0"
)

# Configure CORS
app.add_middleware(
    CORSMiddleware,
    allow_origins=CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


def build_relay() -> ChatRelay:
    """Wire the relay with its history store, cache and backend client."""
    history = HistoryStore(max_exchanges=MAX_EXCHANGES)
    logger.info("Initialized HistoryStore")

    cache_store = create_cache_store(REDIS_URL, REDIS_PASSWORD, enabled=CACHE_ENABLED)
    token_cache = TokenCache(
        store=cache_store,
        counter=TokenCounter(TOKENIZER_ENCODING),
        ttl=TOKEN_CACHE_TTL
    )
    logger.info("Initialized TokenCache")

    llm_client = LLMClient()
    logger.info("Initialized LLMClient")

    return ChatRelay(history, llm_client, token_cache=token_cache, max_tokens=MAX_TOKENS)


@app.on_event("startup")
async def startup_event():
    """Initialize services on startup."""
    setup_logging(LOG_LEVEL, LOG_FORMAT)
    logger.info("Initializing LLM chat relay services...")

    try:
        app.state.relay = build_relay()
        logger.info("All services initialized successfully")
    except Exception as e:
        logger.error(f"Failed to initialize services: {e}", exc_info=True)
        raise


@app.on_event("shutdown")
async def shutdown_event():
    """Stop the cache worker and release the cache connection."""
    relay = getattr(app.state, "relay", None)
    if relay is None or relay.token_cache is None:
        return
    try:
        relay.token_cache.close(wait=False)
        relay.token_cache.store.close()
    except Exception as e:
        logger.warning(f"Failed to close token cache store: {e}")


@app.middleware("http")
async def log_requests(request: Request, call_next):
    """Log method, path, status and duration of every HTTP request."""
    start_time = time.time()
    response = await call_next(request)
    duration_ms = int((time.time() - start_time) * 1000)
    logger.info(
        f"HTTP request: {request.method} {request.url.path} -> {response.status_code} ({duration_ms}ms)",
        extra={
            "method": request.method,
            "path": request.url.path,
            "status": response.status_code,
            "duration_ms": duration_ms,
        }
    )
    return response


@app.exception_handler(RequestValidationError)
async def request_validation_handler(request: Request, exc: RequestValidationError):
    """Report bodies that do not parse as a ChatRequest as validation errors."""
    error = ValidationError(
        "Invalid JSON in request body",
        ValidationError.MALFORMED_INPUT,
        {"errors": [{"loc": list(err["loc"]), "msg": err["msg"]} for err in exc.errors()]}
    )
    logger.warning(f"Rejected malformed request to {request.url.path}: {exc.errors()}")
    return JSONResponse(status_code=error.status_code, content={"detail": {"error": error.to_dict()}})


def get_relay(request: Request) -> ChatRelay:
    """Dependency returning the relay wired at startup."""
    return request.app.state.relay


def _http_error(error: ChatServiceError) -> HTTPException:
    return HTTPException(status_code=error.status_code, detail={"error": error.to_dict()})


def _wants_stream(request: Request, chat_request: ChatRequest) -> bool:
    accept = request.headers.get("accept", "")
    return (
        "text/event-stream" in accept
        or request.query_params.get("stream") == "true"
        or chat_request.stream
    )


@app.get("/health")
async def health():
    """Health check endpoint."""
    return "OK"


@app.post("/chat")
async def chat_endpoint(
    chat_request: ChatRequest,
    request: Request,
    relay: ChatRelay = Depends(get_relay)
):
    """
    Relay a chat request to the LLM.

    Responds with ``{"response": ...}`` JSON, or with a Server-Sent Events
    stream when the client sends ``Accept: text/event-stream``,
    ``?stream=true`` or ``"stream": true``.

    SSE frames:
        - data: {"type": "token", "content": "..."} for each fragment
        - data: {"type": "done", "response": "..."} then data: [DONE]
        - data: {"type": "error", "error": {...}} on failure

    Raises:
        HTTPException: 400 for invalid input, 401/429/502/504 for classified
            backend failures, 500 otherwise
    """
    if _wants_stream(request, chat_request):
        # Headers are committed once streaming starts, so reject bad input first
        try:
            validate_request(chat_request)
        except ValidationError as e:
            logger.warning(f"Rejected streaming chat request: {e.message}")
            raise _http_error(e)

        logger.info(f"Processing streaming chat request ({len(chat_request.messages)} messages)")
        return StreamingResponse(
            sse_events(relay, chat_request),
            media_type="text/event-stream",
            headers=SSE_HEADERS
        )

    logger.info(f"Processing chat request ({len(chat_request.messages)} messages)")
    try:
        text = await run_in_threadpool(relay.process_chat, chat_request)
    except ChatServiceError as e:
        logger.error(f"Chat processing failed: {e.message}")
        raise _http_error(e)
    except Exception as e:
        logger.error(f"Unexpected error processing chat: {e}", exc_info=True)
        raise _http_error(InternalError(f"Internal server error: {str(e)}"))

    return ChatResponse(response=text)


@app.websocket("/chat")
async def chat_websocket(websocket: WebSocket):
    """
    Stream a chat response over a WebSocket.

    The client sends one ChatRequest as JSON. The server replies with
    ``{"token": ...}`` per fragment, then ``{"done": true, "response": ...}``
    or ``{"error": {...}}``, and closes the socket.
    """
    relay: ChatRelay = websocket.app.state.relay
    await websocket.accept()

    try:
        payload = await websocket.receive_json()
        chat_request = ChatRequest.model_validate(payload)
        validate_request(chat_request)
    except WebSocketDisconnect:
        logger.info("WebSocket client disconnected before sending a request")
        return
    except ValidationError as e:
        logger.warning(f"Rejected WebSocket chat request: {e.message}")
        await websocket.send_json({"error": e.to_dict()})
        await websocket.close()
        return
    except pydantic.ValidationError as e:
        logger.warning(f"Rejected WebSocket chat request: {e}")
        error = ValidationError(
            "Invalid chat request",
            ValidationError.MALFORMED_INPUT,
            {"errors": [{"loc": list(err["loc"]), "msg": err["msg"]} for err in e.errors()]}
        )
        await websocket.send_json({"error": error.to_dict()})
        await websocket.close()
        return
    except ValueError as e:
        logger.error(f"Failed to read WebSocket message: {e}")
        error = ValidationError(
            "Failed to read WebSocket message: invalid JSON",
            ValidationError.MALFORMED_INPUT
        )
        await websocket.send_json({"error": error.to_dict()})
        await websocket.close()
        return

    stream = RelayStream(relay, chat_request)
    try:
        async for kind, event in stream.events():
            await websocket.send_json(websocket_message(kind, event))
    except WebSocketDisconnect:
        logger.info("WebSocket client disconnected during streaming")
        return
    finally:
        stream.abort()

    await websocket.close()


@app.get("/history", response_model=HistoryResponse)
async def get_history(relay: ChatRelay = Depends(get_relay)) -> HistoryResponse:
    """Return the shared conversation as currently stored."""
    return HistoryResponse(
        messages=[Message(role=turn.role, content=turn.content) for turn in relay.snapshot()]
    )


@app.delete("/history", status_code=204)
async def clear_history(relay: ChatRelay = Depends(get_relay)) -> Response:
    """Clear the shared conversation."""
    relay.clear()
    return Response(status_code=204)


if __name__ == "__main__":
    import uvicorn
    logger.info(f"Starting LLM chat relay API on port {PORT}")
    uvicorn.run(app, host="0.0.0.0", port=PORT)
