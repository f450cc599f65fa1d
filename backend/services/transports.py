"""
Transport adapters for streamed chat responses.

The relay is synchronous and delivers fragments through a callback. FastAPI
handlers are async, so each streaming request runs the relay in a worker
thread and passes fragments back to the event loop through a FIFO queue.
"""
import asyncio
import json
import logging
import threading
from typing import Any, AsyncIterator, Dict, Optional, Tuple

from starlette.concurrency import run_in_threadpool

from models.api import ChatRequest
from services.errors import ChatServiceError, InternalError

logger = logging.getLogger(__name__)

TOKEN = "token"
DONE = "done"
ERROR = "error"

SSE_HEADERS = {
    "Cache-Control": "no-cache",
    "Connection": "keep-alive",
    "X-Accel-Buffering": "no"  # Disable buffering in nginx
}


class StreamAborted(Exception):
    """Raised by a token sink once the caller has gone away."""


class RelayStream:
    """
    Runs ``relay.process_chat_stream`` in a worker thread and exposes its
    output as an async iterator of ``(kind, payload)`` events.

    Events are ``(TOKEN, fragment)`` zero or more times, followed by exactly
    one ``(DONE, text)`` or ``(ERROR, ChatServiceError)``.
    """

    def __init__(self, relay, request: ChatRequest):
        self.relay = relay
        self.request = request
        self._aborted = threading.Event()
        self._queue: "Optional[asyncio.Queue[Tuple[str, Any]]]" = None
        self._loop = None
        self._task = None

    def abort(self) -> None:
        """Stop delivery; the next fragment makes the sink raise StreamAborted."""
        self._aborted.set()

    def _on_token(self, fragment: str) -> None:
        if self._aborted.is_set():
            raise StreamAborted("client disconnected")
        self._loop.call_soon_threadsafe(self._queue.put_nowait, (TOKEN, fragment))

    async def _run(self) -> None:
        try:
            text = await run_in_threadpool(
                self.relay.process_chat_stream, self.request, self._on_token
            )
        except StreamAborted:
            logger.info("Stream aborted by client")
        except ChatServiceError as e:
            await self._queue.put((ERROR, e))
        except Exception as e:
            logger.error(f"Unexpected error during streaming: {e}", exc_info=True)
            await self._queue.put((ERROR, InternalError(f"Internal server error: {str(e)}")))
        else:
            await self._queue.put((DONE, text))

    async def events(self) -> AsyncIterator[Tuple[str, Any]]:
        self._loop = asyncio.get_running_loop()
        self._queue = asyncio.Queue()
        self._task = asyncio.ensure_future(self._run())
        try:
            while True:
                kind, payload = await self._queue.get()
                yield kind, payload
                if kind != TOKEN:
                    return
        finally:
            # Reached on normal completion or when the consumer stops early
            self.abort()


def format_sse(payload) -> bytes:
    """Frame a payload as one Server-Sent Events message."""
    if not isinstance(payload, str):
        payload = json.dumps(payload)
    return f"data: {payload}\n\n".encode("utf-8")


async def sse_events(relay, request: ChatRequest) -> AsyncIterator[bytes]:
    """Produce the SSE body for a streaming chat request."""
    async for kind, payload in RelayStream(relay, request).events():
        if kind == TOKEN:
            yield format_sse({"type": TOKEN, "content": payload})
        elif kind == DONE:
            yield format_sse({"type": DONE, "response": payload})
            yield format_sse("[DONE]")
        else:
            logger.error(f"Streaming failed: {payload.message}")
            yield format_sse({"type": ERROR, "error": payload.to_dict()})


def websocket_message(kind: str, payload) -> Dict[str, Any]:
    """Build the JSON message sent over the WebSocket for one event."""
    if kind == TOKEN:
        return {"token": payload}
    if kind == DONE:
        return {"done": True, "response": payload}
    return {"error": payload.to_dict()}
