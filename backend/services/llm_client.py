"""LLM Client for Groq API integration."""
import time
from typing import Callable, Dict, Iterator, List, Optional, Sequence
from groq import Groq
from groq import (
    APIError,
    APIResponseValidationError,
    APIStatusError,
    APITimeoutError,
    AuthenticationError,
    PermissionDeniedError,
    RateLimitError,
)
import logging

from config import GROQ_API_KEY, GROQ_BASE_URL, MODEL, REQUEST_TIMEOUT
from models.conversation import Turn
from services.errors import (
    BackendAuthError,
    BackendError,
    BackendProtocolError,
    BackendRateLimitError,
    BackendTimeoutError,
)

logger = logging.getLogger(__name__)

TokenSink = Callable[[str], None]

TIMEOUT_STATUS_CODES = {408, 504}


class LLMClient:
    """Client for interfacing with Groq chat completions."""

    def __init__(
        self,
        api_key: Optional[str] = None,
        model: Optional[str] = None,
        base_url: Optional[str] = None,
        timeout: Optional[float] = None
    ):
        """
        Initialize LLM client with Groq API key.

        Args:
            api_key: Groq API key (defaults to GROQ_API_KEY from environment)
            model: Model name (defaults to MODEL from environment)
            base_url: Alternate API endpoint (defaults to GROQ_BASE_URL)
            timeout: Per-request timeout in seconds (defaults to REQUEST_TIMEOUT)
        """
        self.api_key = api_key or GROQ_API_KEY
        if not self.api_key:
            raise ValueError("GROQ_API_KEY must be provided or set in environment")

        self.model = model or MODEL
        self.timeout = timeout or REQUEST_TIMEOUT
        self.client = Groq(
            api_key=self.api_key,
            base_url=base_url or GROQ_BASE_URL,
            timeout=self.timeout,
            max_retries=0
        )
        logger.info(f"LLMClient initialized successfully (model={self.model})")

    @staticmethod
    def build_messages(turns: Sequence[Turn]) -> List[Dict[str, str]]:
        """Convert turns to the chat completions message format."""
        return [turn.to_message() for turn in turns]

    def chat(self, turns: Sequence[Turn], max_tokens: int = 1024) -> str:
        """
        Generate a complete response for the conversation.

        Args:
            turns: Conversation to send, ending with the new user turn
            max_tokens: Maximum tokens to generate

        Returns:
            Generated text

        Raises:
            BackendError: Classified backend failure
        """
        start_time = time.time()

        try:
            logger.debug(f"Generating response with model: {self.model}")
            response = self.client.chat.completions.create(
                model=self.model,
                messages=self.build_messages(turns),
                max_tokens=max_tokens
            )
        except Exception as e:
            raise self._classify_error(e, start_time) from e

        latency_ms = int((time.time() - start_time) * 1000)

        if not response.choices or not response.choices[0].message.content:
            error = BackendProtocolError(
                "No response content in API response",
                {"model": self.model, "latency_ms": latency_ms}
            )
            logger.error(
                f"Protocol error: model={self.model}, latency={latency_ms}ms, empty response",
                extra={"error_code": error.code, "error_details": error.error.details}
            )
            raise error

        usage = response.usage
        if usage is not None:
            logger.info(
                f"Generated response: model={self.model}, "
                f"input_tokens={usage.prompt_tokens}, output_tokens={usage.completion_tokens}, "
                f"latency={latency_ms}ms"
            )
        else:
            logger.info(f"Generated response: model={self.model}, latency={latency_ms}ms")

        return response.choices[0].message.content

    def stream_chat(
        self,
        turns: Sequence[Turn],
        max_tokens: int,
        on_token: TokenSink
    ) -> str:
        """
        Stream a response, delivering each fragment to ``on_token``.

        Fragments reach the sink in generation order. If the sink raises,
        the HTTP stream is closed and the sink's exception propagates
        unchanged; no further fragments are delivered.

        Args:
            turns: Conversation to send, ending with the new user turn
            max_tokens: Maximum tokens to generate
            on_token: Called once per non-empty fragment

        Returns:
            Concatenation of all delivered fragments

        Raises:
            BackendError: Classified backend failure
        """
        start_time = time.time()

        try:
            logger.debug(f"Streaming response with model: {self.model}")
            stream = self.client.chat.completions.create(
                model=self.model,
                messages=self.build_messages(turns),
                max_tokens=max_tokens,
                stream=True
            )
        except Exception as e:
            raise self._classify_error(e, start_time) from e

        fragments: List[str] = []
        try:
            for content in self._iter_content(stream, start_time):
                fragments.append(content)
                try:
                    on_token(content)
                except Exception as e:
                    logger.info(f"Token sink failed, closing backend stream: {e}")
                    raise
        finally:
            stream.close()

        latency_ms = int((time.time() - start_time) * 1000)
        text = "".join(fragments)

        if not text:
            error = BackendProtocolError(
                "Stream ended without any content",
                {"model": self.model, "latency_ms": latency_ms}
            )
            logger.error(
                f"Protocol error: model={self.model}, latency={latency_ms}ms, empty stream",
                extra={"error_code": error.code, "error_details": error.error.details}
            )
            raise error

        logger.info(
            f"Streamed response: model={self.model}, fragments={len(fragments)}, "
            f"latency={latency_ms}ms"
        )
        return text

    def _iter_content(self, stream, start_time: float) -> Iterator[str]:
        """Yield non-empty content deltas, classifying read failures."""
        try:
            for chunk in stream:
                if not chunk.choices:
                    continue
                content = chunk.choices[0].delta.content
                if content:
                    yield content
        except Exception as e:
            raise self._classify_error(e, start_time) from e

    def _classify_error(self, e: Exception, start_time: float) -> BackendError:
        """
        Map a Groq SDK exception to the service error taxonomy and log it.

        Args:
            e: Exception raised by the SDK
            start_time: When the request started, for latency reporting

        Returns:
            BackendError subclass ready to raise
        """
        latency_ms = int((time.time() - start_time) * 1000)
        details = {
            "model": self.model,
            "latency_ms": latency_ms,
            "original_error": str(e)
        }

        if isinstance(e, RateLimitError):
            details["retry_after"] = 60  # Suggest retry after 60 seconds
            error = BackendRateLimitError(
                "Rate limit exceeded. Please try again in a few moments.", details
            )
        elif isinstance(e, (AuthenticationError, PermissionDeniedError)):
            error = BackendAuthError(
                "Authentication failed. Please check your API key.", details
            )
        elif isinstance(e, APITimeoutError) or (
            isinstance(e, APIStatusError) and e.status_code in TIMEOUT_STATUS_CODES
        ):
            error = BackendTimeoutError(
                f"LLM API timed out after {latency_ms}ms", details
            )
        elif isinstance(e, APIResponseValidationError):
            error = BackendProtocolError(
                "Malformed response from Groq API", details
            )
        elif isinstance(e, APIError):
            error = BackendError(f"Groq API error: {str(e)}", details)
        else:
            details["error_type"] = type(e).__name__
            error = BackendError(
                f"Unexpected error during generation: {str(e)}", details
            )

        logger.error(
            f"{type(error).__name__}: model={self.model}, latency={latency_ms}ms, error={e}",
            exc_info=True,
            extra={"error_code": error.code, "error_details": error.error.details}
        )
        return error
