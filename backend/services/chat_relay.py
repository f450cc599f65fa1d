"""
Chat relay between callers and the LLM backend.

One call to ``process_chat`` or ``process_chat_stream`` handles one request:
validate the caller's messages, snapshot the shared history, record the new
user turn, call the backend, then record the assistant reply.
"""
import logging
from typing import Callable, List, Optional, Sequence

from models.api import ChatRequest
from models.conversation import Turn, USER, ASSISTANT, VALID_ROLES
from services.errors import ValidationError
from services.history_store import HistoryStore
from services.token_cache import TokenCache

logger = logging.getLogger(__name__)


def validate_request(request: ChatRequest) -> Turn:
    """
    Check caller input and return the new user turn.

    Only the final message is a new contribution; the rest must still be
    well formed.

    Args:
        request: Caller-supplied chat request

    Returns:
        Turn built from the last message

    Raises:
        ValidationError: Empty list, unknown role, empty content, or a
            final message that is not from the user
    """
    messages = request.messages
    if not messages:
        raise ValidationError("messages cannot be empty", ValidationError.EMPTY_INPUT)

    for i, message in enumerate(messages):
        if message.role not in VALID_ROLES:
            raise ValidationError(
                f"invalid role '{message.role}' at index {i}: must be 'user' or 'assistant'",
                ValidationError.INVALID_ROLE,
                {"index": i}
            )
        if not message.content:
            raise ValidationError(
                f"empty content at index {i}",
                ValidationError.EMPTY_CONTENT,
                {"index": i}
            )

    last = messages[-1]
    if last.role != USER:
        raise ValidationError(
            f"last message must be from user, got '{last.role}'",
            ValidationError.NOT_USER_TERMINATED,
            {"index": len(messages) - 1}
        )

    return Turn(role=last.role, content=last.content)


class ChatRelay:
    """Relays chat requests to the backend and maintains shared history."""

    def __init__(
        self,
        history: HistoryStore,
        llm_client,
        token_cache: Optional[TokenCache] = None,
        max_tokens: int = 1024
    ):
        """
        Args:
            history: Shared conversation store
            llm_client: Backend client exposing ``chat`` and ``stream_chat``
            token_cache: Optional prompt token counter/cache
            max_tokens: Generation budget passed to the backend
        """
        self.history = history
        self.llm_client = llm_client
        self.token_cache = token_cache
        self.max_tokens = max_tokens

    def process_chat(self, request: ChatRequest) -> str:
        """
        Relay a request and return the complete response.

        Raises:
            ValidationError: Caller input rejected before any history change
            BackendError: Backend failure; the user turn stays in history
        """
        outbound = self._begin(request)
        text = self.llm_client.chat(outbound, self.max_tokens)
        return self._complete(text)

    def process_chat_stream(self, request: ChatRequest, on_token: Callable[[str], None]) -> str:
        """
        Relay a request, forwarding each generated fragment to ``on_token``.

        Fragments are passed through unmodified and in order, and their
        concatenation equals the returned text. An exception raised by
        ``on_token`` aborts the backend call and propagates to the caller;
        no assistant turn is recorded in that case.

        Raises:
            ValidationError: Caller input rejected before any history change
            BackendError: Backend failure; the user turn stays in history
        """
        outbound = self._begin(request)
        text = self.llm_client.stream_chat(outbound, self.max_tokens, on_token)
        return self._complete(text)

    def _begin(self, request: ChatRequest) -> List[Turn]:
        try:
            user_turn = validate_request(request)
        except ValidationError as e:
            logger.warning(f"Rejected chat request: {e.message}")
            raise

        history = self.history.snapshot()
        self.history.append(user_turn)
        outbound = history + [user_turn]

        if self.token_cache is not None:
            prompt_tokens = self.token_cache.lookup_or_count(outbound)
            if prompt_tokens is not None:
                logger.info(f"Prompt tokens: {prompt_tokens} across {len(outbound)} messages")

        return outbound

    def _complete(self, text: str) -> str:
        self.history.append(Turn(role=ASSISTANT, content=text))
        return text

    def snapshot(self) -> Sequence[Turn]:
        return self.history.snapshot()

    def clear(self) -> None:
        self.history.clear()
