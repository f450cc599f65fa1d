"""Services for the LLM chat relay."""
from .errors import (
    ChatServiceError,
    ValidationError,
    BackendError,
    BackendAuthError,
    BackendRateLimitError,
    BackendTimeoutError,
    BackendProtocolError,
    InternalError,
)
from .history_store import HistoryStore
from .token_cache import TokenCache, TokenCounter, RedisCacheStore, NullCacheStore, derive_key
from .llm_client import LLMClient
from .chat_relay import ChatRelay, validate_request

__all__ = [
    'ChatServiceError', 'ValidationError', 'BackendError', 'BackendAuthError',
    'BackendRateLimitError', 'BackendTimeoutError', 'BackendProtocolError', 'InternalError',
    'HistoryStore', 'TokenCache', 'TokenCounter', 'RedisCacheStore', 'NullCacheStore',
    'derive_key', 'LLMClient', 'ChatRelay', 'validate_request',
]
