"""Data models for the LLM chat relay."""
from .conversation import Turn, USER, ASSISTANT, VALID_ROLES
from .api import Message, ChatRequest, ChatResponse, HistoryResponse

__all__ = [
    "Turn",
    "USER",
    "ASSISTANT",
    "VALID_ROLES",
    "Message",
    "ChatRequest",
    "ChatResponse",
    "HistoryResponse",
]
