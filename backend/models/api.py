"""Request and response models for the chat API."""
from typing import List

from pydantic import BaseModel, Field


class Message(BaseModel):
    """A role/content pair as supplied by the caller.

    Roles and content are not constrained here; ChatRelay validates them.
    """
    role: str
    content: str


class ChatRequest(BaseModel):
    """Body of POST /chat and the first WebSocket message."""
    messages: List[Message] = Field(default_factory=list)
    stream: bool = False


class ChatResponse(BaseModel):
    """Non-streaming chat response."""
    response: str


class HistoryResponse(BaseModel):
    """Snapshot of the shared conversation."""
    messages: List[Message]
