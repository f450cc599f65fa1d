"""Conversation data models."""
from dataclasses import dataclass
from typing import Dict

USER = "user"
ASSISTANT = "assistant"
VALID_ROLES = frozenset({USER, ASSISTANT})


@dataclass(frozen=True)
class Turn:
    """A single message in the shared conversation."""
    role: str
    content: str

    def to_message(self) -> Dict[str, str]:
        """Return the role/content mapping sent to the chat completions API."""
        return {"role": self.role, "content": self.content}
