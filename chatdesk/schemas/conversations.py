import uuid
from datetime import datetime, timezone

from pydantic import BaseModel, Field

USER_ROLE = "user"
ASSISTANT_ROLE = "assistant"

NEW_CONVERSATION_TITLE = "New Conversation"
TITLE_MAX_LENGTH = 30


def _utcnow() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


class ChatMessage(BaseModel):
    """A single message; immutable once created."""

    model_config = {"frozen": True}

    role: str = Field(description="Message role: user, assistant, or system")
    content: str
    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    timestamp: datetime = Field(default_factory=_utcnow)

    def api_representation(self) -> dict[str, str]:
        return {"role": self.role, "content": self.content}


class Conversation(BaseModel):
    id: str
    title: str
    created_at: datetime
    updated_at: datetime
    profile_id: str | None = None
    messages: list[ChatMessage] = Field(default_factory=list)


def derive_title(messages: list[ChatMessage]) -> str:
    """Title from the first user message: 30 chars, plus "..." when cut."""
    for message in messages:
        if message.role == USER_ROLE:
            content = message.content
            if len(content) <= TITLE_MAX_LENGTH:
                return content
            return content[:TITLE_MAX_LENGTH] + "..."
    return NEW_CONVERSATION_TITLE
