from collections.abc import AsyncIterator
from contextlib import aclosing

import structlog

from chatdesk.core.exceptions import GatewayNotConfiguredError, NotFoundError
from chatdesk.schemas.conversations import (
    ASSISTANT_ROLE,
    NEW_CONVERSATION_TITLE,
    USER_ROLE,
    ChatMessage,
    Conversation,
    derive_title,
)
from chatdesk.services.conversations import ConversationService
from chatdesk.services.gateway import Gateway
from chatdesk.services.registry import ProfileRegistry

logger = structlog.get_logger()


class ChatService:
    """User message in, assistant message out, both persisted."""

    def __init__(self, conversations: ConversationService, registry: ProfileRegistry, gateway: Gateway):
        self._conversations = conversations
        self._registry = registry
        self._gateway = gateway

    async def start_conversation(self, title: str = NEW_CONVERSATION_TITLE) -> Conversation:
        selected = self._registry.selected
        return await self._conversations.create_conversation(title, selected.id if selected else None)

    async def send(self, conversation_id: str, content: str) -> ChatMessage:
        """Persist the user message, send the whole history, persist and return the reply."""
        history = await self._prepare(conversation_id, content)
        reply = await self._gateway.send_message(history)
        await self._conversations.add_message(reply, conversation_id)
        logger.info("chat_reply_received", conversation_id=conversation_id, length=len(reply.content))
        return reply

    async def stream(self, conversation_id: str, content: str) -> AsyncIterator[str]:
        """Yield reply chunks; the joined reply is stored once the stream completes.

        Closing or cancelling the iterator early stores nothing.
        """
        history = await self._prepare(conversation_id, content)
        chunks: list[str] = []
        async with aclosing(self._gateway.stream_message(history)) as stream:
            async for chunk in stream:
                chunks.append(chunk)
                yield chunk

        reply = ChatMessage(role=ASSISTANT_ROLE, content="".join(chunks))
        await self._conversations.add_message(reply, conversation_id)
        logger.info("chat_stream_completed", conversation_id=conversation_id, chunks=len(chunks))

    async def switch_profile(self, conversation_id: str, profile_id: str) -> None:
        """Select a profile and bind the conversation to it."""
        await self._registry.select(profile_id)
        await self._conversations.update_conversation_profile(conversation_id, profile_id)

    async def _prepare(self, conversation_id: str, content: str) -> list[ChatMessage]:
        if not content.strip():
            raise ValueError("Message content must not be empty.")

        conversation = await self._conversations.get_conversation(conversation_id)
        if conversation is None:
            raise NotFoundError(f"Conversation {conversation_id} not found.")

        profile = self._registry.selected
        if profile is None:
            raise GatewayNotConfiguredError("No profile is selected.")
        await self._gateway.configure(profile, await self._registry.get_secret(profile.id))

        message = ChatMessage(role=USER_ROLE, content=content)
        await self._conversations.add_message(message, conversation_id)
        history = conversation.messages + [message]

        if conversation.title == NEW_CONVERSATION_TITLE:
            title = derive_title(history)
            if title != conversation.title:
                await self._conversations.update_conversation_title(conversation_id, title)
        return history
