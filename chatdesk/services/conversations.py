import uuid
from datetime import datetime, timedelta, timezone

import structlog
from sqlalchemy import Text, delete, func, or_, select, text
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from chatdesk.core.database import ConversationRow, MessageRow, translate_db_errors, utcnow
from chatdesk.core.exceptions import NotFoundError
from chatdesk.schemas.conversations import NEW_CONVERSATION_TITLE, ChatMessage, Conversation

logger = structlog.get_logger()

DEFAULT_PAGE_SIZE = 50


def _as_naive_utc(dt: datetime) -> datetime:
    if dt.tzinfo is None:
        return dt
    return dt.astimezone(timezone.utc).replace(tzinfo=None)


def _bumped(previous: datetime | None) -> datetime:
    """Current time, nudged past ``previous`` so updated_at never stalls or rewinds."""
    now = utcnow()
    if previous is not None and now <= previous:
        return previous + timedelta(microseconds=1)
    return now


def _message_from_row(row: MessageRow) -> ChatMessage:
    return ChatMessage(id=row.id, role=row.role, content=row.content, timestamp=row.timestamp)


def _conversation_from_row(row: ConversationRow, messages: list[ChatMessage] | None = None) -> Conversation:
    return Conversation(
        id=row.id,
        title=row.title,
        created_at=row.created_at,
        updated_at=row.updated_at,
        profile_id=row.profile_id,
        messages=messages or [],
    )


class ConversationService:
    """Durable storage for conversations and their messages."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession], page_size: int = DEFAULT_PAGE_SIZE):
        self._session_factory = session_factory
        self.page_size = page_size

    async def create_conversation(
        self, title: str = NEW_CONVERSATION_TITLE, profile_id: str | None = None
    ) -> Conversation:
        now = utcnow()
        row = ConversationRow(
            id=str(uuid.uuid4()),
            title=title,
            created_at=now,
            updated_at=now,
            profile_id=profile_id,
        )
        with translate_db_errors("create_conversation"):
            async with self._session_factory() as session:
                session.add(row)
                await session.commit()

        logger.debug("conversation_created", conversation_id=row.id, profile_id=profile_id)
        return _conversation_from_row(row)

    async def get_conversation(self, conversation_id: str) -> Conversation | None:
        """Load a conversation with its messages in timestamp order, or None."""
        with translate_db_errors("get_conversation"):
            async with self._session_factory() as session:
                row = await session.get(ConversationRow, conversation_id)
                if row is None:
                    return None
                messages = await self._load_messages(session, conversation_id)
                return _conversation_from_row(row, messages)

    async def list_conversations(self, limit: int | None = None, offset: int = 0) -> list[Conversation]:
        """Most recently updated first; messages are not loaded."""
        stmt = (
            select(ConversationRow)
            .order_by(ConversationRow.updated_at.desc())
            .limit(self.page_size if limit is None else limit)
            .offset(offset)
        )
        with translate_db_errors("list_conversations"):
            async with self._session_factory() as session:
                result = await session.execute(stmt)
                return [_conversation_from_row(row) for row in result.scalars().all()]

    async def update_conversation_title(self, conversation_id: str, title: str) -> None:
        with translate_db_errors("update_conversation_title"):
            async with self._session_factory() as session:
                async with session.begin():
                    row = await self._get_for_update(session, conversation_id)
                    row.title = title
                    row.updated_at = _bumped(row.updated_at)

    async def update_conversation_profile(self, conversation_id: str, profile_id: str | None) -> None:
        with translate_db_errors("update_conversation_profile"):
            async with self._session_factory() as session:
                async with session.begin():
                    row = await self._get_for_update(session, conversation_id)
                    row.profile_id = profile_id
                    row.updated_at = _bumped(row.updated_at)

    async def delete_conversation(self, conversation_id: str) -> None:
        """Delete a conversation; its messages go with it (ON DELETE CASCADE)."""
        with translate_db_errors("delete_conversation"):
            async with self._session_factory() as session:
                async with session.begin():
                    result = await session.execute(
                        delete(ConversationRow).where(ConversationRow.id == conversation_id)
                    )
                    if result.rowcount == 0:
                        raise NotFoundError(f"Conversation {conversation_id} not found.")
        logger.info("conversation_deleted", conversation_id=conversation_id)

    async def delete_all_conversations(self) -> int:
        """Clear the whole history. Returns the number of conversations removed."""
        with translate_db_errors("delete_all_conversations"):
            async with self._session_factory() as session:
                async with session.begin():
                    result = await session.execute(delete(ConversationRow))
        logger.info("conversation_history_cleared", count=result.rowcount)
        return result.rowcount

    async def add_message(self, message: ChatMessage, conversation_id: str) -> ChatMessage:
        """Insert a message and bump the conversation's updated_at in one transaction."""
        with translate_db_errors("add_message"):
            async with self._session_factory() as session:
                async with session.begin():
                    conv = await self._get_for_update(session, conversation_id)
                    session.add(
                        MessageRow(
                            id=message.id,
                            conversation_id=conversation_id,
                            role=message.role,
                            content=message.content,
                            timestamp=_as_naive_utc(message.timestamp),
                        )
                    )
                    conv.updated_at = _bumped(conv.updated_at)
        return message

    async def get_messages(self, conversation_id: str) -> list[ChatMessage]:
        with translate_db_errors("get_messages"):
            async with self._session_factory() as session:
                return await self._load_messages(session, conversation_id)

    async def delete_message(self, message_id: str) -> None:
        with translate_db_errors("delete_message"):
            async with self._session_factory() as session:
                async with session.begin():
                    result = await session.execute(delete(MessageRow).where(MessageRow.id == message_id))
                    if result.rowcount == 0:
                        raise NotFoundError(f"Message {message_id} not found.")

    async def search_conversations(self, query: str) -> list[Conversation]:
        """Case-insensitive substring match on titles or message content.

        An empty query is the same as ``list_conversations()``.
        """
        if not query:
            return await self.list_conversations()

        needle = query.casefold()
        content_matches = select(MessageRow.conversation_id).where(
            func.casefold(MessageRow.content, type_=Text).contains(needle, autoescape=True)
        )
        stmt = (
            select(ConversationRow)
            .where(
                or_(
                    func.casefold(ConversationRow.title, type_=Text).contains(needle, autoescape=True),
                    ConversationRow.id.in_(content_matches),
                )
            )
            .order_by(ConversationRow.updated_at.desc())
        )
        with translate_db_errors("search_conversations"):
            async with self._session_factory() as session:
                result = await session.execute(stmt)
                return [_conversation_from_row(row) for row in result.scalars().all()]

    async def count_conversations(self) -> int:
        with translate_db_errors("count_conversations"):
            async with self._session_factory() as session:
                count = await session.scalar(select(func.count()).select_from(ConversationRow))
                return count or 0

    # ── Helpers ──────────────────────────────────────────────────────────────

    async def _get_for_update(self, session: AsyncSession, conversation_id: str) -> ConversationRow:
        row = await session.get(ConversationRow, conversation_id)
        if row is None:
            raise NotFoundError(f"Conversation {conversation_id} not found.")
        return row

    async def _load_messages(self, session: AsyncSession, conversation_id: str) -> list[ChatMessage]:
        result = await session.execute(
            select(MessageRow)
            .where(MessageRow.conversation_id == conversation_id)
            .order_by(MessageRow.timestamp.asc(), text("messages.rowid"))
        )
        return [_message_from_row(row) for row in result.scalars().all()]
