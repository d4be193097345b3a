from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from dataclasses import dataclass

import httpx
import structlog

from chatdesk.config import Settings
from chatdesk.config import settings as default_settings
from chatdesk.core.database import build_engine, build_session_factory, close_db, init_db
from chatdesk.core.logging import configure_logging
from chatdesk.core.secrets import EncryptedFileSecretStore
from chatdesk.services.chat import ChatService
from chatdesk.services.conversations import ConversationService
from chatdesk.services.gateway import Gateway
from chatdesk.services.inference.base import AdapterTimeouts
from chatdesk.services.profiles import ProfileService
from chatdesk.services.registry import ProfileRegistry

logger = structlog.get_logger()


@dataclass
class ChatDeskApp:
    settings: Settings
    conversations: ConversationService
    profiles: ProfileService
    registry: ProfileRegistry
    gateway: Gateway
    chat: ChatService


@asynccontextmanager
async def open_app(settings: Settings | None = None) -> AsyncIterator[ChatDeskApp]:
    """Wire the stores, registry, gateway and chat service; tear down on exit."""
    settings = settings or default_settings
    configure_logging(settings.chatdesk_log_level)

    engine = build_engine(settings.resolved_db_url)
    http_client = httpx.AsyncClient()
    try:
        await init_db(engine)
        session_factory = build_session_factory(engine)

        secrets = EncryptedFileSecretStore(
            settings.resolved_secrets_path,
            settings.resolved_secrets_key_path,
            namespace=settings.chatdesk_secret_namespace,
        )
        gateway = Gateway(
            http_client=http_client,
            openai_timeouts=AdapterTimeouts(
                connect=settings.chatdesk_openai_connect_timeout,
                request=settings.chatdesk_openai_request_timeout,
                stream=settings.chatdesk_openai_stream_timeout,
            ),
            ollama_timeouts=AdapterTimeouts(
                connect=settings.chatdesk_ollama_connect_timeout,
                request=settings.chatdesk_ollama_request_timeout,
                stream=settings.chatdesk_ollama_stream_timeout,
            ),
        )
        conversations = ConversationService(session_factory, page_size=settings.chatdesk_page_size)
        profiles = ProfileService(session_factory)
        registry = ProfileRegistry(profiles, secrets, gateway)
        await registry.load()

        logger.info("chatdesk_started", db_url=settings.resolved_db_url)
        yield ChatDeskApp(
            settings=settings,
            conversations=conversations,
            profiles=profiles,
            registry=registry,
            gateway=gateway,
            chat=ChatService(conversations, registry, gateway),
        )
    finally:
        await http_client.aclose()
        await close_db(engine)
