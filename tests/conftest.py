import httpx
import pytest
import pytest_asyncio
from httpx import ASGITransport

from chatdesk.core.database import Base, build_engine, build_session_factory
from chatdesk.core.secrets import InMemorySecretStore
from chatdesk.services.conversations import ConversationService
from chatdesk.services.gateway import Gateway
from chatdesk.services.profiles import ProfileService
from chatdesk.services.registry import ProfileRegistry
from tests.mocks.fake_ollama import app as fake_ollama_app
from tests.mocks.fake_openai import app as fake_openai_app

OPENAI_BASE = "http://fake-openai"
OLLAMA_BASE = "http://fake-ollama"


@pytest_asyncio.fixture
async def db_engine():
    """In-memory SQLite engine for tests (foreign keys on)."""
    engine = build_engine("sqlite+aiosqlite://")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(db_engine):
    return build_session_factory(db_engine)


@pytest.fixture
def conversation_service(session_factory):
    return ConversationService(session_factory, page_size=50)


@pytest.fixture
def profile_service(session_factory):
    return ProfileService(session_factory)


@pytest.fixture
def secret_store():
    return InMemorySecretStore()


class _RoutingTransport(httpx.AsyncBaseTransport):
    """Send each request to the fake server matching its host."""

    def __init__(self):
        self._routes = {
            "fake-openai": ASGITransport(app=fake_openai_app),
            "fake-ollama": ASGITransport(app=fake_ollama_app),
        }

    async def handle_async_request(self, request: httpx.Request) -> httpx.Response:
        transport = self._routes.get(request.url.host)
        if transport is None:
            raise httpx.ConnectError(f"No route to {request.url.host}", request=request)
        return await transport.handle_async_request(request)


@pytest_asyncio.fixture
async def fake_http_client():
    """HTTP client wired to the in-process fake OpenAI and Ollama servers."""
    client = httpx.AsyncClient(transport=_RoutingTransport())
    yield client
    await client.aclose()


@pytest.fixture
def gateway(fake_http_client):
    return Gateway(http_client=fake_http_client)


@pytest_asyncio.fixture
async def registry(profile_service, secret_store, gateway):
    """Loaded registry: holds the factory default profile."""
    registry = ProfileRegistry(profile_service, secret_store, gateway)
    await registry.load()
    return registry
