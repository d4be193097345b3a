import pytest
import pytest_asyncio

from chatdesk.core.exceptions import NotFoundError, ProviderError, ProviderErrorKind
from chatdesk.services.chat import ChatService
from tests.conftest import OLLAMA_BASE, OPENAI_BASE
from tests.mocks import fake_ollama, fake_openai


@pytest_asyncio.fixture
async def chat(conversation_service, registry, gateway):
    await registry.create("Fake OpenAI", f"{OPENAI_BASE}/v1", "sk-test", "gpt-4o-mini", is_default=True)
    return ChatService(conversation_service, registry, gateway)


async def test_start_conversation_binds_selected_profile(chat, registry):
    conv = await chat.start_conversation()
    assert conv.title == "New Conversation"
    assert conv.profile_id == registry.selected.id


async def test_send_persists_both_messages_and_titles(chat, conversation_service):
    conv = await chat.start_conversation()

    reply = await chat.send(conv.id, "What is the capital of France, in one word?")

    assert reply.content == fake_openai.REPLY
    loaded = await conversation_service.get_conversation(conv.id)
    assert [(m.role, m.content) for m in loaded.messages] == [
        ("user", "What is the capital of France, in one word?"),
        ("assistant", fake_openai.REPLY),
    ]
    assert loaded.title == "What is the capital of France,..."


async def test_send_includes_history(chat):
    conv = await chat.start_conversation()
    await chat.send(conv.id, "first")
    await chat.send(conv.id, "second")

    sent = fake_openai.requests_seen[-1]["body"]["messages"]
    assert [m["content"] for m in sent] == ["first", fake_openai.REPLY, "second"]


async def test_custom_title_is_kept(chat, conversation_service):
    conv = await chat.start_conversation("Research")
    await chat.send(conv.id, "hello")
    assert (await conversation_service.get_conversation(conv.id)).title == "Research"


async def test_empty_message_rejected(chat):
    conv = await chat.start_conversation()
    with pytest.raises(ValueError):
        await chat.send(conv.id, "   ")


async def test_unknown_conversation(chat):
    with pytest.raises(NotFoundError):
        await chat.send("missing", "hello")


async def test_provider_error_propagates(chat, registry, conversation_service):
    await registry.update(registry.selected.id, api_key="sk-invalid")
    conv = await chat.start_conversation()

    with pytest.raises(ProviderError) as exc:
        await chat.send(conv.id, "hello")

    assert exc.value.kind is ProviderErrorKind.AUTHENTICATION_FAILED
    assert not exc.value.retryable
    messages = (await conversation_service.get_conversation(conv.id)).messages
    assert [m.role for m in messages] == ["user"]


async def test_stream_persists_joined_reply(chat, conversation_service):
    conv = await chat.start_conversation()
    chunks = [c async for c in chat.stream(conv.id, "hello")]

    assert chunks == fake_openai.STREAM_TOKENS
    messages = (await conversation_service.get_conversation(conv.id)).messages
    assert messages[-1].role == "assistant"
    assert messages[-1].content == "".join(fake_openai.STREAM_TOKENS)


async def test_abandoned_stream_persists_no_reply(chat, conversation_service):
    conv = await chat.start_conversation()
    stream = chat.stream(conv.id, "hello")
    assert await stream.__anext__() == fake_openai.STREAM_TOKENS[0]
    await stream.aclose()

    messages = (await conversation_service.get_conversation(conv.id)).messages
    assert [m.role for m in messages] == ["user"]


async def test_switch_profile_to_ollama(chat, registry, conversation_service):
    conv = await chat.start_conversation()
    local = await registry.create("Local", OLLAMA_BASE, "", "ollama:llama2")

    await chat.switch_profile(conv.id, local.id)

    assert registry.selected.id == local.id
    assert (await conversation_service.get_conversation(conv.id)).profile_id == local.id
    reply = await chat.send(conv.id, "hello")
    assert reply.content == fake_ollama.REPLY
    assert fake_ollama.requests_seen[-1]["body"]["prompt"] == "user: hello"
