"""Routes chat calls to the adapter implied by the active profile."""

from collections.abc import AsyncIterator
from dataclasses import dataclass
from enum import Enum

import httpx
import structlog

from chatdesk.core.exceptions import GatewayNotConfiguredError, ProviderError
from chatdesk.schemas.conversations import ChatMessage
from chatdesk.schemas.profiles import ModelParameters, Profile
from chatdesk.services.inference.base import AdapterTimeouts, ProviderAdapter
from chatdesk.services.inference.ollama_client import OLLAMA_MODEL_PREFIX, OllamaAdapter
from chatdesk.services.inference.openai_client import OpenAICompatibleAdapter

logger = structlog.get_logger()


class ProviderKind(str, Enum):
    OPENAI_COMPATIBLE = "openai_compatible"
    OLLAMA = "ollama"


@dataclass(frozen=True)
class ProviderTarget:
    kind: ProviderKind
    model: str


def resolve_provider(model_name: str) -> ProviderTarget:
    """``ollama:<model>`` (case-sensitive prefix) is Ollama; anything else is OpenAI-compatible."""
    if model_name.startswith(OLLAMA_MODEL_PREFIX):
        return ProviderTarget(ProviderKind.OLLAMA, model_name[len(OLLAMA_MODEL_PREFIX):])
    return ProviderTarget(ProviderKind.OPENAI_COMPATIBLE, model_name)


@dataclass(frozen=True)
class _AppliedProfile:
    endpoint: str
    secret: str
    target: ProviderTarget


class Gateway:
    """Holds one configured adapter and dispatches send/stream/probe to it.

    The gateway owns the shared ``httpx.AsyncClient`` unless one is passed in.
    """

    def __init__(
        self,
        http_client: httpx.AsyncClient | None = None,
        openai_timeouts: AdapterTimeouts | None = None,
        ollama_timeouts: AdapterTimeouts | None = None,
    ):
        self._owns_client = http_client is None
        self._client = http_client or httpx.AsyncClient()
        self.openai_timeouts = openai_timeouts or AdapterTimeouts()
        self.ollama_timeouts = ollama_timeouts or AdapterTimeouts()
        self._adapter: ProviderAdapter | None = None
        self._applied: _AppliedProfile | None = None
        self._parameters = ModelParameters()
        self._ollama_endpoint: str | None = None
        self.ollama_models: list[str] = []

    @property
    def adapter(self) -> ProviderAdapter | None:
        return self._adapter

    @property
    def target(self) -> ProviderTarget | None:
        return self._applied.target if self._applied else None

    def build_adapter(self, endpoint: str, secret: str | None, model_name: str) -> ProviderAdapter:
        """Adapter for an endpoint/secret/model triple, sharing the gateway's client."""
        target = resolve_provider(model_name)
        if target.kind is ProviderKind.OLLAMA:
            return OllamaAdapter(endpoint, target.model, http_client=self._client, timeouts=self.ollama_timeouts)
        return OpenAICompatibleAdapter(
            endpoint,
            target.model,
            api_key=secret,
            http_client=self._client,
            timeouts=self.openai_timeouts,
        )

    async def configure(self, profile: Profile, secret: str | None) -> ProviderAdapter:
        """Apply a profile. Re-applying identical settings keeps the current adapter."""
        applied = _AppliedProfile(profile.api_endpoint, secret or "", resolve_provider(profile.model_name))
        self._parameters = profile.parameters
        if self._adapter is not None and applied == self._applied:
            return self._adapter

        self._adapter = self.build_adapter(profile.api_endpoint, secret, profile.model_name)
        self._applied = applied
        logger.info(
            "gateway_configured",
            provider=applied.target.kind.value,
            model=applied.target.model,
            endpoint=profile.api_endpoint,
        )

        if applied.target.kind is ProviderKind.OLLAMA and profile.api_endpoint != self._ollama_endpoint:
            self._ollama_endpoint = profile.api_endpoint
            try:
                await self.list_ollama_models()
            except ProviderError as e:
                logger.warning("ollama_model_refresh_failed", endpoint=profile.api_endpoint, kind=e.kind.value)
                self.ollama_models = []
        return self._adapter

    async def send_message(self, messages: list[ChatMessage]) -> ChatMessage:
        return await self._require_adapter().send(messages, self._parameters)

    def stream_message(self, messages: list[ChatMessage]) -> AsyncIterator[str]:
        return self._require_adapter().stream(messages, self._parameters)

    async def test_connection(self) -> bool:
        return await self._require_adapter().probe()

    async def probe(self, endpoint: str, secret: str | None, model_name: str) -> bool:
        """Reachability check for unsaved settings; the configured adapter is untouched."""
        return await self.build_adapter(endpoint, secret, model_name).probe()

    async def list_ollama_models(self, endpoint: str | None = None) -> list[str]:
        """Query ``/api/tags`` and return the names prefixed with ``ollama:``."""
        endpoint = endpoint or self._ollama_endpoint
        if endpoint is None:
            raise GatewayNotConfiguredError("No Ollama endpoint has been configured.")
        adapter = OllamaAdapter(endpoint, "", http_client=self._client, timeouts=self.ollama_timeouts)
        self.ollama_models = [f"{OLLAMA_MODEL_PREFIX}{name}" for name in await adapter.list_models()]
        return self.ollama_models

    async def close(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    def _require_adapter(self) -> ProviderAdapter:
        if self._adapter is None:
            raise GatewayNotConfiguredError()
        return self._adapter
