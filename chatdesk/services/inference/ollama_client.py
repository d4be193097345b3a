import json
from collections.abc import AsyncIterator

import structlog

from chatdesk.core.exceptions import ProviderError, ProviderErrorKind
from chatdesk.schemas.conversations import ASSISTANT_ROLE, ChatMessage
from chatdesk.schemas.profiles import ModelParameters
from chatdesk.services.inference.base import (
    ProviderAdapter,
    StreamDeadline,
    raise_for_status,
    translate_http_errors,
    validate_endpoint,
)

logger = structlog.get_logger()

OLLAMA_MODEL_PREFIX = "ollama:"


def ollama_root(endpoint: str) -> str:
    """Server root of an Ollama endpoint; everything from an ``/api`` path segment on is dropped."""
    url = validate_endpoint(endpoint)
    segments = url.path.split("/")
    if "api" in segments:
        segments = segments[: segments.index("api")]
    path = "/".join(segments)
    return f"{url.scheme}://{url.netloc.decode('ascii')}{path.rstrip('/')}"


def build_prompt(messages: list[ChatMessage]) -> str:
    """Flatten a chat history into one ``role: content`` transcript."""
    return "\n".join(f"{m.role}: {m.content}" for m in messages)


def build_options(parameters: ModelParameters) -> dict:
    return {
        "temperature": parameters.temperature,
        "num_predict": parameters.max_tokens,
        "top_p": parameters.top_p,
        "frequency_penalty": parameters.frequency_penalty,
        "presence_penalty": parameters.presence_penalty,
    }


def _parse_line(line: str) -> dict:
    try:
        data = json.loads(line)
    except ValueError as e:
        raise ProviderError(
            ProviderErrorKind.INVALID_RESPONSE,
            message="Invalid response from server: malformed stream line.",
            details={"line": line[:200]},
        ) from e
    if not isinstance(data, dict):
        raise ProviderError(ProviderErrorKind.INVALID_RESPONSE, details={"line": line[:200]})
    if "error" in data:
        raise ProviderError(ProviderErrorKind.UNKNOWN, message=str(data["error"]), details={"error": data["error"]})
    return data


class OllamaAdapter(ProviderAdapter):
    """Ollama ``/api/generate`` (single prompt) and ``/api/tags`` protocol. No auth header."""

    @property
    def base_url(self) -> str:
        return ollama_root(self.endpoint)

    def build_payload(self, messages: list[ChatMessage], parameters: ModelParameters, stream: bool = False) -> dict:
        return {
            "model": self.model_name,
            "prompt": build_prompt(messages),
            "stream": stream,
            "options": build_options(parameters),
        }

    async def send(self, messages: list[ChatMessage], parameters: ModelParameters) -> ChatMessage:
        url = f"{self.base_url}/api/generate"
        payload = self.build_payload(messages, parameters)

        with translate_http_errors(url):
            response = await self._client.post(url, json=payload, timeout=self.timeouts.httpx_timeout)
        await raise_for_status(response, url)

        try:
            data = response.json()
        except ValueError as e:
            raise ProviderError(ProviderErrorKind.INVALID_RESPONSE) from e
        if isinstance(data, dict) and "error" in data:
            raise ProviderError(ProviderErrorKind.UNKNOWN, message=str(data["error"]))
        if not isinstance(data, dict) or not isinstance(data.get("response"), str):
            raise ProviderError(ProviderErrorKind.INVALID_RESPONSE, message="Ollama reply has no 'response' field.")
        return ChatMessage(role=ASSISTANT_ROLE, content=data["response"])

    async def stream(self, messages: list[ChatMessage], parameters: ModelParameters) -> AsyncIterator[str]:
        """Yield the ``response`` field of each line-delimited JSON object until ``done``."""
        url = f"{self.base_url}/api/generate"
        payload = self.build_payload(messages, parameters, stream=True)
        deadline = StreamDeadline(self.timeouts.stream)

        with translate_http_errors(url):
            async with self._client.stream(
                "POST", url, json=payload, timeout=self.timeouts.httpx_timeout
            ) as response:
                await raise_for_status(response, url)
                async for line in deadline.lines(response):
                    if not line.strip():
                        continue
                    data = _parse_line(line)
                    chunk = data.get("response")
                    if isinstance(chunk, str) and chunk:
                        yield chunk
                    if data.get("done"):
                        return

    async def list_models(self) -> list[str]:
        """Model names from ``/api/tags`` (unprefixed)."""
        url = f"{self.base_url}/api/tags"
        with translate_http_errors(url):
            response = await self._client.get(url, timeout=self.timeouts.httpx_timeout)
        await raise_for_status(response, url)

        try:
            data = response.json()
        except ValueError as e:
            raise ProviderError(ProviderErrorKind.INVALID_RESPONSE) from e
        if not isinstance(data, dict):
            raise ProviderError(ProviderErrorKind.INVALID_RESPONSE)

        names = []
        for m in data.get("models", []):
            name = (m.get("name") or m.get("model")) if isinstance(m, dict) else None
            if name:
                names.append(name)
        logger.info("ollama_models_listed", endpoint=self.base_url, count=len(names))
        return names

    async def probe(self) -> bool:
        """Check if Ollama is responsive: ``/api/tags`` first, then the server root."""
        try:
            base = self.base_url
        except ProviderError:
            return False

        for url in (f"{base}/api/tags", f"{base}/"):
            try:
                with translate_http_errors(url):
                    response = await self._client.get(url, timeout=self.timeouts.httpx_timeout)
            except ProviderError as e:
                logger.info("provider_probe_failed", endpoint=url, kind=e.kind.value)
                return False
            if response.status_code == 200:
                return True
        return False
