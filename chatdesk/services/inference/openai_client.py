import json
from collections.abc import AsyncIterator

import httpx
import structlog

from chatdesk.core.exceptions import ProviderError, ProviderErrorKind
from chatdesk.schemas.conversations import ASSISTANT_ROLE, USER_ROLE, ChatMessage
from chatdesk.schemas.profiles import ModelParameters
from chatdesk.services.inference.base import (
    AdapterTimeouts,
    ProviderAdapter,
    StreamDeadline,
    raise_for_status,
    translate_http_errors,
    validate_endpoint,
)

logger = structlog.get_logger()

SSE_DATA_PREFIX = "data:"
SSE_DONE = "[DONE]"
PROBE_MESSAGE = "Hello"
PROBE_MAX_TOKENS = 10


def chat_completions_url(endpoint: str) -> str:
    """Append ``/chat/completions`` to bare ``/v1`` base URLs (OpenRouter style)."""
    stripped = endpoint.strip().rstrip("/")
    if stripped.endswith("/v1"):
        return f"{stripped}/chat/completions"
    return endpoint.strip()


def extract_content(response: httpx.Response) -> str:
    """Pull the reply text out of a non-streaming completion body.

    Nonstandard providers (proxies, completion-style servers) are tolerated:
    when no known field is present the whole body is treated as the reply.
    """
    body = response.text
    if not body.strip():
        raise ProviderError(ProviderErrorKind.INVALID_RESPONSE, message="Empty response from server.")
    try:
        data = response.json()
    except ValueError:
        return body

    if isinstance(data, dict):
        choices = data.get("choices")
        if isinstance(choices, list) and choices and isinstance(choices[0], dict):
            first = choices[0]
            message = first.get("message")
            if isinstance(message, dict) and isinstance(message.get("content"), str):
                return message["content"]
            if isinstance(first.get("text"), str):
                return first["text"]
        for key in ("content", "response"):
            if isinstance(data.get(key), str):
                return data[key]

    logger.debug("completion_content_fallback", length=len(body))
    return body


def parse_sse_line(line: str) -> str | None:
    """Return the ``data:`` payload of an SSE line, or None for any other line."""
    if not line.startswith(SSE_DATA_PREFIX):
        return None
    payload = line[len(SSE_DATA_PREFIX):]
    return payload[1:] if payload.startswith(" ") else payload


def delta_content(payload: str) -> str:
    """Text of ``choices[0].delta.content`` in one stream event ("" when absent)."""
    try:
        event = json.loads(payload)
    except ValueError as e:
        raise ProviderError(
            ProviderErrorKind.INVALID_RESPONSE,
            message="Invalid response from server: malformed stream event.",
            details={"payload": payload[:200]},
        ) from e
    if not isinstance(event, dict):
        raise ProviderError(ProviderErrorKind.INVALID_RESPONSE, details={"payload": payload[:200]})

    if "error" in event:
        error = event["error"]
        message = error.get("message") if isinstance(error, dict) else str(error)
        raise ProviderError(ProviderErrorKind.UNKNOWN, message=message or None, details={"error": error})

    choices = event.get("choices") or []
    if not choices or not isinstance(choices[0], dict):
        return ""
    delta = choices[0].get("delta") or {}
    content = delta.get("content") if isinstance(delta, dict) else None
    return content if isinstance(content, str) else ""


class OpenAICompatibleAdapter(ProviderAdapter):
    """``chat/completions`` JSON + SSE protocol (OpenAI, OpenRouter, vLLM, LM Studio, ...)."""

    def __init__(
        self,
        endpoint: str,
        model_name: str,
        api_key: str | None = None,
        http_client: httpx.AsyncClient | None = None,
        timeouts: AdapterTimeouts | None = None,
    ):
        super().__init__(endpoint, model_name, http_client=http_client, timeouts=timeouts)
        self.url = chat_completions_url(endpoint)
        self._headers = {"Authorization": f"Bearer {api_key}"} if api_key else {}

    def build_payload(self, messages: list[ChatMessage], parameters: ModelParameters, stream: bool = False) -> dict:
        payload = {
            "model": self.model_name,
            "messages": [m.api_representation() for m in messages],
            "temperature": parameters.temperature,
            "max_tokens": parameters.max_tokens,
            "top_p": parameters.top_p,
            "frequency_penalty": parameters.frequency_penalty,
            "presence_penalty": parameters.presence_penalty,
        }
        if stream:
            payload["stream"] = True
        return payload

    async def send(self, messages: list[ChatMessage], parameters: ModelParameters) -> ChatMessage:
        validate_endpoint(self.url)
        payload = self.build_payload(messages, parameters)

        with translate_http_errors(self.url):
            response = await self._client.post(
                self.url, json=payload, headers=self._headers, timeout=self.timeouts.httpx_timeout
            )
        await raise_for_status(response, self.url)
        return ChatMessage(role=ASSISTANT_ROLE, content=extract_content(response))

    async def stream(self, messages: list[ChatMessage], parameters: ModelParameters) -> AsyncIterator[str]:
        """Proxy a streaming completion, yielding each non-empty delta."""
        validate_endpoint(self.url)
        payload = self.build_payload(messages, parameters, stream=True)
        deadline = StreamDeadline(self.timeouts.stream)

        with translate_http_errors(self.url):
            async with self._client.stream(
                "POST", self.url, json=payload, headers=self._headers, timeout=self.timeouts.httpx_timeout
            ) as response:
                await raise_for_status(response, self.url)
                async for line in deadline.lines(response):
                    data = parse_sse_line(line)
                    if data is None:
                        continue
                    if data.strip() == SSE_DONE:
                        return
                    chunk = delta_content(data)
                    if chunk:
                        yield chunk

    async def probe(self) -> bool:
        """A tiny completion request; any 2xx or a 401 proves the server is there."""
        probe_params = ModelParameters(max_tokens=PROBE_MAX_TOKENS)
        payload = self.build_payload([ChatMessage(role=USER_ROLE, content=PROBE_MESSAGE)], probe_params)
        try:
            validate_endpoint(self.url)
            with translate_http_errors(self.url):
                response = await self._client.post(
                    self.url, json=payload, headers=self._headers, timeout=self.timeouts.httpx_timeout
                )
        except ProviderError as e:
            logger.info("provider_probe_failed", endpoint=self.url, kind=e.kind.value)
            return False

        reachable = response.is_success or response.status_code == 401
        logger.info("provider_probe", endpoint=self.url, status_code=response.status_code, reachable=reachable)
        return reachable
