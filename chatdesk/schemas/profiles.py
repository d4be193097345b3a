import uuid

import httpx
from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

DEFAULT_PROFILE_NAME = "OpenAI GPT-3.5"
DEFAULT_MODEL_NAME = "gpt-3.5-turbo"
DEFAULT_API_ENDPOINT = "https://api.openai.com/v1/chat/completions"


def parse_http_url(endpoint: str) -> httpx.URL:
    """Parse an absolute http(s) URL with a host; anything else is a ValueError."""
    try:
        url = httpx.URL(endpoint.strip())
    except (httpx.InvalidURL, TypeError) as e:
        raise ValueError(f"Invalid endpoint URL: {endpoint!r}") from e
    if url.scheme not in ("http", "https") or not url.host:
        raise ValueError(f"Endpoint must be an http(s) URL with a host: {endpoint!r}")
    return url


class ModelParameters(BaseModel):
    """Sampling parameters sent to the backend as-is (no client-side clamping)."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    temperature: float = 0.7
    max_tokens: int = Field(default=2048, gt=0)
    top_p: float = 1.0
    frequency_penalty: float = 0.0
    presence_penalty: float = 0.0


class Profile(BaseModel):
    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    name: str
    model_name: str
    api_endpoint: str
    is_default: bool = False
    parameters: ModelParameters = Field(default_factory=ModelParameters)


class ProfileExport(BaseModel):
    """One entry of the profile export file (camelCase keys)."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    name: str
    api_endpoint: str
    api_key: str
    model_name: str
    parameters: ModelParameters
    is_default: bool

    @field_validator("api_endpoint")
    @classmethod
    def _absolute_http_url(cls, value: str) -> str:
        parse_http_url(value)
        return value
