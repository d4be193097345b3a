from pathlib import Path

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Storage
    chatdesk_data_dir: str = str(Path.home() / ".chatdesk")
    chatdesk_db_url: str | None = None  # None = SQLite file inside the data dir

    # Logging
    chatdesk_log_level: str = "info"

    # Secret store
    chatdesk_secrets_path: str | None = None
    chatdesk_secrets_key_path: str | None = None
    chatdesk_secret_namespace: str = "api_key"

    # Conversation listing
    chatdesk_page_size: int = 50

    # OpenAI-compatible adapter timeouts (seconds)
    chatdesk_openai_connect_timeout: float = 10.0
    chatdesk_openai_request_timeout: float = 60.0
    chatdesk_openai_stream_timeout: float = 300.0

    # Ollama adapter timeouts (seconds)
    chatdesk_ollama_connect_timeout: float = 10.0
    chatdesk_ollama_request_timeout: float = 60.0
    chatdesk_ollama_stream_timeout: float = 300.0

    model_config = {"env_prefix": "", "case_sensitive": False, "env_file": ".env", "env_file_encoding": "utf-8"}

    @property
    def data_dir(self) -> Path:
        return Path(self.chatdesk_data_dir).expanduser()

    @property
    def resolved_db_url(self) -> str:
        if self.chatdesk_db_url:
            return self.chatdesk_db_url
        return f"sqlite+aiosqlite:///{(self.data_dir / 'chat_history.sqlite').as_posix()}"

    @property
    def resolved_secrets_path(self) -> Path:
        if self.chatdesk_secrets_path:
            return Path(self.chatdesk_secrets_path).expanduser()
        return self.data_dir / "secrets.json"

    @property
    def resolved_secrets_key_path(self) -> Path:
        if self.chatdesk_secrets_key_path:
            return Path(self.chatdesk_secrets_key_path).expanduser()
        return self.data_dir / "secrets.key"


settings = Settings()
