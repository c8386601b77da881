from pathlib import Path

from pydantic import AliasChoices, Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    llm_provider: str = Field(default="gemini", alias="LLM_PROVIDER")

    gemini_base_url: str = Field(default="https://generativelanguage.googleapis.com", alias="GEMINI_BASE_URL")
    gemini_model: str = Field(default="gemini-2.5-flash", alias="GEMINI_MODEL")
    gemini_api_key: str = Field(default="", validation_alias=AliasChoices("GEMINI_API_KEY", "API_KEY"))

    openai_base_url: str = Field(default="https://api.openai.com/v1", alias="OPENAI_BASE_URL")
    openai_model: str = Field(default="gpt-4o-mini", alias="OPENAI_MODEL")
    openai_api_key: str = Field(default="", alias="OPENAI_API_KEY")

    ollama_base_url: str = Field(default="http://127.0.0.1:11434", alias="OLLAMA_BASE_URL")
    ollama_model: str = Field(default="llama3.2:1b", alias="OLLAMA_MODEL")

    llm_stream_timeout_sec: float | None = Field(default=None, alias="LLM_STREAM_TIMEOUT_SEC")
    llm_connect_timeout_sec: float = Field(default=10.0, alias="LLM_CONNECT_TIMEOUT_SEC")
    max_context_chars: int = Field(default=0, alias="MAX_CONTEXT_CHARS")

    data_dir: str = Field(default=".kbsearch", alias="KBSEARCH_DATA_DIR")
    sqlite_path: str = Field(default="", alias="SQLITE_PATH")
    open_browser: bool = Field(default=True, alias="OPEN_BROWSER")

    @property
    def session_db_path(self) -> str:
        return self.sqlite_path or str(Path(self.data_dir) / "session.db")


settings = Settings()


def ensure_runtime_dirs() -> None:
    Path(settings.data_dir).mkdir(parents=True, exist_ok=True)
    Path(settings.session_db_path).parent.mkdir(parents=True, exist_ok=True)
