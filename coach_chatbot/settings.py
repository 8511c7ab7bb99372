from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Config(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", extra="ignore")

    db_url: str = Field(default="sqlite:///./coach_chatbot.db")
    gemini_api_key: str | None = Field(default=None)
    gemini_model: str = Field(default="gemini-2.0-flash")
    title_model: str = Field(default="gemini-2.0-flash-lite")
    memory_model: str = Field(default="gemini-2.0-flash-lite")
    huggingface_model: str = Field(default="sentence-transformers/all-MiniLM-L6-v2")
    celery_broker_url: str = Field(default="pyamqp://guest@localhost//")

    kb_top_k: int = Field(default=5)
    kb_min_similarity: float = Field(default=0.3)
    history_limit: int = Field(default=20)
    max_tool_steps: int = Field(default=5)
    memory_extraction_threshold: int = Field(default=3)
    memory_extraction_window: int = Field(default=10)
    log_level: str = Field(default="INFO")


config = Config()
