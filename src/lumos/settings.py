from pathlib import Path
from typing import Literal

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application configuration."""

    host: str = "0.0.0.0"
    port: int = 8000
    debug: bool = False
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = "INFO"

    model: str = "gpt-4o-mini"
    temperature: float = 0.7
    openai_api_key: str | None = None
    openai_base_url: str | None = "https://api.openai.com/v1"
    request_timeout_seconds: float = 60.0

    cors_origins: str = "*"

    redis_url: str | None = None
    session_ttl_seconds: int = 0  # 0 = keep forever

    agents_file: Path | None = None

    default_session_title: str = "新会话"
    default_multi_agent_session_title: str = "多智能体对话"

    analyst_agent_name: str = "analyst"
    analysis_max_messages: int = 50
    quick_summary_max_messages: int = 20
    analysis_system_prompt: str = (
        "你是一个专业的会话分析师，擅长从对话中提取关键信息和洞见。"
    )

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        env_prefix="",
        extra="allow",
    )


def get_settings() -> Settings:
    """Return the application settings singleton (loaded from env / .env)."""
    global _SETTINGS
    try:
        return _SETTINGS
    except NameError:
        _SETTINGS = Settings()
        return _SETTINGS
