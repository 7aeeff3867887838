"""
Configuration settings for the knowledge-base chat BFF
"""
from typing import List
from pydantic_settings import BaseSettings, SettingsConfigDict
from pydantic import Field, field_validator
import httpx
import json


class Settings(BaseSettings):
    """Application settings with environment variable support"""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore"
    )

    # API Configuration
    API_VERSION: str = "0.1.0"
    ENVIRONMENT: str = Field(default="development")
    LOG_LEVEL: str = Field(default="INFO")
    PORT: int = Field(default=8000)

    # CORS Settings
    CORS_ORIGINS: List[str] = Field(default=["*"])

    @field_validator("CORS_ORIGINS", mode="before")
    @classmethod
    def parse_cors_origins(cls, v):
        """Parse CORS_ORIGINS from JSON string if needed"""
        if isinstance(v, str):
            try:
                return json.loads(v)
            except json.JSONDecodeError:
                # If not JSON, treat as comma-separated list
                return [origin.strip() for origin in v.split(",") if origin.strip()]
        return v

    # Backend services
    API_BASE_URL: str = Field(default="http://localhost:8000")
    TRAINING_API_BASE_URL: str = Field(default="http://localhost:8001")
    DEFAULT_TOKEN: str = Field(default="")
    API_TIMEOUT: float = Field(default=30.0)  # seconds
    ENABLE_API_LOGS: bool = Field(default=False)

    CHAT_COMPLETIONS_PATH: str = Field(default="api/v1/chat/completions")
    KNOWLEDGE_BASE_LIST_PATH: str = Field(default="api/v1/knowledge_base/list_knowledge_base")
    VERIFY_KNOWLEDGE_BASE: bool = Field(default=True)

    # Chat turn defaults
    DEFAULT_TEMPERATURE: float = Field(default=0.7)
    DEFAULT_MAX_TOKENS: int = Field(default=2048)
    LIMIT_RESULT: int = Field(default=5)
    SEARCHING_GRACE_PERIOD: float = Field(default=2.0)  # seconds before "model is thinking"
    THINK_CARRY_OVER: bool = Field(default=True)  # False = per-delta tag scan, markers split across deltas leak

    ERROR_MESSAGE: str = Field(default="抱歉，发送消息时出现了错误。请稍后重试。")
    DEFAULT_SYSTEM_PROMPT: str = Field(
        default="你是一个基于知识库的智能助手。请根据知识库\"{kb_name}\"中的内容来回答用户的问题。如果知识库中没有相关信息，请诚实地说明。"
    )

    # Saved chat parameters
    CHAT_CONFIG_BACKEND: str = Field(default="memory")  # "memory" or "redis"
    REDIS_URL: str = Field(default="redis://localhost:6379/0")

    # OpenTelemetry Configuration
    OTEL_ENABLED: bool = Field(default=False)
    OTEL_ENDPOINT: str = Field(default="http://localhost:4317")
    OTEL_SERVICE_NAME: str = Field(default="kb-chat-bff")

    @field_validator("API_BASE_URL", "TRAINING_API_BASE_URL")
    @classmethod
    def validate_base_url(cls, v: str) -> str:
        """Backend roots must be absolute http(s) URLs"""
        try:
            url = httpx.URL(v)
        except httpx.InvalidURL as e:
            raise ValueError(f"invalid URL: {v}") from e
        if url.scheme not in ("http", "https") or not url.host:
            raise ValueError(f"invalid URL: {v}")
        return v.rstrip("/")

    @field_validator("API_TIMEOUT", "SEARCHING_GRACE_PERIOD")
    @classmethod
    def validate_positive(cls, v: float) -> float:
        if v <= 0:
            raise ValueError(f"must be greater than 0: {v}")
        return v

    @field_validator("PORT")
    @classmethod
    def validate_port(cls, v: int) -> int:
        if v <= 0 or v > 65535:
            raise ValueError(f"PORT must be within 1-65535: {v}")
        return v

    @field_validator("CHAT_CONFIG_BACKEND")
    @classmethod
    def validate_config_backend(cls, v: str) -> str:
        v = v.lower()
        if v not in ("memory", "redis"):
            raise ValueError(f"unsupported chat config backend: {v}")
        return v

    def backend_url(self, path: str, base_url: str = None) -> str:
        """Join a backend path onto a base URL"""
        base = base_url or self.API_BASE_URL
        return f"{base}/{path.lstrip('/')}"

    def system_prompt_for(self, kb_name: str) -> str:
        """Default system prompt for a knowledge base"""
        return self.DEFAULT_SYSTEM_PROMPT.replace("{kb_name}", kb_name)

    def masked(self) -> dict:
        """Settings summary safe for logging"""
        return {
            "environment": self.ENVIRONMENT,
            "api_base_url": self.API_BASE_URL,
            "training_api_base_url": self.TRAINING_API_BASE_URL,
            "default_token": "***set***" if self.DEFAULT_TOKEN else "unset",
            "api_timeout": self.API_TIMEOUT,
            "enable_api_logs": self.ENABLE_API_LOGS,
            "port": self.PORT,
            "chat_config_backend": self.CHAT_CONFIG_BACKEND,
            "think_carry_over": self.THINK_CARRY_OVER,
        }
