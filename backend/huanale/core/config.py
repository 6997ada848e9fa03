from functools import lru_cache
from typing import Annotated
import json
from pydantic import AliasChoices, Field, field_validator
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict


def _parse_list_value(value: str) -> list[str]:
    if not value:
        return []
    if isinstance(value, str):
        raw = value.strip()
        if raw == "":
            return []
        try:
            parsed = json.loads(raw)
            if isinstance(parsed, list):
                return [str(item).strip() for item in parsed if str(item).strip()]
        except ValueError:
            pass
        return [item.strip() for item in raw.split(",") if item.strip()]
    if isinstance(value, list):
        return [str(item).strip() for item in value if str(item).strip()]
    return []


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        extra="ignore",
        validate_by_name=True,
        populate_by_name=True,
    )
    supabase_url: str = ""
    supabase_key: str = ""
    supabase_service_role_key: str = ""
    supabase_jwt_secret: str = ""
    supabase_jwt_audience: str = "authenticated"
    database_url: str = ""

    bill_storage_bucket: str = "bills"
    bill_signed_url_ttl_seconds: int = 300
    bill_image_max_bytes: int = 4 * 1024 * 1024
    bill_image_max_side: int = 2048

    ai_provider: str = "qwen"
    ai_allowed_providers_raw: str = Field(
        default="qwen,gemini,mock",
        validation_alias=AliasChoices("AI_ALLOWED_PROVIDERS"),
    )
    dashscope_api_key: str = ""
    dashscope_base_url: str = "https://dashscope.aliyuncs.com/compatible-mode/v1"
    gemini_api_key: str = ""
    gemini_base_url: str = "https://generativelanguage.googleapis.com/v1beta"
    ai_text_model: str = ""
    ai_vision_model: str = ""
    ai_timeout_seconds: float = 60.0
    ai_temperature: float = 0.1
    ai_max_tokens: int = 2048
    ai_debug_store_raw: bool = False

    default_currency: str = "¥"
    stream_keepalive_seconds: float = 15.0
    text_input_max_length: int = 4000
    ingest_background_persist: bool = False

    docs_enabled: bool = True
    openapi_enabled: bool = True
    expose_error_details: bool = False

    rate_limit_api_enabled: bool = False
    rate_limit_ingest_per_min: int = 30
    trusted_proxy_cidrs: Annotated[list[str], NoDecode] = Field(default_factory=list)

    security_headers_enabled: bool = Field(
        default=True,
        validation_alias=AliasChoices("SECURITY_HEADERS_ENABLED", "SECURE_HEADERS_ENABLED"),
    )

    cors_allow_origins: Annotated[list[str], NoDecode] = Field(default_factory=list)
    cors_allow_methods: Annotated[list[str], NoDecode] = Field(default_factory=lambda: ["GET", "POST", "OPTIONS"])
    cors_allow_headers: Annotated[list[str], NoDecode] = Field(default_factory=lambda: [
        "Authorization",
        "Content-Type",
        "Accept",
    ])

    @field_validator(
        "cors_allow_origins",
        "cors_allow_methods",
        "cors_allow_headers",
        "trusted_proxy_cidrs",
        mode="before",
    )
    @classmethod
    def _split_csv(cls, value):
        if value is None:
            return []
        if isinstance(value, str):
            return _parse_list_value(value)
        return value

    @property
    def ai_allowed_providers(self) -> list[str]:
        """Allowed provider names; ``mock`` is always permitted."""
        providers = [p.lower() for p in _parse_list_value(self.ai_allowed_providers_raw)]
        if "mock" not in providers:
            providers.append("mock")
        return providers


@lru_cache

def get_settings() -> Settings:
    return Settings()
