from pydantic import Field
from pydantic_settings import BaseSettings

from .guardrails import CacheTTL, RateLimitPolicy


def _default_overrides() -> dict[str, RateLimitPolicy]:
    return {
        "exports": RateLimitPolicy(max_requests=3, window_ms=60_000),
        "auth": RateLimitPolicy(max_requests=5, window_ms=300_000),
        "uploads": RateLimitPolicy(max_requests=10, window_ms=60_000),
    }


class Settings(BaseSettings):
    # Rate limiting
    enable_rate_limiting: bool = True
    rate_limit_window_ms: int = Field(60_000, gt=0)
    rate_limit_max_requests: int = Field(10, gt=0)
    rate_limit_overrides: dict[str, RateLimitPolicy] = Field(default_factory=_default_overrides)

    # Result cache
    cache_max_size: int = Field(1000, gt=0)
    cache_default_ttl_ms: int = Field(CacheTTL.MEDIUM, gt=0)

    # OpenAI-compatible chat completions endpoint
    llm_api_url: str = "https://api.openai.com/v1/chat/completions"
    llm_api_key: str | None = None
    llm_model: str = "gpt-4o-mini"
    llm_timeout_seconds: float = 60.0

    admin_token: str | None = None  # admin endpoints are disabled without it

    log_level: str = "INFO"
    log_json: bool = True

settings = Settings()
