from decimal import Decimal

from pydantic import AliasChoices, BaseModel, Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class RateLimitRule(BaseModel):
    """Limits for one scope. None or 0 means the dimension is not enforced."""

    requests_per_minute: int | None = None
    tokens_per_minute: int | None = None
    requests_per_day: int | None = None


class RateLimitConfig(BaseModel):
    """Rate limit blocks; the most specific block wins (model > provider > default)."""

    default: RateLimitRule = Field(
        default_factory=lambda: RateLimitRule(
            requests_per_minute=60,
            tokens_per_minute=90_000,
            requests_per_day=1000,
        )
    )
    providers: dict[str, RateLimitRule] = Field(
        default_factory=lambda: {
            "openai": RateLimitRule(requests_per_minute=500, tokens_per_minute=90_000),
            "gemini": RateLimitRule(requests_per_minute=60, requests_per_day=1500),
            "claude": RateLimitRule(requests_per_minute=50, tokens_per_minute=100_000),
            "grok": RateLimitRule(requests_per_minute=60),
        }
    )
    models: dict[str, RateLimitRule] = Field(default_factory=dict)


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_prefix="GENAI_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        populate_by_name=True,
    )

    # Defaults applied when neither the request nor the preset says otherwise
    default_provider: str = "openai"
    default_model: str = "gpt-4.1-mini"
    default_options: dict[str, float | int] = Field(
        default_factory=lambda: {
            "temperature": 0.7,
            "top_p": 0.95,
            "max_tokens": 2000,
            "presence_penalty": 0,
            "frequency_penalty": 0,
        }
    )
    request_timeout: float = 30.0  # seconds, per upstream HTTP call

    # Cache
    cache_enabled: bool = True
    cache_ttl: int = 3600  # seconds
    cache_prefix: str = "genai_cache"
    cache_tags: list[str] = Field(default_factory=lambda: ["genai"])
    cache_single_flight: bool = False

    # Retry
    retry_max_attempts: int = 3
    retry_delay_ms: int = 1000
    retry_multiplier: float = 2.0
    retry_max_delay_ms: int | None = None
    retry_jitter: float = 0.0  # fraction of the computed delay, 0 disables jitter
    retry_on: list[str] = Field(
        default_factory=lambda: ["rate_limited", "timeout", "connection", "server_error"]
    )

    # Pricing
    pricing_currency: str = "USD"  # ISO 4217
    pricing_exchange_rate: Decimal = Decimal("1")  # 1 USD = N display currency
    pricing_decimal_places: int = 6

    # Rate limits (JSON in the environment, e.g. GENAI_RATE_LIMITS='{"default": {...}}')
    rate_limits: RateLimitConfig = Field(default_factory=RateLimitConfig)

    # Catalogues
    presets_path: str = "genai/presets"
    models_path: str = "genai/models.yaml"

    # Providers
    openai_api_key: str = Field(default="", validation_alias=AliasChoices("GENAI_OPENAI_API_KEY", "OPENAI_API_KEY"))
    openai_base_url: str = "https://api.openai.com/v1"
    claude_api_key: str = Field(default="", validation_alias=AliasChoices("GENAI_CLAUDE_API_KEY", "CLAUDE_API_KEY"))
    claude_base_url: str = "https://api.anthropic.com/v1"
    gemini_api_key: str = Field(default="", validation_alias=AliasChoices("GENAI_GEMINI_API_KEY", "GEMINI_API_KEY"))
    gemini_base_url: str = "https://generativelanguage.googleapis.com/v1beta"
    grok_api_key: str = Field(default="", validation_alias=AliasChoices("GENAI_GROK_API_KEY", "GROK_API_KEY"))
    grok_base_url: str = "https://api.x.ai/v1"

    # Cache/counter backend; empty means in-process memory stores
    redis_url: str = ""

    # Batch dispatch
    batch_max_concurrency: int = 10
    batch_request_timeout: float | None = None  # seconds per slot, None disables

    # Logging
    log_level: str = "INFO"
    log_json: bool = False  # set True in production for structured JSON logs


settings = Settings()


def validate_settings(cfg: Settings | None = None) -> None:
    """Validate settings that pydantic alone cannot express. Called once on startup."""
    cfg = cfg or settings
    errors: list[str] = []

    if cfg.retry_max_attempts < 1:
        errors.append("GENAI_RETRY_MAX_ATTEMPTS must be at least 1")

    if cfg.retry_multiplier < 1:
        errors.append("GENAI_RETRY_MULTIPLIER must be >= 1")

    if cfg.pricing_exchange_rate <= 0:
        errors.append("GENAI_PRICING_EXCHANGE_RATE must be positive")

    if not cfg.default_provider or not cfg.default_model:
        errors.append("GENAI_DEFAULT_PROVIDER and GENAI_DEFAULT_MODEL must not be empty")

    if errors:
        raise SystemExit("Configuration errors:\n  - " + "\n  - ".join(errors))
