from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    # PostgreSQL (workflow store)
    postgres_host: str = "localhost"
    postgres_port: int = 5432
    postgres_user: str = "agentflow"
    postgres_password: str = "changeme"
    postgres_db: str = "agentflow"

    @property
    def postgres_url(self) -> str:
        return (
            f"postgresql+asyncpg://{self.postgres_user}:{self.postgres_password}"
            f"@{self.postgres_host}:{self.postgres_port}/{self.postgres_db}"
        )

    # Fernet keys for stored secrets, comma-separated; the first one encrypts
    fernet_key: str = ""

    # Per-provider token buckets (requests per second, burst size)
    anthropic_requests_per_second: float = 3.0
    anthropic_burst: int = 5
    openai_requests_per_second: float = 10.0
    openai_burst: int = 20
    groq_requests_per_second: float = 15.0
    groq_burst: int = 30

    # Agent node execution
    agent_max_retries: int = 3
    rate_limit_token_timeout: float = 30.0  # seconds to wait for a bucket token
    default_agent_model: str = "anthropic/claude-sonnet-4-5-20250929"
    anthropic_max_tokens: int = 4096
    provider_timeout_seconds: float = 120.0
    tool_server_timeout_seconds: float = 30.0

    # JSON object keyed by node id / node name / "default", or a raw string.
    # When set, provider calls are skipped entirely.
    mock_agent_response: str = ""

    # App
    app_env: str = "development"

    # Logging
    log_level: str = "INFO"
    log_json: bool = False  # set True in production for structured JSON logs


settings = Settings()


def validate_settings() -> None:
    """Validate critical settings. Called once when the execution engine is built."""
    errors: list[str] = []

    for provider in ("anthropic", "openai", "groq"):
        rate = getattr(settings, f"{provider}_requests_per_second")
        burst = getattr(settings, f"{provider}_burst")
        if rate <= 0:
            errors.append(f"{provider.upper()}_REQUESTS_PER_SECOND must be positive")
        if burst < 1:
            errors.append(f"{provider.upper()}_BURST must be at least 1")

    if settings.agent_max_retries < 0:
        errors.append("AGENT_MAX_RETRIES must not be negative")

    if settings.rate_limit_token_timeout <= 0:
        errors.append("RATE_LIMIT_TOKEN_TIMEOUT must be positive")

    if settings.fernet_key:
        from agentflow.core.encryption import parse_keys

        try:
            parse_keys(settings.fernet_key)
        except ValueError as e:
            errors.append(str(e))

    if settings.app_env == "production":
        if settings.mock_agent_response:
            errors.append("MOCK_AGENT_RESPONSE must not be set in production")
        if not settings.fernet_key:
            errors.append(
                'FERNET_KEY must be set (generate with: python -c "from cryptography.fernet import Fernet; print(Fernet.generate_key().decode())")'
            )

    if errors:
        raise SystemExit("Configuration errors:\n  - " + "\n  - ".join(errors))
