"""
Vendorflow — Configuration via environment variables.
"""

from pydantic_settings import BaseSettings
from pydantic import Field


class Settings(BaseSettings):
    """All settings read from env / .env file."""

    # Database
    database_url: str = Field(
        default="sqlite+aiosqlite:///./vendorflow.db",
        description="Async SQLAlchemy DB URL",
    )

    # Dispatcher
    worker_count: int = Field(default=2, description="Concurrent dispatcher workers")
    poll_interval_seconds: float = Field(default=60, description="Seconds between queue polls")
    batch_size: int = Field(default=10, description="Max due tasks fetched per cycle")
    max_retries: int = Field(default=3)
    retry_base_seconds: float = Field(
        default=60, description="Backoff base: delay = base * 2^retryCount"
    )
    handler_timeout_seconds: float = Field(default=30)
    stale_claim_minutes: int = Field(
        default=15, description="Minutes before a CLAIMED task is considered abandoned"
    )
    review_invalid_documents: bool = Field(
        default=True, description="Ping the operator when a document fails verification"
    )

    # AI — multi-provider support ("github-models" or "anthropic")
    ai_provider: str = Field(
        default="github-models",
        description="AI provider: 'github-models' (OpenAI via Azure) or 'anthropic' (Claude)",
    )
    ai_token: str = Field(default="", description="Token for OpenAI-compatible endpoint")
    anthropic_api_key: str = Field(default="", description="Anthropic API key for Claude models")
    ai_api_url: str = Field(
        default="",
        description="Override AI API URL (auto-set per provider if blank)",
    )
    ai_model: str = Field(default="")

    @property
    def ai_effective_url(self) -> str:
        """Resolve API URL based on provider."""
        if self.ai_api_url:
            return self.ai_api_url
        if self.ai_provider == "anthropic":
            return "https://api.anthropic.com/v1/messages"
        return "https://models.inference.ai.azure.com/chat/completions"

    @property
    def ai_effective_model(self) -> str:
        """Resolve model name based on provider."""
        if self.ai_model:
            return self.ai_model
        if self.ai_provider == "anthropic":
            return "claude-sonnet-4-20250514"
        return "gpt-4o"

    @property
    def ai_auth_token(self) -> str:
        if self.ai_provider == "anthropic":
            return self.anthropic_api_key
        return self.ai_token

    # Telegram (operator alerts + TELEGRAM channel)
    telegram_bot_token: str = Field(default="")
    telegram_chat_id: str = Field(default="")

    # Email / SMTP (Gmail)
    smtp_email: str = Field(default="", description="Gmail address for sending emails")
    smtp_app_password: str = Field(default="", description="Gmail App Password (16 chars, no spaces)")
    sender_name: str = Field(default="Vendor Partnerships")
    delivery_dry_run: bool = Field(
        default=False, description="Log outgoing messages instead of delivering them"
    )

    # Outreach copy
    onboarding_url: str = Field(
        default="https://example.com/contractor?vid={vendor_id}",
        description="Link placed in outreach drafts; {vendor_id} is substituted",
    )
    drip_follow_up_days: list[int] = Field(
        default=[3, 7, 14],
        description="Days after the first message on which follow-ups go out (empty disables the drip)",
    )

    model_config = {"env_file": ".env", "env_file_encoding": "utf-8", "extra": "ignore"}


settings = Settings()
