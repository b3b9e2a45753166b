"""Journey engine configuration via pydantic-settings."""

from __future__ import annotations

from pydantic_settings import BaseSettings


class JourneySettings(BaseSettings):
    database_url: str = "sqlite+aiosqlite:///journeys.db"
    echo_sql: bool = False
    app_title: str = "Journeys"
    tenant_header: str = "X-Tenant-ID"

    # Scheduler / dispatcher
    dispatch_worker_enabled: bool = True
    dispatch_worker_count: int = 2
    dispatch_poll_interval_seconds: float = 1.0
    dispatch_batch_size: int = 50
    dispatch_lease_timeout_seconds: int = 900
    dispatch_rollback_delay_seconds: float = 30.0
    dispatch_rollback_jitter_seconds: float = 15.0
    max_steps_per_tick: int = 25

    # Retry policy
    step_max_attempts: int = 3
    step_max_attempts_overrides: dict[str, int] = {}
    retry_backoff_base_seconds: int = 60
    retry_backoff_max_seconds: int = 3600

    # External call timeouts
    webhook_timeout_seconds: float = 10.0
    message_send_timeout_seconds: float = 20.0

    step_cache_size: int = 256

    # SendGrid (optional, email)
    sendgrid_api_key: str | None = None
    sendgrid_from_email: str | None = None
    sendgrid_from_name: str | None = None

    # Twilio (optional, SMS)
    twilio_account_sid: str | None = None
    twilio_auth_token: str | None = None
    twilio_from_number: str | None = None

    model_config = {"env_prefix": "JRN_", "env_file": ".env", "extra": "ignore"}

    @property
    def sendgrid_configured(self) -> bool:
        return bool(self.sendgrid_api_key and self.sendgrid_from_email)

    @property
    def twilio_configured(self) -> bool:
        return bool(
            self.twilio_account_sid and self.twilio_auth_token and self.twilio_from_number
        )

    def max_attempts_for(self, step_type: str) -> int:
        return self.step_max_attempts_overrides.get(step_type, self.step_max_attempts)


settings = JourneySettings()
