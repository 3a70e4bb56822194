"""Configuration management using Pydantic Settings."""

from functools import lru_cache
from typing import Literal, Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Service Configuration
    service_host: str = Field(default="0.0.0.0", description="Service host")
    service_port: int = Field(default=8000, description="Service port")
    log_level: str = Field(default="INFO", description="Logging level")

    # Database
    database_url: Optional[str] = Field(
        default=None, description="PostgreSQL connection URL"
    )
    db_pool_min_size: int = Field(default=1, description="Minimum connection pool size")
    db_pool_max_size: int = Field(default=10, description="Maximum connection pool size")

    # Redis
    redis_url: Optional[str] = Field(
        default=None, description="Redis URL for code delivery pub/sub"
    )

    # Backends
    queue_backend: Literal["memory", "postgres"] = Field(
        default="postgres",
        description="Work queue backend: postgres (durable) or memory (single process)",
    )
    code_broker_mode: Literal["memory", "redis"] = Field(
        default="redis",
        description="Code broker: redis (API and worker in separate processes) or memory",
    )

    # Worker
    operator_username: str = Field(
        default="", description="Portal operator account this worker acts as"
    )
    worker_id: Optional[str] = Field(
        default=None, description="Worker ID override (default hostname:pid)"
    )
    job_poll_interval_s: float = Field(
        default=2.0, description="Sleep between empty queue polls"
    )
    job_stale_timeout_minutes: int = Field(
        default=30, description="Running jobs older than this are re-leased"
    )
    place_order_concurrency: int = Field(
        default=1, ge=1, description="Concurrent place-order jobs per worker"
    )
    status_check_concurrency: int = Field(
        default=1, ge=1, description="Concurrent check-and-download jobs per worker"
    )

    # Retry policy
    job_max_attempts: int = Field(default=3, ge=1, description="Deliveries per job")
    job_backoff_initial_s: float = Field(
        default=10.0, description="Initial retry delay, doubled per attempt"
    )
    job_backoff_max_s: float = Field(default=300.0, description="Retry delay cap")
    job_backoff_jitter_s: float = Field(
        default=0.0, description="Max random jitter added to retry delay"
    )
    requeue_head_priority: int = Field(
        default=1, description="Priority used when requeueing at the head"
    )
    default_job_priority: int = Field(default=100, description="Ordinary job priority")
    operator_action_delay_s: float = Field(
        default=900.0,
        description="Delay before a job parked for operator action is picked up again",
    )

    # Code delivery
    code_timeout_s: float = Field(
        default=300.0, description="How long a worker waits for an SMS/CAPTCHA code"
    )
    redis_subscribe_timeout_s: float = Field(
        default=5.0, description="Max wait for a Redis SUBSCRIBE confirmation"
    )

    # Status checks
    status_check_delay_s: float = Field(
        default=60.0, description="Delay before the first status check of a new order"
    )
    status_sweep_enabled: bool = Field(default=True, description="Run the periodic sweep")
    status_sweep_task_name: str = Field(
        default="order-status-checker", description="ScheduleGate task name"
    )
    status_sweep_tick_s: float = Field(
        default=1800.0, description="Seconds between sweep attempts"
    )
    status_sweep_pause_s: tuple[float, float] = Field(
        default=(1.0, 3.0), description="Random pause range between orders in a sweep"
    )
    schedule_timezone: str = Field(
        default="Europe/Moscow", description="Time zone of active intervals"
    )

    # Browser
    browser_headless: bool = Field(default=True, description="Run Chromium headless")
    screenshots_dir: str = Field(default="data/screenshots", description="Failure screenshots")
    captcha_dir: str = Field(default="data/captcha", description="Downloaded CAPTCHA images")
    downloads_dir: str = Field(default="data/orders", description="Downloaded extracts")
    navigation_timeout_s: float = Field(default=30.0, description="Page navigation timeout")
    element_timeout_s: float = Field(default=10.0, description="Element wait timeout")
    login_redirect_timeout_s: float = Field(
        default=60.0, description="Max wait for the post-login redirect"
    )

    # Portal
    portal_base_url: str = Field(
        default="https://lk.rosreestr.ru", description="Portal personal cabinet URL"
    )
    portal_timeout_s: float = Field(default=30.0, description="Portal HTTP timeout")
    portal_pause_s: tuple[float, float] = Field(
        default=(1.0, 3.0), description="Random pause range between portal API calls"
    )
    worker_metrics_port: Optional[int] = Field(
        default=None, description="Port for the worker's Prometheus endpoint (off if unset)"
    )

    # Sentry Observability
    sentry_dsn: Optional[str] = Field(
        default=None,
        description="Sentry DSN for error tracking",
    )
    sentry_environment: str = Field(
        default="development",
        description="Sentry environment tag (development, staging, production)",
    )
    sentry_traces_sample_rate: float = Field(
        default=0.0,
        ge=0.0,
        le=1.0,
        description="Sentry performance tracing sample rate (0.0-1.0)",
    )


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
