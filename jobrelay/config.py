"""Configuration management using Pydantic Settings."""

from functools import lru_cache
from typing import Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from jobrelay.jobs.lane import LaneConfig
from jobrelay.jobs.retry import RetryPolicy
from jobrelay.jobs.types import JobKind


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

    # Text Generation API (OpenAI-compatible chat completions)
    groq_api_key: Optional[str] = Field(
        default=None, description="Groq API key (text-generation lane disabled if unset)"
    )
    groq_base_url: str = Field(
        default="https://api.groq.com/openai/v1",
        description="Base URL of the chat completions API",
    )
    groq_model: str = Field(
        default="llama-3.1-8b-instant", description="Model used for text generation"
    )
    groq_top_p: float = Field(default=0.9, gt=0.0, le=1.0, description="Nucleus sampling")

    # Text Generation Lane
    text_concurrency_limit: int = Field(
        default=4, ge=1, description="Max concurrent text-generation calls per batch"
    )
    text_stagger_delay_seconds: float = Field(
        default=0.5, ge=0.0, description="Delay between call starts within a batch"
    )
    text_batch_cooldown_seconds: float = Field(
        default=60.0, ge=0.0, description="Pause between batches while work remains"
    )
    text_average_batch_seconds: float = Field(
        default=60.0, gt=0.0, description="Initial batch duration for wait estimates"
    )
    text_max_attempts: int = Field(default=3, ge=1, description="Attempts per call")
    text_rate_limit_delay_seconds: float = Field(
        default=60.0, ge=0.0, description="Backoff base after HTTP 429"
    )
    text_transient_delay_seconds: float = Field(
        default=2.0, ge=0.0, description="Backoff base after network errors"
    )
    text_request_timeout_seconds: float = Field(
        default=60.0, gt=0.0, description="Per-attempt timeout"
    )

    # Transcode API (AWS MediaConvert)
    aws_region: str = Field(default="us-east-1", description="AWS region")
    aws_access_key_id: Optional[str] = Field(default=None, description="AWS access key")
    aws_secret_access_key: Optional[str] = Field(default=None, description="AWS secret key")
    mediaconvert_role_arn: Optional[str] = Field(
        default=None, description="IAM role MediaConvert assumes (transcode lane disabled if unset)"
    )
    mediaconvert_queue_arn: Optional[str] = Field(
        default=None, description="MediaConvert queue (account default queue if unset)"
    )
    mediaconvert_endpoint_url: Optional[str] = Field(
        default=None, description="Account endpoint (discovered via DescribeEndpoints if unset)"
    )
    transcode_output_bucket: Optional[str] = Field(
        default=None, description="Default s3:// prefix for transcoded renditions"
    )

    # Transcode Lane
    transcode_concurrency_limit: int = Field(
        default=5, ge=1, description="Max concurrent MediaConvert submissions per batch"
    )
    transcode_stagger_delay_seconds: float = Field(default=0.5, ge=0.0)
    transcode_batch_cooldown_seconds: float = Field(default=0.0, ge=0.0)
    transcode_average_batch_seconds: float = Field(default=5.0, gt=0.0)
    transcode_max_attempts: int = Field(default=3, ge=1)
    transcode_rate_limit_delay_seconds: float = Field(default=0.3, ge=0.0)
    transcode_transient_delay_seconds: float = Field(default=2.0, ge=0.0)
    transcode_request_timeout_seconds: float = Field(default=30.0, gt=0.0)
    transcode_poll_interval_seconds: float = Field(
        default=30.0, gt=0.0, description="Status poll period while jobs are in flight"
    )
    transcode_poll_timeout_seconds: float = Field(
        default=10.0, gt=0.0, description="Timeout for one status call"
    )
    transcode_poll_call_delay_seconds: float = Field(
        default=0.5, ge=0.0, description="Spacing between status calls in one pass"
    )
    transcode_poll_rate_limit_pause_seconds: float = Field(
        default=5.0, ge=0.0, description="Pause after a throttled status call"
    )

    # Stuck Detection & Retention
    stuck_threshold_seconds: float = Field(
        default=15 * 60, gt=0.0, description="Active with no progress for this long = possibly stuck"
    )
    retention_seconds: float = Field(
        default=10 * 60, ge=0.0, description="How long terminal jobs stay queryable"
    )
    cleanup_interval_seconds: float = Field(
        default=10 * 60, gt=0.0, description="Retention sweep period"
    )

    # Rate limiting
    rate_limit_enabled: bool = Field(
        default=True, description="Enable rate limiting"
    )
    rate_limit_requests_per_minute: int = Field(
        default=60, description="Maximum requests per minute per IP"
    )

    # CORS
    cors_origins: str = Field(
        default="*", description="Comma-separated allowed origins"
    )

    # Sentry Observability
    sentry_dsn: Optional[str] = Field(
        default=None,
        description="Sentry DSN for error tracking and performance monitoring"
    )
    sentry_environment: str = Field(
        default="development",
        description="Sentry environment tag (development, staging, production)"
    )
    sentry_traces_sample_rate: float = Field(
        default=0.1,
        ge=0.0,
        le=1.0,
        description="Sentry performance tracing sample rate (0.0-1.0)"
    )

    @property
    def text_generation_enabled(self) -> bool:
        return bool(self.groq_api_key)

    @property
    def transcode_enabled(self) -> bool:
        return bool(self.mediaconvert_role_arn)

    @property
    def cors_origin_list(self) -> list[str]:
        return [o.strip() for o in self.cors_origins.split(",") if o.strip()]

    def lane_config(self, kind: JobKind) -> LaneConfig:
        """Build the execution budget for one job kind."""
        if kind is JobKind.TRANSCODE:
            return LaneConfig(
                concurrency_limit=self.transcode_concurrency_limit,
                stagger_delay_seconds=self.transcode_stagger_delay_seconds,
                batch_cooldown_seconds=self.transcode_batch_cooldown_seconds,
                average_batch_duration_seconds=self.transcode_average_batch_seconds,
                retry=RetryPolicy(
                    max_attempts=self.transcode_max_attempts,
                    rate_limit_delay_seconds=self.transcode_rate_limit_delay_seconds,
                    transient_delay_seconds=self.transcode_transient_delay_seconds,
                    timeout_seconds=self.transcode_request_timeout_seconds,
                ),
                poll_interval_seconds=self.transcode_poll_interval_seconds,
                poll_timeout_seconds=self.transcode_poll_timeout_seconds,
                poll_call_delay_seconds=self.transcode_poll_call_delay_seconds,
                poll_rate_limit_pause_seconds=self.transcode_poll_rate_limit_pause_seconds,
                stuck_threshold_seconds=self.stuck_threshold_seconds,
            )
        return LaneConfig(
            concurrency_limit=self.text_concurrency_limit,
            stagger_delay_seconds=self.text_stagger_delay_seconds,
            batch_cooldown_seconds=self.text_batch_cooldown_seconds,
            average_batch_duration_seconds=self.text_average_batch_seconds,
            retry=RetryPolicy(
                max_attempts=self.text_max_attempts,
                rate_limit_delay_seconds=self.text_rate_limit_delay_seconds,
                transient_delay_seconds=self.text_transient_delay_seconds,
                timeout_seconds=self.text_request_timeout_seconds,
            ),
            stuck_threshold_seconds=self.stuck_threshold_seconds,
        )


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
