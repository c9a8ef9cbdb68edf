"""Unit tests for jobrelay.config and executor wiring."""

import os
from unittest.mock import patch

from jobrelay.jobs.types import JobKind


def test_lane_defaults():
    """Test built-in lane budgets when nothing is configured."""
    from jobrelay.config import Settings

    with patch.dict(os.environ, {}, clear=True):
        settings = Settings(_env_file=None)

    text = settings.lane_config(JobKind.TEXT_GENERATION)
    assert text.concurrency_limit == 4
    assert text.stagger_delay_seconds == 0.5
    assert text.batch_cooldown_seconds == 60
    assert text.retry.max_attempts == 3
    assert text.retry.rate_limit_delay_seconds == 60

    transcode = settings.lane_config(JobKind.TRANSCODE)
    assert transcode.concurrency_limit == 5
    assert transcode.batch_cooldown_seconds == 0
    assert transcode.retry.rate_limit_delay_seconds == 0.3
    assert transcode.poll_interval_seconds == 30
    assert transcode.stuck_threshold_seconds == 900

    assert settings.retention_seconds == 600
    assert settings.cleanup_interval_seconds == 600


def test_lanes_disabled_without_credentials():
    """Test that executors are only enabled when credentials exist."""
    from jobrelay.config import Settings

    with patch.dict(os.environ, {}, clear=True):
        settings = Settings(_env_file=None)

    assert not settings.text_generation_enabled
    assert not settings.transcode_enabled


def test_env_overrides():
    """Test that lane budgets come from the environment."""
    from jobrelay.config import get_settings

    with patch.dict(
        os.environ,
        {
            "GROQ_API_KEY": "gsk-test",
            "TEXT_CONCURRENCY_LIMIT": "2",
            "TEXT_BATCH_COOLDOWN_SECONDS": "30",
            "TRANSCODE_POLL_INTERVAL_SECONDS": "15",
            "STUCK_THRESHOLD_SECONDS": "120",
        },
        clear=True,
    ):
        get_settings.cache_clear()
        settings = get_settings()

    get_settings.cache_clear()
    assert settings.text_generation_enabled
    text = settings.lane_config(JobKind.TEXT_GENERATION)
    assert text.concurrency_limit == 2
    assert text.batch_cooldown_seconds == 30
    assert text.stuck_threshold_seconds == 120
    assert settings.lane_config(JobKind.TRANSCODE).poll_interval_seconds == 15


def test_cors_origin_list():
    """Test comma-separated CORS origins parsing."""
    from jobrelay.config import Settings

    settings = Settings(
        _env_file=None, cors_origins="https://app.example.com, http://localhost:3000,"
    )
    assert settings.cors_origin_list == [
        "https://app.example.com",
        "http://localhost:3000",
    ]


def test_build_executors_by_credentials():
    """Test that only configured kinds get an executor."""
    from jobrelay.config import Settings
    from jobrelay.core.lifespan import build_executors

    with patch.dict(os.environ, {}, clear=True):
        none = build_executors(Settings(_env_file=None))
        text_only = build_executors(Settings(_env_file=None, groq_api_key="gsk-test"))
        both = build_executors(
            Settings(
                _env_file=None,
                groq_api_key="gsk-test",
                mediaconvert_role_arn="arn:aws:iam::123456789012:role/MC",
                transcode_output_bucket="inspection-videos",
            )
        )

    assert none == []
    assert [e.kind for e in text_only] == [JobKind.TEXT_GENERATION]
    assert [e.kind for e in both] == [JobKind.TEXT_GENERATION, JobKind.TRANSCODE]
    assert both[1].is_async
