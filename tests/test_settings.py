import pytest

from storefront.config.settings import (
    EnqueueFailurePolicy,
    MailTransportType,
    Settings,
    get_settings,
)


def test_default_settings():
    """Test default settings values."""
    settings = Settings()

    assert settings.app_name == "Storefront"
    assert settings.version == "1.0.0"
    assert settings.environment == "development"
    assert settings.mail_transport == MailTransportType.CONSOLE
    assert settings.order_enqueue_failure_policy == EnqueueFailurePolicy.COMPENSATE


def test_job_defaults_match_confirmation_policy():
    """Queue defaults: 3 attempts, 5s fixed backoff, concurrency 5."""
    settings = Settings()

    assert settings.order_email_channel == "order-email-queue"
    assert settings.job_default_max_attempts == 3
    assert settings.job_default_backoff_s == 5.0
    assert settings.job_concurrency == 5


def test_production_validation_blocks_console_transport():
    """Test that production environment blocks MAIL_TRANSPORT=console."""
    with pytest.raises(ValueError, match="MAIL_TRANSPORT=console is not allowed"):
        Settings(environment="production", mail_transport=MailTransportType.CONSOLE)


def test_production_allows_smtp_transport():
    settings = Settings(environment="production", mail_transport=MailTransportType.SMTP)
    assert settings.mail_transport == MailTransportType.SMTP


def test_queue_database_url_defaults_to_database_url():
    settings = Settings(database_url="sqlite+aiosqlite:///./a.db")
    assert settings.effective_queue_database_url == "sqlite+aiosqlite:///./a.db"

    settings = Settings(
        database_url="sqlite+aiosqlite:///./a.db",
        queue_database_url="sqlite+aiosqlite:///./queue.db",
    )
    assert settings.effective_queue_database_url == "sqlite+aiosqlite:///./queue.db"


def test_settings_read_from_environment(monkeypatch):
    monkeypatch.setenv("JOB_CONCURRENCY", "8")
    monkeypatch.setenv("ORDER_ENQUEUE_FAILURE_POLICY", "log")

    settings = Settings()

    assert settings.job_concurrency == 8
    assert settings.order_enqueue_failure_policy == EnqueueFailurePolicy.LOG


def test_invalid_job_settings_rejected():
    with pytest.raises(ValueError):
        Settings(job_default_max_attempts=0)
    with pytest.raises(ValueError):
        Settings(job_concurrency=0)


def test_settings_dependency_injection():
    """Test the get_settings dependency function."""
    settings = get_settings()
    assert isinstance(settings, Settings)
    assert settings.app_name == "Storefront"
