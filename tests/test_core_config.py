import pytest

from src.core.config import get_settings


def _set_minimum_production_env(monkeypatch) -> None:
    monkeypatch.setenv("ENV", "production")
    monkeypatch.setenv("SECRET_KEY", "prod-secret-key")
    monkeypatch.setenv("TOKEN_ENCRYPTION_KEY", "Y4Cpe2s2aQvRIvF8y17kF8s0w58K7tY6xE8DAXmXGJQ=")
    monkeypatch.setenv("DATABASE_URL", "postgresql+psycopg2://app:password@db:5432/socialdesk")
    monkeypatch.setenv("REDIS_URL", "redis://cache:6379/0")
    monkeypatch.setenv("FACEBOOK_APP_ID", "fb-app-prod")
    monkeypatch.setenv("FACEBOOK_APP_SECRET", "fb-secret-prod")
    monkeypatch.setenv("MEDIA_PUBLIC_BASE_URL", "https://media.socialdesk.app")


def test_requires_secret_key_in_production(monkeypatch) -> None:
    _set_minimum_production_env(monkeypatch)
    monkeypatch.setenv("SECRET_KEY", "")
    get_settings.cache_clear()

    with pytest.raises(ValueError):
        get_settings()

    get_settings.cache_clear()


def test_production_settings_load_when_complete(monkeypatch) -> None:
    _set_minimum_production_env(monkeypatch)
    get_settings.cache_clear()

    settings = get_settings()
    assert settings.env == "production"
    assert settings.graph_api_root == "https://graph.facebook.com/v19.0"

    get_settings.cache_clear()


def test_loads_environment_values(monkeypatch) -> None:
    monkeypatch.setenv("ENV", "development")
    monkeypatch.setenv("REDIS_URL", "redis://localhost:6379/9")
    monkeypatch.setenv("QUEUE_JOB_ATTEMPTS", "5")
    monkeypatch.setenv("GRAPH_API_VERSION", "v21.0")
    get_settings.cache_clear()

    settings = get_settings()
    assert settings.redis_url.endswith("/9")
    assert settings.queue_job_attempts == 5
    assert settings.graph_api_root.endswith("/v21.0")
    assert settings.queue_facebook_name == "publication-facebook"
    assert settings.queue_instagram_name == "publication-instagram"

    get_settings.cache_clear()


def test_rejects_invalid_observability_limits(monkeypatch) -> None:
    monkeypatch.setenv("SENTRY_TRACES_SAMPLE_RATE", "1.2")
    get_settings.cache_clear()

    with pytest.raises(ValueError):
        get_settings()

    get_settings.cache_clear()


def test_rejects_shared_queue_names(monkeypatch) -> None:
    monkeypatch.setenv("QUEUE_INSTAGRAM_NAME", "publication-facebook")
    get_settings.cache_clear()

    with pytest.raises(ValueError):
        get_settings()

    get_settings.cache_clear()
