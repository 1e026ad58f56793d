import pytest

from config import Settings, load_settings, normalize_database_url


def test_defaults(monkeypatch):
    for name in ("DATABASE_URL", "ARCHIVE_MESSAGES", "PENDING_TTL_SECONDS", "LOGIN_MAX_FAILURES"):
        monkeypatch.delenv(name, raising=False)
    settings = load_settings()
    assert settings.pending_ttl_seconds == 604800
    assert settings.archive_messages is True
    assert settings.login_max_failures == 5
    assert settings.login_lockout_seconds == Settings().login_lockout_seconds == 60


def test_env_overrides(monkeypatch):
    monkeypatch.setenv("DATABASE_URL", "postgres://u:p@db/chat")
    monkeypatch.setenv("ARCHIVE_MESSAGES", "0")
    monkeypatch.setenv("PENDING_TTL_SECONDS", "120")
    settings = load_settings()
    assert settings.database_url == "postgresql://u:p@db/chat"
    assert settings.archive_messages is False
    assert settings.pending_ttl_seconds == 120


@pytest.mark.parametrize("name,value", [
    ("PENDING_TTL_SECONDS", "soon"),
    ("PENDING_TTL_SECONDS", "0"),
    ("ARCHIVE_MESSAGES", "yes"),
])
def test_invalid_values_raise(monkeypatch, name, value):
    monkeypatch.setenv(name, value)
    with pytest.raises(ValueError):
        load_settings()


def test_normalize_leaves_other_urls_alone():
    assert normalize_database_url("sqlite:///./x.db") == "sqlite:///./x.db"
