import pytest

from directrent import config


def test_payments_simulated_without_key(monkeypatch):
    monkeypatch.delenv("PAYSTACK_SECRET_KEY", raising=False)
    monkeypatch.setenv("APP_ENV", "prod")
    assert config.payments_dev_mode()


def test_payments_live_only_in_production(monkeypatch):
    monkeypatch.setenv("PAYSTACK_SECRET_KEY", "sk_live_x")
    monkeypatch.setenv("APP_ENV", "staging")
    assert config.payments_dev_mode()
    monkeypatch.setenv("APP_ENV", "prod")
    assert not config.payments_dev_mode()


@pytest.mark.parametrize("raw, expected", [("memory", "memory"), ("SQL", "sql"), ("redis", "sql"), ("", "sql")])
def test_storage_backend(monkeypatch, raw, expected):
    monkeypatch.setenv("STORAGE_BACKEND", raw)
    assert config.storage_backend() == expected


def test_contact_rate_limit_is_clamped(monkeypatch):
    monkeypatch.setenv("CONTACT_RATE_LIMIT", "0")
    assert config.contact_rate_limit() == 1
    monkeypatch.setenv("CONTACT_RATE_LIMIT", "abc")
    assert config.contact_rate_limit() == 60


def test_postgres_scheme_is_rewritten(monkeypatch):
    monkeypatch.setenv("DATABASE_URL", "postgres://u:p@db/directrent")
    assert config.database_url() == "postgresql://u:p@db/directrent"


def test_production_refuses_default_jwt_secret(monkeypatch):
    monkeypatch.setenv("APP_ENV", "prod")
    monkeypatch.delenv("JWT_SECRET", raising=False)
    with pytest.raises(RuntimeError):
        config.enforce_secure_secrets()
