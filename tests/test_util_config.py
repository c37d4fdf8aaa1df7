"""
Tests for settings parsing and the tradedash-util command line helpers.
"""

from datetime import timedelta

import pytest
from pydantic import ValidationError

from finance.tradedash.api.app.config import Settings
from finance.tradedash.api.app.util.__main__ import (
    describe_expiration,
    gen_crypto_key,
    gen_secret,
    main,
)


class TestSettings:
    def test_worker_id_is_required(self, monkeypatch):
        monkeypatch.delenv("WORKER_ID", raising=False)

        with pytest.raises(ValidationError):
            Settings()  # type: ignore

    def test_from_environment(self, monkeypatch):
        monkeypatch.delenv("DATABASE_URL", raising=False)
        monkeypatch.setenv("WORKER_ID", "worker-7")
        monkeypatch.setenv(
            "ALLOWED_ORIGINS", "https://dash.example.com, https://admin.example.com"
        )
        monkeypatch.setenv("PG_DSN", "postgresql+asyncpg://u:p@db/other")
        monkeypatch.setenv("SESSION_EXPIRY", "3600")

        settings = Settings()  # type: ignore

        assert settings.worker_id == "worker-7"
        assert settings.allowed_origins == [
            "https://dash.example.com",
            "https://admin.example.com",
        ]
        assert settings.database_url == "postgresql+asyncpg://u:p@db/other"
        assert settings.session_lifetime == timedelta(hours=1)

    def test_environment_flags(self, settings):
        assert settings.is_development
        assert not settings.model_copy(update={"environment": "production"}).is_development

    def test_google_oauth_configured(self, settings):
        assert settings.google_oauth_configured
        assert not settings.model_copy(
            update={"google_client_secret": None}
        ).google_oauth_configured

    def test_exchange_credentials_need_key_and_secret(self, settings):
        configured = settings.model_copy(
            update={
                "binance_api_key": "key",
                "binance_api_secret": "secret",
                "kraken_api_key": "key-only",
            }
        )

        assert configured.exchange_credentials() == {"binance": ("key", "secret")}


class TestUtil:
    def test_gen_crypto_key(self):
        settings = Settings(worker_id="w", encryption_key=gen_crypto_key())

        token = settings.encryption_key.encrypt(b"secret")
        assert settings.encryption_key.decrypt(token) == b"secret"

    def test_gen_secret(self):
        assert len(gen_secret(32)) >= 32
        assert gen_secret() != gen_secret()

    @pytest.mark.parametrize(
        "value,expected",
        [
            ("30d", "2592000"),
            ("12h", "43200"),
            ("refresh", "2592000"),
            ("never", "never"),
            ("api_key", "never"),
        ],
    )
    def test_describe_expiration(self, value, expected):
        assert describe_expiration(value) == expected

    def test_main_prints_expiration(self, capsys):
        assert main(["expiration", "2w"]) == 0
        assert capsys.readouterr().out.strip() == "1209600"

    def test_main_rejects_bad_expiration(self, capsys):
        assert main(["expiration", "soon"]) == 1
        assert "Invalid expiration format" in capsys.readouterr().err

    def test_main_gen_crypto(self, capsys):
        assert main(["gen-crypto"]) == 0
        assert capsys.readouterr().out.strip()
