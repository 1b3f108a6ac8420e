"""
Tests for environment-driven configuration
"""

from card_ledger.config import CardLedgerConfig


class TestCardLedgerConfig:

    def test_defaults(self, monkeypatch):
        monkeypatch.delenv("BANKCARDS_ENCRYPTION_PROVIDER", raising=False)
        config = CardLedgerConfig()

        assert config.encryption_provider == "fernet"
        assert config.card_number_length == 16
        assert config.card_validity_years == 3
        assert config.block_reason_max_length == 500
        assert config.expiration_run_at == "00:00"

    def test_environment_prefix(self, monkeypatch):
        monkeypatch.setenv("BANKCARDS_DATABASE_URL", "memory://")
        monkeypatch.setenv("BANKCARDS_API_PORT", "9090")
        monkeypatch.setenv("BANKCARDS_EXPIRATION_RUN_AT", "02:30")

        config = CardLedgerConfig()

        assert config.database_url == "memory://"
        assert config.api_port == 9090
        assert config.expiration_run_at == "02:30"

    def test_retired_keys(self):
        config = CardLedgerConfig(encryption_retired_keys=" first, ,second ")

        assert config.retired_keys == ["first", "second"]

    def test_no_retired_keys(self):
        assert CardLedgerConfig(encryption_retired_keys="").retired_keys == []
