"""
Tests for card secret encryption and key rotation
"""

import logging
import threading
import pytest
from datetime import date, timedelta
from decimal import Decimal

from card_ledger.config import CardLedgerConfig
from card_ledger.encryption import (
    FernetEncryptionProvider, AESGCMEncryptionProvider, SecretCodec,
    create_encryption_provider, ENCRYPTION_PREFIX,
)
from card_ledger.errors import AccessDeniedError, AlreadyExistsError, EncryptionError
from card_ledger.identity import Role
from card_ledger.storage import InMemoryStorage
from card_ledger.system import CardLedgerSystem


SAMPLES = ["4000123412341234", "5500000000000004", "000", "123", "999", "4000 0000 0000 0002"]


@pytest.fixture(params=["fernet", "aesgcm"])
def provider(request):
    return create_encryption_provider(request.param, "unit-test-key")


class TestProviders:

    def test_roundtrip(self, provider):
        for value in SAMPLES:
            assert provider.decrypt(provider.encrypt(value)) == value

    def test_ciphertext_is_tagged_and_hides_plaintext(self, provider):
        ciphertext = provider.encrypt("4000123412341234")

        assert ciphertext.startswith(ENCRYPTION_PREFIX)
        assert "4000123412341234" not in ciphertext

    def test_encryption_is_randomized(self, provider):
        assert provider.encrypt("123") != provider.encrypt("123")

    def test_untagged_value_is_rejected(self, provider):
        with pytest.raises(EncryptionError):
            provider.decrypt("4000123412341234")

    def test_malformed_ciphertext_is_rejected(self, provider):
        with pytest.raises(EncryptionError):
            provider.decrypt(ENCRYPTION_PREFIX + "not-base64-!!!")

    def test_wrong_key_is_rejected(self, provider):
        other = create_encryption_provider(provider.name, "some-other-key")

        with pytest.raises(EncryptionError):
            other.decrypt(provider.encrypt("4000123412341234"))

    def test_provider_types(self):
        assert isinstance(create_encryption_provider("fernet", "k"), FernetEncryptionProvider)
        assert isinstance(create_encryption_provider("AESGCM", "k"), AESGCMEncryptionProvider)

    def test_missing_key_is_an_error(self):
        with pytest.raises(EncryptionError):
            create_encryption_provider("fernet", "")

    def test_unknown_provider_is_an_error(self):
        with pytest.raises(EncryptionError):
            create_encryption_provider("rot13", "k")


class TestSecretCodec:

    def setup_method(self):
        self.old = create_encryption_provider("aesgcm", "old-key")
        self.new = create_encryption_provider("aesgcm", "new-key")

    def test_decrypts_with_retired_key(self):
        codec = SecretCodec(self.new, retired=[self.old])
        legacy = self.old.encrypt("4000123412341234")

        assert codec.decrypt(legacy) == "4000123412341234"
        assert codec.needs_rotation(legacy)
        assert not codec.needs_rotation(codec.encrypt("4000123412341234"))

    def test_reencrypt_moves_to_primary_key(self):
        codec = SecretCodec(self.new, retired=[self.old])
        rotated = codec.reencrypt(self.old.encrypt("321"))

        assert self.new.decrypt(rotated) == "321"

    def test_failure_is_fatal_and_logged(self, caplog):
        codec = SecretCodec(self.new)
        legacy = self.old.encrypt("4000123412341234")

        with caplog.at_level(logging.ERROR, logger="card_ledger.encryption"):
            with pytest.raises(EncryptionError):
                codec.decrypt(legacy)

        assert any(record.levelno == logging.ERROR for record in caplog.records)
        assert "4000123412341234" not in caplog.text

    def test_never_returns_stored_text(self):
        codec = SecretCodec(self.new)

        with pytest.raises(EncryptionError):
            codec.decrypt("4000123412341234")

    def test_fingerprint_is_deterministic_and_keyed(self):
        codec = SecretCodec(self.new, fingerprint_key="a")
        other = SecretCodec(self.new, fingerprint_key="b")

        assert codec.fingerprint("4000123412341234") == codec.fingerprint("4000123412341234")
        assert codec.fingerprint("4000123412341234") != codec.fingerprint("4000123412341235")
        assert codec.fingerprint("4000123412341234") != other.fingerprint("4000123412341234")

    def test_from_config(self):
        config = CardLedgerConfig(
            encryption_master_key="new-key",
            encryption_provider="aesgcm",
            encryption_retired_keys="old-key, older-key",
        )
        codec = SecretCodec.from_config(config)

        assert len(codec.retired) == 2
        assert codec.decrypt(self.old.encrypt("777")) == "777"

    def test_from_config_requires_key(self):
        config = CardLedgerConfig(encryption_master_key="")

        with pytest.raises(EncryptionError):
            SecretCodec.from_config(config)


class TestKeyRotation:

    def _system(self, storage, key, retired=""):
        config = CardLedgerConfig(
            database_url="memory://",
            encryption_master_key=key,
            encryption_provider="aesgcm",
            encryption_retired_keys=retired,
        )
        return CardLedgerSystem(config, storage=storage)

    def test_rotate_reencrypts_all_card_secrets(self):
        storage = InMemoryStorage()
        before = self._system(storage, "old-key")
        admin = before.user_manager.create_user("root@bank.test", "Root", "Admin", role=Role.ADMIN)
        owner = before.user_manager.create_user("owner@bank.test", "Olga", "Owner")
        card = before.card_manager.create_card(
            admin.identity(), owner.id, "4000000000000001", "456", date.today() + timedelta(days=30)
        )

        after = self._system(storage, "new-key", retired="old-key")
        status = after.encryption_status(admin.identity())
        assert status["cards_pending_rotation"] == 1

        assert after.rotate_keys(admin.identity()) == 1
        assert after.encryption_status(admin.identity())["cards_pending_rotation"] == 0

        # The retired key is no longer needed
        final = self._system(storage, "new-key")
        rotated = final.card_manager.load_card(card.id)
        assert final.codec.decrypt(rotated.number) == "4000000000000001"
        assert final.codec.decrypt(rotated.cvv) == "456"
        assert rotated.number_fingerprint == final.codec.fingerprint("4000000000000001")

    def test_rotation_is_admin_only(self, system, alice):
        with pytest.raises(AccessDeniedError):
            system.rotate_keys(alice.identity())

    def test_transfer_during_rotation_is_kept(self, monkeypatch):
        storage = InMemoryStorage()
        before = self._system(storage, "old-key")
        admin = before.user_manager.create_user("root@bank.test", "Root", "Admin", role=Role.ADMIN)
        payer = before.user_manager.create_user("payer@bank.test", "Paula", "Payer")
        payee = before.user_manager.create_user("payee@bank.test", "Peter", "Payee")
        expires = date.today() + timedelta(days=30)
        source = before.card_manager.create_card(
            admin.identity(), payer.id, "4000000000000001", "456", expires, balance="1000.00"
        )
        target = before.card_manager.create_card(admin.identity(), payee.id, "4000000000000002", "789", expires)

        after = self._system(storage, "new-key", retired="old-key")
        workers = []
        errors = []
        original = after.codec.needs_rotation

        def send():
            try:
                after.transfer_engine.transfer(payer.identity(), source.id, target.id, "100.00")
            except Exception as exc:
                errors.append(exc)

        def needs_rotation(ciphertext):
            if not workers:
                worker = threading.Thread(target=send)
                workers.append(worker)
                worker.start()
                # Give the transfer every chance to run inside the rotation
                worker.join(timeout=0.2)
            return original(ciphertext)

        monkeypatch.setattr(after.codec, "needs_rotation", needs_rotation)
        assert after.rotate_keys(admin.identity()) == 2
        workers[0].join(timeout=5)

        assert not workers[0].is_alive()
        assert errors == []
        assert after.card_manager.load_card(source.id).balance == Decimal("900.00")
        assert after.card_manager.load_card(target.id).balance == Decimal("100.00")
        assert storage.count("transfers") == 1


class TestFingerprints:

    def test_fingerprints_cover_retired_keys(self):
        provider = create_encryption_provider("aesgcm", "new-key")
        codec = SecretCodec(provider, fingerprint_key="new-key", retired_fingerprint_keys=["old-key"])
        old = SecretCodec(provider, fingerprint_key="old-key")

        digests = codec.fingerprints("4000000000000001")

        assert digests == [codec.fingerprint("4000000000000001"), old.fingerprint("4000000000000001")]

    def test_duplicate_number_detected_before_rotation(self):
        storage = InMemoryStorage()
        config = CardLedgerConfig(
            database_url="memory://", encryption_master_key="old-key", encryption_provider="aesgcm",
        )
        before = CardLedgerSystem(config, storage=storage)
        admin = before.user_manager.create_user("root@bank.test", "Root", "Admin", role=Role.ADMIN)
        owner = before.user_manager.create_user("owner@bank.test", "Olga", "Owner")
        expires = date.today() + timedelta(days=30)
        before.card_manager.create_card(admin.identity(), owner.id, "4000000000000001", "456", expires)

        rotated_config = CardLedgerConfig(
            database_url="memory://", encryption_master_key="new-key", encryption_provider="aesgcm",
            encryption_retired_keys="old-key",
        )
        after = CardLedgerSystem(rotated_config, storage=storage)

        with pytest.raises(AlreadyExistsError):
            after.card_manager.create_card(admin.identity(), owner.id, "4000000000000001", "111", expires)
        assert storage.count("cards") == 1
