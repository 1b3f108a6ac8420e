"""Shared fixtures: an in-memory ledger with an admin and two card owners."""

import os
from datetime import date, timedelta
from itertools import count

import pytest

# Never pick up a real key from the environment
os.environ.setdefault("BANKCARDS_ENCRYPTION_MASTER_KEY", "test-master-key")

from card_ledger.config import CardLedgerConfig
from card_ledger.identity import Role
from card_ledger.storage import InMemoryStorage
from card_ledger.system import CardLedgerSystem


TEST_KEY = "test-master-key"


@pytest.fixture
def config():
    return CardLedgerConfig(
        database_url="memory://",
        encryption_master_key=TEST_KEY,
        encryption_provider="aesgcm",
    )


@pytest.fixture
def system(config):
    system = CardLedgerSystem(config, storage=InMemoryStorage())
    yield system
    system.close()


@pytest.fixture
def admin(system):
    return system.user_manager.create_user("admin@bank.test", "Ada", "Admin", role=Role.ADMIN)


@pytest.fixture
def alice(system):
    return system.user_manager.create_user("alice@bank.test", "Alice", "Smith")


@pytest.fixture
def bob(system):
    return system.user_manager.create_user("bob@bank.test", "Bob", "Jones")


@pytest.fixture
def issue_card(system, admin):
    """Factory issuing a card with a unique number for an owner"""
    numbers = count(1)

    def issue(owner, balance="0.00", number=None, cvv="123", expiration_date=None):
        return system.card_manager.create_card(
            admin.identity(),
            owner_id=owner.id,
            number=number or f"4000{next(numbers):012d}",
            cvv=cvv,
            expiration_date=expiration_date or date.today() + timedelta(days=365),
            balance=balance,
        )

    return issue
