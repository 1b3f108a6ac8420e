"""
Tests for the user directory and role permissions
"""

import pytest

from card_ledger.errors import AccessDeniedError, AlreadyExistsError, InvalidOperationError, UserNotFoundError
from card_ledger.identity import Identity, Permission, Role, require_permission


class TestIdentity:

    def test_user_permissions(self):
        user = Identity(user_id=1)

        assert user.has_permission(Permission.TRANSFER)
        assert user.has_permission(Permission.REQUEST_BLOCK)
        assert not user.has_permission(Permission.MANAGE_CARDS)
        assert not user.has_permission(Permission.PROCESS_BLOCK_REQUESTS)

    def test_admin_permissions(self):
        admin = Identity(user_id=1, role=Role.ADMIN)

        assert admin.is_admin
        assert admin.has_permission(Permission.BLOCK_CARD)
        assert admin.has_permission(Permission.MAINTENANCE)
        # Administrators do not move money or ask for blocks
        assert not admin.has_permission(Permission.TRANSFER)
        assert not admin.has_permission(Permission.REQUEST_BLOCK)

    def test_require_permission(self):
        with pytest.raises(AccessDeniedError):
            require_permission(Identity(user_id=1), Permission.MANAGE_USERS)
        with pytest.raises(AccessDeniedError):
            require_permission(None, Permission.VIEW_CARD)
        require_permission(Identity(user_id=1), Permission.VIEW_CARD)


class TestUserManager:

    def test_create_user(self, system):
        user = system.user_manager.create_user("  Carol@Bank.Test ", "Carol", "White")

        assert user.id == 1
        assert user.email == "carol@bank.test"
        assert user.full_name == "Carol White"
        assert user.role == Role.USER
        assert user.is_active

    def test_identity_from_user(self, admin):
        identity = admin.identity()

        assert identity.user_id == admin.id
        assert identity.role == Role.ADMIN
        assert identity.email == "admin@bank.test"

    def test_duplicate_email_rejected(self, system, alice):
        with pytest.raises(AlreadyExistsError):
            system.user_manager.create_user("ALICE@bank.test", "Other", "Alice")

    def test_email_required(self, system):
        with pytest.raises(InvalidOperationError):
            system.user_manager.create_user("   ", "No", "Email")

    def test_only_admins_create_users_when_caller_given(self, system, admin, alice):
        with pytest.raises(AccessDeniedError):
            system.user_manager.create_user("dave@bank.test", "Dave", "Grey", identity=alice.identity())

        created = system.user_manager.create_user("dave@bank.test", "Dave", "Grey", identity=admin.identity())
        assert created.email == "dave@bank.test"

    def test_get_user_by_email(self, system, alice):
        assert system.user_manager.get_user_by_email("Alice@Bank.Test").id == alice.id
        assert system.user_manager.get_user_by_email("nobody@bank.test") is None

    def test_require_user(self, system):
        with pytest.raises(UserNotFoundError):
            system.user_manager.require_user(42)

    def test_lookup_user(self, system, admin, alice, bob):
        assert system.user_manager.lookup_user(admin.identity(), alice.id).id == alice.id
        assert system.user_manager.lookup_user(alice.identity(), alice.id).id == alice.id

        with pytest.raises(AccessDeniedError):
            system.user_manager.lookup_user(bob.identity(), alice.id)

    def test_lookup_user_by_email(self, system, admin, alice):
        assert system.user_manager.lookup_user_by_email(admin.identity(), "alice@bank.test").id == alice.id

        with pytest.raises(UserNotFoundError):
            system.user_manager.lookup_user_by_email(admin.identity(), "nobody@bank.test")
        with pytest.raises(AccessDeniedError):
            system.user_manager.lookup_user_by_email(alice.identity(), "alice@bank.test")

    def test_list_users(self, system, admin, alice, bob):
        users = system.user_manager.list_users(admin.identity())

        assert [user.email for user in users] == ["admin@bank.test", "alice@bank.test", "bob@bank.test"]
        with pytest.raises(AccessDeniedError):
            system.user_manager.list_users(alice.identity())
