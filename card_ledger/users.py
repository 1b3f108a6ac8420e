"""
User Directory Module

Card owners and administrators. Authentication is external; this module only
keeps the identity records cards and block requests refer to.
"""

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Dict, List, Optional
import logging

from .errors import AccessDeniedError, AlreadyExistsError, InvalidOperationError, UserNotFoundError
from .identity import Identity, Role, Permission, require_permission
from .logging_config import log_action
from .storage import StorageInterface, StorageRecord


logger = logging.getLogger(__name__)


@dataclass
class User(StorageRecord):
    """Card owner or administrator"""
    email: str
    first_name: str
    last_name: str
    role: Role = Role.USER
    is_active: bool = True

    @property
    def full_name(self) -> str:
        return f"{self.first_name} {self.last_name}".strip()

    def identity(self) -> Identity:
        return Identity(user_id=self.id, role=self.role, email=self.email)


class UserManager:
    """Manages user records"""

    def __init__(self, storage: StorageInterface):
        self.storage = storage
        self.users_table = "users"

    def create_user(self, email: str, first_name: str, last_name: str,
                    role: Role = Role.USER, identity: Optional[Identity] = None) -> User:
        """
        Create a user

        Args:
            email: Unique email address (case-insensitive)
            first_name: Given name
            last_name: Family name
            role: ADMIN or USER
            identity: Caller; when given it must be allowed to manage users

        Returns:
            Created User
        """
        if identity is not None:
            require_permission(identity, Permission.MANAGE_USERS)

        email = email.strip().lower()
        if not email:
            raise InvalidOperationError("Email is required")

        now = datetime.now(timezone.utc)
        with self.storage.atomic():
            if self.storage.find(self.users_table, {"email": email}):
                raise AlreadyExistsError(f"User with email {email} already exists")

            user = User(
                id=self.storage.next_id(self.users_table),
                created_at=now,
                updated_at=now,
                email=email,
                first_name=first_name.strip(),
                last_name=last_name.strip(),
                role=role,
            )
            self.save_user(user)

        log_action(
            logger, "info", f"User {user.id} created",
            user_id=identity.user_id if identity else None,
            action="create_user", resource=f"user:{user.id}",
            extra={"role": role.value},
        )
        return user

    def get_user(self, user_id: int) -> Optional[User]:
        """Get user by ID"""
        data = self.storage.load(self.users_table, user_id)
        if data:
            return self._user_from_dict(data)
        return None

    def require_user(self, user_id: int) -> User:
        user = self.get_user(user_id)
        if not user:
            raise UserNotFoundError(f"User {user_id} not found")
        return user

    def get_user_by_email(self, email: str) -> Optional[User]:
        users = self.storage.find(self.users_table, {"email": email.strip().lower()})
        if users:
            return self._user_from_dict(users[0])
        return None

    def lookup_user(self, identity: Identity, user_id: int) -> User:
        """Administrators look up anyone, users only themselves"""
        if not identity.is_admin and identity.user_id != user_id:
            raise AccessDeniedError("Access denied")
        return self.require_user(user_id)

    def lookup_user_by_email(self, identity: Identity, email: str) -> User:
        require_permission(identity, Permission.MANAGE_USERS)
        user = self.get_user_by_email(email)
        if not user:
            raise UserNotFoundError(f"User not found with email: {email}")
        return user

    def list_users(self, identity: Identity) -> List[User]:
        """All users, ordered by id (admin only)"""
        require_permission(identity, Permission.MANAGE_USERS)
        users = [self._user_from_dict(data) for data in self.storage.load_all(self.users_table)]
        return sorted(users, key=lambda user: user.id)

    def save_user(self, user: User) -> None:
        self.storage.save(self.users_table, user.id, user.to_dict())

    def _user_from_dict(self, data: Dict) -> User:
        return User(
            id=int(data['id']),
            created_at=datetime.fromisoformat(data['created_at']),
            updated_at=datetime.fromisoformat(data['updated_at']),
            email=data['email'],
            first_name=data['first_name'],
            last_name=data['last_name'],
            role=Role(data['role']),
            is_active=data.get('is_active', True),
        )
