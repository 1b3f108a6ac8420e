"""
Caller Identity and Capabilities

The calling identity and its role are supplied by an external authentication
layer and passed explicitly into every engine operation. Authorization is a
plain permission check against the role.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Dict, Optional, Set

from .errors import AccessDeniedError


class Role(Enum):
    ADMIN = "ADMIN"
    USER = "USER"


class Permission(Enum):
    """System permissions"""
    # Card permissions
    VIEW_CARD = "view_card"
    MANAGE_CARDS = "manage_cards"
    BLOCK_CARD = "block_card"
    VIEW_ALL_CARDS = "view_all_cards"

    # Transfer permissions
    TRANSFER = "transfer"
    VIEW_TRANSFERS = "view_transfers"
    VIEW_STATISTICS = "view_statistics"

    # Block request permissions
    REQUEST_BLOCK = "request_block"
    PROCESS_BLOCK_REQUESTS = "process_block_requests"

    # Admin permissions
    MANAGE_USERS = "manage_users"
    MAINTENANCE = "maintenance"


ROLE_PERMISSIONS: Dict[Role, Set[Permission]] = {
    Role.USER: {
        Permission.VIEW_CARD,
        Permission.TRANSFER,
        Permission.VIEW_TRANSFERS,
        Permission.VIEW_STATISTICS,
        Permission.REQUEST_BLOCK,
    },
    Role.ADMIN: {
        Permission.VIEW_CARD,
        Permission.MANAGE_CARDS,
        Permission.BLOCK_CARD,
        Permission.VIEW_ALL_CARDS,
        Permission.VIEW_TRANSFERS,
        Permission.VIEW_STATISTICS,
        Permission.PROCESS_BLOCK_REQUESTS,
        Permission.MANAGE_USERS,
        Permission.MAINTENANCE,
    },
}


@dataclass(frozen=True)
class Identity:
    """Authenticated caller"""
    user_id: int
    role: Role = Role.USER
    email: Optional[str] = None

    @property
    def is_admin(self) -> bool:
        return self.role == Role.ADMIN

    def has_permission(self, permission: Permission) -> bool:
        return permission in ROLE_PERMISSIONS.get(self.role, set())


def require_permission(identity: Identity, permission: Permission) -> None:
    """Raise AccessDeniedError unless the identity holds the permission"""
    if identity is None or not identity.has_permission(permission):
        raise AccessDeniedError("Access denied")
