"""
Request dependencies: the ledger system and the caller identity
"""

from typing import Optional

from fastapi import Header, Request

from ..errors import AccessDeniedError
from ..identity import Identity, Role
from ..system import CardLedgerSystem


def get_system(request: Request) -> CardLedgerSystem:
    return request.app.state.system


def get_identity(
    x_user_id: Optional[int] = Header(None),
    x_user_role: str = Header("USER"),
    x_user_email: Optional[str] = Header(None),
) -> Identity:
    """Identity asserted by the authenticating gateway in front of the service"""
    if x_user_id is None:
        raise AccessDeniedError("Authentication required")
    try:
        role = Role(x_user_role.upper())
    except ValueError:
        raise AccessDeniedError("Access denied")
    return Identity(user_id=x_user_id, role=role, email=x_user_email)
