"""
User endpoints
"""

from fastapi import APIRouter, Depends, status

from .deps import get_identity, get_system
from .schemas import CreateUserRequest, UpdateUserRequest
from ..errors import InvalidOperationError
from ..identity import Identity, Role
from ..system import CardLedgerSystem
from ..users import User


router = APIRouter()


def _user_to_dict(user: User) -> dict:
    return {
        "id": user.id,
        "email": user.email,
        "first_name": user.first_name,
        "last_name": user.last_name,
        "full_name": user.full_name,
        "role": user.role.value,
        "is_active": user.is_active,
        "created_at": user.created_at.isoformat(),
    }


@router.post("", status_code=status.HTTP_201_CREATED)
def create_user(
    request: CreateUserRequest,
    identity: Identity = Depends(get_identity),
    system: CardLedgerSystem = Depends(get_system)
):
    try:
        role = Role(request.role.upper())
    except ValueError:
        raise InvalidOperationError(f"Unknown role: {request.role}")

    user = system.user_manager.create_user(
        email=request.email,
        first_name=request.first_name,
        last_name=request.last_name,
        role=role,
        identity=identity,
    )
    return _user_to_dict(user)


@router.get("")
def list_users(
    identity: Identity = Depends(get_identity),
    system: CardLedgerSystem = Depends(get_system)
):
    return {"users": [_user_to_dict(user) for user in system.user_manager.list_users(identity)]}


@router.get("/lookup")
def get_user_by_email(
    email: str,
    identity: Identity = Depends(get_identity),
    system: CardLedgerSystem = Depends(get_system)
):
    return _user_to_dict(system.user_manager.lookup_user_by_email(identity, email))


@router.get("/{user_id}")
def get_user(
    user_id: int,
    identity: Identity = Depends(get_identity),
    system: CardLedgerSystem = Depends(get_system)
):
    return _user_to_dict(system.user_manager.lookup_user(identity, user_id))


@router.get("/{user_id}/cards")
def get_user_cards(
    user_id: int,
    identity: Identity = Depends(get_identity),
    system: CardLedgerSystem = Depends(get_system)
):
    cards = system.card_manager.list_user_cards(identity, user_id)
    return {"cards": [system.card_manager.view(card).to_dict() for card in cards]}


@router.get("/{user_id}/stats")
def get_user_stats(
    user_id: int,
    identity: Identity = Depends(get_identity),
    system: CardLedgerSystem = Depends(get_system)
):
    return system.transfer_engine.user_stats(identity, user_id).to_dict()


@router.put("/{user_id}")
def update_user(
    user_id: int,
    request: UpdateUserRequest,
    identity: Identity = Depends(get_identity),
    system: CardLedgerSystem = Depends(get_system)
):
    user = system.account_manager.update_user(
        identity, user_id, first_name=request.first_name, last_name=request.last_name
    )
    return _user_to_dict(user)


@router.post("/{user_id}/block")
def block_user(
    user_id: int,
    identity: Identity = Depends(get_identity),
    system: CardLedgerSystem = Depends(get_system)
):
    return _user_to_dict(system.account_manager.block_user(identity, user_id))


@router.post("/{user_id}/activate")
def activate_user(
    user_id: int,
    identity: Identity = Depends(get_identity),
    system: CardLedgerSystem = Depends(get_system)
):
    return _user_to_dict(system.account_manager.activate_user(identity, user_id))


@router.delete("/{user_id}")
def delete_user(
    user_id: int,
    identity: Identity = Depends(get_identity),
    system: CardLedgerSystem = Depends(get_system)
):
    return system.account_manager.delete_user(identity, user_id)
