"""
Card management endpoints
"""

from datetime import date
from typing import Optional
from fastapi import APIRouter, Depends, Response, status

from .deps import get_identity, get_system
from .schemas import (
    CreateBlockRequestRequest, CreateCardForUserRequest, CreateCardRequest, UpdateCardRequest,
)
from ..cards import CardStatus
from ..identity import Identity
from ..system import CardLedgerSystem


router = APIRouter()


@router.post("", status_code=status.HTTP_201_CREATED)
def create_card(
    request: CreateCardRequest,
    identity: Identity = Depends(get_identity),
    system: CardLedgerSystem = Depends(get_system)
):
    """Issue a card with given number and CVV (admin)"""
    card = system.card_manager.create_card(
        identity,
        owner_id=request.owner_id,
        number=request.number,
        cvv=request.cvv,
        expiration_date=request.expiration_date,
        holder=request.holder,
        balance=request.balance,
    )
    return system.card_manager.view(card).to_dict()


@router.post("/for-user/{user_id}", status_code=status.HTTP_201_CREATED)
def create_card_for_user(
    user_id: int,
    request: CreateCardForUserRequest,
    identity: Identity = Depends(get_identity),
    system: CardLedgerSystem = Depends(get_system)
):
    """Issue a card with generated number, CVV and expiration date (admin)"""
    card = system.card_manager.create_card_for_user(identity, user_id, holder=request.holder)
    return system.card_manager.view(card).to_dict()


@router.get("")
def list_cards(
    status: Optional[CardStatus] = None,
    expires_from: Optional[date] = None,
    expires_to: Optional[date] = None,
    identity: Identity = Depends(get_identity),
    system: CardLedgerSystem = Depends(get_system)
):
    """All cards for administrators, own cards for users"""
    cards = system.card_manager.list_cards(
        identity, status=status, expires_from=expires_from, expires_to=expires_to
    )
    return {"cards": [system.card_manager.view(card).to_dict() for card in cards]}


@router.get("/{card_id}")
def get_card(
    card_id: int,
    identity: Identity = Depends(get_identity),
    system: CardLedgerSystem = Depends(get_system)
):
    card = system.card_manager.get_card(identity, card_id)
    return system.card_manager.view(card).to_dict()


@router.put("/{card_id}")
def update_card(
    card_id: int,
    request: UpdateCardRequest,
    identity: Identity = Depends(get_identity),
    system: CardLedgerSystem = Depends(get_system)
):
    card = system.card_manager.update_card(
        identity,
        card_id,
        number=request.number,
        holder=request.holder,
        expiration_date=request.expiration_date,
        owner_id=request.owner_id,
    )
    return system.card_manager.view(card).to_dict()


@router.delete("/{card_id}", status_code=status.HTTP_204_NO_CONTENT)
def delete_card(
    card_id: int,
    identity: Identity = Depends(get_identity),
    system: CardLedgerSystem = Depends(get_system)
):
    system.card_manager.delete_card(identity, card_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.post("/{card_id}/block")
def block_card(
    card_id: int,
    identity: Identity = Depends(get_identity),
    system: CardLedgerSystem = Depends(get_system)
):
    card = system.card_manager.block_card(identity, card_id)
    return system.card_manager.view(card).to_dict()


@router.post("/{card_id}/activate")
def activate_card(
    card_id: int,
    identity: Identity = Depends(get_identity),
    system: CardLedgerSystem = Depends(get_system)
):
    card = system.card_manager.activate_card(identity, card_id)
    return system.card_manager.view(card).to_dict()


@router.post("/{card_id}/block-requests", status_code=status.HTTP_201_CREATED)
def request_block(
    card_id: int,
    request: CreateBlockRequestRequest,
    identity: Identity = Depends(get_identity),
    system: CardLedgerSystem = Depends(get_system)
):
    """Ask an administrator to block one of your cards"""
    workflow = system.block_request_workflow
    block_request = workflow.create_block_request(identity, card_id, request.reason)
    return workflow.view(block_request).to_dict()


@router.get("/{card_id}/transfers")
def get_card_transfers(
    card_id: int,
    identity: Identity = Depends(get_identity),
    system: CardLedgerSystem = Depends(get_system)
):
    engine = system.transfer_engine
    transfers = engine.card_transfers(identity, card_id)
    return {"transfers": [view.to_dict() for view in engine.views(transfers)]}


@router.get("/{card_id}/stats")
def get_card_stats(
    card_id: int,
    identity: Identity = Depends(get_identity),
    system: CardLedgerSystem = Depends(get_system)
):
    return system.transfer_engine.card_stats(identity, card_id).to_dict()
