"""
Block request administration endpoints
"""

from typing import Optional
from fastapi import APIRouter, Depends

from .deps import get_identity, get_system
from .schemas import ProcessBlockRequestRequest
from ..block_requests import RequestStatus
from ..identity import Identity, Permission, require_permission
from ..system import CardLedgerSystem


router = APIRouter()


@router.get("")
def list_block_requests(
    status: Optional[RequestStatus] = None,
    identity: Identity = Depends(get_identity),
    system: CardLedgerSystem = Depends(get_system)
):
    workflow = system.block_request_workflow
    requests = workflow.list_block_requests(identity, status=status)
    return {"block_requests": [workflow.view(request).to_dict() for request in requests]}


@router.get("/pending-count")
def get_pending_count(
    identity: Identity = Depends(get_identity),
    system: CardLedgerSystem = Depends(get_system)
):
    require_permission(identity, Permission.PROCESS_BLOCK_REQUESTS)
    return {"pending": system.block_request_workflow.pending_count()}


@router.get("/pending-cards")
def get_cards_with_pending_requests(
    identity: Identity = Depends(get_identity),
    system: CardLedgerSystem = Depends(get_system)
):
    cards = system.block_request_workflow.cards_with_pending_requests(identity)
    return {"cards": [system.card_manager.view(card).to_dict() for card in cards]}


@router.get("/{request_id}")
def get_block_request(
    request_id: int,
    identity: Identity = Depends(get_identity),
    system: CardLedgerSystem = Depends(get_system)
):
    workflow = system.block_request_workflow
    return workflow.view(workflow.get_block_request(identity, request_id)).to_dict()


@router.get("/{request_id}/card")
def get_card_by_block_request(
    request_id: int,
    identity: Identity = Depends(get_identity),
    system: CardLedgerSystem = Depends(get_system)
):
    card = system.block_request_workflow.get_card_by_block_request(identity, request_id)
    return system.card_manager.view(card).to_dict()


@router.post("/{request_id}/approve")
def approve_block_request(
    request_id: int,
    request: ProcessBlockRequestRequest,
    identity: Identity = Depends(get_identity),
    system: CardLedgerSystem = Depends(get_system)
):
    workflow = system.block_request_workflow
    block_request = workflow.approve_block_request(identity, request_id, request.admin_comment)
    return workflow.view(block_request).to_dict()


@router.post("/{request_id}/reject")
def reject_block_request(
    request_id: int,
    request: ProcessBlockRequestRequest,
    identity: Identity = Depends(get_identity),
    system: CardLedgerSystem = Depends(get_system)
):
    workflow = system.block_request_workflow
    block_request = workflow.reject_block_request(identity, request_id, request.admin_comment)
    return workflow.view(block_request).to_dict()
