"""
Transfer endpoints
"""

from fastapi import APIRouter, Depends, status

from .deps import get_identity, get_system
from .schemas import TransferRequest
from ..identity import Identity
from ..system import CardLedgerSystem


router = APIRouter()


@router.post("", status_code=status.HTTP_201_CREATED)
def create_transfer(
    request: TransferRequest,
    identity: Identity = Depends(get_identity),
    system: CardLedgerSystem = Depends(get_system)
):
    """Move money from one of your cards to another card"""
    engine = system.transfer_engine
    transfer = engine.transfer(
        identity,
        from_card_id=request.from_card_id,
        to_card_id=request.to_card_id,
        amount=request.amount,
        cvv=request.cvv,
        description=request.description,
    )
    return engine.view(transfer).to_dict()


@router.get("")
def get_user_transfers(
    identity: Identity = Depends(get_identity),
    system: CardLedgerSystem = Depends(get_system)
):
    """Transfers touching any of your cards, newest first"""
    engine = system.transfer_engine
    transfers = engine.user_transfers(identity)
    return {"transfers": [view.to_dict() for view in engine.views(transfers)]}
