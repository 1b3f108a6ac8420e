"""
Maintenance endpoints (admin)
"""

from fastapi import APIRouter, Depends

from .deps import get_identity, get_system
from .schemas import ExpireCardsRequest
from ..identity import Identity
from ..system import CardLedgerSystem


router = APIRouter()


@router.post("/expire-cards")
def expire_cards(
    request: ExpireCardsRequest,
    identity: Identity = Depends(get_identity),
    system: CardLedgerSystem = Depends(get_system)
):
    """Run the expiration sweep now"""
    updated = system.expiration_sweep.run_on_demand(identity, request.as_of)
    return {"updated": updated}


@router.get("/encryption/status")
def get_encryption_status(
    identity: Identity = Depends(get_identity),
    system: CardLedgerSystem = Depends(get_system)
):
    return system.encryption_status(identity)


@router.post("/encryption/rotate")
def rotate_encryption_keys(
    identity: Identity = Depends(get_identity),
    system: CardLedgerSystem = Depends(get_system)
):
    """Re-encrypt card secrets under the current key"""
    return {"rotated": system.rotate_keys(identity)}
