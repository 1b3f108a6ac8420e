"""
Block Request Workflow Module

Card owners ask for one of their cards to be blocked; administrators approve
or reject. A card has at most one PENDING request at a time. Approval is the
only path by which a request changes card state.

    PENDING --approve--> APPROVED (card blocked)
    PENDING --reject---> REJECTED
"""

from datetime import datetime, timezone
from dataclasses import dataclass
from typing import Any, Dict, List, Optional
from enum import Enum
import logging

from .cards import Card, CardManager, CardStatus
from .errors import BlockRequestNotFoundError, InvalidOperationError
from .identity import Identity, Permission, require_permission
from .logging_config import log_action
from .storage import StorageInterface, StorageRecord


logger = logging.getLogger(__name__)

REASON_MIN_LENGTH = 5


class RequestStatus(Enum):
    """Status of a block request"""
    PENDING = "PENDING"
    APPROVED = "APPROVED"
    REJECTED = "REJECTED"


@dataclass
class BlockRequest(StorageRecord):
    """User request to block a card"""
    card_id: int
    user_id: int
    reason: str
    status: RequestStatus = RequestStatus.PENDING
    processed_by: Optional[int] = None
    processed_at: Optional[datetime] = None
    admin_comment: Optional[str] = None

    @property
    def is_pending(self) -> bool:
        return self.status == RequestStatus.PENDING


@dataclass
class BlockRequestView:
    id: int
    card_id: int
    card_masked_number: str
    card_holder: str
    card_status: CardStatus
    user_id: int
    reason: str
    status: RequestStatus
    created_at: datetime
    processed_by: Optional[int]
    processed_at: Optional[datetime]
    admin_comment: Optional[str]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "card_id": self.card_id,
            "card_masked_number": self.card_masked_number,
            "card_holder": self.card_holder,
            "card_status": self.card_status.value,
            "user_id": self.user_id,
            "reason": self.reason,
            "status": self.status.value,
            "created_at": self.created_at.isoformat(),
            "processed_by": self.processed_by,
            "processed_at": self.processed_at.isoformat() if self.processed_at else None,
            "admin_comment": self.admin_comment,
        }


class BlockRequestWorkflow:
    """
    Creates and processes card block requests
    """

    def __init__(self, storage: StorageInterface, cards: CardManager, config):
        self.storage = storage
        self.cards = cards
        self.config = config
        self.requests_table = "block_requests"

    def create_block_request(self, identity: Identity, card_id: int, reason: str) -> BlockRequest:
        """
        Ask for one of the caller's cards to be blocked

        Raises:
            AccessDeniedError: Card missing or owned by somebody else
            InvalidOperationError: Reason invalid or a PENDING request exists
        """
        require_permission(identity, Permission.REQUEST_BLOCK)
        reason = self._validate_reason(reason)

        with self.storage.lock(self.cards.cards_table, [card_id]):
            with self.storage.atomic():
                card = self.cards.accessible_card(identity, card_id)

                if self.storage.find(self.requests_table, {"card_id": card.id, "status": RequestStatus.PENDING}):
                    log_action(
                        logger, "warning", f"User {identity.user_id} already has a pending block request for card {card.id}",
                        user_id=identity.user_id, action="block_request_duplicate", resource=f"card:{card.id}",
                    )
                    raise InvalidOperationError("You already have a pending block request for this card")

                now = datetime.now(timezone.utc)
                request = BlockRequest(
                    id=self.storage.next_id(self.requests_table),
                    created_at=now,
                    updated_at=now,
                    card_id=card.id,
                    user_id=identity.user_id,
                    reason=reason,
                )
                self._save_request(request)

        log_action(
            logger, "info", f"Block request {request.id} created for card {card.id}",
            user_id=identity.user_id, action="block_request_created", resource=f"block_request:{request.id}",
        )
        # Administrators are notified through the pending count
        log_action(
            logger, "warning", f"New block request {request.id} awaits review, pending requests: {self.pending_count()}",
            action="block_request_pending", resource=f"block_request:{request.id}",
        )
        return request

    def approve_block_request(self, identity: Identity, request_id: int,
                              admin_comment: Optional[str] = None) -> BlockRequest:
        """
        Approve a PENDING request and block its card. A card that already
        expired keeps its EXPIRED status; the approval is still recorded.
        """
        return self._process(identity, request_id, RequestStatus.APPROVED, admin_comment)

    def reject_block_request(self, identity: Identity, request_id: int,
                             admin_comment: Optional[str] = None) -> BlockRequest:
        """Reject a PENDING request; the card is left untouched"""
        return self._process(identity, request_id, RequestStatus.REJECTED, admin_comment)

    def _process(self, identity: Identity, request_id: int, decision: RequestStatus,
                 admin_comment: Optional[str]) -> BlockRequest:
        require_permission(identity, Permission.PROCESS_BLOCK_REQUESTS)
        verb = "approved" if decision == RequestStatus.APPROVED else "rejected"
        card_id = self.require_request(request_id).card_id

        # Lock order: card first, then request
        with self.storage.lock(self.cards.cards_table, [card_id]):
            with self.storage.lock(self.requests_table, [request_id]):
                with self.storage.atomic():
                    request = self.require_request(request_id)
                    if not request.is_pending:
                        raise InvalidOperationError(f"Only pending requests can be {verb}")

                    if decision == RequestStatus.APPROVED:
                        card = self.cards.require_card(request.card_id)
                        if card.status != CardStatus.EXPIRED:
                            self.cards.apply_block(card.id)

                    now = datetime.now(timezone.utc)
                    request.status = decision
                    request.processed_by = identity.user_id
                    request.processed_at = now
                    request.admin_comment = admin_comment
                    request.updated_at = now
                    self._save_request(request)

        log_action(
            logger, "info", f"Block request {request_id} {verb}, card {card_id}",
            user_id=identity.user_id, action=f"block_request_{verb}", resource=f"block_request:{request_id}",
        )
        return request

    # ------------------------------------------------------------------ reads

    def require_request(self, request_id: int) -> BlockRequest:
        data = self.storage.load(self.requests_table, request_id)
        if not data:
            raise BlockRequestNotFoundError(f"Block request not found with id: {request_id}")
        return self._request_from_dict(data)

    def get_block_request(self, identity: Identity, request_id: int) -> BlockRequest:
        """Administrators see every request, owners their own"""
        request = self.require_request(request_id)
        if not identity.has_permission(Permission.PROCESS_BLOCK_REQUESTS):
            require_permission(identity, Permission.REQUEST_BLOCK)
            if request.user_id != identity.user_id:
                raise BlockRequestNotFoundError(f"Block request not found with id: {request_id}")
        return request

    def list_block_requests(self, identity: Identity,
                            status: Optional[RequestStatus] = None) -> List[BlockRequest]:
        """All requests, newest first, optionally filtered by status (admin only)"""
        require_permission(identity, Permission.PROCESS_BLOCK_REQUESTS)
        filters: Dict[str, Any] = {}
        if status is not None:
            filters["status"] = status
        return self._find(filters)

    def pending_count(self) -> int:
        return len(self.storage.find(self.requests_table, {"status": RequestStatus.PENDING}))

    def cards_with_pending_requests(self, identity: Identity) -> List[Card]:
        """Cards having at least one PENDING request, each card once"""
        require_permission(identity, Permission.PROCESS_BLOCK_REQUESTS)
        cards: List[Card] = []
        seen = set()
        for request in self._find({"status": RequestStatus.PENDING}):
            if request.card_id in seen:
                continue
            seen.add(request.card_id)
            card = self.cards.load_card(request.card_id)
            if card:
                cards.append(card)
        return cards

    def get_card_by_block_request(self, identity: Identity, request_id: int) -> Card:
        require_permission(identity, Permission.PROCESS_BLOCK_REQUESTS)
        request = self.require_request(request_id)
        return self.cards.require_card(request.card_id)

    def view(self, request: BlockRequest) -> BlockRequestView:
        card = self.cards.require_card(request.card_id)
        return BlockRequestView(
            id=request.id,
            card_id=card.id,
            card_masked_number=self.cards.masked_number(card),
            card_holder=card.holder,
            card_status=card.status,
            user_id=request.user_id,
            reason=request.reason,
            status=request.status,
            created_at=request.created_at,
            processed_by=request.processed_by,
            processed_at=request.processed_at,
            admin_comment=request.admin_comment,
        )

    # ---------------------------------------------------------------- helpers

    def _validate_reason(self, reason: str) -> str:
        reason = (reason or "").strip()
        max_length = self.config.block_reason_max_length
        if not REASON_MIN_LENGTH <= len(reason) <= max_length:
            raise InvalidOperationError(
                f"Reason must be between {REASON_MIN_LENGTH} and {max_length} characters"
            )
        return reason

    def _find(self, filters: Dict[str, Any]) -> List[BlockRequest]:
        requests = [self._request_from_dict(data) for data in self.storage.find(self.requests_table, filters)]
        return sorted(requests, key=lambda r: (r.created_at, r.id), reverse=True)

    def _save_request(self, request: BlockRequest) -> None:
        result = request.to_dict()
        result['status'] = request.status.value
        self.storage.save(self.requests_table, request.id, result)

    def _request_from_dict(self, data: Dict) -> BlockRequest:
        processed_at = None
        if data.get('processed_at'):
            processed_at = datetime.fromisoformat(data['processed_at'])

        return BlockRequest(
            id=int(data['id']),
            created_at=datetime.fromisoformat(data['created_at']),
            updated_at=datetime.fromisoformat(data['updated_at']),
            card_id=int(data['card_id']),
            user_id=int(data['user_id']),
            reason=data['reason'],
            status=RequestStatus(data['status']),
            processed_by=data.get('processed_by'),
            processed_at=processed_at,
            admin_comment=data.get('admin_comment'),
        )
