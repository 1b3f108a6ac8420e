"""
Transfer Engine Module

Moves money between two cards as one atomic unit. Both cards are row-locked
(lower id first) for the whole check-debit-credit-record sequence, so two
transfers sharing a card never interleave. Only completed transfers are
recorded; the transfers table is append-only.
"""

from decimal import Decimal
from datetime import date, datetime, timezone
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional
from enum import Enum
import logging

from .cards import Card, CardManager
from .errors import (
    AccessDeniedError, InsufficientFundsError, InvalidTransferError,
)
from .identity import Identity, Permission, require_permission
from .logging_config import log_action
from .money import AmountLike, ZERO, to_positive_amount
from .storage import StorageInterface, StorageRecord
from .users import UserManager


logger = logging.getLogger(__name__)

DESCRIPTION_MAX_LENGTH = 255


class TransferStatus(Enum):
    COMPLETED = "COMPLETED"


@dataclass
class Transfer(StorageRecord):
    """Completed money movement between two cards"""
    from_card_id: int
    to_card_id: int
    amount: Decimal
    transfer_date: datetime
    description: Optional[str] = None
    status: TransferStatus = TransferStatus.COMPLETED


@dataclass
class TransferView:
    id: int
    from_card_id: int
    from_card_masked_number: str
    to_card_id: int
    to_card_masked_number: str
    amount: Decimal
    description: Optional[str]
    transfer_date: datetime
    status: TransferStatus

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "from_card_id": self.from_card_id,
            "from_card_masked_number": self.from_card_masked_number,
            "to_card_id": self.to_card_id,
            "to_card_masked_number": self.to_card_masked_number,
            "amount": str(self.amount),
            "description": self.description,
            "transfer_date": self.transfer_date.isoformat(),
            "status": self.status.value,
        }


@dataclass
class CardTransferStats:
    card_id: int
    card_masked_number: str
    total_income: Decimal     # card was the recipient
    total_expense: Decimal    # card was the sender
    balance: Decimal
    income_transfers_count: int
    expense_transfers_count: int

    def to_dict(self) -> Dict[str, Any]:
        return {
            "card_id": self.card_id,
            "card_masked_number": self.card_masked_number,
            "total_income": str(self.total_income),
            "total_expense": str(self.total_expense),
            "balance": str(self.balance),
            "income_transfers_count": self.income_transfers_count,
            "expense_transfers_count": self.expense_transfers_count,
        }


@dataclass
class UserTransferStats:
    user_id: int
    user_email: str
    user_full_name: str
    total_income: Decimal
    total_expense: Decimal
    total_balance: Decimal
    card_stats: List[CardTransferStats] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "user_id": self.user_id,
            "user_email": self.user_email,
            "user_full_name": self.user_full_name,
            "total_income": str(self.total_income),
            "total_expense": str(self.total_expense),
            "total_balance": str(self.total_balance),
            "card_stats": [stats.to_dict() for stats in self.card_stats],
        }


class TransferEngine:
    """
    Executes transfers and answers history and statistics queries
    """

    def __init__(self, storage: StorageInterface, cards: CardManager, users: UserManager):
        self.storage = storage
        self.cards = cards
        self.users = users
        self.transfers_table = "transfers"

    def transfer(self, identity: Identity, from_card_id: int, to_card_id: int,
                 amount: AmountLike, cvv: Optional[str] = None,
                 description: Optional[str] = None) -> Transfer:
        """
        Move money from one of the caller's cards to any card

        Checks run in a fixed order and the first failure aborts the attempt
        with nothing persisted:
        sender ownership, recipient existence, CVV, distinct cards, both cards
        active, sufficient funds.

        Args:
            identity: Calling user, must own the sender card
            from_card_id: Sender card
            to_card_id: Recipient card
            amount: Positive amount
            cvv: Optional CVV of the sender card
            description: Optional free text

        Returns:
            Completed Transfer record

        Raises:
            AccessDeniedError: Sender not owned by caller or recipient missing
            InvalidTransferError: Wrong CVV, same card, inactive card
            InsufficientFundsError: Sender balance below amount
        """
        require_permission(identity, Permission.TRANSFER)
        amount = to_positive_amount(amount)
        if description is not None and len(description) > DESCRIPTION_MAX_LENGTH:
            raise InvalidTransferError(f"Description must be at most {DESCRIPTION_MAX_LENGTH} characters")

        log_action(
            logger, "info", f"Processing transfer request from user {identity.user_id}",
            user_id=identity.user_id, action="transfer_requested",
        )

        with self.storage.lock(self.cards.cards_table, [from_card_id, to_card_id]):
            with self.storage.atomic():
                from_card = self.cards.load_card(from_card_id)
                if not from_card or from_card.owner_id != identity.user_id:
                    raise AccessDeniedError("No access to sender card")

                to_card = self.cards.load_card(to_card_id)
                if not to_card:
                    raise AccessDeniedError("No access to recipient card")

                if cvv and not self.cards.verify_cvv(from_card, cvv):
                    raise InvalidTransferError("Invalid CVV code")

                self._validate_transfer(from_card, to_card, amount, date.today())

                # Mask before mutating so a decryption failure leaves nothing half-done
                from_masked = self.cards.masked_number(from_card)
                to_masked = self.cards.masked_number(to_card)

                if not from_card.debit(amount):
                    raise InsufficientFundsError("Failed to debit amount from card")
                to_card.credit(amount)

                self.cards.save_card(from_card)
                self.cards.save_card(to_card)

                now = datetime.now(timezone.utc)
                transfer = Transfer(
                    id=self.storage.next_id(self.transfers_table),
                    created_at=now,
                    updated_at=now,
                    from_card_id=from_card.id,
                    to_card_id=to_card.id,
                    amount=amount,
                    transfer_date=now,
                    description=description,
                )
                self._save_transfer(transfer)

        log_action(
            logger, "info", f"Transfer completed: {from_masked} -> {to_masked}, amount: {amount}",
            user_id=identity.user_id, action="transfer_completed", resource=f"transfer:{transfer.id}",
        )
        return transfer

    @staticmethod
    def _validate_transfer(from_card: Card, to_card: Card, amount: Decimal, today: date) -> None:
        if from_card.id == to_card.id:
            raise InvalidTransferError("Cannot transfer to the same card")
        if not from_card.is_usable_on(today):
            raise InvalidTransferError("Sender card is inactive")
        if not to_card.is_usable_on(today):
            raise InvalidTransferError("Recipient card is inactive")
        if not from_card.can_debit(amount):
            raise InsufficientFundsError("Insufficient funds on card")

    # ---------------------------------------------------------------- history

    def view(self, transfer: Transfer, masks: Optional[Dict[int, str]] = None) -> TransferView:
        """Transfer with the masked numbers of both cards"""
        masks = masks if masks is not None else {}
        return TransferView(
            id=transfer.id,
            from_card_id=transfer.from_card_id,
            from_card_masked_number=self._mask_for(transfer.from_card_id, masks),
            to_card_id=transfer.to_card_id,
            to_card_masked_number=self._mask_for(transfer.to_card_id, masks),
            amount=transfer.amount,
            description=transfer.description,
            transfer_date=transfer.transfer_date,
            status=transfer.status,
        )

    def views(self, transfers: Iterable[Transfer]) -> List[TransferView]:
        masks: Dict[int, str] = {}
        return [self.view(transfer, masks) for transfer in transfers]

    def get_transfer(self, transfer_id: int) -> Optional[Transfer]:
        data = self.storage.load(self.transfers_table, transfer_id)
        if data:
            return self._transfer_from_dict(data)
        return None

    def user_transfers(self, identity: Identity) -> List[Transfer]:
        """Transfers where the caller owns either card, newest first"""
        require_permission(identity, Permission.VIEW_TRANSFERS)
        card_ids = [card.id for card in self.cards.owned_cards(identity.user_id)]
        return self._transfers_for_cards(card_ids)

    def card_transfers(self, identity: Identity, card_id: int) -> List[Transfer]:
        """Transfers of one card, newest first. Administrators skip the ownership check."""
        require_permission(identity, Permission.VIEW_TRANSFERS)
        card = self.cards.accessible_card(identity, card_id)
        return self._transfers_for_cards([card.id])

    # ------------------------------------------------------------- statistics

    def card_stats(self, identity: Identity, card_id: int) -> CardTransferStats:
        require_permission(identity, Permission.VIEW_STATISTICS)
        card = self.cards.accessible_card(identity, card_id)
        return self._card_stats(card)

    def user_stats(self, identity: Identity, user_id: int) -> UserTransferStats:
        """Per-card statistics for a user plus totals across the user's cards"""
        require_permission(identity, Permission.VIEW_STATISTICS)
        if not identity.is_admin and identity.user_id != user_id:
            raise AccessDeniedError("Access denied")
        user = self.users.require_user(user_id)

        cards = self.cards.owned_cards(user.id)
        card_stats = [self._card_stats(card) for card in cards]

        return UserTransferStats(
            user_id=user.id,
            user_email=user.email,
            user_full_name=user.full_name,
            total_income=sum((stats.total_income for stats in card_stats), ZERO),
            total_expense=sum((stats.total_expense for stats in card_stats), ZERO),
            total_balance=sum((card.balance for card in cards), ZERO),
            card_stats=card_stats,
        )

    def _card_stats(self, card: Card) -> CardTransferStats:
        incoming = self._find_transfers({"to_card_id": card.id})
        outgoing = self._find_transfers({"from_card_id": card.id})
        return CardTransferStats(
            card_id=card.id,
            card_masked_number=self.cards.masked_number(card),
            total_income=sum((transfer.amount for transfer in incoming), ZERO),
            total_expense=sum((transfer.amount for transfer in outgoing), ZERO),
            balance=card.balance,
            income_transfers_count=len(incoming),
            expense_transfers_count=len(outgoing),
        )

    # ---------------------------------------------------------------- helpers

    def _mask_for(self, card_id: int, masks: Dict[int, str]) -> str:
        if card_id not in masks:
            card = self.cards.load_card(card_id)
            masks[card_id] = self.cards.masked_number(card) if card else "****"
        return masks[card_id]

    def _find_transfers(self, filters: Dict[str, Any]) -> List[Transfer]:
        return [self._transfer_from_dict(data) for data in self.storage.find(self.transfers_table, filters)]

    def _transfers_for_cards(self, card_ids: Iterable[int]) -> List[Transfer]:
        found: Dict[int, Transfer] = {}
        for card_id in card_ids:
            for transfer in self._find_transfers({"from_card_id": card_id}):
                found[transfer.id] = transfer
            for transfer in self._find_transfers({"to_card_id": card_id}):
                found[transfer.id] = transfer
        return sorted(found.values(), key=lambda t: (t.transfer_date, t.id), reverse=True)

    def _save_transfer(self, transfer: Transfer) -> None:
        result = transfer.to_dict()
        result['amount'] = str(transfer.amount)
        result['status'] = transfer.status.value
        result['transfer_date'] = transfer.transfer_date.isoformat()
        self.storage.save(self.transfers_table, transfer.id, result)

    def _transfer_from_dict(self, data: Dict) -> Transfer:
        return Transfer(
            id=int(data['id']),
            created_at=datetime.fromisoformat(data['created_at']),
            updated_at=datetime.fromisoformat(data['updated_at']),
            from_card_id=int(data['from_card_id']),
            to_card_id=int(data['to_card_id']),
            amount=Decimal(data['amount']),
            transfer_date=datetime.fromisoformat(data['transfer_date']),
            description=data.get('description'),
            status=TransferStatus(data['status']),
        )
