"""
Card Management Module

Cards are money-bearing accounts owned by one user. Card numbers and CVV codes
are stored encrypted; callers only ever see the masked number. Status moves
ACTIVE <-> BLOCKED by administrators and ACTIVE -> EXPIRED through the
expiration sweep. EXPIRED is terminal.
"""

from decimal import Decimal
from datetime import date, datetime, timezone
from dataclasses import dataclass
from typing import Any, Dict, List, Optional
from enum import Enum
import hmac
import logging
import re
import secrets

from .encryption import SecretCodec
from .errors import (
    AccessDeniedError, AlreadyExistsError, CardNotFoundError, InvalidOperationError,
)
from .identity import Identity, Permission, require_permission
from .logging_config import log_action
from .masking import mask_expiration_date, masked_number_for
from .money import AmountLike, ZERO, to_amount, to_positive_amount
from .storage import StorageInterface, StorageRecord
from .users import UserManager


logger = logging.getLogger(__name__)

CVV_PATTERN = re.compile(r"^\d{3}$")
HOLDER_MIN_LENGTH = 2
HOLDER_MAX_LENGTH = 100


class CardStatus(Enum):
    """Card lifecycle states"""
    ACTIVE = "ACTIVE"    # Normal operation
    BLOCKED = "BLOCKED"  # Suspended by an administrator
    EXPIRED = "EXPIRED"  # Past its expiration date, terminal


@dataclass
class Card(StorageRecord):
    """Bank card. number and cvv hold ciphertext."""
    number: str
    cvv: str
    number_fingerprint: str
    holder: str
    expiration_date: date
    owner_id: int
    balance: Decimal = ZERO
    status: CardStatus = CardStatus.ACTIVE

    def is_expired_on(self, day: date) -> bool:
        return self.expiration_date < day

    def is_usable_on(self, day: date) -> bool:
        """ACTIVE and not past its expiration date"""
        return self.status == CardStatus.ACTIVE and not self.is_expired_on(day)

    def can_debit(self, amount: AmountLike) -> bool:
        return self.status == CardStatus.ACTIVE and self.balance >= to_amount(amount)

    def debit(self, amount: AmountLike) -> bool:
        """
        Withdraw amount if the card is ACTIVE and has the funds.

        Returns:
            False (balance untouched) when the debit is not allowed
        """
        amount = to_positive_amount(amount)
        if not self.can_debit(amount):
            return False
        self.balance = self.balance - amount
        self.updated_at = datetime.now(timezone.utc)
        return True

    def credit(self, amount: AmountLike) -> None:
        """Deposit amount. Callers decide whether the card may receive money."""
        amount = to_positive_amount(amount)
        self.balance = self.balance + amount
        self.updated_at = datetime.now(timezone.utc)

    def block(self) -> None:
        if self.status == CardStatus.EXPIRED:
            raise InvalidOperationError("Expired card cannot be blocked")
        self.status = CardStatus.BLOCKED
        self.updated_at = datetime.now(timezone.utc)

    def activate(self) -> None:
        if self.status == CardStatus.EXPIRED:
            raise InvalidOperationError("Expired card cannot be activated")
        self.status = CardStatus.ACTIVE
        self.updated_at = datetime.now(timezone.utc)

    def expire(self) -> None:
        self.status = CardStatus.EXPIRED
        self.updated_at = datetime.now(timezone.utc)


@dataclass
class CardView:
    """What callers get to see of a card"""
    id: int
    masked_number: str
    holder: str
    masked_expiration_date: str
    balance: Decimal
    status: CardStatus
    owner_id: int

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "masked_number": self.masked_number,
            "holder": self.holder,
            "masked_expiration_date": self.masked_expiration_date,
            "balance": str(self.balance),
            "status": self.status.value,
            "owner_id": self.owner_id,
        }


class CardManager:
    """
    Manages card lifecycle, ownership checks and card CRUD
    """

    def __init__(self, storage: StorageInterface, codec: SecretCodec,
                 users: UserManager, config):
        self.storage = storage
        self.codec = codec
        self.users = users
        self.config = config
        self.cards_table = "cards"
        self.transfers_table = "transfers"
        self.block_requests_table = "block_requests"

    # ------------------------------------------------------------------ views

    def view(self, card: Card) -> CardView:
        """Masked rendering of a card; fails if its number cannot be decrypted"""
        return CardView(
            id=card.id,
            masked_number=masked_number_for(self.codec, card.number),
            holder=card.holder,
            masked_expiration_date=mask_expiration_date(card.expiration_date),
            balance=card.balance,
            status=card.status,
            owner_id=card.owner_id,
        )

    def masked_number(self, card: Card) -> str:
        return masked_number_for(self.codec, card.number)

    def verify_cvv(self, card: Card, cvv: str) -> bool:
        """Constant-time comparison against the decrypted CVV"""
        expected = self.codec.decrypt(card.cvv)
        return hmac.compare_digest(expected.encode("utf-8"), str(cvv).encode("utf-8"))

    # ----------------------------------------------------------------- access

    def load_card(self, card_id: int) -> Optional[Card]:
        """Load a card without access checks (engine internal)"""
        data = self.storage.load(self.cards_table, card_id)
        if data:
            return self._card_from_dict(data)
        return None

    def save_card(self, card: Card) -> None:
        self.storage.save(self.cards_table, card.id, self._card_to_dict(card))

    def require_card(self, card_id: int) -> Card:
        card = self.load_card(card_id)
        if not card:
            raise CardNotFoundError(f"Card with id {card_id} not found")
        return card

    def accessible_card(self, identity: Identity, card_id: int) -> Card:
        """
        Card the identity may see. Regular users get the same AccessDeniedError
        for a missing card and for somebody else's card.
        """
        if identity.is_admin:
            return self.require_card(card_id)
        card = self.load_card(card_id)
        if not card or card.owner_id != identity.user_id:
            raise AccessDeniedError("Access denied")
        return card

    # ------------------------------------------------------------------- CRUD

    def create_card(self, identity: Identity, owner_id: int, number: str, cvv: str,
                    expiration_date: date, holder: Optional[str] = None,
                    balance: AmountLike = ZERO) -> Card:
        """
        Issue a card with caller-supplied secrets (admin only)

        Args:
            identity: Calling administrator
            owner_id: User who will own the card
            number: Clear-text card number, digits only
            cvv: Clear-text 3-digit CVV
            expiration_date: Last valid day of the card
            holder: Name on the card (owner's full name when omitted)
            balance: Opening balance, not negative

        Returns:
            Created Card
        """
        require_permission(identity, Permission.MANAGE_CARDS)
        owner = self.users.require_user(owner_id)

        number = self._validate_number(number)
        if not CVV_PATTERN.match(str(cvv or "")):
            raise InvalidOperationError("CVV must be exactly 3 digits")
        holder = self.validate_holder(holder if holder is not None else owner.full_name)
        opening_balance = to_amount(balance)
        if opening_balance < ZERO:
            raise InvalidOperationError("Balance cannot be negative")

        now = datetime.now(timezone.utc)
        with self.storage.atomic():
            if self.cards_with_number(number):
                raise AlreadyExistsError("Card with this number already exists")

            card = Card(
                id=self.storage.next_id(self.cards_table),
                created_at=now,
                updated_at=now,
                number=self.codec.encrypt(number),
                cvv=self.codec.encrypt(cvv),
                number_fingerprint=self.codec.fingerprint(number),
                holder=holder,
                expiration_date=expiration_date,
                owner_id=owner.id,
                balance=opening_balance,
            )
            self.save_card(card)

        log_action(
            logger, "info", f"Card {self.masked_number(card)} issued to user {owner.id}",
            user_id=identity.user_id, action="create_card", resource=f"card:{card.id}",
        )
        return card

    def create_card_for_user(self, identity: Identity, user_id: int,
                             holder: Optional[str] = None) -> Card:
        """Issue a card with a generated number, CVV and expiration date"""
        require_permission(identity, Permission.MANAGE_CARDS)
        self.users.require_user(user_id)

        number = self._generate_card_number()
        cvv = f"{secrets.randbelow(1000):03d}"
        expiration_date = self._generate_expiration_date(date.today())
        return self.create_card(identity, user_id, number, cvv, expiration_date, holder=holder)

    def get_card(self, identity: Identity, card_id: int) -> Card:
        require_permission(identity, Permission.VIEW_CARD)
        return self.accessible_card(identity, card_id)

    def list_cards(self, identity: Identity, status: Optional[CardStatus] = None,
                   expires_from: Optional[date] = None,
                   expires_to: Optional[date] = None) -> List[Card]:
        """Administrators see every card, users only their own"""
        require_permission(identity, Permission.VIEW_CARD)

        filters: Dict[str, Any] = {}
        if not identity.has_permission(Permission.VIEW_ALL_CARDS):
            filters["owner_id"] = identity.user_id
        if status is not None:
            filters["status"] = status

        cards = [self._card_from_dict(data) for data in self.storage.find(self.cards_table, filters)]
        if expires_from is not None:
            cards = [card for card in cards if card.expiration_date >= expires_from]
        if expires_to is not None:
            cards = [card for card in cards if card.expiration_date <= expires_to]
        return sorted(cards, key=lambda card: card.id)

    def list_user_cards(self, identity: Identity, user_id: int) -> List[Card]:
        require_permission(identity, Permission.VIEW_CARD)
        if not identity.is_admin and identity.user_id != user_id:
            raise AccessDeniedError("Access denied")
        self.users.require_user(user_id)
        return self.owned_cards(user_id)

    def owned_cards(self, owner_id: int) -> List[Card]:
        """Cards of one owner ordered by id, no access checks"""
        cards = [
            self._card_from_dict(data)
            for data in self.storage.find(self.cards_table, {"owner_id": owner_id})
        ]
        return sorted(cards, key=lambda card: card.id)

    def update_card(self, identity: Identity, card_id: int, number: Optional[str] = None,
                    holder: Optional[str] = None, expiration_date: Optional[date] = None,
                    owner_id: Optional[int] = None) -> Card:
        """
        Update card details (admin only). Reassigning without an explicit
        holder re-derives the holder from the new owner.
        """
        require_permission(identity, Permission.MANAGE_CARDS)

        with self.storage.lock(self.cards_table, [card_id]):
            with self.storage.atomic():
                card = self.require_card(card_id)

                if owner_id is not None and owner_id != card.owner_id:
                    new_owner = self.users.require_user(owner_id)
                    card.owner_id = new_owner.id
                    if holder is None:
                        holder = new_owner.full_name

                if number is not None:
                    number = self._validate_number(number)
                    if [other for other in self.cards_with_number(number) if other != card.id]:
                        raise AlreadyExistsError("Card with this number already exists")
                    card.number = self.codec.encrypt(number)
                    card.number_fingerprint = self.codec.fingerprint(number)

                if holder is not None:
                    card.holder = self.validate_holder(holder)
                if expiration_date is not None:
                    card.expiration_date = expiration_date

                card.updated_at = datetime.now(timezone.utc)
                self.save_card(card)

        log_action(
            logger, "info", f"Card {card.id} updated",
            user_id=identity.user_id, action="update_card", resource=f"card:{card.id}",
        )
        return card

    def delete_card(self, identity: Identity, card_id: int) -> None:
        """Delete a card together with its transfers and block requests (admin only)"""
        require_permission(identity, Permission.MANAGE_CARDS)

        with self.storage.lock(self.cards_table, [card_id]):
            with self.storage.atomic():
                removed = self.remove_card(self.require_card(card_id))

        log_action(
            logger, "info", f"Card {card_id} deleted",
            user_id=identity.user_id, action="delete_card", resource=f"card:{card_id}",
            extra=removed,
        )

    def remove_card(self, card: Card) -> Dict[str, int]:
        """Delete inside the caller's lock and transaction"""
        removed_transfers = (
            self.storage.delete_where(self.transfers_table, {"from_card_id": card.id})
            + self.storage.delete_where(self.transfers_table, {"to_card_id": card.id})
        )
        removed_requests = self.storage.delete_where(self.block_requests_table, {"card_id": card.id})
        self.storage.delete(self.cards_table, card.id)
        return {"transfers_removed": removed_transfers, "block_requests_removed": removed_requests}

    def cards_with_number(self, number: str) -> List[int]:
        """Ids of cards whose number fingerprint matches under any known key"""
        matches = set()
        for fingerprint in self.codec.fingerprints(number):
            for data in self.storage.find(self.cards_table, {"number_fingerprint": fingerprint}):
                matches.add(int(data["id"]))
        return sorted(matches)

    # -------------------------------------------------------------- lifecycle

    def block_card(self, identity: Identity, card_id: int) -> Card:
        """Block a card (admin only)"""
        require_permission(identity, Permission.BLOCK_CARD)
        with self.storage.lock(self.cards_table, [card_id]):
            with self.storage.atomic():
                card = self.apply_block(card_id)

        log_action(
            logger, "info", f"Card {card_id} blocked",
            user_id=identity.user_id, action="block_card", resource=f"card:{card_id}",
        )
        return card

    def activate_card(self, identity: Identity, card_id: int) -> Card:
        """Re-activate a blocked card (admin only)"""
        require_permission(identity, Permission.BLOCK_CARD)
        with self.storage.lock(self.cards_table, [card_id]):
            with self.storage.atomic():
                card = self.require_card(card_id)
                card.activate()
                self.save_card(card)

        log_action(
            logger, "info", f"Card {card_id} activated",
            user_id=identity.user_id, action="activate_card", resource=f"card:{card_id}",
        )
        return card

    def apply_block(self, card_id: int) -> Card:
        """Block inside the caller's lock and transaction"""
        card = self.require_card(card_id)
        card.block()
        self.save_card(card)
        return card

    # ---------------------------------------------------------------- helpers

    def _validate_number(self, number: str) -> str:
        number = re.sub(r"\s+", "", str(number or ""))
        length = self.config.card_number_length
        if not number.isdigit() or len(number) != length:
            raise InvalidOperationError(f"Card number must be exactly {length} digits")
        return number

    @staticmethod
    def validate_holder(holder: str) -> str:
        holder = (holder or "").strip()
        if not HOLDER_MIN_LENGTH <= len(holder) <= HOLDER_MAX_LENGTH:
            raise InvalidOperationError(
                f"Card holder name must be between {HOLDER_MIN_LENGTH} and {HOLDER_MAX_LENGTH} characters"
            )
        return holder

    def _generate_card_number(self, attempts: int = 20) -> str:
        """Generate a card number no stored card uses yet"""
        prefix = self.config.card_number_prefix
        digits = self.config.card_number_length - len(prefix)
        for _ in range(attempts):
            number = prefix + "".join(str(secrets.randbelow(10)) for _ in range(digits))
            if not self.cards_with_number(number):
                return number
        raise InvalidOperationError("Could not generate a unique card number")

    def _generate_expiration_date(self, today: date) -> date:
        years = self.config.card_validity_years
        try:
            return today.replace(year=today.year + years)
        except ValueError:
            # 29 February
            return today.replace(year=today.year + years, day=28)

    def _card_to_dict(self, card: Card) -> Dict:
        """Convert Card to dictionary for storage"""
        result = card.to_dict()
        result['balance'] = str(card.balance)
        result['status'] = card.status.value
        result['expiration_date'] = card.expiration_date.isoformat()
        return result

    def _card_from_dict(self, data: Dict) -> Card:
        """Convert dictionary to Card"""
        return Card(
            id=int(data['id']),
            created_at=datetime.fromisoformat(data['created_at']),
            updated_at=datetime.fromisoformat(data['updated_at']),
            number=data['number'],
            cvv=data['cvv'],
            number_fingerprint=data['number_fingerprint'],
            holder=data['holder'],
            expiration_date=date.fromisoformat(data['expiration_date']),
            owner_id=int(data['owner_id']),
            balance=Decimal(data['balance']),
            status=CardStatus(data['status']),
        )
