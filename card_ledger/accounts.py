"""
Account Management Module

Operations on a user together with the cards they own. Renaming a user
re-derives the holder printed on each of their cards; blocking or
activating a user does the same to every card they own; deleting a user
removes their cards and everything recorded against them.
"""

from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Dict, Iterator, List, Optional, Tuple
import logging

from .cards import Card, CardManager, CardStatus
from .errors import AccessDeniedError
from .identity import Identity, Permission, require_permission
from .logging_config import log_action
from .storage import StorageInterface
from .users import User, UserManager


logger = logging.getLogger(__name__)


class AccountManager:
    """
    Manages users and their cards as one unit

    The user row lock is taken first, then the card row locks, then the
    transaction.
    """

    def __init__(self, storage: StorageInterface, users: UserManager, cards: CardManager):
        self.storage = storage
        self.users = users
        self.cards = cards

    def update_user(self, identity: Identity, user_id: int,
                    first_name: Optional[str] = None,
                    last_name: Optional[str] = None) -> User:
        """
        Change a user's name and re-derive the holder on their cards

        Administrators may update anyone, users only themselves. The email
        address is the login identity and never changes here.
        """
        if identity is None or (not identity.is_admin and identity.user_id != user_id):
            raise AccessDeniedError("Access denied")
        self.users.require_user(user_id)

        with self._locked(user_id) as (user, cards):
            if first_name is not None:
                user.first_name = first_name.strip()
            if last_name is not None:
                user.last_name = last_name.strip()
            # Holder falls back to the email when both names are blank
            holder = self.cards.validate_holder(user.full_name or user.email)

            user.updated_at = datetime.now(timezone.utc)
            self.users.save_user(user)
            for card in cards:
                if card.holder != holder:
                    card.holder = holder
                    card.updated_at = user.updated_at
                    self.cards.save_card(card)

        log_action(
            logger, "info", f"User {user_id} updated",
            user_id=identity.user_id, action="update_user", resource=f"user:{user_id}",
            extra={"cards": len(cards)},
        )
        return user

    def block_user(self, identity: Identity, user_id: int) -> User:
        """Deactivate a user and block every card they own (admin only)"""
        return self._set_active(identity, user_id, active=False)

    def activate_user(self, identity: Identity, user_id: int) -> User:
        """Reactivate a user and activate every blocked card they own (admin only)"""
        return self._set_active(identity, user_id, active=True)

    def delete_user(self, identity: Identity, user_id: int) -> Dict[str, int]:
        """
        Delete a user with their cards, the transfers touching those cards
        and every block request they filed (admin only)

        Returns:
            Counts of removed records
        """
        require_permission(identity, Permission.MANAGE_USERS)
        self.users.require_user(user_id)

        removed = {"cards_removed": 0, "transfers_removed": 0, "block_requests_removed": 0}
        with self._locked(user_id) as (_, cards):
            for card in cards:
                counts = self.cards.remove_card(card)
                removed["cards_removed"] += 1
                removed["transfers_removed"] += counts["transfers_removed"]
                removed["block_requests_removed"] += counts["block_requests_removed"]
            removed["block_requests_removed"] += self.storage.delete_where(
                self.cards.block_requests_table, {"user_id": user_id}
            )
            self.storage.delete(self.users.users_table, user_id)

        log_action(
            logger, "warning", f"User {user_id} deleted",
            user_id=identity.user_id, action="delete_user", resource=f"user:{user_id}",
            extra=removed,
        )
        return removed

    def _set_active(self, identity: Identity, user_id: int, active: bool) -> User:
        require_permission(identity, Permission.MANAGE_USERS)
        self.users.require_user(user_id)

        changed = 0
        with self._locked(user_id) as (user, cards):
            user.is_active = active
            user.updated_at = datetime.now(timezone.utc)
            self.users.save_user(user)
            for card in cards:
                # Expired cards stay expired
                if active and card.status == CardStatus.BLOCKED:
                    card.activate()
                elif not active and card.status == CardStatus.ACTIVE:
                    card.block()
                else:
                    continue
                self.cards.save_card(card)
                changed += 1

        action = "activate_user" if active else "block_user"
        log_action(
            logger, "info", f"User {user_id} {'activated' if active else 'blocked'}",
            user_id=identity.user_id, action=action, resource=f"user:{user_id}",
            extra={"cards_changed": changed},
        )
        return user

    @contextmanager
    def _locked(self, user_id: int) -> Iterator[Tuple[User, List[Card]]]:
        """Yield the reloaded user and their cards under row locks and a transaction"""
        card_ids = [card.id for card in self.cards.owned_cards(user_id)]
        with self.storage.lock(self.users.users_table, [user_id]):
            with self.storage.lock(self.cards.cards_table, card_ids):
                with self.storage.atomic():
                    user = self.users.require_user(user_id)
                    cards = []
                    for card_id in card_ids:
                        card = self.cards.load_card(card_id)
                        # Reassigned before the locks were taken
                        if card is not None and card.owner_id == user_id:
                            cards.append(card)
                    yield user, cards
