"""
Card ledger with all components initialized
"""

from typing import Any, Dict, Optional
import logging

from .accounts import AccountManager
from .block_requests import BlockRequestWorkflow
from .cards import CardManager
from .config import CardLedgerConfig, get_config
from .encryption import KeyManager, SecretCodec
from .expiration import ExpirationSweep
from .identity import Identity, Permission, require_permission
from .logging_config import log_action
from .storage import StorageInterface, create_storage
from .transfers import TransferEngine
from .users import UserManager


logger = logging.getLogger(__name__)


class CardLedgerSystem:
    """Card ledger with all components initialized"""

    def __init__(self, config: Optional[CardLedgerConfig] = None,
                 storage: Optional[StorageInterface] = None,
                 codec: Optional[SecretCodec] = None):
        self.config = config or get_config()

        # Initialize storage
        self.storage = storage or create_storage(self.config.database_url)
        self.codec = codec or SecretCodec.from_config(self.config)

        # Initialize core components
        self.user_manager = UserManager(self.storage)
        self.card_manager = CardManager(self.storage, self.codec, self.user_manager, self.config)
        self.account_manager = AccountManager(self.storage, self.user_manager, self.card_manager)
        self.transfer_engine = TransferEngine(self.storage, self.card_manager, self.user_manager)
        self.block_request_workflow = BlockRequestWorkflow(self.storage, self.card_manager, self.config)
        self.expiration_sweep = ExpirationSweep(self.storage, self.card_manager.cards_table)
        self.key_manager = KeyManager()

    def encryption_status(self, identity: Identity) -> Dict[str, Any]:
        """Codec settings and how many cards still carry retired-key ciphertext"""
        require_permission(identity, Permission.MAINTENANCE)
        cards = self.storage.load_all(self.card_manager.cards_table)
        pending = sum(
            1 for card in cards
            if self.codec.needs_rotation(card["number"]) or self.codec.needs_rotation(card["cvv"])
        )
        status = self.codec.status()
        status.update({"cards": len(cards), "cards_pending_rotation": pending})
        return status

    def rotate_keys(self, identity: Identity) -> int:
        """Re-encrypt every card secret under the current key"""
        require_permission(identity, Permission.MAINTENANCE)
        rotated = self.key_manager.rotate(self.storage, self.codec)
        log_action(
            logger, "info", f"Encryption keys rotated for {rotated} cards",
            user_id=identity.user_id, action="rotate_keys",
        )
        return rotated

    def close(self) -> None:
        self.storage.close()
