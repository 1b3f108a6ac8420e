"""
Display-safe renderings of card secrets.
"""

from datetime import date
from typing import Optional

MASK_PREFIX = "**** **** **** "
SHORT_MASK = "****"


def mask_card_number(card_number: Optional[str]) -> str:
    """Keep the last 4 characters of a card number and hide the rest"""
    if not card_number or len(card_number) < 4:
        return SHORT_MASK
    return MASK_PREFIX + card_number[-4:]


def mask_expiration_date(expiration_date: Optional[date]) -> str:
    """Render an expiration date as MM/YY"""
    if expiration_date is None:
        return ""
    return expiration_date.strftime("%m/%y")


def masked_number_for(codec, ciphertext: str) -> str:
    """Decrypt a stored card number and mask it. Decryption failures propagate."""
    return mask_card_number(codec.decrypt(ciphertext))
