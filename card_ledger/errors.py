"""
Error Hierarchy

Typed exceptions for every failure the card ledger surfaces to callers.
Each error carries a stable code and the HTTP status the API layer maps it to.

Messages of AccessDeniedError never say whether the target exists.
"""

from typing import Any, Dict


class CardLedgerError(Exception):
    """Base exception for all card ledger errors"""

    code = "CARD_LEDGER_ERROR"
    http_status = 500

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message

    def to_response(self) -> Dict[str, Any]:
        """Convert to REST error envelope"""
        return {
            "error": {
                "code": self.code,
                "message": self.message,
            }
        }


class NotFoundError(CardLedgerError):
    """Requested entity does not exist"""
    code = "NOT_FOUND"
    http_status = 404


class CardNotFoundError(NotFoundError):
    code = "CARD_NOT_FOUND"


class UserNotFoundError(NotFoundError):
    code = "USER_NOT_FOUND"


class BlockRequestNotFoundError(NotFoundError):
    code = "BLOCK_REQUEST_NOT_FOUND"


class AccessDeniedError(CardLedgerError):
    """Ownership or role violation"""
    code = "ACCESS_DENIED"
    http_status = 403


class InvalidOperationError(CardLedgerError, ValueError):
    """Business rule rejected the operation"""
    code = "INVALID_OPERATION"
    http_status = 400


class InvalidTransferError(InvalidOperationError):
    code = "INVALID_TRANSFER"


class InsufficientFundsError(CardLedgerError):
    code = "INSUFFICIENT_FUNDS"
    http_status = 400


class AlreadyExistsError(CardLedgerError):
    code = "ALREADY_EXISTS"
    http_status = 409


class EncryptionError(CardLedgerError):
    """Stored secret cannot be encrypted or decrypted with the configured keys"""
    code = "ENCRYPTION_ERROR"
    http_status = 500
