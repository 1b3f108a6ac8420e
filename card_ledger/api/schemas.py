"""
Pydantic schemas for API requests
"""

from datetime import date
from typing import Optional
from pydantic import BaseModel, Field


# Card schemas
class CreateCardRequest(BaseModel):
    owner_id: int
    number: str = Field(..., description="Card number, digits only")
    cvv: str = Field(..., description="3-digit CVV")
    expiration_date: date
    holder: Optional[str] = None
    balance: str = Field("0", description="Decimal amount as string")


class CreateCardForUserRequest(BaseModel):
    holder: Optional[str] = None


class UpdateCardRequest(BaseModel):
    number: Optional[str] = None
    holder: Optional[str] = None
    expiration_date: Optional[date] = None
    owner_id: Optional[int] = None


# Transfer schemas
class TransferRequest(BaseModel):
    from_card_id: int
    to_card_id: int
    amount: str = Field(..., description="Decimal amount as string")
    cvv: Optional[str] = None
    description: Optional[str] = None


# Block request schemas
class CreateBlockRequestRequest(BaseModel):
    reason: str


class ProcessBlockRequestRequest(BaseModel):
    admin_comment: Optional[str] = None


# User schemas
class CreateUserRequest(BaseModel):
    email: str
    first_name: str
    last_name: str
    role: str = Field("USER", description="ADMIN or USER")


class UpdateUserRequest(BaseModel):
    first_name: Optional[str] = None
    last_name: Optional[str] = None


# Admin schemas
class ExpireCardsRequest(BaseModel):
    as_of: Optional[date] = None
