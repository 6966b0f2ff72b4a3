from pydantic import EmailStr, Field
from typing import Optional
from datetime import date, datetime
from decimal import Decimal
import uuid

from storefront.schemas.base import BaseCreateSchema, BaseResponseSchema


class WalletResponse(BaseResponseSchema):
    """Wallet balances plus KYC status."""
    id: uuid.UUID
    store_id: uuid.UUID
    available_balance: Decimal
    retained_balance: Decimal
    pix_key: Optional[str] = None
    has_personal_data: bool
    full_name: Optional[str] = None
    cpf: Optional[str] = None
    birth_date: Optional[date] = None
    email: Optional[str] = None


class PersonalDataUpdate(BaseCreateSchema):
    full_name: str = Field(..., min_length=1, max_length=200)
    cpf: str = Field(..., min_length=11, max_length=14)
    birth_date: date
    email: EmailStr


class WithdrawalCreate(BaseCreateSchema):
    # Bounds are enforced by the wallet service so they follow configuration
    amount: Decimal = Field(..., gt=0, decimal_places=2)
    pix_key: str = Field(..., min_length=1, max_length=255)


class WithdrawalReject(BaseCreateSchema):
    reason: Optional[str] = Field(None, max_length=1000)


class WithdrawalResponse(BaseResponseSchema):
    id: uuid.UUID
    store_id: uuid.UUID
    amount: Decimal
    pix_key: str
    status: str
    rejection_reason: Optional[str] = None
    processed_at: Optional[datetime] = None
    created_at: datetime


class WalletTransactionResponse(BaseResponseSchema):
    id: uuid.UUID
    type: str
    amount: Decimal
    gross_amount: Optional[Decimal] = None
    fee_amount: Optional[Decimal] = None
    available_after: Decimal
    retained_after: Decimal
    description: Optional[str] = None
    payment_id: Optional[uuid.UUID] = None
    withdrawal_id: Optional[uuid.UUID] = None
    created_at: datetime
