"""Merchant wallet endpoints: balance, KYC data, withdrawals and history."""
import logging
from typing import List, Optional

from fastapi import APIRouter, Query, status

from storefront.api.deps import StoreId, Wallets
from storefront.models.wallet import WithdrawalStatus
from storefront.schemas.wallet import (
    PersonalDataUpdate,
    WalletResponse,
    WalletTransactionResponse,
    WithdrawalCreate,
    WithdrawalResponse,
)

logger = logging.getLogger(__name__)


router = APIRouter(tags=["Wallet"])


@router.get("", response_model=WalletResponse, summary="Get wallet")
async def get_wallet(store_id: StoreId, wallets: Wallets):
    return await wallets.get_or_create_wallet(store_id)


@router.put("/personal-data", response_model=WalletResponse, summary="Save personal data")
async def save_personal_data(data: PersonalDataUpdate, store_id: StoreId, wallets: Wallets):
    """Identity data required before the first withdrawal."""
    return await wallets.save_personal_data(
        store_id,
        full_name=data.full_name,
        cpf=data.cpf,
        birth_date=data.birth_date,
        email=str(data.email),
    )


@router.post(
    "/withdrawals",
    response_model=WithdrawalResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Request a withdrawal",
)
async def create_withdrawal(data: WithdrawalCreate, store_id: StoreId, wallets: Wallets):
    return await wallets.create_withdrawal(store_id, data.amount, data.pix_key)


@router.get("/withdrawals", response_model=List[WithdrawalResponse], summary="List withdrawals")
async def list_withdrawals(
    store_id: StoreId,
    wallets: Wallets,
    status: Optional[WithdrawalStatus] = None,
    skip: int = Query(0, ge=0),
    limit: int = Query(50, ge=1, le=200),
):
    return await wallets.list_withdrawals(
        store_id, status=status.value if status else None, skip=skip, limit=limit
    )


@router.get(
    "/transactions",
    response_model=List[WalletTransactionResponse],
    summary="List balance movements",
)
async def list_transactions(
    store_id: StoreId,
    wallets: Wallets,
    limit: int = Query(100, ge=1, le=500),
):
    return await wallets.list_transactions(store_id, limit=limit)
