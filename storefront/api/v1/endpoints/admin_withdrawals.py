"""Payout review endpoints for platform administrators."""
import uuid
import logging

from fastapi import APIRouter

from storefront.api.deps import AdminOnly, Wallets
from storefront.schemas.wallet import WithdrawalReject, WithdrawalResponse

logger = logging.getLogger(__name__)


router = APIRouter(tags=["Admin - Withdrawals"], dependencies=[AdminOnly])


@router.post("/{withdrawal_id}/processing", response_model=WithdrawalResponse)
async def mark_processing(withdrawal_id: uuid.UUID, wallets: Wallets):
    return await wallets.mark_processing(withdrawal_id)


@router.post("/{withdrawal_id}/approve", response_model=WithdrawalResponse)
async def approve_withdrawal(withdrawal_id: uuid.UUID, wallets: Wallets):
    """Payout sent: the retained amount leaves the wallet."""
    withdrawal = await wallets.approve_withdrawal(withdrawal_id)
    logger.info(f"Admin approved withdrawal {withdrawal_id}")
    return withdrawal


@router.post("/{withdrawal_id}/reject", response_model=WithdrawalResponse)
async def reject_withdrawal(withdrawal_id: uuid.UUID, data: WithdrawalReject, wallets: Wallets):
    """Payout refused: the retained amount returns to the available balance."""
    withdrawal = await wallets.reject_withdrawal(withdrawal_id, data.reason)
    logger.info(f"Admin rejected withdrawal {withdrawal_id}")
    return withdrawal
