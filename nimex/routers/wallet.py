"""
NIMEX Marketplace — Vendor Wallet Router
Read-only view of a vendor's wallet balance and its ledger entries.
"""
import logging

from fastapi import APIRouter, Depends, HTTPException, Query, status
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from nimex.auth import get_current_user
from nimex.database import get_db
from nimex.encryption import mask_account_number
from nimex.models import User, UserRole, Vendor, WalletTransaction
from nimex.schemas.wallet import WalletResponse, WalletTransactionItem

logger = logging.getLogger("nimex.wallet")

router = APIRouter(prefix="/api/vendors", tags=["Wallet"])


@router.get("/{vendor_id}/wallet", response_model=WalletResponse)
async def get_wallet(
    vendor_id: str,
    limit: int = Query(20, ge=1, le=100),
    user: User = Depends(get_current_user),
    session: AsyncSession = Depends(get_db),
):
    """Wallet balance and most recent ledger entries (owner vendor or admin only)."""
    result = await session.execute(select(Vendor).where(Vendor.id == vendor_id))
    vendor = result.scalar_one_or_none()
    if vendor is None:
        raise HTTPException(status_code=404, detail="Vendor not found")

    if user.role != UserRole.ADMIN and vendor.user_id != user.id:
        logger.warning("User %s tried to read wallet of vendor %s", user.email, vendor_id)
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="You can only view your own wallet.",
        )

    txn_result = await session.execute(
        select(WalletTransaction)
        .where(WalletTransaction.vendor_id == vendor.id)
        .order_by(WalletTransaction.created_at.desc())
        .limit(limit)
    )
    transactions = txn_result.scalars().all()

    return WalletResponse(
        vendor_id=vendor.id,
        business_name=vendor.business_name,
        wallet_balance=float(vendor.wallet_balance or 0),
        total_sales=vendor.total_sales or 0,
        bank_account=(
            mask_account_number(vendor.bank_account_encrypted)
            if vendor.bank_account_encrypted else None
        ),
        transactions=[
            WalletTransactionItem(
                id=txn.id,
                type=txn.type.value,
                amount=float(txn.amount),
                balance_after=float(txn.balance_after),
                reference=txn.reference,
                description=txn.description,
                status=txn.status.value,
                created_at=txn.created_at,
            )
            for txn in transactions
        ],
    )
