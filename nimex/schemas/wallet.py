"""
NIMEX Marketplace — Vendor Wallet Schemas
"""
from datetime import datetime
from typing import Optional

from pydantic import BaseModel


class WalletTransactionItem(BaseModel):
    id: str
    type: str
    amount: float
    balance_after: float
    reference: str
    description: Optional[str] = None
    status: str
    created_at: datetime


class WalletResponse(BaseModel):
    """Vendor wallet balance with its most recent ledger entries."""

    vendor_id: str
    business_name: str
    wallet_balance: float
    total_sales: int
    bank_account: Optional[str] = None  # masked, e.g. ******7890
    transactions: list[WalletTransactionItem]
