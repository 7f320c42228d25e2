"""
NIMEX Marketplace — Admin Router
Escrow oversight and demo account management for the admin team.
"""
import logging
from typing import Optional

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from nimex.auth import RoleChecker
from nimex.database import get_db
from nimex.models import EscrowStatus, EscrowTransaction, User
from nimex.schemas.escrow import EscrowStatusResponse
from nimex.seed import create_demo_accounts

logger = logging.getLogger("nimex.admin")

router = APIRouter(prefix="/api/admin", tags=["Admin"])


class DemoAccountsResponse(BaseModel):
    success: bool = True
    created: list[str]
    existing: list[str]


@router.get("/escrows", response_model=list[EscrowStatusResponse])
async def list_escrows(
    status: Optional[EscrowStatus] = Query(None, description="held, released or refunded"),
    limit: int = Query(50, ge=1, le=200),
    admin: User = Depends(RoleChecker(["admin"])),
    session: AsyncSession = Depends(get_db),
):
    """List escrow transactions, newest first."""
    query = select(EscrowTransaction).order_by(EscrowTransaction.created_at.desc()).limit(limit)
    if status is not None:
        query = query.where(EscrowTransaction.status == status)

    result = await session.execute(query)
    return [EscrowStatusResponse.from_escrow(escrow) for escrow in result.scalars().all()]


@router.post("/demo-accounts", response_model=DemoAccountsResponse)
async def ensure_demo_accounts(
    admin: User = Depends(RoleChecker(["admin"])),
    session: AsyncSession = Depends(get_db),
):
    """Create any missing demo buyer / vendor / admin-team accounts."""
    summary = await create_demo_accounts(session)
    logger.info("Admin %s ensured demo accounts: %s", admin.email, summary["created"])
    return DemoAccountsResponse(**summary)
