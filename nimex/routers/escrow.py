"""
NIMEX Marketplace — Escrow Settlement Router
Thin HTTP boundary over EscrowSettlementService:
  - request bodies validated by Pydantic before the service is touched
  - settlement errors rendered by the app-level SettlementError handler
  - performedByUserId falls back to the bearer token's subject
"""
import logging
from typing import Optional

from fastapi import APIRouter, Depends, Request
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from nimex.auth import get_current_user, get_optional_user
from nimex.config import get_settings
from nimex.database import get_session_factory
from nimex.middleware.rate_limit import RATE_LIMIT_WRITE, limiter
from nimex.models import User
from nimex.schemas.escrow import (
    EscrowRefundRequest,
    EscrowReleaseRequest,
    EscrowStatusResponse,
    SettlementResponse,
)
from nimex.services.escrow_settlement import EscrowSettlementService

logger = logging.getLogger("nimex.escrow")
settings = get_settings()

router = APIRouter(prefix="/api/escrow", tags=["Escrow"])


def get_settlement_service(
    session_factory: async_sessionmaker[AsyncSession] = Depends(get_session_factory),
) -> EscrowSettlementService:
    """FastAPI dependency — settlement service bound to the app's session factory."""
    return EscrowSettlementService(
        session_factory,
        max_attempts=settings.ESCROW_MAX_ATTEMPTS,
        retry_backoff=settings.ESCROW_RETRY_BACKOFF_SECONDS,
    )


def _actor(explicit: Optional[str], user: Optional[User]) -> Optional[str]:
    if explicit:
        return explicit
    return user.id if user is not None else None


# ═══════════════════════════════════════════════════════
#  POST /api/escrow/release
# ═══════════════════════════════════════════════════════


@router.post("/release", response_model=SettlementResponse)
@limiter.limit(RATE_LIMIT_WRITE)
async def release_escrow(
    request: Request,
    payload: EscrowReleaseRequest,
    service: EscrowSettlementService = Depends(get_settlement_service),
    user: Optional[User] = Depends(get_optional_user),
):
    """
    Release held escrow funds to the vendor.

    Credits the vendor wallet with the escrow's vendor_amount, appends a
    'sale' ledger entry and marks the order delivered, all-or-nothing.
    """
    result = await service.release_escrow(
        payload.order_id,
        release_type=payload.release_type,
        notes=payload.notes,
        performed_by=_actor(payload.performed_by_user_id, user),
    )
    return SettlementResponse(message=result.message)


# ═══════════════════════════════════════════════════════
#  POST /api/escrow/refund
# ═══════════════════════════════════════════════════════


@router.post("/refund", response_model=SettlementResponse)
@limiter.limit(RATE_LIMIT_WRITE)
async def refund_escrow(
    request: Request,
    payload: EscrowRefundRequest,
    service: EscrowSettlementService = Depends(get_settlement_service),
    user: Optional[User] = Depends(get_optional_user),
):
    """
    Mark held escrow refunded and cancel the order.

    Bookkeeping only: the gateway refund (Paystack / Flutterwave) is a
    separate workflow.
    """
    result = await service.refund_escrow(
        payload.order_id,
        reason=payload.reason,
        performed_by=_actor(payload.performed_by_user_id, user),
    )
    return SettlementResponse(message=result.message)


# ═══════════════════════════════════════════════════════
#  GET /api/escrow/{order_id}
# ═══════════════════════════════════════════════════════


@router.get(
    "/{order_id}",
    response_model=EscrowStatusResponse,
    dependencies=[Depends(get_current_user)],
)
async def get_escrow_status(
    order_id: str,
    service: EscrowSettlementService = Depends(get_settlement_service),
):
    """Check the current status of an order's escrow transaction."""
    escrow = await service.get_escrow(order_id)
    return EscrowStatusResponse.from_escrow(escrow)
