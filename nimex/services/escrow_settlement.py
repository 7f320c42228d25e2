"""
NIMEX Marketplace — Escrow Settlement Service
Resolves an order's held escrow to exactly one terminal state:

  - release: escrow → released, vendor wallet credited with vendor_amount,
    a 'sale' ledger entry appended, order → delivered
  - refund:  escrow → refunded, order → cancelled / payment refunded,
    vendor wallet untouched

Each operation runs as one unit of work on a session opened from the injected
factory. Escrow, vendor and order rows are versioned (SQLAlchemy
version_id_col) and locked FOR UPDATE where the backend supports it; a
concurrent-modification failure rolls the unit back and replays it from the
first read, a bounded number of times.
"""
import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal, InvalidOperation
from typing import Awaitable, Callable, Optional, TypeVar, Union

from sqlalchemy import select
from sqlalchemy.exc import DBAPIError, OperationalError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from sqlalchemy.orm.exc import StaleDataError

from nimex.audit import record_change
from nimex.errors import (
    Internal,
    InvalidArgument,
    NotFound,
    PreconditionFailed,
    SettlementError,
    Unavailable,
)
from nimex.models import (
    EscrowStatus,
    EscrowTransaction,
    Order,
    OrderStatus,
    PaymentStatus,
    ReleaseType,
    Vendor,
    WalletTransaction,
    WalletTransactionStatus,
    WalletTransactionType,
)

logger = logging.getLogger("nimex.escrow")

T = TypeVar("T")

DEFAULT_RELEASE_REASON = "Delivery Confirmed"
DEFAULT_REFUND_REASON = "Refunded"

# PostgreSQL serialization_failure / deadlock_detected
_RETRYABLE_SQLSTATES = {"40001", "40P01"}


@dataclass
class SettlementResult:
    """Outcome of a successful release or refund."""

    order_id: str
    escrow_id: str
    status: EscrowStatus
    message: str
    amount: Optional[Decimal] = None
    wallet_balance: Optional[Decimal] = None
    reference: Optional[str] = None


def _is_retryable(exc: Exception) -> bool:
    """
    True for failures caused by a concurrent writer rather than by the request.

    Lost version checks, serialization failures, deadlocks and SQLite lock
    timeouts qualify; connection failures and schema errors do not.
    """
    if isinstance(exc, StaleDataError):
        return True
    if not isinstance(exc, DBAPIError):
        return False

    orig = exc.orig
    code = getattr(orig, "sqlstate", None) or getattr(orig, "pgcode", None)
    if code in _RETRYABLE_SQLSTATES:
        return True
    return isinstance(exc, OperationalError) and "locked" in str(orig).lower()


def _require_order_id(order_id: Optional[str]) -> str:
    if order_id is None or not str(order_id).strip():
        raise InvalidArgument("Order ID is required")
    return str(order_id).strip()


def _parse_release_type(release_type: Union[ReleaseType, str, None]) -> ReleaseType:
    if release_type is None:
        return ReleaseType.MANUAL_BUYER
    try:
        return ReleaseType(release_type)
    except ValueError:
        allowed = ", ".join(t.value for t in ReleaseType)
        raise InvalidArgument(
            f"Unknown release type '{release_type}'. Expected one of: {allowed}."
        )


def _credit_amount(escrow: EscrowTransaction) -> Decimal:
    """The amount owed to the vendor; a missing or non-numeric value is never credited."""
    raw = escrow.vendor_amount
    amount = None
    if raw is not None:
        try:
            amount = Decimal(str(raw))
        except (InvalidOperation, ValueError):
            amount = None

    if amount is None or not amount.is_finite() or amount < 0:
        raise Internal(
            "Escrow record has an invalid vendor amount; wallet was not credited.",
            error_code="INVALID_VENDOR_AMOUNT",
            details={"escrow_id": escrow.id, "vendor_amount": repr(raw)},
        )
    return amount


class EscrowSettlementService:
    """
    Escrow release / refund engine.

    Usage:
        service = EscrowSettlementService(async_session)
        result = await service.release_escrow("O1", "manual_buyer", notes="Confirmed")
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        *,
        max_attempts: int = 5,
        retry_backoff: float = 0.05,
        clock: Callable[[], datetime] = datetime.utcnow,
    ):
        if max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        self._session_factory = session_factory
        self.max_attempts = max_attempts
        self.retry_backoff = retry_backoff
        self._clock = clock

    # ═══════════════════════════════════════════════════════
    #  Public operations
    # ═══════════════════════════════════════════════════════

    async def release_escrow(
        self,
        order_id: Optional[str],
        release_type: Union[ReleaseType, str, None] = None,
        notes: Optional[str] = None,
        performed_by: Optional[str] = None,
    ) -> SettlementResult:
        """Release held funds to the vendor wallet and mark the order delivered."""
        order_id = _require_order_id(order_id)
        kind = _parse_release_type(release_type)

        async def unit(session: AsyncSession) -> SettlementResult:
            escrow = await self._load_escrow(session, order_id)
            self._ensure_held(escrow, "release")

            vendor_result = await session.execute(
                select(Vendor)
                .where(Vendor.id == escrow.vendor_id)
                .with_for_update()
            )
            vendor = vendor_result.scalar_one_or_none()
            if vendor is None:
                raise NotFound(
                    "Vendor not found",
                    details={"vendor_id": escrow.vendor_id, "order_id": order_id},
                )

            order = await self._load_order(session, order_id)
            credit = _credit_amount(escrow)
            now = self._clock()

            # ── Escrow → released ──
            escrow.status = EscrowStatus.RELEASED
            escrow.released_at = now
            escrow.release_reason = notes or DEFAULT_RELEASE_REASON
            escrow.release_type = kind
            record_change(session, "ESCROW_RELEASE", escrow, actor_id=performed_by)

            # ── Vendor wallet credit (balance read inside this unit) ──
            new_balance = (vendor.wallet_balance or Decimal("0")) + credit
            vendor.wallet_balance = new_balance
            vendor.total_sales = (vendor.total_sales or 0) + 1
            record_change(session, "WALLET_CREDIT", vendor, actor_id=performed_by)

            # ── Ledger entry ──
            reference = f"ESCROW-{escrow.id}"
            session.add(
                WalletTransaction(
                    vendor_id=vendor.id,
                    type=WalletTransactionType.SALE,
                    amount=credit,
                    balance_after=new_balance,
                    reference=reference,
                    description=f"Payment released for Order #{order_id}",
                    status=WalletTransactionStatus.COMPLETED,
                    created_at=now,
                )
            )

            # ── Order mirror ──
            order.escrow_status = EscrowStatus.RELEASED
            order.status = OrderStatus.DELIVERED
            order.updated_at = now

            return SettlementResult(
                order_id=order_id,
                escrow_id=escrow.id,
                status=EscrowStatus.RELEASED,
                message="Escrow released successfully",
                amount=credit,
                wallet_balance=new_balance,
                reference=reference,
            )

        result = await self._run_unit("release", order_id, unit)
        logger.info(
            "✅ Escrow released: order %s, escrow %s, %s credited (balance now %s)",
            order_id, result.escrow_id, result.amount, result.wallet_balance,
        )
        return result

    async def refund_escrow(
        self,
        order_id: Optional[str],
        reason: Optional[str] = None,
        performed_by: Optional[str] = None,
    ) -> SettlementResult:
        """Mark held funds refunded and cancel the order. No gateway refund is issued here."""
        order_id = _require_order_id(order_id)

        async def unit(session: AsyncSession) -> SettlementResult:
            escrow = await self._load_escrow(session, order_id)
            self._ensure_held(escrow, "refund")
            order = await self._load_order(session, order_id)
            now = self._clock()

            escrow.status = EscrowStatus.REFUNDED
            escrow.released_at = now
            escrow.release_reason = reason or DEFAULT_REFUND_REASON
            escrow.refunded_by = performed_by
            record_change(session, "ESCROW_REFUND", escrow, actor_id=performed_by)

            order.status = OrderStatus.CANCELLED
            order.payment_status = PaymentStatus.REFUNDED
            order.escrow_status = EscrowStatus.REFUNDED
            order.updated_at = now

            return SettlementResult(
                order_id=order_id,
                escrow_id=escrow.id,
                status=EscrowStatus.REFUNDED,
                message="Escrow refunded/cancelled successfully",
            )

        result = await self._run_unit("refund", order_id, unit)
        logger.info(
            "↩️ Escrow refunded: order %s, escrow %s, by %s",
            order_id, result.escrow_id, performed_by or "unknown",
        )
        return result

    async def get_escrow(self, order_id: Optional[str]) -> EscrowTransaction:
        """Read the escrow record for an order."""
        order_id = _require_order_id(order_id)
        async with self._session_factory() as session:
            result = await session.execute(
                select(EscrowTransaction).where(EscrowTransaction.order_id == order_id)
            )
            escrow = result.scalar_one_or_none()
        if escrow is None:
            raise NotFound("Escrow transaction not found", details={"order_id": order_id})
        return escrow

    # ═══════════════════════════════════════════════════════
    #  Unit-of-work plumbing
    # ═══════════════════════════════════════════════════════

    async def _run_unit(
        self,
        operation: str,
        order_id: str,
        unit: Callable[[AsyncSession], Awaitable[T]],
    ) -> T:
        """
        Run ``unit`` inside one transaction, replaying it on concurrent-write
        conflicts. Settlement errors raised by the unit are never retried.
        """
        attempt = 0
        while True:
            attempt += 1
            try:
                async with self._session_factory() as session:
                    async with session.begin():
                        return await unit(session)
            except SettlementError as exc:
                logger.warning(
                    "Escrow %s rejected for order %s: %s", operation, order_id, exc.message,
                )
                raise
            except Exception as exc:
                if not _is_retryable(exc):
                    logger.exception("Escrow %s failed for order %s", operation, order_id)
                    raise Internal(
                        f"Failed to {operation} escrow",
                        details={"order_id": order_id, "error": repr(exc)},
                    ) from exc

                if attempt >= self.max_attempts:
                    logger.error(
                        "❌ Escrow %s for order %s gave up after %d attempts: %s",
                        operation, order_id, attempt, exc,
                    )
                    raise Unavailable(
                        f"Escrow {operation} could not be completed; please retry.",
                        details={"order_id": order_id, "attempts": attempt},
                    ) from exc

                logger.warning(
                    "🔄 Concurrent update during escrow %s for order %s "
                    "(attempt %d/%d): %s",
                    operation, order_id, attempt, self.max_attempts, exc,
                )
                await asyncio.sleep(self.retry_backoff * attempt)

    @staticmethod
    async def _load_escrow(session: AsyncSession, order_id: str) -> EscrowTransaction:
        result = await session.execute(
            select(EscrowTransaction)
            .where(EscrowTransaction.order_id == order_id)
            .with_for_update()
        )
        escrow = result.scalar_one_or_none()
        if escrow is None:
            raise NotFound("Escrow transaction not found", details={"order_id": order_id})
        return escrow

    @staticmethod
    async def _load_order(session: AsyncSession, order_id: str) -> Order:
        result = await session.execute(
            select(Order).where(Order.id == order_id).with_for_update()
        )
        order = result.scalar_one_or_none()
        if order is None:
            raise NotFound("Order not found", details={"order_id": order_id})
        return order

    @staticmethod
    def _ensure_held(escrow: EscrowTransaction, verb: str) -> None:
        if escrow.status != EscrowStatus.HELD:
            raise PreconditionFailed(
                f"Escrow status is '{escrow.status.value}', cannot {verb}.",
                details={"escrow_id": escrow.id, "status": escrow.status.value},
            )
