"""
Escrow Settlement Service Tests
Release / refund transitions, precondition failures, atomicity and
concurrent settlement against a shared vendor wallet.
"""
import asyncio
import json
from decimal import Decimal
from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm.exc import StaleDataError

from helpers import all_rows, count_rows, load_row
from nimex.audit import record_change
from nimex.errors import Internal, InvalidArgument, NotFound, PreconditionFailed, Unavailable
from nimex.models import (
    AuditLog,
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
from nimex.services.escrow_settlement import EscrowSettlementService, SettlementResult


class TestReleaseEscrow:
    """Held → released"""

    @pytest.mark.asyncio
    async def test_release_credits_vendor_and_delivers_order(self, service, session_factory, marketplace):
        result = await service.release_escrow("O1", "manual_buyer", "Confirmed", "U9")

        assert isinstance(result, SettlementResult)
        assert result.status == EscrowStatus.RELEASED
        assert result.message == "Escrow released successfully"
        assert result.amount == Decimal("5000")
        assert result.wallet_balance == Decimal("15000")
        assert result.reference == "ESCROW-E1"

        escrow = await load_row(session_factory, EscrowTransaction, "E1")
        assert escrow.status == EscrowStatus.RELEASED
        assert escrow.released_at is not None
        assert escrow.release_reason == "Confirmed"
        assert escrow.release_type == ReleaseType.MANUAL_BUYER

        vendor = await load_row(session_factory, Vendor, "V1")
        assert vendor.wallet_balance == Decimal("15000")
        assert vendor.total_sales == 1

        ledger = await all_rows(session_factory, WalletTransaction)
        assert len(ledger) == 1
        entry = ledger[0]
        assert entry.vendor_id == "V1"
        assert entry.type == WalletTransactionType.SALE
        assert entry.amount == Decimal("5000")
        assert entry.balance_after == Decimal("15000")
        assert entry.reference == "ESCROW-E1"
        assert "O1" in entry.description
        assert entry.status == WalletTransactionStatus.COMPLETED

        order = await load_row(session_factory, Order, "O1")
        assert order.status == OrderStatus.DELIVERED
        assert order.escrow_status == EscrowStatus.RELEASED
        assert order.payment_status == PaymentStatus.PAID

    @pytest.mark.asyncio
    async def test_release_defaults(self, service, session_factory, marketplace):
        await service.release_escrow("O1")

        escrow = await load_row(session_factory, EscrowTransaction, "E1")
        assert escrow.release_reason == "Delivery Confirmed"
        assert escrow.release_type == ReleaseType.MANUAL_BUYER

    @pytest.mark.asyncio
    async def test_release_type_is_recorded(self, service, session_factory, marketplace):
        await service.release_escrow("O1", ReleaseType.AUTO)

        escrow = await load_row(session_factory, EscrowTransaction, "E1")
        assert escrow.release_type == ReleaseType.AUTO

    @pytest.mark.asyncio
    async def test_second_release_is_rejected_and_changes_nothing(self, service, session_factory, marketplace):
        await service.release_escrow("O1", "manual_buyer", "Confirmed", "U9")

        with pytest.raises(PreconditionFailed) as exc_info:
            await service.release_escrow("O1", "manual_buyer", "Again", "U9")

        assert exc_info.value.message == "Escrow status is 'released', cannot release."
        assert exc_info.value.status_code == 409

        escrow = await load_row(session_factory, EscrowTransaction, "E1")
        assert escrow.release_reason == "Confirmed"
        vendor = await load_row(session_factory, Vendor, "V1")
        assert vendor.wallet_balance == Decimal("15000")
        assert vendor.total_sales == 1
        assert await count_rows(session_factory, WalletTransaction) == 1

    @pytest.mark.asyncio
    async def test_release_writes_audit_trail(self, service, session_factory, marketplace):
        await service.release_escrow("O1", "manual_buyer", "Confirmed", "U9")

        logs = {log.action: log for log in await all_rows(session_factory, AuditLog)}
        assert set(logs) == {"ESCROW_RELEASE", "WALLET_CREDIT"}

        escrow_log = logs["ESCROW_RELEASE"]
        assert escrow_log.table_name == "escrow_transactions"
        assert escrow_log.record_id == "E1"
        assert escrow_log.actor_id == "U9"
        changes = json.loads(escrow_log.changes)
        assert changes["status"] == {"old": "held", "new": "released"}

        wallet_changes = json.loads(logs["WALLET_CREDIT"].changes)
        assert Decimal(wallet_changes["wallet_balance"]["old"]) == Decimal("10000")
        assert Decimal(wallet_changes["wallet_balance"]["new"]) == Decimal("15000")


class TestRefundEscrow:
    """Held → refunded"""

    @pytest.mark.asyncio
    async def test_refund_cancels_order_without_touching_wallet(self, service, session_factory, marketplace):
        result = await service.refund_escrow("O1", "Item not received", "U9")

        assert result.status == EscrowStatus.REFUNDED
        assert result.message == "Escrow refunded/cancelled successfully"

        escrow = await load_row(session_factory, EscrowTransaction, "E1")
        assert escrow.status == EscrowStatus.REFUNDED
        assert escrow.release_reason == "Item not received"
        assert escrow.refunded_by == "U9"
        assert escrow.released_at is not None

        vendor = await load_row(session_factory, Vendor, "V1")
        assert vendor.wallet_balance == Decimal("10000")
        assert vendor.total_sales == 0
        assert await count_rows(session_factory, WalletTransaction) == 0

        order = await load_row(session_factory, Order, "O1")
        assert order.status == OrderStatus.CANCELLED
        assert order.payment_status == PaymentStatus.REFUNDED
        assert order.escrow_status == EscrowStatus.REFUNDED

        logs = await all_rows(session_factory, AuditLog)
        assert [log.action for log in logs] == ["ESCROW_REFUND"]

    @pytest.mark.asyncio
    async def test_refund_default_reason(self, service, session_factory, marketplace):
        await service.refund_escrow("O1")

        escrow = await load_row(session_factory, EscrowTransaction, "E1")
        assert escrow.release_reason == "Refunded"
        assert escrow.refunded_by is None


class TestTerminalStates:
    """Released and refunded exclude each other"""

    @pytest.mark.asyncio
    async def test_refund_after_release_fails(self, service, session_factory, marketplace):
        await service.release_escrow("O1")

        with pytest.raises(PreconditionFailed, match="Escrow status is 'released', cannot refund."):
            await service.refund_escrow("O1", "Changed my mind")

        escrow = await load_row(session_factory, EscrowTransaction, "E1")
        assert escrow.status == EscrowStatus.RELEASED
        order = await load_row(session_factory, Order, "O1")
        assert order.status == OrderStatus.DELIVERED

    @pytest.mark.asyncio
    async def test_release_after_refund_fails(self, service, session_factory, marketplace):
        await service.refund_escrow("O1")

        with pytest.raises(PreconditionFailed, match="Escrow status is 'refunded', cannot release."):
            await service.release_escrow("O1")

        vendor = await load_row(session_factory, Vendor, "V1")
        assert vendor.wallet_balance == Decimal("10000")
        assert await count_rows(session_factory, WalletTransaction) == 0


class TestPreconditions:
    """Missing input and missing records"""

    @pytest.mark.asyncio
    @pytest.mark.parametrize("order_id", [None, "", "   "])
    async def test_missing_order_id_rejected_before_storage(self, order_id):
        factory = MagicMock()
        service = EscrowSettlementService(factory)

        with pytest.raises(InvalidArgument, match="Order ID is required"):
            await service.release_escrow(order_id)
        with pytest.raises(InvalidArgument, match="Order ID is required"):
            await service.refund_escrow(order_id)

        factory.assert_not_called()

    @pytest.mark.asyncio
    async def test_unknown_release_type_rejected_before_storage(self):
        factory = MagicMock()
        service = EscrowSettlementService(factory)

        with pytest.raises(InvalidArgument, match="Unknown release type 'whenever'"):
            await service.release_escrow("O1", "whenever")

        factory.assert_not_called()

    @pytest.mark.asyncio
    async def test_unknown_order_is_not_found(self, service, session_factory, marketplace):
        with pytest.raises(NotFound, match="Escrow transaction not found"):
            await service.release_escrow("NOPE")
        with pytest.raises(NotFound, match="Escrow transaction not found"):
            await service.refund_escrow("NOPE")

        vendor = await load_row(session_factory, Vendor, "V1")
        assert vendor.wallet_balance == Decimal("10000")
        assert await count_rows(session_factory, WalletTransaction) == 0
        assert await count_rows(session_factory, AuditLog) == 0

    @pytest.mark.asyncio
    async def test_missing_vendor_is_not_found(self, service, session_factory, marketplace):
        async with session_factory() as session:
            async with session.begin():
                session.add(Order(id="O3", buyer_id="U9", status=OrderStatus.SHIPPED))
                session.add(
                    EscrowTransaction(
                        id="E3", order_id="O3", vendor_id="GHOST", vendor_amount=Decimal("700"),
                    )
                )

        with pytest.raises(NotFound, match="Vendor not found"):
            await service.release_escrow("O3")

        escrow = await load_row(session_factory, EscrowTransaction, "E3")
        assert escrow.status == EscrowStatus.HELD

    @pytest.mark.asyncio
    async def test_missing_order_record_is_not_found(self, service, session_factory, marketplace):
        async with session_factory() as session:
            async with session.begin():
                session.add(
                    EscrowTransaction(
                        id="E4", order_id="O4", vendor_id="V1", vendor_amount=Decimal("700"),
                    )
                )

        with pytest.raises(NotFound, match="Order not found"):
            await service.release_escrow("O4")

        escrow = await load_row(session_factory, EscrowTransaction, "E4")
        assert escrow.status == EscrowStatus.HELD
        vendor = await load_row(session_factory, Vendor, "V1")
        assert vendor.wallet_balance == Decimal("10000")

    @pytest.mark.asyncio
    async def test_missing_vendor_amount_is_never_credited(self, service, session_factory, marketplace):
        async with session_factory() as session:
            async with session.begin():
                session.add(Order(id="O5", buyer_id="U9", vendor_id="V1", status=OrderStatus.SHIPPED))
                session.add(EscrowTransaction(id="E5", order_id="O5", vendor_id="V1", vendor_amount=None))

        with pytest.raises(Internal) as exc_info:
            await service.release_escrow("O5")

        assert exc_info.value.error_code == "INVALID_VENDOR_AMOUNT"
        escrow = await load_row(session_factory, EscrowTransaction, "E5")
        assert escrow.status == EscrowStatus.HELD
        vendor = await load_row(session_factory, Vendor, "V1")
        assert vendor.wallet_balance == Decimal("10000")


class TestAtomicity:
    """Failures inside the unit leave no partial writes"""

    @pytest.mark.asyncio
    async def test_unexpected_failure_rolls_back_everything(self, service, session_factory, marketplace):
        def fail_on_wallet(session, action, instance, actor_id=None):
            if action == "WALLET_CREDIT":
                raise RuntimeError("audit store unavailable")
            return record_change(session, action, instance, actor_id=actor_id)

        with patch("nimex.services.escrow_settlement.record_change", side_effect=fail_on_wallet):
            with pytest.raises(Internal) as exc_info:
                await service.release_escrow("O1", notes="Confirmed")

        assert exc_info.value.status_code == 500
        assert exc_info.value.message == "Failed to release escrow"
        assert not isinstance(exc_info.value, Unavailable)

        escrow = await load_row(session_factory, EscrowTransaction, "E1")
        assert escrow.status == EscrowStatus.HELD
        assert escrow.released_at is None
        vendor = await load_row(session_factory, Vendor, "V1")
        assert vendor.wallet_balance == Decimal("10000")
        order = await load_row(session_factory, Order, "O1")
        assert order.status == OrderStatus.SHIPPED
        assert await count_rows(session_factory, WalletTransaction) == 0
        assert await count_rows(session_factory, AuditLog) == 0

    @pytest.mark.asyncio
    async def test_retries_are_bounded(self, session_factory, marketplace):
        service = EscrowSettlementService(session_factory, max_attempts=3, retry_backoff=0)
        conflict = AsyncMock(side_effect=StaleDataError("row version changed"))

        with patch.object(EscrowSettlementService, "_load_escrow", conflict):
            with pytest.raises(Unavailable) as exc_info:
                await service.release_escrow("O1")

        assert conflict.await_count == 3
        assert exc_info.value.status_code == 503
        assert isinstance(exc_info.value, Internal)

    @pytest.mark.asyncio
    async def test_exhausted_retries_message_is_neutral(self, session_factory, marketplace):
        service = EscrowSettlementService(session_factory, max_attempts=2, retry_backoff=0)
        conflict = AsyncMock(side_effect=StaleDataError("row version changed"))

        with patch.object(EscrowSettlementService, "_load_escrow", conflict):
            with pytest.raises(Unavailable) as exc_info:
                await service.refund_escrow("O1")

        assert exc_info.value.message == "Escrow refund could not be completed; please retry."
        assert exc_info.value.to_dict()["error_code"] == "UNAVAILABLE"

    @pytest.mark.asyncio
    async def test_lock_timeout_is_retried(self, service, session_factory, marketplace):
        real_load = EscrowSettlementService._load_escrow
        calls = {"n": 0}

        async def locked_once(session, order_id):
            calls["n"] += 1
            if calls["n"] == 1:
                raise OperationalError("UPDATE vendors", {}, Exception("database is locked"))
            return await real_load(session, order_id)

        with patch.object(EscrowSettlementService, "_load_escrow", side_effect=locked_once):
            result = await service.release_escrow("O1")

        assert calls["n"] == 2
        assert result.status == EscrowStatus.RELEASED

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "reason",
        ["no such table: escrow_transactions", "connection refused"],
    )
    async def test_storage_outage_is_internal_not_retried(self, session_factory, marketplace, reason):
        service = EscrowSettlementService(session_factory, max_attempts=5, retry_backoff=0)
        outage = AsyncMock(side_effect=OperationalError("SELECT", {}, Exception(reason)))

        with patch.object(EscrowSettlementService, "_load_escrow", outage):
            with pytest.raises(Internal) as exc_info:
                await service.release_escrow("O1")

        assert outage.await_count == 1
        assert not isinstance(exc_info.value, Unavailable)
        assert exc_info.value.message == "Failed to release escrow"
        assert reason not in exc_info.value.message

    @pytest.mark.asyncio
    async def test_transient_conflict_is_retried(self, service, session_factory, marketplace):
        real_load = EscrowSettlementService._load_escrow
        calls = {"n": 0}

        async def flaky_load(session, order_id):
            calls["n"] += 1
            if calls["n"] == 1:
                raise StaleDataError("row version changed")
            return await real_load(session, order_id)

        with patch.object(EscrowSettlementService, "_load_escrow", side_effect=flaky_load):
            result = await service.release_escrow("O1")

        assert calls["n"] == 2
        assert result.wallet_balance == Decimal("15000")

    @pytest.mark.asyncio
    async def test_precondition_failures_are_not_retried(self, session_factory, marketplace):
        service = EscrowSettlementService(session_factory, max_attempts=5, retry_backoff=0)
        await service.release_escrow("O1")

        spy = AsyncMock(wraps=EscrowSettlementService._load_escrow)
        with patch.object(EscrowSettlementService, "_load_escrow", spy):
            with pytest.raises(PreconditionFailed):
                await service.release_escrow("O1")

        assert spy.await_count == 1


class TestConcurrency:
    """Concurrent callers on shared records"""

    @pytest.mark.asyncio
    async def test_concurrent_releases_for_one_vendor_both_credit(self, service, session_factory, marketplace):
        results = await asyncio.gather(
            service.release_escrow("O1"),
            service.release_escrow("O2"),
        )

        assert {r.status for r in results} == {EscrowStatus.RELEASED}

        vendor = await load_row(session_factory, Vendor, "V1")
        assert vendor.wallet_balance == Decimal("18000")
        assert vendor.total_sales == 2

        ledger = await all_rows(session_factory, WalletTransaction)
        assert sorted(e.amount for e in ledger) == [Decimal("3000"), Decimal("5000")]
        assert max(e.balance_after for e in ledger) == Decimal("18000")

    @pytest.mark.asyncio
    async def test_concurrent_release_of_same_order_succeeds_once(self, service, session_factory, marketplace):
        outcomes = await asyncio.gather(
            service.release_escrow("O1"),
            service.release_escrow("O1"),
            return_exceptions=True,
        )

        successes = [o for o in outcomes if isinstance(o, SettlementResult)]
        failures = [o for o in outcomes if isinstance(o, PreconditionFailed)]
        assert len(successes) == 1
        assert len(failures) == 1

        vendor = await load_row(session_factory, Vendor, "V1")
        assert vendor.wallet_balance == Decimal("15000")
        assert await count_rows(session_factory, WalletTransaction) == 1

    @pytest.mark.asyncio
    async def test_concurrent_release_and_refund_pick_one_terminal_state(self, service, session_factory, marketplace):
        outcomes = await asyncio.gather(
            service.release_escrow("O1"),
            service.refund_escrow("O1"),
            return_exceptions=True,
        )

        successes = [o for o in outcomes if isinstance(o, SettlementResult)]
        assert len(successes) == 1
        assert sum(isinstance(o, PreconditionFailed) for o in outcomes) == 1

        escrow = await load_row(session_factory, EscrowTransaction, "E1")
        order = await load_row(session_factory, Order, "O1")
        vendor = await load_row(session_factory, Vendor, "V1")
        assert escrow.status == successes[0].status
        assert order.escrow_status == escrow.status
        if escrow.status == EscrowStatus.RELEASED:
            assert vendor.wallet_balance == Decimal("15000")
        else:
            assert vendor.wallet_balance == Decimal("10000")


class TestGetEscrow:

    @pytest.mark.asyncio
    async def test_get_escrow(self, service, marketplace):
        escrow = await service.get_escrow("O2")
        assert escrow.id == "E2"
        assert escrow.status == EscrowStatus.HELD

    @pytest.mark.asyncio
    async def test_get_unknown_escrow(self, service, marketplace):
        with pytest.raises(NotFound):
            await service.get_escrow("NOPE")
