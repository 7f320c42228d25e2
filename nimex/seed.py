"""
NIMEX Marketplace — Demo Data
Creates the demo buyer / vendor accounts, the admin team accounts and a few
paid orders whose payments are held in escrow. Safe to call repeatedly:
accounts that already exist are left alone.
"""
import logging
from decimal import Decimal

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from nimex.auth import hash_password
from nimex.config import get_settings
from nimex.encryption import encrypt_pii
from nimex.models import (
    EscrowStatus,
    EscrowTransaction,
    Order,
    OrderStatus,
    PaymentStatus,
    User,
    UserRole,
    Vendor,
)

logger = logging.getLogger("nimex.seed")

DEMO_BUYER_EMAIL = "demo@buyer.nimex.ng"
DEMO_VENDOR_EMAIL = "demo@vendor.nimex.ng"

# Marketplace commission withheld from every escrowed sale
PLATFORM_FEE_RATE = Decimal("0.05")

_DEMO_USERS = [
    {
        "email": DEMO_BUYER_EMAIL,
        "full_name": "Demo Buyer",
        "phone": "+234 800 123 4567",
        "role": UserRole.BUYER,
    },
    {
        "email": DEMO_VENDOR_EMAIL,
        "full_name": "Demo Vendor",
        "phone": "+234 800 765 4321",
        "role": UserRole.VENDOR,
    },
]

_ADMIN_USERS = [
    {"email": "admin@nimex.ng", "full_name": "NIMEX Super Admin"},
    {"email": "accounts@nimex.ng", "full_name": "NIMEX Account Team"},
    {"email": "support@nimex.ng", "full_name": "NIMEX Customer Support"},
]

_DEMO_VENDOR_PROFILE = {
    "business_name": "Demo Artisan Crafts",
    "business_address": "45 Craft Market Road, Ikeja",
    "business_phone": "+234 800 765 4321",
    "bank_name": "Guaranty Trust Bank",
    "wallet_balance": Decimal("250500"),
    "total_sales": 125,
}
_DEMO_BANK_ACCOUNT = "0123456789"

# (order number, subtotal, shipping fee)
_DEMO_ORDERS = [
    ("NIMEX-DEMO-0001", Decimal("15000"), Decimal("2500")),
    ("NIMEX-DEMO-0002", Decimal("42000"), Decimal("3500")),
    ("NIMEX-DEMO-0003", Decimal("8000"), Decimal("1500")),
]


async def create_demo_accounts(session: AsyncSession) -> dict:
    """
    Create any missing demo / admin accounts.

    Returns {"created": [emails], "existing": [emails]}. The caller commits.
    """
    settings = get_settings()
    summary = {"created": [], "existing": []}

    accounts = [(profile, settings.DEMO_PASSWORD) for profile in _DEMO_USERS]
    accounts += [
        ({**profile, "role": UserRole.ADMIN}, settings.DEMO_ADMIN_PASSWORD)
        for profile in _ADMIN_USERS
    ]

    for profile, password in accounts:
        result = await session.execute(select(User).where(User.email == profile["email"]))
        if result.scalar_one_or_none() is not None:
            summary["existing"].append(profile["email"])
            continue

        user = User(
            email=profile["email"],
            full_name=profile["full_name"],
            phone=profile.get("phone"),
            role=profile["role"],
            is_verified=True,
            password_hash=hash_password(password),
        )
        session.add(user)
        await session.flush()

        if user.role == UserRole.VENDOR:
            vendor = Vendor(user_id=user.id, **_DEMO_VENDOR_PROFILE)
            if settings.FERNET_KEY:
                vendor.bank_account_encrypted = encrypt_pii(_DEMO_BANK_ACCOUNT)
            session.add(vendor)

        summary["created"].append(profile["email"])

    await session.flush()
    logger.info(
        "👤 Demo accounts: %d created, %d already present",
        len(summary["created"]), len(summary["existing"]),
    )
    return summary


async def seed_database(session: AsyncSession) -> None:
    """Insert demo accounts and held-escrow orders if the users table is empty."""
    result = await session.execute(select(User).limit(1))
    if result.scalar_one_or_none() is not None:
        logger.info("⏭  Database already seeded — skipping.")
        return

    logger.info("🌱 Seeding database with demo data…")
    await create_demo_accounts(session)

    buyer = (
        await session.execute(select(User).where(User.email == DEMO_BUYER_EMAIL))
    ).scalar_one()
    vendor = (
        await session.execute(
            select(Vendor).join(User, Vendor.user_id == User.id)
            .where(User.email == DEMO_VENDOR_EMAIL)
        )
    ).scalar_one()

    for order_number, subtotal, shipping_fee in _DEMO_ORDERS:
        total = subtotal + shipping_fee
        order = Order(
            order_number=order_number,
            buyer_id=buyer.id,
            vendor_id=vendor.id,
            status=OrderStatus.SHIPPED,
            payment_status=PaymentStatus.PAID,
            escrow_status=EscrowStatus.HELD,
            subtotal=subtotal,
            shipping_fee=shipping_fee,
            total_amount=total,
        )
        session.add(order)
        await session.flush()

        fee = (subtotal * PLATFORM_FEE_RATE).quantize(Decimal("0.01"))
        session.add(
            EscrowTransaction(
                order_id=order.id,
                vendor_id=vendor.id,
                buyer_id=buyer.id,
                total_amount=total,
                platform_fee=fee,
                vendor_amount=total - fee,
                status=EscrowStatus.HELD,
            )
        )

    await session.commit()
    logger.info("✅ Seeded %d demo orders with held escrow.", len(_DEMO_ORDERS))
