"""
NIMEX Marketplace — SQLAlchemy ORM Models
All tables use string UUID primary keys. Escrow, vendor and order rows carry a
version counter so concurrent settlements are detected at flush time.
"""
import enum
import uuid
from datetime import datetime

from sqlalchemy import (
    Boolean,
    Column,
    DateTime,
    Enum as SAEnum,
    ForeignKey,
    Integer,
    Numeric,
    String,
    Text,
)
from sqlalchemy.orm import relationship

from nimex.database import Base


def _new_id() -> str:
    return str(uuid.uuid4())


# ═══════════════════════════════════════════════════════
#  ENUMS
# ═══════════════════════════════════════════════════════


class UserRole(str, enum.Enum):
    BUYER = "buyer"
    VENDOR = "vendor"
    ADMIN = "admin"
    MARKETER = "marketer"


class OrderStatus(str, enum.Enum):
    PENDING = "pending"
    CONFIRMED = "confirmed"
    PROCESSING = "processing"
    SHIPPED = "shipped"
    DELIVERED = "delivered"
    CANCELLED = "cancelled"


class PaymentStatus(str, enum.Enum):
    PENDING = "pending"
    PAID = "paid"
    REFUNDED = "refunded"
    FAILED = "failed"


class EscrowStatus(str, enum.Enum):
    HELD = "held"
    RELEASED = "released"
    REFUNDED = "refunded"


class ReleaseType(str, enum.Enum):
    MANUAL_BUYER = "manual_buyer"
    AUTO = "auto"
    ADMIN = "admin"
    AUTO_DELIVERY = "auto_delivery"
    ADMIN_OVERRIDE = "admin_override"
    DISPUTE_RESOLUTION = "dispute_resolution"


class WalletTransactionType(str, enum.Enum):
    SALE = "sale"
    WITHDRAWAL = "withdrawal"
    ADJUSTMENT = "adjustment"


class WalletTransactionStatus(str, enum.Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"


# ═══════════════════════════════════════════════════════
#  MODELS
# ═══════════════════════════════════════════════════════


class User(Base):
    """Platform account — buyer, vendor, admin or marketer."""
    __tablename__ = "users"

    id = Column(String(36), primary_key=True, default=_new_id)
    full_name = Column(String(120), nullable=False)
    email = Column(String(255), unique=True, nullable=False)
    password_hash = Column(String(128), nullable=True)  # passlib bcrypt hash
    phone = Column(String(32), nullable=True)
    role = Column(SAEnum(UserRole, name="user_role_enum"), nullable=False)
    is_verified = Column(Boolean, default=False)
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    # Relationships
    vendor_profile = relationship("Vendor", back_populates="user", uselist=False)

    def __repr__(self) -> str:
        return f"<User {self.email} ({self.role.value})>"


class Vendor(Base):
    """Vendor business profile and wallet."""
    __tablename__ = "vendors"

    id = Column(String(36), primary_key=True, default=_new_id)
    user_id = Column(String(36), ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    business_name = Column(String(200), nullable=False)
    business_phone = Column(String(32), nullable=True)
    business_address = Column(String(300), nullable=True)
    bank_name = Column(String(120), nullable=True)
    bank_account_encrypted = Column(String(512), nullable=True)  # Fernet-encrypted account number
    wallet_balance = Column(Numeric(14, 2), default=0, nullable=False)
    total_sales = Column(Integer, default=0, nullable=False)
    version = Column(Integer, nullable=False)
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    __mapper_args__ = {"version_id_col": version}

    # Relationships
    user = relationship("User", back_populates="vendor_profile")

    def __repr__(self) -> str:
        return f"<Vendor {self.business_name} — {self.wallet_balance}>"


class Order(Base):
    """Buyer order placed with a single vendor."""
    __tablename__ = "orders"

    id = Column(String(36), primary_key=True, default=_new_id)
    order_number = Column(String(64), unique=True, nullable=True)  # e.g. NIMEX-1712345678-AB12C
    buyer_id = Column(String(36), ForeignKey("users.id"), nullable=True)
    vendor_id = Column(String(36), ForeignKey("vendors.id"), nullable=True)
    status = Column(
        SAEnum(OrderStatus, name="order_status_enum"),
        default=OrderStatus.PENDING,
        nullable=False,
    )
    payment_status = Column(
        SAEnum(PaymentStatus, name="payment_status_enum"),
        default=PaymentStatus.PENDING,
        nullable=False,
    )
    escrow_status = Column(SAEnum(EscrowStatus, name="escrow_status_enum"), nullable=True)
    subtotal = Column(Numeric(14, 2), default=0)
    shipping_fee = Column(Numeric(14, 2), default=0)
    total_amount = Column(Numeric(14, 2), default=0)
    version = Column(Integer, nullable=False)
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow)

    __mapper_args__ = {"version_id_col": version}

    def __repr__(self) -> str:
        return f"<Order {self.order_number or self.id} — {self.status.value}>"


class EscrowTransaction(Base):
    """Payment held for an order until delivery is confirmed or the order is refunded."""
    __tablename__ = "escrow_transactions"

    id = Column(String(36), primary_key=True, default=_new_id)
    order_id = Column(
        String(36), ForeignKey("orders.id", ondelete="CASCADE"), unique=True, nullable=False
    )  # one escrow per order
    vendor_id = Column(String(36), ForeignKey("vendors.id"), nullable=False)
    buyer_id = Column(String(36), ForeignKey("users.id"), nullable=True)
    total_amount = Column(Numeric(14, 2), nullable=True)
    platform_fee = Column(Numeric(14, 2), default=0)
    vendor_amount = Column(Numeric(14, 2), nullable=True)
    currency = Column(String(3), default="NGN")
    status = Column(
        SAEnum(EscrowStatus, name="escrow_status_enum"),
        default=EscrowStatus.HELD,
        nullable=False,
    )
    release_reason = Column(Text, nullable=True)
    release_type = Column(SAEnum(ReleaseType, name="release_type_enum"), nullable=True)
    refunded_by = Column(String(64), nullable=True)
    released_at = Column(DateTime, nullable=True)
    version = Column(Integer, nullable=False)
    created_at = Column(DateTime, default=datetime.utcnow)

    __mapper_args__ = {"version_id_col": version}

    def __repr__(self) -> str:
        return f"<Escrow {self.order_id} {self.vendor_amount} — {self.status.value}>"


class WalletTransaction(Base):
    """Append-only vendor wallet ledger entry."""
    __tablename__ = "wallet_transactions"

    id = Column(String(36), primary_key=True, default=_new_id)
    vendor_id = Column(String(36), ForeignKey("vendors.id"), nullable=False)
    type = Column(SAEnum(WalletTransactionType, name="wallet_txn_type_enum"), nullable=False)
    amount = Column(Numeric(14, 2), nullable=False)
    balance_after = Column(Numeric(14, 2), nullable=False)
    reference = Column(String(64), unique=True, nullable=False)  # ESCROW-<escrow id>
    description = Column(Text, nullable=True)
    status = Column(
        SAEnum(WalletTransactionStatus, name="wallet_txn_status_enum"),
        default=WalletTransactionStatus.COMPLETED,
        nullable=False,
    )
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)

    def __repr__(self) -> str:
        return f"<WalletTransaction {self.reference} {self.amount}>"


class AuditLog(Base):
    """Immutable audit trail for escrow and wallet state changes."""
    __tablename__ = "audit_logs"

    id = Column(String(36), primary_key=True, default=_new_id)
    action = Column(String(32), nullable=False)  # ESCROW_RELEASE, ESCROW_REFUND, WALLET_CREDIT
    table_name = Column(String(100), nullable=False)  # e.g. "escrow_transactions"
    record_id = Column(String(64), nullable=False)
    actor_id = Column(String(64), nullable=True)  # performedByUserId, passed through opaquely
    changes = Column(Text, nullable=True)  # JSON: {"field": {"old": ..., "new": ...}}
    snapshot = Column(Text, nullable=True)  # JSON: full row snapshot at time of event
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)

    def __repr__(self) -> str:
        return f"<AuditLog {self.action} {self.table_name} [{self.record_id}]>"
