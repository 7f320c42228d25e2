"""
NIMEX Marketplace — Escrow Settlement Pydantic Schemas
Request/response models for the release, refund and status endpoints.
Request bodies use the camelCase keys the storefront sends.
"""
from datetime import datetime
from typing import Optional

from pydantic import BaseModel, Field, field_validator

from nimex.models import ReleaseType


class _SettlementRequest(BaseModel):
    model_config = {"extra": "forbid", "populate_by_name": True}

    order_id: str = Field(
        ...,
        alias="orderId",
        min_length=1,
        max_length=64,
        description="Id of the order whose escrow to settle",
    )
    performed_by_user_id: Optional[str] = Field(
        None,
        alias="performedByUserId",
        max_length=64,
        description="Acting user, recorded for audit only",
    )

    @field_validator("order_id")
    @classmethod
    def order_id_not_blank(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("Order ID is required")
        return v


class EscrowReleaseRequest(_SettlementRequest):
    """Input for releasing held escrow funds to the vendor."""

    release_type: Optional[ReleaseType] = Field(
        None,
        alias="releaseType",
        description="manual_buyer, auto, admin, ... (defaults to manual_buyer)",
    )
    notes: Optional[str] = Field(None, max_length=500)


class EscrowRefundRequest(_SettlementRequest):
    """Input for refunding held escrow funds (bookkeeping only)."""

    reason: Optional[str] = Field(None, max_length=500)


class SettlementResponse(BaseModel):
    """Result envelope of a successful settlement."""

    success: bool = True
    message: str


class EscrowStatusResponse(BaseModel):
    """Current state of an order's escrow transaction."""

    escrow_id: str
    order_id: str
    vendor_id: str
    total_amount: Optional[float] = None
    vendor_amount: Optional[float] = None
    currency: str
    status: str
    release_type: Optional[str] = None
    release_reason: Optional[str] = None
    created_at: Optional[datetime] = None
    released_at: Optional[datetime] = None

    @classmethod
    def from_escrow(cls, escrow) -> "EscrowStatusResponse":
        return cls(
            escrow_id=escrow.id,
            order_id=escrow.order_id,
            vendor_id=escrow.vendor_id,
            total_amount=float(escrow.total_amount) if escrow.total_amount is not None else None,
            vendor_amount=float(escrow.vendor_amount) if escrow.vendor_amount is not None else None,
            currency=escrow.currency or "NGN",
            status=escrow.status.value,
            release_type=escrow.release_type.value if escrow.release_type else None,
            release_reason=escrow.release_reason,
            created_at=escrow.created_at,
            released_at=escrow.released_at,
        )
