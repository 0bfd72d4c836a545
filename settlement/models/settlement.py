from __future__ import annotations

import enum
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, FrozenSet, Optional

from sqlalchemy import BigInteger, CheckConstraint, DateTime, Enum, Index, Numeric, String, event, inspect
from sqlalchemy.orm import Mapped, mapped_column

from settlement.errors import InvalidLedgerOperation
from settlement.models import BigIntPK, db
from settlement.money import Money
from settlement.utils.dates import iso, utcnow


class OrderStatus(str, enum.Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    SHIPPED = "shipped"
    DELIVERED = "delivered"
    CANCELLED = "cancelled"


ORDER_TRANSITIONS: Dict[OrderStatus, FrozenSet[OrderStatus]] = {
    OrderStatus.PENDING: frozenset({OrderStatus.PROCESSING, OrderStatus.CANCELLED}),
    OrderStatus.PROCESSING: frozenset({OrderStatus.SHIPPED, OrderStatus.CANCELLED}),
    OrderStatus.SHIPPED: frozenset({OrderStatus.DELIVERED}),
    OrderStatus.DELIVERED: frozenset(),
    OrderStatus.CANCELLED: frozenset(),
}

# columnas que fijan el reparto: no cambian después del insert
_FROZEN_COLUMNS = (
    "order_id",
    "brand_id",
    "affiliate_id",
    "referrer_user_id",
    "currency",
    "total_minor",
    "platform_minor",
    "brand_share_minor",
    "brand_net_minor",
    "affiliate_due_minor",
    "referrer_due_minor",
    "brand_rate",
    "affiliate_rate",
    "referral_rate",
)


class OrderSettlement(db.Model):
    """
    Registro final de cómo se repartió UNA orden.
    Único por order_id (clave de idempotencia de la ingesta).
    """

    __tablename__ = "order_settlements"

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True, autoincrement=True)
    order_id: Mapped[str] = mapped_column(String(120), nullable=False, unique=True, index=True)

    brand_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    affiliate_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True, index=True)
    referrer_user_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True, index=True)
    buyer_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)

    currency: Mapped[str] = mapped_column(String(3), nullable=False, default="USD")
    total_minor: Mapped[int] = mapped_column(BigInteger, nullable=False)
    platform_minor: Mapped[int] = mapped_column(BigInteger, nullable=False)
    brand_share_minor: Mapped[int] = mapped_column(BigInteger, nullable=False)
    brand_net_minor: Mapped[int] = mapped_column(BigInteger, nullable=False)
    affiliate_due_minor: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    referrer_due_minor: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)

    brand_rate: Mapped[Decimal] = mapped_column(Numeric(6, 4), nullable=False)
    affiliate_rate: Mapped[Optional[Decimal]] = mapped_column(Numeric(6, 4), nullable=True)
    referral_rate: Mapped[Optional[Decimal]] = mapped_column(Numeric(6, 4), nullable=True)

    order_status: Mapped[OrderStatus] = mapped_column(
        Enum(OrderStatus, name="order_status"), nullable=False, index=True, default=OrderStatus.PENDING
    )

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow, index=True)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow)

    __table_args__ = (
        CheckConstraint("total_minor >= 0", name="ck_settlement_total_nonneg"),
        CheckConstraint(
            "platform_minor + brand_net_minor + affiliate_due_minor + referrer_due_minor = total_minor",
            name="ck_settlement_conservation",
        ),
        CheckConstraint(
            "brand_net_minor + affiliate_due_minor + referrer_due_minor = brand_share_minor",
            name="ck_settlement_carve_out",
        ),
        Index("ix_settlement_brand_created", "brand_id", "created_at"),
        Index("ix_settlement_affiliate_created", "affiliate_id", "created_at"),
    )

    def money(self, minor: int) -> Money:
        return Money(int(minor or 0), self.currency)

    def can_transition(self, to: OrderStatus) -> bool:
        return to in ORDER_TRANSITIONS.get(self.order_status, frozenset())

    def to_dict(self) -> Dict[str, Any]:
        return {
            "order_id": self.order_id,
            "brand_id": self.brand_id,
            "affiliate_id": self.affiliate_id,
            "referrer_user_id": self.referrer_user_id,
            "buyer_id": self.buyer_id,
            "order_status": self.order_status.value,
            "total": self.money(self.total_minor).to_dict(),
            "platform_share": self.money(self.platform_minor).to_dict(),
            "brand_share": self.money(self.brand_share_minor).to_dict(),
            "brand_net": self.money(self.brand_net_minor).to_dict(),
            "affiliate_due": self.money(self.affiliate_due_minor).to_dict(),
            "referrer_due": self.money(self.referrer_due_minor).to_dict(),
            "rates": {
                "brand": str(self.brand_rate),
                "affiliate": str(self.affiliate_rate) if self.affiliate_rate is not None else None,
                "referral": str(self.referral_rate) if self.referral_rate is not None else None,
            },
            "created_at": iso(self.created_at),
        }

    def __repr__(self) -> str:
        return f"<OrderSettlement order={self.order_id!r} total={self.total_minor} {self.currency}>"


@event.listens_for(OrderSettlement, "before_update")
def _settlement_split_is_frozen(_mapper, _conn, target: OrderSettlement) -> None:
    state = inspect(target)
    for col in _FROZEN_COLUMNS:
        if state.attrs[col].history.has_changes():
            raise InvalidLedgerOperation(f"OrderSettlement.{col} is immutable once recorded")


@event.listens_for(OrderSettlement, "before_delete")
def _settlement_no_delete(_mapper, _conn, target: OrderSettlement) -> None:
    raise InvalidLedgerOperation("OrderSettlement rows are never deleted")
