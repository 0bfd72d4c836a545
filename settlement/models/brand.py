from __future__ import annotations

import enum
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, Optional

from sqlalchemy import BigInteger, CheckConstraint, DateTime, Enum, Index, Integer, Numeric, String
from sqlalchemy.orm import Mapped, mapped_column, validates

from settlement.models import db
from settlement.utils.dates import iso, utcnow
from settlement.utils.security import safe_str


class BrandStatus(str, enum.Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"


class Brand(db.Model):
    """
    Marca (tenant). commission_rate = parte de la marca sobre el bruto;
    la plataforma retiene 1 - commission_rate.
    """

    __tablename__ = "brands"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    name: Mapped[Optional[str]] = mapped_column(String(120), nullable=True)
    owner_user_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)

    status: Mapped[BrandStatus] = mapped_column(
        Enum(BrandStatus, name="brand_status"), nullable=False, index=True, default=BrandStatus.PENDING
    )
    commission_rate: Mapped[Decimal] = mapped_column(Numeric(6, 4), nullable=False, default=Decimal("0.5000"))

    # contadores denormalizados (no dinero adeudado: eso vive en el ledger)
    sales_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    gross_sales_minor: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)

    rejection_reason: Mapped[Optional[str]] = mapped_column(String(300), nullable=True)
    deleted_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True, index=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow)

    __table_args__ = (
        CheckConstraint("commission_rate >= 0 AND commission_rate <= 1", name="ck_brand_rate_unit"),
        CheckConstraint("sales_count >= 0", name="ck_brand_sales_nonneg"),
        Index("ix_brand_owner_status", "owner_user_id", "status"),
    )

    @validates("name")
    def _v_name(self, _k: str, v: Any) -> Optional[str]:
        return safe_str(v, 120) or None

    @property
    def is_deleted(self) -> bool:
        return self.deleted_at is not None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "owner_user_id": self.owner_user_id,
            "status": self.status.value,
            "commission_rate": str(self.commission_rate),
            "sales_count": int(self.sales_count or 0),
            "gross_sales_minor": int(self.gross_sales_minor or 0),
            "deleted_at": iso(self.deleted_at),
            "created_at": iso(self.created_at),
        }

    def __repr__(self) -> str:
        return f"<Brand id={self.id!r} status={self.status.value} rate={self.commission_rate}>"
