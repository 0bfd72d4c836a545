from __future__ import annotations

import enum
import re
import unicodedata
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, Optional

from sqlalchemy import (
    BigInteger,
    Boolean,
    CheckConstraint,
    DateTime,
    Enum,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship, validates

from settlement.models import BigIntPK, db
from settlement.utils.dates import as_utc, iso, utcnow
from settlement.utils.security import safe_str

CODE_MAX = 80
REASON_MAX = 300


def clean_code(v: Any, max_len: int = CODE_MAX) -> str:
    s = safe_str(v, 500).lower()
    s = unicodedata.normalize("NFKD", s)
    s = "".join(ch for ch in s if not unicodedata.combining(ch))
    s = s.replace(" ", "-")
    s = re.sub(r"[^a-z0-9_-]+", "-", s)
    s = re.sub(r"-{2,}", "-", s).strip("-_")
    return s[:max_len] if s else ""


class AffiliateStatus(str, enum.Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"
    BANNED = "banned"


class Affiliate(db.Model):
    """
    Afiliado de UNA marca. commission_rate es fracción de la parte de la marca
    (no del bruto). Solo acumula comisión si está aprobado.
    """

    __tablename__ = "affiliates"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    brand_id: Mapped[str] = mapped_column(
        String(64), ForeignKey("brands.id", ondelete="CASCADE"), nullable=False, index=True
    )
    user_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)

    status: Mapped[AffiliateStatus] = mapped_column(
        Enum(AffiliateStatus, name="affiliate_status"), nullable=False, index=True, default=AffiliateStatus.PENDING
    )
    commission_rate: Mapped[Decimal] = mapped_column(Numeric(6, 4), nullable=False, default=Decimal("0.1000"))

    approved_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    approved_by: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    rejected_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    rejection_reason: Mapped[Optional[str]] = mapped_column(String(REASON_MAX), nullable=True)
    banned_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    banned_by: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    ban_reason: Mapped[Optional[str]] = mapped_column(String(REASON_MAX), nullable=True)
    ban_expires_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True, index=True)

    sales_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    gross_sales_minor: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow)

    links = relationship("AffiliateLink", back_populates="affiliate", lazy="select", cascade="all, delete-orphan")

    __table_args__ = (
        CheckConstraint("commission_rate >= 0 AND commission_rate <= 1", name="ck_affiliate_rate_unit"),
        Index("ix_affiliate_brand_status", "brand_id", "status"),
    )

    @validates("rejection_reason", "ban_reason")
    def _v_reason(self, _k: str, v: Any) -> Optional[str]:
        return safe_str(v, REASON_MAX) or None

    def ban_lapsed(self, now: datetime) -> bool:
        exp = as_utc(self.ban_expires_at)
        return self.status == AffiliateStatus.BANNED and exp is not None and exp <= as_utc(now)

    def is_eligible(self, now: datetime) -> bool:
        """Approved, or banned with a ban that already expired."""
        if self.status == AffiliateStatus.APPROVED:
            return True
        return self.ban_lapsed(now)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "brand_id": self.brand_id,
            "user_id": self.user_id,
            "status": self.status.value,
            "commission_rate": str(self.commission_rate),
            "ban_expires_at": iso(self.ban_expires_at),
            "sales_count": int(self.sales_count or 0),
            "gross_sales_minor": int(self.gross_sales_minor or 0),
        }

    def __repr__(self) -> str:
        return f"<Affiliate id={self.id!r} brand={self.brand_id!r} status={self.status.value}>"


class AffiliateLink(db.Model):
    """Click reference -> affiliate."""

    __tablename__ = "affiliate_links"

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True, autoincrement=True)
    code: Mapped[str] = mapped_column(String(CODE_MAX), nullable=False, unique=True, index=True)
    affiliate_id: Mapped[str] = mapped_column(
        String(64), ForeignKey("affiliates.id", ondelete="CASCADE"), nullable=False, index=True
    )
    active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)

    affiliate = relationship("Affiliate", back_populates="links", lazy="joined")

    @validates("code")
    def _v_code(self, _k: str, v: Any) -> str:
        c = clean_code(v)
        if not c:
            raise ValueError("Affiliate link code is empty/invalid")
        return c

    def __repr__(self) -> str:
        return f"<AffiliateLink code={self.code!r} affiliate={self.affiliate_id!r}>"
