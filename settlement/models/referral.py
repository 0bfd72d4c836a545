from __future__ import annotations

import enum
from datetime import datetime, timedelta
from typing import Any, Dict, Optional

from sqlalchemy import DateTime, Enum, Index, Integer, String
from sqlalchemy.orm import Mapped, mapped_column

from settlement.models import BigIntPK, db
from settlement.utils.dates import as_utc, iso, utcnow


class ReferralStatus(str, enum.Enum):
    PENDING = "pending"
    COMPLETED = "completed"


class PlatformReferral(db.Model):
    """
    Referido de plataforma: referrer gana REFERRAL_RATE de la parte de marca
    de las órdenes de las marcas del referido.
    """

    __tablename__ = "platform_referrals"

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True, autoincrement=True)
    code: Mapped[str] = mapped_column(String(40), nullable=False, unique=True, index=True)

    referrer_user_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    # se setea una sola vez, al registrarse
    referred_user_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True, unique=True, index=True)

    status: Mapped[ReferralStatus] = mapped_column(
        Enum(ReferralStatus, name="referral_status"), nullable=False, index=True, default=ReferralStatus.PENDING
    )

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
    signed_up_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    # órdenes acreditadas al referrer (earnings se deriva del ledger)
    orders_credited: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    __table_args__ = (Index("ix_referral_referrer_status", "referrer_user_id", "status"),)

    def expires_at(self, lifetime_days: int) -> Optional[datetime]:
        if not lifetime_days or lifetime_days <= 0:
            return None
        start = as_utc(self.completed_at or self.signed_up_at or self.created_at)
        return start + timedelta(days=int(lifetime_days)) if start else None

    def is_creditable(self, now: datetime, *, lifetime_days: int = 0, credit_pending: bool = False) -> bool:
        if not self.referred_user_id:
            return False
        if self.status == ReferralStatus.PENDING and not credit_pending:
            return False
        exp = self.expires_at(lifetime_days)
        return exp is None or as_utc(now) < exp

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "code": self.code,
            "referrer_user_id": self.referrer_user_id,
            "referred_user_id": self.referred_user_id,
            "status": self.status.value,
            "created_at": iso(self.created_at),
            "completed_at": iso(self.completed_at),
            "orders_credited": int(self.orders_credited or 0),
        }

    def __repr__(self) -> str:
        return f"<PlatformReferral code={self.code!r} status={self.status.value}>"
