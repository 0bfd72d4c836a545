from __future__ import annotations

import enum
import secrets
from datetime import datetime
from typing import Any, Dict, FrozenSet, Optional

from sqlalchemy import (
    BigInteger,
    Boolean,
    CheckConstraint,
    DateTime,
    Enum,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column, validates

from settlement.models import BigIntPK, db
from settlement.models.ledger import PartyType
from settlement.money import Money
from settlement.utils.dates import iso, utcnow
from settlement.utils.security import safe_str


def _gen_public_id(prefix: str = "po") -> str:
    return f"{prefix}_{secrets.token_urlsafe(12)}"


class PayoutStatus(str, enum.Enum):
    REQUESTED = "requested"
    TRANSFERRING = "transferring"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


TERMINAL_PAYOUT_STATUSES: FrozenSet[PayoutStatus] = frozenset(
    {PayoutStatus.COMPLETED, PayoutStatus.FAILED, PayoutStatus.CANCELLED}
)


class PayoutRequest(db.Model):
    __tablename__ = "payout_requests"

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True, autoincrement=True)
    public_id: Mapped[str] = mapped_column(String(40), nullable=False, unique=True, index=True, default=_gen_public_id)

    party_type: Mapped[PartyType] = mapped_column(Enum(PartyType, name="ledger_party_type"), nullable=False)
    party_id: Mapped[str] = mapped_column(String(64), nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False, default="USD")
    amount_minor: Mapped[int] = mapped_column(BigInteger, nullable=False)

    status: Mapped[PayoutStatus] = mapped_column(
        Enum(PayoutStatus, name="payout_status"), nullable=False, index=True, default=PayoutStatus.REQUESTED
    )

    destination_account: Mapped[str] = mapped_column(String(120), nullable=False)
    transfer_ref: Mapped[Optional[str]] = mapped_column(String(120), nullable=True, unique=True, index=True)
    failure_reason: Mapped[Optional[str]] = mapped_column(String(500), nullable=True)

    attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    claimed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    debit_entry_id: Mapped[Optional[int]] = mapped_column(BigInteger, nullable=True)
    reversal_entry_id: Mapped[Optional[int]] = mapped_column(BigInteger, nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow, index=True)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
    transferring_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    failed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    cancelled_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        CheckConstraint("amount_minor > 0", name="ck_payout_amount_pos"),
        CheckConstraint("attempts >= 0", name="ck_payout_attempts_nonneg"),
        Index("ix_payout_party_created", "party_type", "party_id", "created_at"),
        Index("ix_payout_status_created", "status", "created_at"),
    )

    @validates("failure_reason")
    def _v_reason(self, _k: str, v: Any) -> Optional[str]:
        return safe_str(v, 500) or None

    @property
    def amount(self) -> Money:
        return Money(int(self.amount_minor), self.currency)

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_PAYOUT_STATUSES

    @property
    def idempotency_key(self) -> str:
        # mismo valor en cada reintento: el gateway nunca crea dos transfers
        return f"payout-{self.public_id}"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.public_id,
            "party_type": self.party_type.value,
            "party_id": self.party_id,
            "amount": self.amount.to_dict(),
            "status": self.status.value,
            "transfer_ref": self.transfer_ref,
            "failure_reason": self.failure_reason,
            "attempts": int(self.attempts or 0),
            "created_at": iso(self.created_at),
            "transferring_at": iso(self.transferring_at),
            "completed_at": iso(self.completed_at),
            "failed_at": iso(self.failed_at),
            "cancelled_at": iso(self.cancelled_at),
        }

    def __repr__(self) -> str:
        return f"<PayoutRequest {self.public_id} {self.party_type.value}:{self.party_id} {self.status.value}>"


class PayoutAccount(db.Model):
    """Destino externo (p.ej. Stripe Connect) por parte."""

    __tablename__ = "payout_accounts"

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True, autoincrement=True)
    party_type: Mapped[PartyType] = mapped_column(Enum(PartyType, name="ledger_party_type"), nullable=False)
    party_id: Mapped[str] = mapped_column(String(64), nullable=False)
    provider: Mapped[str] = mapped_column(String(40), nullable=False, default="stripe")
    account_ref: Mapped[str] = mapped_column(String(120), nullable=False, unique=True, index=True)

    active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    details_submitted: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow)

    __table_args__ = (UniqueConstraint("party_type", "party_id", "provider", name="uq_payout_account_party"),)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "party_type": self.party_type.value,
            "party_id": self.party_id,
            "provider": self.provider,
            "account_ref": self.account_ref,
            "active": bool(self.active),
            "details_submitted": bool(self.details_submitted),
            "updated_at": iso(self.updated_at),
        }


class ReconciliationAnomaly(db.Model):
    """Eventos de transfer que no se aplicaron (requieren operador)."""

    __tablename__ = "reconciliation_anomalies"

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True, autoincrement=True)
    transfer_ref: Mapped[str] = mapped_column(String(120), nullable=False, index=True)
    payout_id: Mapped[Optional[int]] = mapped_column(BigInteger, nullable=True, index=True)
    payout_status: Mapped[Optional[str]] = mapped_column(String(20), nullable=True)
    event_status: Mapped[str] = mapped_column(String(20), nullable=False)
    event_id: Mapped[Optional[str]] = mapped_column(String(120), nullable=True)
    detail: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow, index=True)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "transfer_ref": self.transfer_ref,
            "payout_id": self.payout_id,
            "payout_status": self.payout_status,
            "event_status": self.event_status,
            "event_id": self.event_id,
            "detail": self.detail,
            "created_at": iso(self.created_at),
        }


class ParkedTransferEvent(db.Model):
    """
    Evento terminal que llegó antes de que el payout guardara su transfer_ref.
    Se re-aplica cuando el ref aparece (replayed_at marca el consumo, una sola vez).
    """

    __tablename__ = "parked_transfer_events"

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True, autoincrement=True)
    transfer_ref: Mapped[str] = mapped_column(String(120), nullable=False, index=True)
    status: Mapped[str] = mapped_column(String(20), nullable=False)
    failure_reason: Mapped[Optional[str]] = mapped_column(String(500), nullable=True)
    event_id: Mapped[Optional[str]] = mapped_column(String(120), nullable=True)
    received_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
    replayed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    __table_args__ = (Index("ix_parked_ref_pending", "transfer_ref", "replayed_at"),)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "transfer_ref": self.transfer_ref,
            "status": self.status,
            "failure_reason": self.failure_reason,
            "event_id": self.event_id,
            "received_at": iso(self.received_at),
            "replayed_at": iso(self.replayed_at),
        }
