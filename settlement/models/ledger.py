from __future__ import annotations

import enum
import secrets
from datetime import datetime
from typing import Any, Dict, Optional

from sqlalchemy import BigInteger, CheckConstraint, DateTime, Enum, Index, Integer, String, UniqueConstraint, event
from sqlalchemy.orm import Mapped, mapped_column, validates

from settlement.errors import InvalidLedgerOperation
from settlement.models import BigIntPK, db
from settlement.money import Money, normalize_currency
from settlement.utils.dates import iso, utcnow
from settlement.utils.security import safe_str

PLATFORM_PARTY_ID = "platform"


def _gen_public_id(prefix: str = "le") -> str:
    return f"{prefix}_{secrets.token_urlsafe(12)}"


class PartyType(str, enum.Enum):
    PLATFORM = "platform"
    BRAND = "brand"
    AFFILIATE = "affiliate"
    REFERRER = "referrer"


class EntryReason(str, enum.Enum):
    COMMISSION_CREDIT = "commission_credit"
    PAYOUT_DEBIT = "payout_debit"
    PAYOUT_REVERSAL = "payout_reversal"


class ReservationStatus(str, enum.Enum):
    ACTIVE = "active"
    CONSUMED = "consumed"
    RELEASED = "released"


# signo esperado por motivo
_SIGN: Dict[EntryReason, int] = {
    EntryReason.COMMISSION_CREDIT: 1,
    EntryReason.PAYOUT_DEBIT: -1,
    EntryReason.PAYOUT_REVERSAL: 1,
}


class LedgerEntry(db.Model):
    """
    Append-only. balance(party) = SUM(delta_minor).
    Nunca se actualiza ni se borra: las correcciones son asientos nuevos.
    """

    __tablename__ = "ledger_entries"

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True, autoincrement=True)
    public_id: Mapped[str] = mapped_column(String(40), nullable=False, unique=True, index=True, default=_gen_public_id)

    party_type: Mapped[PartyType] = mapped_column(Enum(PartyType, name="ledger_party_type"), nullable=False)
    party_id: Mapped[str] = mapped_column(String(64), nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False, default="USD")

    delta_minor: Mapped[int] = mapped_column(BigInteger, nullable=False)
    reason: Mapped[EntryReason] = mapped_column(Enum(EntryReason, name="ledger_entry_reason"), nullable=False, index=True)

    order_id: Mapped[Optional[str]] = mapped_column(String(120), nullable=True, index=True)
    payout_id: Mapped[Optional[int]] = mapped_column(BigInteger, nullable=True, index=True)
    related_entry_id: Mapped[Optional[int]] = mapped_column(BigInteger, nullable=True, index=True)

    idempotency_key: Mapped[str] = mapped_column(String(160), nullable=False, unique=True, index=True)
    note: Mapped[Optional[str]] = mapped_column(String(300), nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow, index=True)

    __table_args__ = (
        CheckConstraint("delta_minor <> 0", name="ck_ledger_delta_nonzero"),
        CheckConstraint(
            "(order_id IS NOT NULL AND payout_id IS NULL) OR (order_id IS NULL AND payout_id IS NOT NULL)",
            name="ck_ledger_single_cause",
        ),
        Index("ix_ledger_party_currency", "party_type", "party_id", "currency"),
        Index("ix_ledger_party_created", "party_type", "party_id", "created_at"),
    )

    @validates("currency")
    def _v_currency(self, _k: str, v: Any) -> str:
        return normalize_currency(v)

    @validates("note")
    def _v_note(self, _k: str, v: Any) -> Optional[str]:
        return safe_str(v, 300) or None

    @validates("delta_minor")
    def _v_delta(self, _k: str, v: Any) -> int:
        if isinstance(v, bool) or not isinstance(v, int):
            raise InvalidLedgerOperation("delta_minor must be an int (minor units)")
        if v == 0:
            raise InvalidLedgerOperation("zero-value ledger entries are not posted")
        return v

    def check_sign(self) -> None:
        want = _SIGN[self.reason]
        if (self.delta_minor > 0) != (want > 0):
            raise InvalidLedgerOperation(
                f"{self.reason.value} expects {'credit' if want > 0 else 'debit'}, got {self.delta_minor}"
            )

    @property
    def delta(self) -> Money:
        return Money(int(self.delta_minor), self.currency)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.public_id,
            "party_type": self.party_type.value,
            "party_id": self.party_id,
            "delta": self.delta.to_dict(),
            "reason": self.reason.value,
            "order_id": self.order_id,
            "payout_id": self.payout_id,
            "related_entry_id": self.related_entry_id,
            "note": self.note,
            "created_at": iso(self.created_at),
        }

    def __repr__(self) -> str:
        return f"<LedgerEntry {self.party_type.value}:{self.party_id} {self.delta_minor} {self.reason.value}>"


@event.listens_for(LedgerEntry, "before_update")
def _ledger_no_update(_mapper, _conn, target: LedgerEntry) -> None:
    raise InvalidLedgerOperation("Ledger entries are append-only")


@event.listens_for(LedgerEntry, "before_delete")
def _ledger_no_delete(_mapper, _conn, target: LedgerEntry) -> None:
    raise InvalidLedgerOperation("Ledger entries are append-only")


class PartyAccount(db.Model):
    """
    Fila de lock por parte. Toda operación que mueve saldo hace
    UPDATE version = version + 1 antes de leer/escribir.
    """

    __tablename__ = "party_accounts"

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True, autoincrement=True)
    party_type: Mapped[PartyType] = mapped_column(Enum(PartyType, name="ledger_party_type"), nullable=False)
    party_id: Mapped[str] = mapped_column(String(64), nullable=False)
    version: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
    touched_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        UniqueConstraint("party_type", "party_id", name="uq_party_account"),
        CheckConstraint("version >= 0", name="ck_party_account_version"),
    )

    def __repr__(self) -> str:
        return f"<PartyAccount {self.party_type.value}:{self.party_id} v{self.version}>"


class Reservation(db.Model):
    """Hold sobre el saldo mientras un payout está en vuelo."""

    __tablename__ = "ledger_reservations"

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True, autoincrement=True)
    token: Mapped[str] = mapped_column(
        String(40), nullable=False, unique=True, index=True, default=lambda: _gen_public_id("rsv")
    )

    party_type: Mapped[PartyType] = mapped_column(Enum(PartyType, name="ledger_party_type"), nullable=False)
    party_id: Mapped[str] = mapped_column(String(64), nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False, default="USD")
    amount_minor: Mapped[int] = mapped_column(BigInteger, nullable=False)

    status: Mapped[ReservationStatus] = mapped_column(
        Enum(ReservationStatus, name="ledger_reservation_status"),
        nullable=False,
        index=True,
        default=ReservationStatus.ACTIVE,
    )
    payout_id: Mapped[Optional[int]] = mapped_column(BigInteger, nullable=True, unique=True, index=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
    settled_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        CheckConstraint("amount_minor > 0", name="ck_reservation_amount_pos"),
        Index("ix_reservation_party_status", "party_type", "party_id", "currency", "status"),
    )

    @property
    def amount(self) -> Money:
        return Money(int(self.amount_minor), self.currency)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "token": self.token,
            "party_type": self.party_type.value,
            "party_id": self.party_id,
            "amount": self.amount.to_dict(),
            "status": self.status.value,
            "payout_id": self.payout_id,
            "created_at": iso(self.created_at),
            "settled_at": iso(self.settled_at),
        }
