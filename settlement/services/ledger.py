"""
Ledger
======
Saldo por (party_type, party_id, currency) = SUM(ledger_entries.delta_minor).

- post(): todo o nada, dentro de la transacción del caller (no commitea)
- reserve(): hold contra (saldo - reservas activas), bajo lock de la parte
- débitos: re-verifican saldo bajo el mismo lock que los escribe
- créditos: nunca requieren chequeo de saldo

Lock por parte: UPDATE party_accounts SET version = version + 1
(row lock en Postgres, write lock de la DB en SQLite).
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, Dict, Iterable, List, Optional, Sequence, Tuple

from sqlalchemy import and_, func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from settlement.errors import InsufficientBalanceError, InvalidLedgerOperation
from settlement.models import (
    EntryReason,
    LedgerEntry,
    PartyAccount,
    PartyType,
    Reservation,
    ReservationStatus,
)
from settlement.money import DEFAULT_CURRENCY, Money, normalize_currency
from settlement.utils.dates import utcnow

log = logging.getLogger("ledger")

PartyKey = Tuple[PartyType, str]


def party_type_of(v: Any) -> PartyType:
    if isinstance(v, PartyType):
        return v
    try:
        return PartyType(str(v or "").strip().lower())
    except ValueError as e:
        raise InvalidLedgerOperation(f"Unknown party type: {v!r}") from e


@dataclass(frozen=True)
class Posting:
    party_type: PartyType
    party_id: str
    amount: Money
    reason: EntryReason
    idempotency_key: str
    order_id: Optional[str] = None
    payout_id: Optional[int] = None
    related_entry_id: Optional[int] = None
    note: Optional[str] = None

    @property
    def party(self) -> PartyKey:
        return (self.party_type, self.party_id)


@dataclass(frozen=True)
class BalanceView:
    party_type: PartyType
    party_id: str
    balance: Money
    reserved: Money

    @property
    def available(self) -> Money:
        return self.balance - self.reserved

    def to_dict(self) -> Dict[str, Any]:
        return {
            "party_type": self.party_type.value,
            "party_id": self.party_id,
            "balance": self.balance.to_dict(),
            "reserved": self.reserved.to_dict(),
            "available": self.available.to_dict(),
        }


class Ledger:
    def __init__(self, session: Session, *, clock: Callable[[], datetime] = utcnow):
        self.session = session
        self.clock = clock

    # ------------------------------------------------------------------
    # Locks
    # ------------------------------------------------------------------

    def lock_party(self, party_type: PartyType, party_id: str) -> None:
        pt = party_type_of(party_type)
        stmt = (
            update(PartyAccount)
            .where(PartyAccount.party_type == pt, PartyAccount.party_id == party_id)
            .values(version=PartyAccount.version + 1, touched_at=self.clock())
            .execution_options(synchronize_session=False)
        )
        if self.session.execute(stmt).rowcount:
            return

        # primera vez que vemos la parte: crear la fila (carrera => la creó otro)
        try:
            with self.session.begin_nested():
                self.session.add(PartyAccount(party_type=pt, party_id=party_id, version=1, touched_at=self.clock()))
        except IntegrityError:
            self.session.execute(stmt)

    def lock_parties(self, parties: Iterable[PartyKey]) -> None:
        # orden fijo => sin deadlocks entre órdenes que tocan las mismas partes
        for pt, pid in sorted({(party_type_of(t), str(i)) for t, i in parties}, key=lambda k: (k[0].value, k[1])):
            self.lock_party(pt, pid)

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def balance(self, party_type: Any, party_id: str, currency: str = DEFAULT_CURRENCY) -> Money:
        pt = party_type_of(party_type)
        total = self.session.execute(
            select(func.coalesce(func.sum(LedgerEntry.delta_minor), 0)).where(
                LedgerEntry.party_type == pt,
                LedgerEntry.party_id == party_id,
                LedgerEntry.currency == normalize_currency(currency),
            )
        ).scalar_one()
        return Money(int(total or 0), currency)

    def reserved(
        self,
        party_type: Any,
        party_id: str,
        currency: str = DEFAULT_CURRENCY,
        *,
        exclude_reservation_id: Optional[int] = None,
    ) -> Money:
        pt = party_type_of(party_type)
        conds = [
            Reservation.party_type == pt,
            Reservation.party_id == party_id,
            Reservation.currency == normalize_currency(currency),
            Reservation.status == ReservationStatus.ACTIVE,
        ]
        if exclude_reservation_id is not None:
            conds.append(Reservation.id != exclude_reservation_id)
        total = self.session.execute(
            select(func.coalesce(func.sum(Reservation.amount_minor), 0)).where(and_(*conds))
        ).scalar_one()
        return Money(int(total or 0), currency)

    def view(self, party_type: Any, party_id: str, currency: str = DEFAULT_CURRENCY) -> BalanceView:
        pt = party_type_of(party_type)
        return BalanceView(
            party_type=pt,
            party_id=party_id,
            balance=self.balance(pt, party_id, currency),
            reserved=self.reserved(pt, party_id, currency),
        )

    def available(self, party_type: Any, party_id: str, currency: str = DEFAULT_CURRENCY) -> Money:
        return self.view(party_type, party_id, currency).available

    def entries(self, party_type: Any, party_id: str, *, limit: int = 200) -> List[LedgerEntry]:
        pt = party_type_of(party_type)
        q = (
            select(LedgerEntry)
            .where(LedgerEntry.party_type == pt, LedgerEntry.party_id == party_id)
            .order_by(LedgerEntry.created_at.desc(), LedgerEntry.id.desc())
            .limit(max(1, min(int(limit), 1000)))
        )
        return list(self.session.execute(q).scalars())

    def credited_total(self, party_type: Any, party_id: str, currency: str = DEFAULT_CURRENCY) -> Money:
        pt = party_type_of(party_type)
        total = self.session.execute(
            select(func.coalesce(func.sum(LedgerEntry.delta_minor), 0)).where(
                LedgerEntry.party_type == pt,
                LedgerEntry.party_id == party_id,
                LedgerEntry.currency == normalize_currency(currency),
                LedgerEntry.reason == EntryReason.COMMISSION_CREDIT,
            )
        ).scalar_one()
        return Money(int(total or 0), currency)

    def _by_key(self, key: str) -> Optional[LedgerEntry]:
        return self.session.execute(
            select(LedgerEntry).where(LedgerEntry.idempotency_key == key)
        ).scalar_one_or_none()

    # ------------------------------------------------------------------
    # Writes (no commit)
    # ------------------------------------------------------------------

    def post(self, postings: Sequence[Posting], *, consuming: Optional[Reservation] = None) -> List[LedgerEntry]:
        """
        Escribe todos los asientos o ninguno.
        - idempotente por idempotency_key (un asiento ya escrito se devuelve tal cual)
        - un débito solo pasa si saldo - otras reservas activas >= monto
        """
        if not postings:
            return []

        for p in postings:
            if not p.idempotency_key:
                raise InvalidLedgerOperation("posting without idempotency_key")
            if p.amount.is_zero:
                raise InvalidLedgerOperation("zero-value postings are not written")

        self.lock_parties(p.party for p in postings)

        out: List[LedgerEntry] = []
        with self.session.begin_nested():
            for p in postings:
                existing = self._by_key(p.idempotency_key)
                if existing is not None:
                    out.append(existing)
                    continue

                if p.amount.is_negative:
                    self._check_debit(p, consuming)

                entry = LedgerEntry(
                    party_type=p.party_type,
                    party_id=p.party_id,
                    currency=p.amount.currency,
                    delta_minor=p.amount.minor,
                    reason=p.reason,
                    order_id=p.order_id,
                    payout_id=p.payout_id,
                    related_entry_id=p.related_entry_id,
                    idempotency_key=p.idempotency_key,
                    note=p.note,
                    created_at=self.clock(),
                )
                entry.check_sign()
                self.session.add(entry)
                self.session.flush()
                out.append(entry)

        return out

    def _check_debit(self, p: Posting, consuming: Optional[Reservation]) -> None:
        cur = p.amount.currency
        bal = self.balance(p.party_type, p.party_id, cur)
        held = self.reserved(
            p.party_type, p.party_id, cur, exclude_reservation_id=consuming.id if consuming is not None else None
        )
        if (bal + p.amount) < held:
            log.error(
                "debit rejected %s:%s amount=%s balance=%s reserved=%s",
                p.party_type.value, p.party_id, p.amount, bal, held,
            )
            raise InsufficientBalanceError(
                details={"balance": bal.format(), "reserved": held.format(), "requested": abs(p.amount).format()}
            )

    def reserve(
        self,
        party_type: Any,
        party_id: str,
        amount: Money,
        *,
        payout_id: Optional[int] = None,
    ) -> Reservation:
        """
        Hold contra el saldo disponible. InsufficientBalanceError si no alcanza.
        Corre bajo lock de la parte: dos reservas concurrentes no se ven a medias.
        """
        pt = party_type_of(party_type)
        if not amount.is_positive:
            raise InvalidLedgerOperation("reservation amount must be > 0")

        self.lock_party(pt, party_id)

        avail = self.available(pt, party_id, amount.currency)
        if amount > avail:
            raise InsufficientBalanceError(
                details={"available": avail.format(), "requested": amount.format(), "currency": amount.currency}
            )

        r = Reservation(
            party_type=pt,
            party_id=party_id,
            currency=amount.currency,
            amount_minor=amount.minor,
            status=ReservationStatus.ACTIVE,
            payout_id=payout_id,
            created_at=self.clock(),
        )
        self.session.add(r)
        self.session.flush()
        log.debug("reserved %s for %s:%s (token=%s)", amount, pt.value, party_id, r.token)
        return r

    def _settle(self, reservation: Reservation, to: ReservationStatus) -> Reservation:
        res = self.session.execute(
            update(Reservation)
            .where(Reservation.id == reservation.id, Reservation.status == ReservationStatus.ACTIVE)
            .values(status=to, settled_at=self.clock())
            .execution_options(synchronize_session=False)
        )
        if not res.rowcount:
            raise InvalidLedgerOperation(f"reservation {reservation.token} is not active")
        self.session.refresh(reservation)
        return reservation

    def consume(self, reservation: Reservation) -> Reservation:
        return self._settle(reservation, ReservationStatus.CONSUMED)

    def release(self, reservation: Reservation) -> Reservation:
        return self._settle(reservation, ReservationStatus.RELEASED)

    def reservation_for_payout(self, payout_id: int) -> Optional[Reservation]:
        return self.session.execute(
            select(Reservation).where(Reservation.payout_id == payout_id)
        ).scalar_one_or_none()
