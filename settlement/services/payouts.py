"""
Payout Orchestrator
===================
REQUESTED -> TRANSFERRING -> {COMPLETED, FAILED}
REQUESTED -> {FAILED (gateway agotado / rechazo), CANCELLED}

- request: cuenta de payout -> parte no congelada -> lock -> saldo disponible -> mínimo
           => PayoutRequest(REQUESTED) + Reservation
- submit:  claim (CAS con lease) -> gateway con reintentos/backoff
           ok   => débito + consume reserva + CAS REQUESTED->TRANSFERRING
           fail => CAS REQUESTED->FAILED + libera reserva (sin asientos)
- cancel:  solo si nunca se envió (sin claim ni intentos) => libera reserva
- finalize (webhook): CAS TRANSFERRING->COMPLETED | TRANSFERRING->FAILED (+ crédito de reversa)

Cada transición de estado es un UPDATE ... WHERE status = <esperado>:
dos terminales distintos compitiendo => solo uno gana.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional, Protocol

from sqlalchemy import or_, select, update
from sqlalchemy.orm import Session

from settlement.errors import (
    GatewayUnavailableError,
    InvalidLedgerOperation,
    InvalidPayoutStateError,
    NeedsAccountSetupError,
    PartyFrozenError,
    PayoutBelowMinimumError,
    PayoutNotFoundError,
    TransferRejectedError,
)
from settlement.models import Brand, EntryReason, PartyType, PayoutRequest, PayoutStatus
from settlement.money import Money
from settlement.services.ledger import Ledger, Posting, party_type_of
from settlement.services.transaction import tx
from settlement.utils.dates import as_utc, utcnow

log = logging.getLogger("payouts")


class TransferGateway(Protocol):
    def create_transfer(
        self,
        destination_account: str,
        amount: Money,
        idempotency_key: str,
        metadata: Optional[Dict[str, str]] = None,
    ) -> str:
        """transfer ref | GatewayUnavailableError | TransferRejectedError"""


class PayoutAccountLookup(Protocol):
    def get_payout_account(self, party_type: PartyType, party_id: str) -> Optional[str]:
        """account ref, o None si la parte no tiene destino configurado"""


def backoff(attempt: int, base: float, cap: float) -> float:
    return min(cap, base * (2 ** attempt))


@dataclass(frozen=True)
class FinalizeResult:
    payout: PayoutRequest
    applied: bool


class PayoutOrchestrator:
    def __init__(
        self,
        session: Session,
        *,
        ledger: Ledger,
        gateway: TransferGateway,
        accounts: PayoutAccountLookup,
        min_amount_minor: int = 100,
        max_attempts: int = 3,
        backoff_base_sec: float = 0.5,
        backoff_cap_sec: float = 8.0,
        claim_lease_sec: int = 600,
        clock: Callable[[], datetime] = utcnow,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.session = session
        self.ledger = ledger
        self.gateway = gateway
        self.accounts = accounts
        self.min_amount_minor = max(0, int(min_amount_minor))
        self.max_attempts = max(1, int(max_attempts))
        self.backoff_base_sec = float(backoff_base_sec)
        self.backoff_cap_sec = float(backoff_cap_sec)
        self.claim_lease_sec = int(claim_lease_sec)
        self.clock = clock
        self.sleep = sleep
        # replay de eventos terminales que llegaron antes que el transfer_ref (lo cablea el container)
        self.on_transferring: Optional[Callable[[str], Any]] = None

    # ------------------------------------------------------------------
    # Lookups
    # ------------------------------------------------------------------

    def get(self, public_id: str) -> PayoutRequest:
        p = self.session.execute(
            select(PayoutRequest).where(PayoutRequest.public_id == str(public_id))
        ).scalar_one_or_none()
        if p is None:
            raise PayoutNotFoundError(details={"id": public_id})
        return p

    def by_transfer_ref(self, transfer_ref: str) -> Optional[PayoutRequest]:
        return self.session.execute(
            select(PayoutRequest).where(PayoutRequest.transfer_ref == transfer_ref)
        ).scalar_one_or_none()

    def history(self, party_type: Any, party_id: str, *, limit: int = 100) -> List[PayoutRequest]:
        pt = party_type_of(party_type)
        q = (
            select(PayoutRequest)
            .where(PayoutRequest.party_type == pt, PayoutRequest.party_id == party_id)
            .order_by(PayoutRequest.created_at.desc(), PayoutRequest.id.desc())
            .limit(max(1, min(int(limit), 500)))
        )
        return list(self.session.execute(q).scalars())

    # ------------------------------------------------------------------
    # Request
    # ------------------------------------------------------------------

    def request_payout(self, party_type: Any, party_id: str, amount: Money) -> PayoutRequest:
        pt = party_type_of(party_type)
        party_id = str(party_id)

        if not amount.is_positive:
            raise PayoutBelowMinimumError("Payout amount must be greater than zero")

        destination = self.accounts.get_payout_account(pt, party_id)
        if not destination:
            raise NeedsAccountSetupError(details={"party_type": pt.value, "party_id": party_id})

        if pt == PartyType.BRAND:
            brand = self.session.get(Brand, party_id)
            if brand is not None and brand.is_deleted:
                raise PartyFrozenError(details={"party_type": pt.value, "party_id": party_id})

        now = self.clock()
        with tx(self.session):
            payout = PayoutRequest(
                party_type=pt,
                party_id=party_id,
                currency=amount.currency,
                amount_minor=amount.minor,
                status=PayoutStatus.REQUESTED,
                destination_account=destination,
                created_at=now,
                updated_at=now,
            )
            self.session.add(payout)
            self.session.flush()

            # lock + saldo disponible (InsufficientBalanceError => rollback del payout)
            self.ledger.reserve(pt, party_id, amount, payout_id=payout.id)

            if amount.minor < self.min_amount_minor:
                minimum = Money(self.min_amount_minor, amount.currency)
                raise PayoutBelowMinimumError(
                    f"Minimum payout amount is {minimum}",
                    details={"minimum": minimum.format(), "currency": amount.currency},
                )

        log.info("payout %s requested %s:%s amount=%s", payout.public_id, pt.value, party_id, amount)
        return payout

    # ------------------------------------------------------------------
    # Submit (REQUESTED -> TRANSFERRING | FAILED)
    # ------------------------------------------------------------------

    def _claim(self, payout: PayoutRequest) -> bool:
        now = self.clock()
        stale = now - timedelta(seconds=self.claim_lease_sec)
        with tx(self.session):
            res = self.session.execute(
                update(PayoutRequest)
                .where(
                    PayoutRequest.id == payout.id,
                    PayoutRequest.status == PayoutStatus.REQUESTED,
                    or_(PayoutRequest.claimed_at.is_(None), PayoutRequest.claimed_at < stale),
                )
                .values(claimed_at=now, updated_at=now)
                .execution_options(synchronize_session=False)
            )
        return bool(res.rowcount)

    def submit(self, public_id: str) -> PayoutRequest:
        payout = self.get(public_id)

        if payout.status != PayoutStatus.REQUESTED:
            if payout.status == PayoutStatus.TRANSFERRING or payout.is_terminal:
                # ya procesado: submit repetido no hace nada
                return payout
            raise InvalidPayoutStateError(details={"status": payout.status.value})

        if not self._claim(payout):
            self.session.refresh(payout)
            if payout.status != PayoutStatus.REQUESTED:
                return payout
            raise InvalidPayoutStateError("Payout is already being submitted", details={"id": payout.public_id})

        self.session.refresh(payout)
        amount = payout.amount
        last_error: Optional[Exception] = None

        for attempt in range(self.max_attempts):
            with tx(self.session):
                self.session.execute(
                    update(PayoutRequest)
                    .where(PayoutRequest.id == payout.id)
                    .values(attempts=PayoutRequest.attempts + 1)
                    .execution_options(synchronize_session=False)
                )
            try:
                ref = self.gateway.create_transfer(
                    payout.destination_account,
                    amount,
                    payout.idempotency_key,
                    {"payout_id": payout.public_id, "party_type": payout.party_type.value, "party_id": payout.party_id},
                )
            except GatewayUnavailableError as e:
                last_error = e
                log.warning(
                    "payout %s gateway unavailable (attempt %s/%s): %s",
                    payout.public_id, attempt + 1, self.max_attempts, e,
                )
                if attempt + 1 < self.max_attempts:
                    self.sleep(backoff(attempt, self.backoff_base_sec, self.backoff_cap_sec))
                continue
            except TransferRejectedError as e:
                log.error("payout %s rejected by gateway: %s", payout.public_id, e)
                return self._fail_before_transfer(payout, str(e) or "transfer_rejected")

            return self._mark_transferring(payout, ref)

        reason = f"gateway_unavailable after {self.max_attempts} attempts"
        if last_error is not None and str(last_error):
            reason = f"{reason}: {last_error}"
        return self._fail_before_transfer(payout, reason)

    def _mark_transferring(self, payout: PayoutRequest, transfer_ref: str) -> PayoutRequest:
        now = self.clock()
        with tx(self.session):
            reservation = self.ledger.reservation_for_payout(payout.id)
            if reservation is None:
                raise InvalidLedgerOperation(f"payout {payout.public_id} has no reservation")

            debit = self.ledger.post(
                [
                    Posting(
                        party_type=payout.party_type,
                        party_id=payout.party_id,
                        amount=-payout.amount,
                        reason=EntryReason.PAYOUT_DEBIT,
                        idempotency_key=f"payout:{payout.public_id}:debit",
                        payout_id=payout.id,
                        note=f"transfer {transfer_ref}",
                    )
                ],
                consuming=reservation,
            )[0]
            self.ledger.consume(reservation)

            res = self.session.execute(
                update(PayoutRequest)
                .where(PayoutRequest.id == payout.id, PayoutRequest.status == PayoutStatus.REQUESTED)
                .values(
                    status=PayoutStatus.TRANSFERRING,
                    transfer_ref=transfer_ref,
                    debit_entry_id=debit.id,
                    transferring_at=now,
                    updated_at=now,
                )
                .execution_options(synchronize_session=False)
            )
            if not res.rowcount:
                raise InvalidPayoutStateError(details={"id": payout.public_id})

        self.session.refresh(payout)
        log.info("payout %s transferring ref=%s amount=%s", payout.public_id, transfer_ref, payout.amount)
        if self.on_transferring is not None:
            self.on_transferring(transfer_ref)
            self.session.refresh(payout)
        return payout

    def _fail_before_transfer(self, payout: PayoutRequest, reason: str) -> PayoutRequest:
        now = self.clock()
        with tx(self.session):
            res = self.session.execute(
                update(PayoutRequest)
                .where(PayoutRequest.id == payout.id, PayoutRequest.status == PayoutStatus.REQUESTED)
                .values(status=PayoutStatus.FAILED, failure_reason=reason[:500], failed_at=now, updated_at=now)
                .execution_options(synchronize_session=False)
            )
            if res.rowcount:
                reservation = self.ledger.reservation_for_payout(payout.id)
                if reservation is not None:
                    self.ledger.lock_party(payout.party_type, payout.party_id)
                    self.ledger.release(reservation)
        self.session.refresh(payout)
        log.warning("payout %s failed before transfer: %s", payout.public_id, reason)
        return payout

    def request_and_submit(self, party_type: Any, party_id: str, amount: Money) -> PayoutRequest:
        payout = self.request_payout(party_type, party_id, amount)
        return self.submit(payout.public_id)

    # ------------------------------------------------------------------
    # Cancel (REQUESTED -> CANCELLED)
    # ------------------------------------------------------------------

    def cancel(self, public_id: str) -> PayoutRequest:
        """
        Solo antes del primer submit. Un payout ya reclamado pudo llegar al gateway
        (el proceso murió antes de guardar el ref): se recupera con submit(), que
        reusa el mismo Idempotency-Key, nunca cancelando.
        """
        payout = self.get(public_id)
        now = self.clock()
        with tx(self.session):
            res = self.session.execute(
                update(PayoutRequest)
                .where(
                    PayoutRequest.id == payout.id,
                    PayoutRequest.status == PayoutStatus.REQUESTED,
                    PayoutRequest.claimed_at.is_(None),
                    PayoutRequest.attempts == 0,
                )
                .values(status=PayoutStatus.CANCELLED, cancelled_at=now, updated_at=now)
                .execution_options(synchronize_session=False)
            )
            if not res.rowcount:
                self.session.refresh(payout)
                raise InvalidPayoutStateError(
                    "Only a payout that was never submitted can be cancelled",
                    details={"id": payout.public_id, "status": payout.status.value, "attempts": int(payout.attempts or 0)},
                )
            reservation = self.ledger.reservation_for_payout(payout.id)
            if reservation is not None:
                self.ledger.lock_party(payout.party_type, payout.party_id)
                self.ledger.release(reservation)

        self.session.refresh(payout)
        log.info("payout %s cancelled", payout.public_id)
        return payout

    # ------------------------------------------------------------------
    # Finalize (TRANSFERRING -> COMPLETED | FAILED), lo dispara el webhook
    # ------------------------------------------------------------------

    def mark_completed(self, payout: PayoutRequest) -> FinalizeResult:
        now = self.clock()
        with tx(self.session):
            res = self.session.execute(
                update(PayoutRequest)
                .where(PayoutRequest.id == payout.id, PayoutRequest.status == PayoutStatus.TRANSFERRING)
                .values(status=PayoutStatus.COMPLETED, completed_at=now, updated_at=now)
                .execution_options(synchronize_session=False)
            )
        self.session.refresh(payout)
        if res.rowcount:
            log.info("payout %s completed", payout.public_id)
        return FinalizeResult(payout, bool(res.rowcount))

    def mark_failed(self, payout: PayoutRequest, reason: Optional[str] = None) -> FinalizeResult:
        """La reversa es un crédito nuevo igual al débito: el débito original nunca se toca."""
        now = self.clock()
        reason = (reason or "transfer_failed")[:500]
        with tx(self.session):
            self.ledger.lock_party(payout.party_type, payout.party_id)
            res = self.session.execute(
                update(PayoutRequest)
                .where(PayoutRequest.id == payout.id, PayoutRequest.status == PayoutStatus.TRANSFERRING)
                .values(status=PayoutStatus.FAILED, failure_reason=reason, failed_at=now, updated_at=now)
                .execution_options(synchronize_session=False)
            )
            applied = bool(res.rowcount)
            if applied:
                reversal = self.ledger.post(
                    [
                        Posting(
                            party_type=payout.party_type,
                            party_id=payout.party_id,
                            amount=payout.amount,
                            reason=EntryReason.PAYOUT_REVERSAL,
                            idempotency_key=f"payout:{payout.public_id}:reversal",
                            payout_id=payout.id,
                            related_entry_id=payout.debit_entry_id,
                            note=reason[:300],
                        )
                    ]
                )[0]
                self.session.execute(
                    update(PayoutRequest)
                    .where(PayoutRequest.id == payout.id)
                    .values(reversal_entry_id=reversal.id)
                    .execution_options(synchronize_session=False)
                )
        self.session.refresh(payout)
        if applied:
            log.warning("payout %s failed after transfer, reversed %s: %s", payout.public_id, payout.amount, reason)
        return FinalizeResult(payout, applied)
