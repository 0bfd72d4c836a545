from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

from sqlalchemy import select, update
from sqlalchemy.orm import Session

from settlement.events import TransferStatusEvent
from settlement.models import ParkedTransferEvent, PayoutRequest, PayoutStatus, ReconciliationAnomaly
from settlement.services.payouts import PayoutOrchestrator
from settlement.services.transaction import tx
from settlement.utils.dates import utcnow

log = logging.getLogger("reconciler")

APPLIED = "applied"
DUPLICATE = "duplicate"
ANOMALY = "anomaly"
DEFERRED = "deferred"

_MATCHING_TERMINAL = {
    True: PayoutStatus.COMPLETED,
    False: PayoutStatus.FAILED,
}


@dataclass(frozen=True)
class ReconcileResult:
    outcome: str
    payout: Optional[PayoutRequest] = None
    reason: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {"outcome": self.outcome}
        if self.payout is not None:
            out["payout"] = {"id": self.payout.public_id, "status": self.payout.status.value}
        if self.reason:
            out["reason"] = self.reason
        return out


class WebhookReconciler:
    """
    Aplica eventos de transfer (at-least-once, fuera de orden).
    Solo transiciona payouts en TRANSFERRING; lo demás es duplicado o anomalía.
    Una anomalía nunca se corrige sola: queda logueada y persistida.
    Un evento para un ref todavía desconocido se estaciona y se re-aplica
    cuando el payout guarda ese ref (replay_parked).
    """

    def __init__(
        self,
        session: Session,
        *,
        payouts: PayoutOrchestrator,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.session = session
        self.payouts = payouts
        self.clock = clock

    def apply(self, event: TransferStatusEvent) -> ReconcileResult:
        payout = self.payouts.by_transfer_ref(event.transfer_ref)
        if payout is None:
            return self._park(event)

        if payout.status == PayoutStatus.TRANSFERRING:
            if event.succeeded:
                res = self.payouts.mark_completed(payout)
            else:
                res = self.payouts.mark_failed(payout, event.failure_reason)
            if res.applied:
                return ReconcileResult(APPLIED, res.payout)
            # otro worker aplicó un terminal primero: clasificar contra el estado actual
            payout = res.payout

        return self._classify(payout, event)

    def _classify(self, payout: PayoutRequest, event: TransferStatusEvent) -> ReconcileResult:
        if payout.status == _MATCHING_TERMINAL[event.succeeded]:
            log.info("duplicate %s event for payout %s ignored", event.status, payout.public_id)
            return ReconcileResult(DUPLICATE, payout)

        detail = f"{event.status} event for payout in status {payout.status.value}"
        log.error(
            "reconciliation anomaly ref=%s payout=%s: %s (not applied)",
            event.transfer_ref, payout.public_id, detail,
        )
        with tx(self.session):
            self.session.add(
                ReconciliationAnomaly(
                    transfer_ref=event.transfer_ref,
                    payout_id=payout.id,
                    payout_status=payout.status.value,
                    event_status=event.status,
                    event_id=event.event_id,
                    detail=detail if not event.failure_reason else f"{detail}; reason={event.failure_reason}",
                )
            )
        return ReconcileResult(ANOMALY, payout, reason=detail)

    # ------------------------------------------------------------------
    # Eventos adelantados (el ref todavía no está guardado)
    # ------------------------------------------------------------------

    def _park(self, event: TransferStatusEvent) -> ReconcileResult:
        with tx(self.session):
            self.session.add(
                ParkedTransferEvent(
                    transfer_ref=event.transfer_ref,
                    status=event.status,
                    failure_reason=event.failure_reason,
                    event_id=event.event_id,
                    received_at=self.clock(),
                )
            )
        log.warning("transfer event for unknown ref=%s status=%s parked", event.transfer_ref, event.status)

        # el submit pudo guardar el ref entre el lookup y el park
        if self.payouts.by_transfer_ref(event.transfer_ref) is not None:
            results = self.replay_parked(event.transfer_ref)
            if results:
                return results[0]
            payout = self.payouts.by_transfer_ref(event.transfer_ref)
            return ReconcileResult(DUPLICATE if payout.is_terminal else DEFERRED, payout)

        return ReconcileResult(DEFERRED, reason="unknown_transfer_ref")

    def replay_parked(self, transfer_ref: str) -> List[ReconcileResult]:
        """Aplica (una sola vez cada uno) los eventos estacionados para el ref, en orden de llegada."""
        parked = list(
            self.session.execute(
                select(ParkedTransferEvent)
                .where(ParkedTransferEvent.transfer_ref == transfer_ref, ParkedTransferEvent.replayed_at.is_(None))
                .order_by(ParkedTransferEvent.id)
            ).scalars()
        )
        results: List[ReconcileResult] = []
        for row in parked:
            with tx(self.session):
                claimed = self.session.execute(
                    update(ParkedTransferEvent)
                    .where(ParkedTransferEvent.id == row.id, ParkedTransferEvent.replayed_at.is_(None))
                    .values(replayed_at=self.clock())
                    .execution_options(synchronize_session=False)
                ).rowcount
            if not claimed:
                continue
            event = TransferStatusEvent(
                transfer_ref=row.transfer_ref,
                status=row.status,
                failure_reason=row.failure_reason,
                event_id=row.event_id,
            )
            log.info("replaying parked %s event for ref=%s", event.status, transfer_ref)
            results.append(self.apply(event))
        return results
