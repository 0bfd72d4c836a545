"""
Order Ingestion Pipeline
========================
orden completada -> atribución -> split -> OrderSettlement + asientos (1 transacción)

Idempotente por order_id: re-ingestar devuelve el registro existente
sin volver a postear nada.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, List, Optional

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from settlement.errors import InvalidRateError
from settlement.events import OrderCompletedEvent
from settlement.models import (
    Affiliate,
    Brand,
    EntryReason,
    OrderSettlement,
    OrderStatus,
    PartyType,
    PlatformReferral,
)
from settlement.models.ledger import PLATFORM_PARTY_ID
from settlement.services.attribution import Attribution, AttributionResolver
from settlement.services.commission_policy import CommissionPolicy, Split
from settlement.services.ledger import Ledger, Posting
from settlement.services.transaction import tx
from settlement.utils.dates import utcnow

log = logging.getLogger("ingestion")


@dataclass(frozen=True)
class IngestResult:
    settlement: OrderSettlement
    created: bool


def build_postings(order_id: str, brand_id: str, split: Split, attribution: Attribution) -> List[Posting]:
    """Hasta cuatro créditos; las partes en cero no se postean."""
    legs = [
        (PartyType.PLATFORM, PLATFORM_PARTY_ID, split.platform_share),
        (PartyType.BRAND, brand_id, split.brand_net),
        (PartyType.AFFILIATE, attribution.affiliate_id, split.affiliate_due),
        (PartyType.REFERRER, attribution.referrer_user_id, split.referrer_due),
    ]
    out: List[Posting] = []
    for party_type, party_id, amount in legs:
        if party_id is None or amount.is_zero:
            continue
        out.append(
            Posting(
                party_type=party_type,
                party_id=str(party_id),
                amount=amount,
                reason=EntryReason.COMMISSION_CREDIT,
                idempotency_key=f"order:{order_id}:{party_type.value}",
                order_id=order_id,
            )
        )
    return out


class OrderIngestionPipeline:
    def __init__(
        self,
        session: Session,
        *,
        ledger: Ledger,
        resolver: AttributionResolver,
        policy: CommissionPolicy,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.session = session
        self.ledger = ledger
        self.resolver = resolver
        self.policy = policy
        self.clock = clock

    def find(self, order_id: str) -> Optional[OrderSettlement]:
        return self.session.execute(
            select(OrderSettlement).where(OrderSettlement.order_id == order_id)
        ).scalar_one_or_none()

    def ingest(self, event: OrderCompletedEvent) -> IngestResult:
        existing = self.find(event.order_id)
        if existing is not None:
            log.info("order %s already settled, skipping", event.order_id)
            return IngestResult(existing, created=False)

        now = self.clock()
        brand = self.session.get(Brand, event.brand_id)
        if brand is None:
            log.warning("order %s: brand %s not found, settling with default rate", event.order_id, event.brand_id)

        attribution = self.resolver.resolve(brand, event.affiliate_click_ref, order_id=event.order_id, now=now)

        try:
            split = self.policy.split(
                event.total,
                brand.commission_rate if brand is not None else None,
                attribution.affiliate_rate,
                referred=attribution.has_referrer,
            )
        except InvalidRateError as e:
            log.error("order %s rejected: %s", event.order_id, e)
            raise

        # sin monto para el afiliado/referrer => no quedan atribuidos
        affiliate_id = attribution.affiliate_id if split.affiliate_due.is_positive else None
        referrer_id = attribution.referrer_user_id if split.referrer_due.is_positive else None

        try:
            with tx(self.session):
                settlement = OrderSettlement(
                    order_id=event.order_id,
                    brand_id=event.brand_id,
                    affiliate_id=affiliate_id,
                    referrer_user_id=referrer_id,
                    buyer_id=event.buyer_id,
                    currency=event.total.currency,
                    total_minor=split.total.minor,
                    platform_minor=split.platform_share.minor,
                    brand_share_minor=split.brand_share.minor,
                    brand_net_minor=split.brand_net.minor,
                    affiliate_due_minor=split.affiliate_due.minor,
                    referrer_due_minor=split.referrer_due.minor,
                    brand_rate=split.brand_rate,
                    affiliate_rate=split.affiliate_rate if affiliate_id else None,
                    referral_rate=split.referral_rate if referrer_id else None,
                    order_status=OrderStatus.PENDING,
                    created_at=now,
                    updated_at=now,
                )
                self.session.add(settlement)
                self.session.flush()

                self.ledger.post(build_postings(event.order_id, event.brand_id, split, attribution))
                self._bump_counters(event, brand, affiliate_id, attribution.referral_id if referrer_id else None)
        except IntegrityError:
            # carrera con otra entrega del mismo evento: ganó la otra
            again = self.find(event.order_id)
            if again is None:
                raise
            log.info("order %s settled concurrently, returning stored record", event.order_id)
            return IngestResult(again, created=False)

        log.info(
            "order %s settled total=%s platform=%s brand=%s affiliate=%s referrer=%s",
            event.order_id,
            split.total,
            split.platform_share,
            split.brand_net,
            split.affiliate_due,
            split.referrer_due,
        )
        return IngestResult(settlement, created=True)

    def _bump_counters(
        self,
        event: OrderCompletedEvent,
        brand: Optional[Brand],
        affiliate_id: Optional[str],
        referral_id: Optional[int],
    ) -> None:
        # contadores de actividad (no son saldos: esos salen del ledger)
        gross = event.total.minor
        if brand is not None:
            self.session.execute(
                update(Brand)
                .where(Brand.id == brand.id)
                .values(sales_count=Brand.sales_count + 1, gross_sales_minor=Brand.gross_sales_minor + gross)
                .execution_options(synchronize_session=False)
            )
        if affiliate_id is not None:
            self.session.execute(
                update(Affiliate)
                .where(Affiliate.id == affiliate_id)
                .values(sales_count=Affiliate.sales_count + 1, gross_sales_minor=Affiliate.gross_sales_minor + gross)
                .execution_options(synchronize_session=False)
            )
        if referral_id is not None:
            self.session.execute(
                update(PlatformReferral)
                .where(PlatformReferral.id == referral_id)
                .values(orders_credited=PlatformReferral.orders_credited + 1)
                .execution_options(synchronize_session=False)
            )
