from __future__ import annotations

import time
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, Mapping, Optional

from sqlalchemy.orm import Session

from settlement.integrations.accounts import SqlPayoutAccountLookup
from settlement.integrations.stripe_gateway import StripeTransferGateway
from settlement.services import (
    AffiliateService,
    AttributionResolver,
    BrandService,
    CommissionPolicy,
    Ledger,
    OrderIngestionPipeline,
    OrderStatusService,
    PayoutOrchestrator,
    ReferralService,
    SettlementQueries,
    WebhookReconciler,
)
from settlement.services.payouts import TransferGateway
from settlement.utils.dates import utcnow


@dataclass
class SettlementServices:
    policy: CommissionPolicy
    ledger: Ledger
    accounts: SqlPayoutAccountLookup
    resolver: AttributionResolver
    ingestion: OrderIngestionPipeline
    payouts: PayoutOrchestrator
    reconciler: WebhookReconciler
    brands: BrandService
    affiliates: AffiliateService
    referrals: ReferralService
    orders: OrderStatusService
    queries: SettlementQueries


def build_services(
    cfg: Mapping[str, Any],
    session: Session,
    *,
    gateway: Optional[TransferGateway] = None,
    clock: Callable[[], datetime] = utcnow,
    sleep: Callable[[float], None] = time.sleep,
) -> SettlementServices:
    policy = CommissionPolicy.from_config(cfg)
    ledger = Ledger(session, clock=clock)
    accounts = SqlPayoutAccountLookup(session, clock=clock)

    if gateway is None:
        gateway = StripeTransferGateway(
            cfg.get("STRIPE_SECRET_KEY", ""),
            api_base=cfg.get("STRIPE_API_BASE", "https://api.stripe.com"),
            timeout=float(cfg.get("GATEWAY_TIMEOUT_SEC", 20.0)),
        )

    resolver = AttributionResolver(
        session,
        referral_lifetime_days=int(cfg.get("REFERRAL_LIFETIME_DAYS", 0) or 0),
        credit_pending_referrals=bool(cfg.get("REFERRAL_CREDIT_PENDING", False)),
        clock=clock,
    )
    payouts = PayoutOrchestrator(
        session,
        ledger=ledger,
        gateway=gateway,
        accounts=accounts,
        min_amount_minor=int(cfg.get("PAYOUT_MIN_AMOUNT_CENTS", 100)),
        max_attempts=int(cfg.get("PAYOUT_MAX_ATTEMPTS", 3)),
        backoff_base_sec=float(cfg.get("PAYOUT_BACKOFF_BASE_SEC", 0.5)),
        backoff_cap_sec=float(cfg.get("PAYOUT_BACKOFF_CAP_SEC", 8.0)),
        claim_lease_sec=int(cfg.get("PAYOUT_CLAIM_LEASE_SEC", 600)),
        clock=clock,
        sleep=sleep,
    )
    reconciler = WebhookReconciler(session, payouts=payouts, clock=clock)
    payouts.on_transferring = reconciler.replay_parked

    return SettlementServices(
        policy=policy,
        ledger=ledger,
        accounts=accounts,
        resolver=resolver,
        ingestion=OrderIngestionPipeline(session, ledger=ledger, resolver=resolver, policy=policy, clock=clock),
        payouts=payouts,
        reconciler=reconciler,
        brands=BrandService(session, policy=policy, clock=clock),
        affiliates=AffiliateService(
            session, ban_days_default=int(cfg.get("AFFILIATE_BAN_DAYS_DEFAULT", 7)), clock=clock
        ),
        referrals=ReferralService(session, clock=clock),
        orders=OrderStatusService(session),
        queries=SettlementQueries(session, ledger=ledger, payouts=payouts),
    )
