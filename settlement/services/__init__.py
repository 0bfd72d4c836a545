"""
Services Hub
------------
Cada servicio recibe su sesión y colaboradores por constructor
(sin singletons de módulo). El ensamblado vive en settlement.container.
"""

from __future__ import annotations

from settlement.services.affiliates import AffiliateService
from settlement.services.attribution import Attribution, AttributionResolver
from settlement.services.brands import BrandService
from settlement.services.commission_policy import CommissionPolicy, Split, split
from settlement.services.ingestion import IngestResult, OrderIngestionPipeline
from settlement.services.ledger import BalanceView, Ledger, Posting
from settlement.services.orders import OrderStatusService
from settlement.services.payouts import PayoutOrchestrator
from settlement.services.queries import SettlementQueries
from settlement.services.reconciler import ReconcileResult, WebhookReconciler
from settlement.services.referrals import ReferralService
from settlement.services.transaction import tx

__all__ = [
    "AffiliateService",
    "Attribution",
    "AttributionResolver",
    "BalanceView",
    "BrandService",
    "CommissionPolicy",
    "IngestResult",
    "Ledger",
    "OrderIngestionPipeline",
    "OrderStatusService",
    "PayoutOrchestrator",
    "Posting",
    "ReconcileResult",
    "ReferralService",
    "SettlementQueries",
    "Split",
    "WebhookReconciler",
    "split",
    "tx",
]
