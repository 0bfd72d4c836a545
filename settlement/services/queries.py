"""
Vistas de lectura para dashboards. Todo se deriva del ledger y de los
settlements: no hay totales guardados que puedan divergir.
"""

from __future__ import annotations

from typing import Any, Dict, List

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from settlement.errors import NotFoundError
from settlement.models import (
    Affiliate,
    Brand,
    LedgerEntry,
    OrderSettlement,
    PartyType,
    PayoutRequest,
    PayoutStatus,
    PlatformReferral,
)
from settlement.money import DEFAULT_CURRENCY, Money, normalize_currency
from settlement.services.ledger import Ledger
from settlement.services.payouts import PayoutOrchestrator


class SettlementQueries:
    def __init__(self, session: Session, *, ledger: Ledger, payouts: PayoutOrchestrator):
        self.session = session
        self.ledger = ledger
        self.payouts = payouts

    def balance(self, party_type: Any, party_id: str, currency: str = DEFAULT_CURRENCY) -> Dict[str, Any]:
        return self.ledger.view(party_type, party_id, normalize_currency(currency)).to_dict()

    def ledger_entries(self, party_type: Any, party_id: str, *, limit: int = 200) -> List[Dict[str, Any]]:
        return [e.to_dict() for e in self.ledger.entries(party_type, party_id, limit=limit)]

    def payout_history(self, party_type: Any, party_id: str, *, limit: int = 100) -> List[Dict[str, Any]]:
        return [p.to_dict() for p in self.payouts.history(party_type, party_id, limit=limit)]

    def settlement(self, order_id: str) -> Dict[str, Any]:
        s = self.session.execute(
            select(OrderSettlement).where(OrderSettlement.order_id == str(order_id))
        ).scalar_one_or_none()
        if s is None:
            raise NotFoundError("Order settlement not found", details={"order_id": order_id})
        out = s.to_dict()
        out["entries"] = [
            e.to_dict()
            for e in self.session.execute(
                select(LedgerEntry).where(LedgerEntry.order_id == s.order_id).order_by(LedgerEntry.id)
            ).scalars()
        ]
        return out

    def _paid_total(self, party_type: PartyType, party_id: str, currency: str) -> Money:
        total = self.session.execute(
            select(func.coalesce(func.sum(PayoutRequest.amount_minor), 0)).where(
                PayoutRequest.party_type == party_type,
                PayoutRequest.party_id == party_id,
                PayoutRequest.currency == currency,
                PayoutRequest.status == PayoutStatus.COMPLETED,
            )
        ).scalar_one()
        return Money(int(total or 0), currency)

    def affiliate_summary(self, affiliate_id: str, currency: str = DEFAULT_CURRENCY) -> Dict[str, Any]:
        """total_sales / total_due / total_paid, todos derivados."""
        a = self.session.get(Affiliate, str(affiliate_id))
        if a is None:
            raise NotFoundError("Affiliate not found", details={"affiliate_id": affiliate_id})
        cur = normalize_currency(currency)

        sales = self.session.execute(
            select(func.count(OrderSettlement.id)).where(
                OrderSettlement.affiliate_id == a.id, OrderSettlement.currency == cur
            )
        ).scalar_one()
        view = self.ledger.view(PartyType.AFFILIATE, a.id, cur)

        return {
            "affiliate": a.to_dict(),
            "total_sales": int(sales or 0),
            "total_earned": self.ledger.credited_total(PartyType.AFFILIATE, a.id, cur).to_dict(),
            "total_due": view.balance.to_dict(),
            "available": view.available.to_dict(),
            "total_paid": self._paid_total(PartyType.AFFILIATE, a.id, cur).to_dict(),
        }

    def brand_summary(self, brand_id: str, currency: str = DEFAULT_CURRENCY) -> Dict[str, Any]:
        b = self.session.get(Brand, str(brand_id))
        if b is None:
            raise NotFoundError("Brand not found", details={"brand_id": brand_id})
        cur = normalize_currency(currency)
        return {
            "brand": b.to_dict(),
            "total_earned": self.ledger.credited_total(PartyType.BRAND, b.id, cur).to_dict(),
            "balance": self.ledger.view(PartyType.BRAND, b.id, cur).to_dict(),
            "total_paid": self._paid_total(PartyType.BRAND, b.id, cur).to_dict(),
        }

    def referral_summary(self, user_id: str, currency: str = DEFAULT_CURRENCY) -> Dict[str, Any]:
        cur = normalize_currency(currency)
        refs = list(
            self.session.execute(
                select(PlatformReferral)
                .where(PlatformReferral.referrer_user_id == str(user_id))
                .order_by(PlatformReferral.id)
            ).scalars()
        )
        return {
            "user_id": str(user_id),
            "referrals": [r.to_dict() for r in refs],
            "earnings": self.ledger.credited_total(PartyType.REFERRER, str(user_id), cur).to_dict(),
            "balance": self.ledger.view(PartyType.REFERRER, str(user_id), cur).to_dict(),
        }

