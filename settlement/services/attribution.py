from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Callable, List, Optional

from sqlalchemy import select
from sqlalchemy.orm import Session

from settlement.models import Affiliate, AffiliateLink, Brand, PlatformReferral
from settlement.models.affiliate import clean_code
from settlement.utils.dates import utcnow

log = logging.getLogger("attribution")


@dataclass(frozen=True)
class Attribution:
    affiliate_id: Optional[str] = None
    affiliate_rate: Optional[Decimal] = None
    referrer_user_id: Optional[str] = None
    referral_id: Optional[int] = None
    # por qué se descartó una parte (solo observabilidad)
    dropped: List[str] = field(default_factory=list)

    @property
    def has_affiliate(self) -> bool:
        return self.affiliate_id is not None

    @property
    def has_referrer(self) -> bool:
        return self.referrer_user_id is not None


class AttributionResolver:
    """
    Lookup puro: quién (además de plataforma y marca) cobra esta orden.
    Nunca escribe; nunca lanza por un afiliado/referido ausente o inválido.
    """

    def __init__(
        self,
        session: Session,
        *,
        referral_lifetime_days: int = 0,
        credit_pending_referrals: bool = False,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.session = session
        self.referral_lifetime_days = int(referral_lifetime_days or 0)
        self.credit_pending_referrals = bool(credit_pending_referrals)
        self.clock = clock

    def resolve(
        self,
        brand: Optional[Brand],
        affiliate_click_ref: Optional[str] = None,
        *,
        order_id: str = "",
        now: Optional[datetime] = None,
    ) -> Attribution:
        now = now or self.clock()
        dropped: List[str] = []

        affiliate: Optional[Affiliate] = None
        if affiliate_click_ref:
            affiliate = self._affiliate(brand, affiliate_click_ref, now, dropped)

        referral: Optional[PlatformReferral] = None
        if brand is not None:
            referral = self._referral(brand, now, dropped)

        for reason in dropped:
            log.info("attribution degraded order=%s brand=%s: %s", order_id, getattr(brand, "id", None), reason)

        return Attribution(
            affiliate_id=affiliate.id if affiliate else None,
            affiliate_rate=Decimal(affiliate.commission_rate) if affiliate else None,
            referrer_user_id=referral.referrer_user_id if referral else None,
            referral_id=referral.id if referral else None,
            dropped=dropped,
        )

    # ------------------------------------------------------------------

    def find_affiliate(self, click_ref: str) -> Optional[Affiliate]:
        """click ref = código de link; si no, id directo del afiliado."""
        code = clean_code(click_ref)
        if code:
            link = self.session.execute(
                select(AffiliateLink).where(AffiliateLink.code == code, AffiliateLink.active.is_(True))
            ).scalar_one_or_none()
            if link is not None:
                return self.session.get(Affiliate, link.affiliate_id)
        return self.session.get(Affiliate, str(click_ref).strip())

    def _affiliate(self, brand: Optional[Brand], click_ref: str, now: datetime, dropped: List[str]) -> Optional[Affiliate]:
        aff = self.find_affiliate(click_ref)
        if aff is None:
            dropped.append(f"affiliate ref {click_ref!r} not found")
            return None
        if brand is None or aff.brand_id != brand.id:
            dropped.append(f"affiliate {aff.id} belongs to another brand")
            return None
        if not aff.is_eligible(now):
            dropped.append(f"affiliate {aff.id} is {aff.status.value}")
            return None
        return aff

    def _referral(self, brand: Brand, now: datetime, dropped: List[str]) -> Optional[PlatformReferral]:
        ref = self.session.execute(
            select(PlatformReferral).where(PlatformReferral.referred_user_id == brand.owner_user_id)
        ).scalar_one_or_none()
        if ref is None:
            return None
        if ref.referrer_user_id == brand.owner_user_id:
            dropped.append("self referral")
            return None
        if not ref.is_creditable(
            now,
            lifetime_days=self.referral_lifetime_days,
            credit_pending=self.credit_pending_referrals,
        ):
            dropped.append(f"referral {ref.code} not creditable ({ref.status.value})")
            return None
        return ref
