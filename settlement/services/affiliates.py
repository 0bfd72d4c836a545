"""
Affiliate lifecycle
-------------------
pending -> approved | rejected (terminal)
approved -> banned (con vencimiento) -> approved (unban / vencimiento)

Solo approved (o banned con ban vencido) acumula comisión nueva.
"""

from __future__ import annotations

import logging
import secrets
from datetime import datetime, timedelta
from typing import Any, Callable, List, Optional

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from settlement.errors import InvalidRateError, LifecycleError, NotFoundError
from settlement.models import Affiliate, AffiliateLink, AffiliateStatus, Brand
from settlement.models.affiliate import clean_code
from settlement.money import parse_rate
from settlement.services.transaction import tx
from settlement.utils.dates import utcnow
from settlement.utils.security import safe_str

log = logging.getLogger("affiliates")


def _unit_rate(v: Any):
    try:
        r = parse_rate(v)
    except ValueError as e:
        raise InvalidRateError(f"Invalid affiliate commission rate: {v!r}") from e
    if r < 0 or r > 1:
        raise InvalidRateError("Affiliate commission rate must be between 0 and 1", details={"value": str(r)})
    return r


def _reason(v: Any) -> str:
    s = safe_str(v, 300)
    if not s:
        raise LifecycleError("A reason is required for this action")
    return s


class AffiliateService:
    def __init__(
        self,
        session: Session,
        *,
        ban_days_default: int = 7,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.session = session
        self.ban_days_default = int(ban_days_default)
        self.clock = clock

    def get(self, affiliate_id: str) -> Affiliate:
        a = self.session.get(Affiliate, str(affiliate_id))
        if a is None:
            raise NotFoundError("Affiliate not found", details={"affiliate_id": affiliate_id})
        return a

    def apply(
        self,
        brand_id: str,
        user_id: str,
        *,
        commission_rate: Any = "0.10",
        affiliate_id: Optional[str] = None,
    ) -> Affiliate:
        if self.session.get(Brand, str(brand_id)) is None:
            raise NotFoundError("Brand not found", details={"brand_id": brand_id})
        rate = _unit_rate(commission_rate)

        dup = self.session.execute(
            select(Affiliate).where(Affiliate.brand_id == str(brand_id), Affiliate.user_id == str(user_id))
        ).scalar_one_or_none()
        if dup is not None:
            raise LifecycleError("User already applied as affiliate of this brand", details={"affiliate_id": dup.id})

        with tx(self.session):
            a = Affiliate(
                id=affiliate_id or f"aff_{secrets.token_urlsafe(9)}",
                brand_id=str(brand_id),
                user_id=str(user_id),
                commission_rate=rate,
                status=AffiliateStatus.PENDING,
            )
            self.session.add(a)
        return a

    def approve(self, affiliate_id: str, *, by: Optional[str] = None) -> Affiliate:
        a = self.get(affiliate_id)
        if a.status != AffiliateStatus.PENDING:
            raise LifecycleError(f"Cannot approve an affiliate that is {a.status.value}")
        with tx(self.session):
            a.status = AffiliateStatus.APPROVED
            a.approved_at = self.clock()
            a.approved_by = by
        log.info("affiliate %s approved by %s", affiliate_id, by)
        return a

    def reject(self, affiliate_id: str, reason: str) -> Affiliate:
        reason = _reason(reason)
        a = self.get(affiliate_id)
        if a.status != AffiliateStatus.PENDING:
            raise LifecycleError(f"Cannot reject an affiliate that is {a.status.value}")
        with tx(self.session):
            a.status = AffiliateStatus.REJECTED
            a.rejected_at = self.clock()
            a.rejection_reason = reason
        log.info("affiliate %s rejected", affiliate_id)
        return a

    def ban(self, affiliate_id: str, reason: str, *, days: Optional[int] = None, by: Optional[str] = None) -> Affiliate:
        reason = _reason(reason)
        days = self.ban_days_default if days is None else int(days)
        if days <= 0:
            raise LifecycleError("Ban duration must be at least one day")
        a = self.get(affiliate_id)
        if a.status != AffiliateStatus.APPROVED:
            raise LifecycleError(f"Cannot ban an affiliate that is {a.status.value}")
        now = self.clock()
        with tx(self.session):
            a.status = AffiliateStatus.BANNED
            a.banned_at = now
            a.banned_by = by
            a.ban_reason = reason
            a.ban_expires_at = now + timedelta(days=days)
        log.info("affiliate %s banned for %s days", affiliate_id, days)
        return a

    def unban(self, affiliate_id: str) -> Affiliate:
        a = self.get(affiliate_id)
        if a.status != AffiliateStatus.BANNED:
            raise LifecycleError(f"Cannot unban an affiliate that is {a.status.value}")
        with tx(self.session):
            a.status = AffiliateStatus.APPROVED
            a.banned_at = None
            a.banned_by = None
            a.ban_reason = None
            a.ban_expires_at = None
        log.info("affiliate %s unbanned", affiliate_id)
        return a

    def set_commission_rate(self, affiliate_id: str, rate: Any) -> Affiliate:
        r = _unit_rate(rate)
        a = self.get(affiliate_id)
        with tx(self.session):
            a.commission_rate = r
        return a

    def lift_expired_bans(self, now: Optional[datetime] = None) -> int:
        now = now or self.clock()
        with tx(self.session):
            res = self.session.execute(
                update(Affiliate)
                .where(
                    Affiliate.status == AffiliateStatus.BANNED,
                    Affiliate.ban_expires_at.is_not(None),
                    Affiliate.ban_expires_at <= now,
                )
                .values(
                    status=AffiliateStatus.APPROVED,
                    banned_at=None,
                    banned_by=None,
                    ban_reason=None,
                    ban_expires_at=None,
                )
                .execution_options(synchronize_session=False)
            )
        n = int(res.rowcount or 0)
        if n:
            log.info("lifted %s expired affiliate bans", n)
        return n

    # ------------------------------------------------------------------
    # Links (click refs)
    # ------------------------------------------------------------------

    def create_link(self, affiliate_id: str, code: Optional[str] = None) -> AffiliateLink:
        a = self.get(affiliate_id)
        if code is not None and not clean_code(code):
            raise LifecycleError("Link code is empty or invalid")
        want = clean_code(code) if code else f"{clean_code(a.id)[:40]}-{secrets.token_hex(3)}"
        try:
            with tx(self.session):
                link = AffiliateLink(code=want, affiliate_id=a.id, active=True)
                self.session.add(link)
        except IntegrityError as e:
            raise LifecycleError("Link code already in use", details={"code": want}) from e
        return link

    def links(self, affiliate_id: str) -> List[AffiliateLink]:
        return list(
            self.session.execute(
                select(AffiliateLink).where(AffiliateLink.affiliate_id == str(affiliate_id)).order_by(AffiliateLink.id)
            ).scalars()
        )
