from __future__ import annotations

import logging
import random
import time
from datetime import datetime
from typing import Callable, Optional

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from settlement.errors import LifecycleError, NotFoundError
from settlement.models import PlatformReferral, ReferralStatus
from settlement.services.transaction import tx
from settlement.utils.dates import utcnow

log = logging.getLogger("referrals")

_B36 = "0123456789abcdefghijklmnopqrstuvwxyz"


def to_base36(n: int) -> str:
    if n < 0:
        raise ValueError("base36 of negative number")
    if n == 0:
        return "0"
    out = []
    while n:
        n, r = divmod(n, 36)
        out.append(_B36[r])
    return "".join(reversed(out))


def generate_code(user_id: str, *, now_ms: Optional[int] = None, rng: Optional[random.Random] = None) -> str:
    """4 chars del user id + timestamp base36 + 4 chars random, en mayúsculas."""
    rng = rng or random.SystemRandom()
    ms = int(time.time() * 1000) if now_ms is None else int(now_ms)
    tail = "".join(rng.choice(_B36) for _ in range(4))
    return f"{str(user_id)[:4]}{to_base36(ms)}{tail}".upper()


class ReferralService:
    def __init__(
        self,
        session: Session,
        *,
        clock: Callable[[], datetime] = utcnow,
        rng: Optional[random.Random] = None,
    ):
        self.session = session
        self.clock = clock
        self.rng = rng

    def by_code(self, code: str) -> PlatformReferral:
        r = self.session.execute(
            select(PlatformReferral).where(PlatformReferral.code == str(code or "").strip().upper())
        ).scalar_one_or_none()
        if r is None:
            raise NotFoundError("Referral code not found", details={"code": code})
        return r

    def for_referred(self, referred_user_id: str) -> Optional[PlatformReferral]:
        return self.session.execute(
            select(PlatformReferral).where(PlatformReferral.referred_user_id == str(referred_user_id))
        ).scalar_one_or_none()

    def issue_code(self, referrer_user_id: str) -> PlatformReferral:
        """Código abierto del referrer (sin referido todavía); se crea si no hay."""
        open_ref = self.session.execute(
            select(PlatformReferral)
            .where(
                PlatformReferral.referrer_user_id == str(referrer_user_id),
                PlatformReferral.referred_user_id.is_(None),
            )
            .order_by(PlatformReferral.id.desc())
            .limit(1)
        ).scalar_one_or_none()
        if open_ref is not None:
            return open_ref

        now = self.clock()
        for _ in range(3):
            code = generate_code(referrer_user_id, now_ms=int(now.timestamp() * 1000), rng=self.rng)
            try:
                with tx(self.session):
                    ref = PlatformReferral(
                        code=code,
                        referrer_user_id=str(referrer_user_id),
                        status=ReferralStatus.PENDING,
                        created_at=now,
                    )
                    self.session.add(ref)
                return ref
            except IntegrityError:
                log.warning("referral code collision for %s, retrying", referrer_user_id)
        raise LifecycleError("Could not allocate a referral code, try again")

    def attach_signup(self, code: str, referred_user_id: str) -> PlatformReferral:
        ref = self.by_code(code)
        referred_user_id = str(referred_user_id)

        if ref.referrer_user_id == referred_user_id:
            raise LifecycleError("Users cannot refer themselves")
        if ref.referred_user_id is not None:
            raise LifecycleError("Referral code already used", details={"code": ref.code})
        if self.for_referred(referred_user_id) is not None:
            raise LifecycleError("User was already referred")

        try:
            with tx(self.session):
                ref.referred_user_id = referred_user_id
                ref.signed_up_at = self.clock()
        except IntegrityError as e:
            raise LifecycleError("User was already referred") from e
        log.info("referral %s attached to user %s", ref.code, referred_user_id)
        return ref

    def complete(self, referred_user_id: str) -> PlatformReferral:
        ref = self.for_referred(referred_user_id)
        if ref is None:
            raise NotFoundError("No referral for this user", details={"user_id": referred_user_id})
        if ref.status == ReferralStatus.COMPLETED:
            return ref
        with tx(self.session):
            ref.status = ReferralStatus.COMPLETED
            ref.completed_at = self.clock()
        log.info("referral %s completed", ref.code)
        return ref
