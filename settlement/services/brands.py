from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Callable, Optional

from sqlalchemy.orm import Session

from settlement.errors import LifecycleError, NotFoundError
from settlement.models import Brand, BrandStatus
from settlement.services.commission_policy import CommissionPolicy
from settlement.services.transaction import tx
from settlement.utils.dates import utcnow
from settlement.utils.security import safe_str

log = logging.getLogger("brands")


class BrandService:
    def __init__(self, session: Session, *, policy: CommissionPolicy, clock: Callable[[], datetime] = utcnow):
        self.session = session
        self.policy = policy
        self.clock = clock

    def get(self, brand_id: str) -> Brand:
        b = self.session.get(Brand, str(brand_id))
        if b is None:
            raise NotFoundError("Brand not found", details={"brand_id": brand_id})
        return b

    def register(self, brand_id: str, owner_user_id: str, *, name: Optional[str] = None, commission_rate: Any = None) -> Brand:
        rate = self.policy.check_brand_rate(
            self.policy.default_brand_rate if commission_rate is None else commission_rate
        )
        with tx(self.session):
            b = Brand(
                id=str(brand_id),
                owner_user_id=str(owner_user_id),
                name=name,
                commission_rate=rate,
                status=BrandStatus.PENDING,
            )
            self.session.add(b)
        return b

    def _require_pending(self, b: Brand) -> None:
        if b.status != BrandStatus.PENDING:
            raise LifecycleError(
                f"Brand is {b.status.value}, only pending brands can be moderated",
                details={"brand_id": b.id, "status": b.status.value},
            )

    def approve(self, brand_id: str) -> Brand:
        b = self.get(brand_id)
        self._require_pending(b)
        with tx(self.session):
            b.status = BrandStatus.APPROVED
        log.info("brand %s approved", brand_id)
        return b

    def reject(self, brand_id: str, reason: str) -> Brand:
        reason = safe_str(reason, 300)
        if not reason:
            raise LifecycleError("Rejection reason is required")
        b = self.get(brand_id)
        self._require_pending(b)
        with tx(self.session):
            b.status = BrandStatus.REJECTED
            b.rejection_reason = reason
        log.info("brand %s rejected", brand_id)
        return b

    def set_commission_rate(self, brand_id: str, rate: Any) -> Brand:
        r = self.policy.check_brand_rate(rate)
        b = self.get(brand_id)
        if b.is_deleted:
            raise LifecycleError("Brand is deleted", details={"brand_id": b.id})
        with tx(self.session):
            b.commission_rate = r
        log.info("brand %s commission rate -> %s", brand_id, r)
        return b

    def soft_delete(self, brand_id: str) -> Brand:
        """Congela la marca: el historial del ledger queda intacto, payouts bloqueados."""
        b = self.get(brand_id)
        if b.is_deleted:
            return b
        with tx(self.session):
            b.deleted_at = self.clock()
        log.info("brand %s soft-deleted", brand_id)
        return b
