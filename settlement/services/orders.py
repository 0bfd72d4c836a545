from __future__ import annotations

import logging
from typing import Any

from sqlalchemy import select
from sqlalchemy.orm import Session

from settlement.errors import LifecycleError, NotFoundError
from settlement.models import OrderSettlement, OrderStatus
from settlement.services.transaction import tx

log = logging.getLogger("orders")


class OrderStatusService:
    """
    Estado de fulfillment de la orden liquidada.
    No toca el ledger: el reparto queda fijo desde la ingesta.
    """

    def __init__(self, session: Session):
        self.session = session

    def get(self, order_id: str) -> OrderSettlement:
        s = self.session.execute(
            select(OrderSettlement).where(OrderSettlement.order_id == str(order_id))
        ).scalar_one_or_none()
        if s is None:
            raise NotFoundError("Order settlement not found", details={"order_id": order_id})
        return s

    def transition(self, order_id: str, to: Any) -> OrderSettlement:
        try:
            target = to if isinstance(to, OrderStatus) else OrderStatus(str(to).strip().lower())
        except ValueError as e:
            raise LifecycleError(f"Unknown order status: {to!r}") from e

        s = self.get(order_id)
        if s.order_status == target:
            return s
        if not s.can_transition(target):
            raise LifecycleError(
                f"Order cannot go from {s.order_status.value} to {target.value}",
                details={"order_id": s.order_id, "from": s.order_status.value, "to": target.value},
            )
        with tx(self.session):
            s.order_status = target
        log.info("order %s -> %s", s.order_id, target.value)
        return s
