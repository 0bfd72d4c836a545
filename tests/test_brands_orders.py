from decimal import Decimal

import pytest

from settlement.errors import InvalidLedgerOperation, InvalidRateError, LifecycleError, NotFoundError
from settlement.models import BrandStatus, LedgerEntry, OrderSettlement, OrderStatus, PartyType, db
from settlement.money import Money


def test_register_validates_rate(services):
    with pytest.raises(InvalidRateError):
        services.brands.register("b-hi", "o-1", commission_rate="0.60")
    with pytest.raises(InvalidRateError):
        services.brands.register("b-lo", "o-1", commission_rate="0.10")

    b = services.brands.register("b-ok", "o-1", commission_rate="0.35")
    assert b.commission_rate == Decimal("0.35")
    assert b.status == BrandStatus.PENDING


def test_moderation(services):
    services.brands.register("b-1", "o-1")
    services.brands.register("b-2", "o-2")

    assert services.brands.approve("b-1").status == BrandStatus.APPROVED
    with pytest.raises(LifecycleError):
        services.brands.reject("b-2", "")
    assert services.brands.reject("b-2", "counterfeit goods").status == BrandStatus.REJECTED

    with pytest.raises(LifecycleError):
        services.brands.approve("b-2")
    with pytest.raises(NotFoundError):
        services.brands.get("b-404")


def test_rate_change_applies_to_future_orders_only(services, seed):
    seed.brand()
    first = seed.order("order-1").settlement

    services.brands.set_commission_rate("brand-1", "0.40")
    second = seed.order("order-2").settlement

    assert first.brand_share_minor == 5000
    assert second.brand_share_minor == 4000
    assert second.platform_minor == 6000
    assert db.session.get(OrderSettlement, first.id).brand_rate == Decimal("0.5")


def test_soft_delete_keeps_history(services, seed):
    seed.brand()
    seed.order()

    b = services.brands.soft_delete("brand-1")
    assert b.is_deleted
    assert services.brands.soft_delete("brand-1").deleted_at == b.deleted_at
    assert services.ledger.balance(PartyType.BRAND, "brand-1") == Money(5000)

    with pytest.raises(LifecycleError):
        services.brands.set_commission_rate("brand-1", "0.30")


def test_order_status_lifecycle(services, seed):
    seed.brand()
    seed.order()
    entries = db.session.query(LedgerEntry).count()

    for status in ("processing", "shipped", "delivered"):
        assert services.orders.transition("order-1", status).order_status == OrderStatus(status)

    # mismo estado: no-op
    assert services.orders.transition("order-1", "delivered").order_status == OrderStatus.DELIVERED

    with pytest.raises(LifecycleError):
        services.orders.transition("order-1", "cancelled")
    with pytest.raises(LifecycleError):
        services.orders.transition("order-1", "teleported")

    # el estado de fulfillment nunca mueve saldo
    assert db.session.query(LedgerEntry).count() == entries
    assert services.ledger.balance(PartyType.BRAND, "brand-1") == Money(5000)


def test_cancelled_order_keeps_its_split(services, seed):
    seed.brand()
    seed.order()

    s = services.orders.transition("order-1", "cancelled")
    assert s.order_status == OrderStatus.CANCELLED
    assert s.brand_net_minor == 5000
    assert services.ledger.balance(PartyType.BRAND, "brand-1") == Money(5000)


def test_recorded_split_is_immutable(services, seed):
    seed.brand()
    s = seed.order().settlement

    s = db.session.get(OrderSettlement, s.id)
    s.platform_minor = 1
    with pytest.raises(InvalidLedgerOperation):
        db.session.commit()
    db.session.rollback()

    s = db.session.get(OrderSettlement, s.id)
    db.session.delete(s)
    with pytest.raises(InvalidLedgerOperation):
        db.session.commit()
    db.session.rollback()
