from decimal import Decimal

import pytest

from settlement.errors import InvalidEventError, InvalidRateError
from settlement.events import OrderCompletedEvent, TransferStatusEvent, parse_json_body
from settlement.models import Affiliate, Brand, LedgerEntry, OrderSettlement, PartyType, PlatformReferral, db
from settlement.money import Money


def _balance(services, party_type, party_id):
    return services.ledger.balance(party_type, party_id)


def test_brand_only_order_is_split_and_posted(services, seed):
    seed.brand()
    res = seed.order()

    assert res.created is True
    s = res.settlement
    assert s.total_minor == 10000
    assert s.platform_minor == 5000
    assert s.brand_net_minor == 5000
    assert s.affiliate_id is None
    assert s.referrer_user_id is None

    assert _balance(services, PartyType.PLATFORM, "platform") == Money(5000)
    assert _balance(services, PartyType.BRAND, "brand-1") == Money(5000)
    assert db.session.query(LedgerEntry).count() == 2


def test_affiliate_share_comes_out_of_brand_share(services, seed):
    seed.brand()
    seed.affiliate(rate="0.20")
    res = seed.order(ref="aff-1")

    assert res.settlement.affiliate_id == "aff-1"
    assert res.settlement.affiliate_due_minor == 1000
    assert _balance(services, PartyType.AFFILIATE, "aff-1") == Money(1000)
    assert _balance(services, PartyType.BRAND, "brand-1") == Money(4000)
    assert _balance(services, PartyType.PLATFORM, "platform") == Money(5000)


def test_affiliate_and_referrer_both_paid(services, seed):
    seed.brand(owner="owner-1")
    seed.affiliate(rate="0.20")
    seed.referral(referrer="referrer-1", referred="owner-1")

    s = seed.order(ref="aff-1").settlement

    assert s.affiliate_due_minor == 1000
    assert s.referrer_user_id == "referrer-1"
    assert s.referrer_due_minor == 250
    assert s.brand_net_minor == 3750
    assert s.platform_minor == 5000
    assert s.platform_minor + s.brand_net_minor + s.affiliate_due_minor + s.referrer_due_minor == s.total_minor

    assert _balance(services, PartyType.REFERRER, "referrer-1") == Money(250)
    assert _balance(services, PartyType.BRAND, "brand-1") == Money(3750)

    assert db.session.get(Brand, "brand-1").sales_count == 1
    assert db.session.get(Brand, "brand-1").gross_sales_minor == 10000
    assert db.session.get(Affiliate, "aff-1").sales_count == 1
    ref = db.session.query(PlatformReferral).filter_by(referrer_user_id="referrer-1").one()
    assert ref.orders_credited == 1


def test_redelivered_order_is_not_posted_twice(services, seed):
    seed.brand()
    seed.affiliate()
    first = seed.order(ref="aff-1")
    entries = db.session.query(LedgerEntry).count()

    again = seed.order(ref="aff-1")

    assert again.created is False
    assert again.settlement.id == first.settlement.id
    assert db.session.query(LedgerEntry).count() == entries
    assert db.session.query(OrderSettlement).count() == 1
    assert _balance(services, PartyType.AFFILIATE, "aff-1") == Money(1000)
    assert db.session.get(Brand, "brand-1").sales_count == 1


def test_click_ref_resolves_through_link_code(services, seed):
    seed.brand()
    seed.affiliate()
    link = services.affiliates.create_link("aff-1", "Summer Promo")
    assert link.code == "summer-promo"

    s = seed.order(ref="summer-promo").settlement
    assert s.affiliate_id == "aff-1"


def test_unknown_affiliate_degrades_to_brand_only(services, seed):
    seed.brand()
    s = seed.order(ref="nobody").settlement

    assert s.affiliate_id is None
    assert s.brand_net_minor == 5000


def test_missing_brand_settles_with_default_rate(services, seed):
    res = seed.order(brand_id="ghost-brand")

    assert res.created is True
    assert res.settlement.brand_rate == Decimal("0.5")
    assert _balance(services, PartyType.BRAND, "ghost-brand") == Money(5000)


def test_out_of_range_brand_rate_rejects_the_order(services, seed):
    db.session.add(Brand(id="b-bad", owner_user_id="o-bad", commission_rate=Decimal("0.90")))
    db.session.commit()

    with pytest.raises(InvalidRateError):
        seed.order(brand_id="b-bad")

    assert db.session.query(OrderSettlement).count() == 0
    assert db.session.query(LedgerEntry).count() == 0


def test_tiny_order_does_not_attribute_zero_commission(services, seed):
    seed.brand()
    seed.affiliate()
    s = seed.order(total="0.01", ref="aff-1").settlement

    assert s.platform_minor == 1
    assert s.affiliate_id is None
    assert db.session.query(LedgerEntry).count() == 1


def test_zero_total_order_writes_no_entries(services, seed):
    seed.brand()
    res = seed.order(total="0.00")

    assert res.created is True
    assert res.settlement.total_minor == 0
    assert db.session.query(LedgerEntry).count() == 0


def test_order_event_parsing():
    ev = OrderCompletedEvent.from_payload(parse_json_body(b'{"orderId": "o1", "brandId": "b1", "totalAmount": 19.99}'))
    assert ev.total == Money(1999)
    assert ev.affiliate_click_ref is None

    ev = OrderCompletedEvent.from_payload({"order_id": "o2", "brand_id": "b1", "totalAmountMinor": 500, "ref": "x"})
    assert ev.total == Money(500)
    assert ev.affiliate_click_ref == "x"


@pytest.mark.parametrize(
    "payload",
    [
        {"brandId": "b1", "totalAmount": "1.00"},
        {"orderId": "o1", "totalAmount": "1.00"},
        {"orderId": "o1", "brandId": "b1"},
        {"orderId": "o1", "brandId": "b1", "totalAmount": "-1.00"},
        {"orderId": "o1", "brandId": "b1", "totalAmount": "1.001"},
        {"orderId": "o1", "brandId": "b1", "totalAmountMinor": "100"},
        {"orderId": "o1", "brandId": "b1", "totalAmount": "1.00", "currency": "dollars"},
    ],
)
def test_malformed_order_events(payload):
    with pytest.raises(InvalidEventError):
        OrderCompletedEvent.from_payload(payload)


def test_body_must_be_json_object():
    with pytest.raises(InvalidEventError):
        parse_json_body(b"[1, 2]")
    with pytest.raises(InvalidEventError):
        parse_json_body(b"{not json")


def test_long_order_ids_are_rejected_not_truncated(services, seed):
    seed.brand()
    prefix = "x" * 120

    with pytest.raises(InvalidEventError) as exc:
        seed.order(order_id=prefix + "-A")
    assert exc.value.details["field"] == "orderId"
    with pytest.raises(InvalidEventError):
        seed.order(order_id=prefix + "-B", total="70.00")

    res = seed.order(order_id=prefix, total="70.00")
    assert res.created is True
    assert res.settlement.order_id == prefix
    assert _balance(services, PartyType.BRAND, "brand-1") == Money(3500)


@pytest.mark.parametrize(
    "payload",
    [
        {"orderId": "o1", "brandId": "b" * 65, "totalAmount": "1.00"},
        {"orderId": "o" * 121, "brandId": "b1", "totalAmount": "1.00"},
    ],
)
def test_overlong_ids_in_order_event(payload):
    with pytest.raises(InvalidEventError):
        OrderCompletedEvent.from_payload(payload)


def test_overlong_transfer_ref_is_rejected():
    with pytest.raises(InvalidEventError):
        TransferStatusEvent.from_payload({"transferRef": "tr_" + "9" * 120, "status": "failed"})
    ev = TransferStatusEvent.from_payload({"transferRef": "tr_" + "9" * 117, "status": "failed"})
    assert len(ev.transfer_ref) == 120
