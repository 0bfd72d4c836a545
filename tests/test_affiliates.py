from datetime import timedelta
from decimal import Decimal

import pytest

from settlement.errors import InvalidRateError, LifecycleError, NotFoundError
from settlement.models import Affiliate, AffiliateStatus, db
from settlement.utils.dates import as_utc


def test_apply_and_approve(services, seed):
    seed.brand()
    a = services.affiliates.apply("brand-1", "user-9", commission_rate="0.25", affiliate_id="aff-9")
    assert a.status == AffiliateStatus.PENDING

    a = services.affiliates.approve("aff-9", by="admin-1")
    assert a.status == AffiliateStatus.APPROVED
    assert a.approved_by == "admin-1"
    assert a.commission_rate == Decimal("0.25")


def test_apply_requires_brand_and_no_duplicates(services, seed):
    with pytest.raises(NotFoundError):
        services.affiliates.apply("nope", "user-1")

    seed.brand()
    services.affiliates.apply("brand-1", "user-1")
    with pytest.raises(LifecycleError):
        services.affiliates.apply("brand-1", "user-1")


def test_affiliate_rate_must_be_a_fraction(services, seed):
    seed.brand()
    with pytest.raises(InvalidRateError):
        services.affiliates.apply("brand-1", "user-1", commission_rate="1.5")
    a = seed.affiliate()
    with pytest.raises(InvalidRateError):
        services.affiliates.set_commission_rate(a.id, "-0.1")


def test_reject_needs_reason_and_is_terminal(services, seed):
    seed.brand()
    seed.affiliate(approve=False)

    with pytest.raises(LifecycleError):
        services.affiliates.reject("aff-1", "   ")

    a = services.affiliates.reject("aff-1", "low quality traffic")
    assert a.status == AffiliateStatus.REJECTED
    assert a.rejection_reason == "low quality traffic"

    with pytest.raises(LifecycleError):
        services.affiliates.approve("aff-1")


def test_ban_and_unban(services, seed, clock):
    seed.brand()
    seed.affiliate()

    a = services.affiliates.ban("aff-1", "chargebacks", days=5, by="admin-1")
    assert a.status == AffiliateStatus.BANNED
    assert as_utc(a.ban_expires_at) == clock() + timedelta(days=5)

    with pytest.raises(LifecycleError):
        services.affiliates.ban("aff-1", "again")

    a = services.affiliates.unban("aff-1")
    assert a.status == AffiliateStatus.APPROVED
    assert a.ban_expires_at is None

    with pytest.raises(LifecycleError):
        services.affiliates.unban("aff-1")


def test_ban_uses_default_duration(services, seed, clock):
    seed.brand()
    seed.affiliate()
    a = services.affiliates.ban("aff-1", "spam")
    assert as_utc(a.ban_expires_at) == clock() + timedelta(days=7)


def test_pending_affiliate_cannot_be_banned(services, seed):
    seed.brand()
    seed.affiliate(approve=False)
    with pytest.raises(LifecycleError):
        services.affiliates.ban("aff-1", "spam")


def test_lift_expired_bans(services, seed, clock):
    seed.brand()
    seed.affiliate(affiliate_id="aff-short", user_id="u1")
    seed.affiliate(affiliate_id="aff-long", user_id="u2")
    services.affiliates.ban("aff-short", "spam", days=1)
    services.affiliates.ban("aff-long", "fraud", days=30)

    clock.advance(days=2)
    assert services.affiliates.lift_expired_bans() == 1

    assert db.session.get(Affiliate, "aff-short").status == AffiliateStatus.APPROVED
    assert db.session.get(Affiliate, "aff-long").status == AffiliateStatus.BANNED


def test_links(services, seed):
    seed.brand()
    seed.affiliate()

    generated = services.affiliates.create_link("aff-1")
    assert generated.code.startswith("aff-1-")

    custom = services.affiliates.create_link("aff-1", "Black Friday!")
    assert custom.code == "black-friday"

    with pytest.raises(LifecycleError):
        services.affiliates.create_link("aff-1", "black friday")
    with pytest.raises(LifecycleError):
        services.affiliates.create_link("aff-1", "!!!")

    assert [link.code for link in services.affiliates.links("aff-1")] == [generated.code, "black-friday"]
