import random
from decimal import Decimal

import pytest

from settlement.errors import InvalidRateError
from settlement.money import Money
from settlement.services.commission_policy import CommissionPolicy, split

HUNDRED = Money.from_decimal("100.00")


def test_brand_only_order():
    s = split(HUNDRED, "0.5", brand_rate_min="0.2", brand_rate_max="0.5")
    assert s.platform_share == Money(5000)
    assert s.brand_share == Money(5000)
    assert s.brand_net == Money(5000)
    assert s.affiliate_due.is_zero
    assert s.referrer_due.is_zero


def test_affiliate_carved_from_brand_share():
    s = split(HUNDRED, "0.5", "0.2", brand_rate_min="0.2", brand_rate_max="0.5")
    assert s.affiliate_due == Money(1000)
    assert s.brand_net == Money(4000)
    assert s.platform_share == Money(5000)


def test_affiliate_and_referral_together():
    s = split(HUNDRED, "0.5", "0.2", "0.05", brand_rate_min="0.2", brand_rate_max="0.5")
    assert s.affiliate_due == Money(1000)
    assert s.referrer_due == Money(250)
    assert s.brand_net == Money(3750)
    assert s.platform_share == Money(5000)
    assert s.platform_share + s.brand_net + s.affiliate_due + s.referrer_due == HUNDRED


def test_residue_stays_with_platform():
    s = split(Money(3), "0.5")
    assert s.brand_share == Money(1)
    assert s.platform_share == Money(2)

    s = split(Money(1), "0.5")
    assert s.brand_share.is_zero
    assert s.platform_share == Money(1)


def test_conservation_over_random_orders():
    rng = random.Random(20240611)
    brand_rates = [Decimal("0.20"), Decimal("0.25"), Decimal("0.333"), Decimal("0.4"), Decimal("0.5")]
    for _ in range(2000):
        total = Money(rng.randint(0, 10_000_000))
        br = rng.choice(brand_rates)
        ar = Decimal(rng.randint(0, 9500)) / Decimal(10000) if rng.random() < 0.7 else None
        rr = Decimal("0.05") if rng.random() < 0.5 else None

        s = split(total, br, ar, rr, brand_rate_min="0.2", brand_rate_max="0.5")

        assert s.platform_share + s.brand_net + s.affiliate_due + s.referrer_due == total
        assert s.affiliate_due + s.referrer_due + s.brand_net == s.brand_share
        for part in (s.platform_share, s.brand_net, s.affiliate_due, s.referrer_due):
            assert not part.is_negative


@pytest.mark.parametrize("rate", ["0.1", "0.6", "-0.5", "1.5"])
def test_brand_rate_outside_bounds(rate):
    with pytest.raises(InvalidRateError):
        split(HUNDRED, rate, brand_rate_min="0.2", brand_rate_max="0.5")


def test_carve_out_rates_validated():
    with pytest.raises(InvalidRateError):
        split(HUNDRED, "0.5", "1.2")
    with pytest.raises(InvalidRateError):
        split(HUNDRED, "0.5", None, "-0.01")
    with pytest.raises(InvalidRateError):
        split(HUNDRED, "0.5", "0.8", "0.3")
    with pytest.raises(InvalidRateError):
        split(HUNDRED, "abc")


def test_negative_total_rejected():
    with pytest.raises(ValueError):
        split(Money(-1), "0.5")


def test_policy_defaults_and_referral_flag():
    p = CommissionPolicy(default_brand_rate="0.50", brand_rate_min="0.20", brand_rate_max="0.50", referral_rate="0.05")

    plain = p.split(HUNDRED)
    assert plain.brand_rate == Decimal("0.50")
    assert plain.referrer_due.is_zero

    referred = p.split(HUNDRED, "0.4", referred=True)
    assert referred.brand_share == Money(4000)
    assert referred.referrer_due == Money(200)


def test_policy_from_config_and_rate_check():
    p = CommissionPolicy.from_config({"BRAND_RATE_MIN": "0.30", "BRAND_RATE_MAX": "0.45", "BRAND_RATE_DEFAULT": "0.40"})
    assert p.check_brand_rate("0.30") == Decimal("0.30")
    with pytest.raises(InvalidRateError):
        p.check_brand_rate("0.50")
    with pytest.raises(InvalidRateError):
        p.split(HUNDRED, "0.25")
