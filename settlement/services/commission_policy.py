"""
Commission Policy
=================
Reparto puro de una orden entre plataforma, marca, afiliado y referrer.

- brand_share   = floor(total * brand_rate)
- platform      = total - brand_share          (el residuo queda en plataforma)
- affiliate_due = floor(brand_share * affiliate_rate)   (sale de brand_share)
- referrer_due  = floor(brand_share * referral_rate)    (sale de brand_share)
- brand_net     = brand_share - affiliate_due - referrer_due

Sin DB, sin reloj, sin estado: mismas entradas => mismo Split.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Dict, Mapping, Optional

from settlement.errors import InvalidRateError
from settlement.money import Money, parse_rate

log = logging.getLogger("commission_policy")

_ZERO = Decimal("0")
_ONE = Decimal("1")


@dataclass(frozen=True)
class Split:
    total: Money
    platform_share: Money
    brand_share: Money
    affiliate_due: Money
    referrer_due: Money
    brand_rate: Decimal
    affiliate_rate: Optional[Decimal] = None
    referral_rate: Optional[Decimal] = None

    @property
    def brand_net(self) -> Money:
        return self.brand_share - self.affiliate_due - self.referrer_due

    def to_dict(self) -> Dict[str, Any]:
        return {
            "total": self.total.to_dict(),
            "platform_share": self.platform_share.to_dict(),
            "brand_share": self.brand_share.to_dict(),
            "brand_net": self.brand_net.to_dict(),
            "affiliate_due": self.affiliate_due.to_dict(),
            "referrer_due": self.referrer_due.to_dict(),
        }


def _rate(name: str, v: Any) -> Decimal:
    try:
        return parse_rate(v)
    except ValueError as e:
        raise InvalidRateError(f"{name} is not a valid rate: {v!r}", details={"rate": name}) from e


def _in_unit(name: str, r: Decimal) -> Decimal:
    if r < _ZERO or r > _ONE:
        raise InvalidRateError(f"{name}={r} outside [0, 1]", details={"rate": name, "value": str(r)})
    return r


def split(
    total: Money,
    brand_rate: Any,
    affiliate_rate: Any = None,
    referral_rate: Any = None,
    *,
    brand_rate_min: Any = "0",
    brand_rate_max: Any = "1",
) -> Split:
    """
    affiliate_rate / referral_rate en None = no hay esa parte (due = 0).
    InvalidRateError si alguna tasa cae fuera de su dominio.
    """
    if total.is_negative:
        raise ValueError("order total cannot be negative")

    lo = _in_unit("brand_rate_min", _rate("brand_rate_min", brand_rate_min))
    hi = _in_unit("brand_rate_max", _rate("brand_rate_max", brand_rate_max))
    br = _rate("brand_rate", brand_rate)
    if br < lo or br > hi:
        raise InvalidRateError(
            f"brand_rate={br} outside [{lo}, {hi}]",
            details={"rate": "brand_rate", "value": str(br), "min": str(lo), "max": str(hi)},
        )

    ar = _in_unit("affiliate_rate", _rate("affiliate_rate", affiliate_rate)) if affiliate_rate is not None else None
    rr = _in_unit("referral_rate", _rate("referral_rate", referral_rate)) if referral_rate is not None else None

    # las dos partes salen de brand_share: juntas no pueden superarla
    if (ar or _ZERO) + (rr or _ZERO) > _ONE:
        raise InvalidRateError(
            f"affiliate_rate + referral_rate = {(ar or _ZERO) + (rr or _ZERO)} exceeds 1",
            details={"rate": "affiliate_rate+referral_rate"},
        )

    brand_share = total.share(br)
    platform = total - brand_share
    affiliate_due = brand_share.share(ar) if ar is not None else Money.zero(total.currency)
    referrer_due = brand_share.share(rr) if rr is not None else Money.zero(total.currency)

    out = Split(
        total=total,
        platform_share=platform,
        brand_share=brand_share,
        affiliate_due=affiliate_due,
        referrer_due=referrer_due,
        brand_rate=br,
        affiliate_rate=ar,
        referral_rate=rr,
    )

    # conservación exacta: si esto falla, el bug es nuestro
    if (out.platform_share + out.brand_net + out.affiliate_due + out.referrer_due) != total:
        raise AssertionError(f"split does not conserve total: {out}")
    if out.brand_net.is_negative:
        raise AssertionError(f"brand_net negative: {out}")
    return out


class CommissionPolicy:
    """Tasas configuradas + split(). Se construye desde app.config."""

    def __init__(
        self,
        *,
        default_brand_rate: Any = "0.50",
        brand_rate_min: Any = "0.20",
        brand_rate_max: Any = "0.50",
        referral_rate: Any = "0.05",
    ):
        self.default_brand_rate = _rate("BRAND_RATE_DEFAULT", default_brand_rate)
        self.brand_rate_min = _rate("BRAND_RATE_MIN", brand_rate_min)
        self.brand_rate_max = _rate("BRAND_RATE_MAX", brand_rate_max)
        self.referral_rate = _rate("REFERRAL_RATE", referral_rate)

    @classmethod
    def from_config(cls, cfg: Mapping[str, Any]) -> "CommissionPolicy":
        return cls(
            default_brand_rate=cfg.get("BRAND_RATE_DEFAULT", "0.50"),
            brand_rate_min=cfg.get("BRAND_RATE_MIN", "0.20"),
            brand_rate_max=cfg.get("BRAND_RATE_MAX", "0.50"),
            referral_rate=cfg.get("REFERRAL_RATE", "0.05"),
        )

    def check_brand_rate(self, rate: Any) -> Decimal:
        """Validación al escribir (Brand.commission_rate)."""
        r = _rate("brand_rate", rate)
        if r < self.brand_rate_min or r > self.brand_rate_max:
            raise InvalidRateError(
                f"brand commission rate must be between {self.brand_rate_min} and {self.brand_rate_max}",
                details={"min": str(self.brand_rate_min), "max": str(self.brand_rate_max)},
            )
        return r

    def split(
        self,
        total: Money,
        brand_rate: Any = None,
        affiliate_rate: Any = None,
        *,
        referred: bool = False,
    ) -> Split:
        return split(
            total,
            self.default_brand_rate if brand_rate is None else brand_rate,
            affiliate_rate,
            self.referral_rate if referred else None,
            brand_rate_min=self.brand_rate_min,
            brand_rate_max=self.brand_rate_max,
        )
