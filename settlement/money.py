# settlement/money.py
"""
Money — valor monetario en unidades menores (centavos) + moneda.

- Aritmética exacta con int (nunca float)
- Reparto de comisiones con redondeo hacia abajo (ROUND_FLOOR):
  la parte que redondea queda siempre del lado de quien reparte
- Monedas distintas no se mezclan (ValueError)
"""

from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal, InvalidOperation, ROUND_FLOOR
from typing import Any, Dict

DEFAULT_CURRENCY = "USD"

# ISO 4217 exponents que no son 2
_MINOR_EXPONENT: Dict[str, int] = {
    "JPY": 0,
    "KRW": 0,
    "CLP": 0,
    "PYG": 0,
    "VND": 0,
    "BHD": 3,
    "KWD": 3,
    "OMR": 3,
}


def normalize_currency(code: Any) -> str:
    s = ("" if code is None else str(code)).strip().upper()
    if not s:
        return DEFAULT_CURRENCY
    if len(s) != 3 or not s.isalpha():
        raise ValueError(f"Invalid currency code: {code!r}")
    return s


def minor_exponent(currency: str) -> int:
    return _MINOR_EXPONENT.get(normalize_currency(currency), 2)


def parse_rate(v: Any) -> Decimal:
    """Rate as an exact Decimal fraction ("0.2", 0.2, Decimal("0.2")). No clamping."""
    if v is None or isinstance(v, bool):
        raise ValueError("rate is required")
    try:
        d = v if isinstance(v, Decimal) else Decimal(str(v).strip())
    except (InvalidOperation, ValueError) as e:
        raise ValueError(f"Invalid rate: {v!r}") from e
    if d.is_nan() or d.is_infinite():
        raise ValueError("rate cannot be NaN/Infinity")
    return d


@dataclass(frozen=True)
class Money:
    minor: int
    currency: str = DEFAULT_CURRENCY

    def __post_init__(self) -> None:
        if isinstance(self.minor, bool) or not isinstance(self.minor, int):
            raise TypeError(f"Money.minor must be int, got {type(self.minor).__name__}")
        object.__setattr__(self, "currency", normalize_currency(self.currency))

    # -------------------------------------------------------------------------
    # Constructors
    # -------------------------------------------------------------------------

    @classmethod
    def zero(cls, currency: str = DEFAULT_CURRENCY) -> "Money":
        return cls(0, currency)

    @classmethod
    def from_decimal(cls, value: Any, currency: str = DEFAULT_CURRENCY) -> "Money":
        """
        "100.00" / Decimal("100") / 100 -> Money(10000, "USD").
        Rechaza valores con más decimales que la moneda (no redondea en silencio).
        """
        cur = normalize_currency(currency)
        if value is None or isinstance(value, bool) or isinstance(value, float):
            raise ValueError(f"Invalid money value: {value!r}")
        try:
            d = value if isinstance(value, Decimal) else Decimal(str(value).strip())
        except (InvalidOperation, ValueError) as e:
            raise ValueError(f"Invalid money value: {value!r}") from e
        if d.is_nan() or d.is_infinite():
            raise ValueError("amount cannot be NaN/Infinity")

        scaled = d.scaleb(minor_exponent(cur))
        if scaled != scaled.to_integral_value():
            raise ValueError(f"{value!r} has more precision than {cur} allows")
        return cls(int(scaled), cur)

    # -------------------------------------------------------------------------
    # Arithmetic
    # -------------------------------------------------------------------------

    def _check(self, other: Any) -> "Money":
        if not isinstance(other, Money):
            raise TypeError(f"Expected Money, got {type(other).__name__}")
        if other.currency != self.currency:
            raise ValueError(f"Currency mismatch: {self.currency} vs {other.currency}")
        return other

    def __add__(self, other: "Money") -> "Money":
        o = self._check(other)
        return Money(self.minor + o.minor, self.currency)

    def __sub__(self, other: "Money") -> "Money":
        o = self._check(other)
        return Money(self.minor - o.minor, self.currency)

    def __neg__(self) -> "Money":
        return Money(-self.minor, self.currency)

    def __abs__(self) -> "Money":
        return Money(abs(self.minor), self.currency)

    def __lt__(self, other: "Money") -> bool:
        return self.minor < self._check(other).minor

    def __le__(self, other: "Money") -> bool:
        return self.minor <= self._check(other).minor

    def __gt__(self, other: "Money") -> bool:
        return self.minor > self._check(other).minor

    def __ge__(self, other: "Money") -> bool:
        return self.minor >= self._check(other).minor

    def share(self, rate: Any) -> "Money":
        """
        amount * rate, truncado hacia abajo a la unidad menor.
        El residuo queda en quien reparte (plataforma en el split bruto).
        """
        r = parse_rate(rate)
        if self.minor < 0:
            raise ValueError("share() is only defined for non-negative amounts")
        part = (Decimal(self.minor) * r).to_integral_value(rounding=ROUND_FLOOR)
        return Money(int(part), self.currency)

    # -------------------------------------------------------------------------
    # Predicates / views
    # -------------------------------------------------------------------------

    @property
    def is_zero(self) -> bool:
        return self.minor == 0

    @property
    def is_positive(self) -> bool:
        return self.minor > 0

    @property
    def is_negative(self) -> bool:
        return self.minor < 0

    def to_decimal(self) -> Decimal:
        return Decimal(self.minor).scaleb(-minor_exponent(self.currency))

    def format(self) -> str:
        exp = minor_exponent(self.currency)
        return f"{self.to_decimal():.{exp}f}"

    def to_dict(self) -> Dict[str, Any]:
        return {"amount": self.format(), "minor": self.minor, "currency": self.currency}

    def __str__(self) -> str:
        return f"{self.format()} {self.currency}"


__all__ = ["Money", "DEFAULT_CURRENCY", "normalize_currency", "minor_exponent", "parse_rate"]
