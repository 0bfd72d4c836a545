"""
Eventos de entrada (boundary). Se validan acá y adentro solo circulan
records tipados: nada de dicts sueltos en el pipeline.
"""

from __future__ import annotations

import json
from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Dict, Mapping, Optional

from settlement.errors import InvalidEventError
from settlement.money import Money, normalize_currency
from settlement.utils.security import safe_str


def parse_json_body(raw: bytes) -> Dict[str, Any]:
    """JSON con decimales exactos (nunca float)."""
    try:
        data = json.loads((raw or b"").decode("utf-8") or "{}", parse_float=Decimal)
    except (UnicodeDecodeError, json.JSONDecodeError) as e:
        raise InvalidEventError("Body is not valid JSON") from e
    if not isinstance(data, dict):
        raise InvalidEventError("Body must be a JSON object")
    return data


def _pick(payload: Mapping[str, Any], *keys: str) -> Any:
    for k in keys:
        if k in payload and payload[k] is not None:
            return payload[k]
    return None


def _req_str(payload: Mapping[str, Any], max_len: int, *keys: str) -> str:
    s = safe_str(_pick(payload, *keys), max_len)
    if not s:
        raise InvalidEventError(f"Missing field: {keys[0]}", details={"field": keys[0]})
    return s


def _req_id(payload: Mapping[str, Any], max_len: int, *keys: str) -> str:
    # ids = claves de idempotencia: nunca se truncan
    raw = _pick(payload, *keys)
    s = "" if raw is None else str(raw).replace("\x00", "").strip()
    if not s:
        raise InvalidEventError(f"Missing field: {keys[0]}", details={"field": keys[0]})
    if len(s) > max_len:
        raise InvalidEventError(
            f"{keys[0]} is longer than {max_len} characters",
            details={"field": keys[0], "max_length": max_len},
        )
    return s


def _opt_str(payload: Mapping[str, Any], max_len: int, *keys: str) -> Optional[str]:
    return safe_str(_pick(payload, *keys), max_len) or None


@dataclass(frozen=True)
class OrderCompletedEvent:
    order_id: str
    brand_id: str
    total: Money
    affiliate_click_ref: Optional[str] = None
    buyer_id: Optional[str] = None

    @classmethod
    def from_payload(cls, payload: Mapping[str, Any]) -> "OrderCompletedEvent":
        """
        Acepta camelCase (upstream) o snake_case.
        totalAmount = decimal en unidades mayores ("100.00"); totalAmountMinor = int en centavos.
        """
        if not isinstance(payload, Mapping):
            raise InvalidEventError("Order event must be an object")

        order_id = _req_id(payload, 120, "orderId", "order_id")
        brand_id = _req_id(payload, 64, "brandId", "brand_id")

        try:
            currency = normalize_currency(_pick(payload, "currency"))
        except ValueError as e:
            raise InvalidEventError(str(e), details={"field": "currency"}) from e

        minor = _pick(payload, "totalAmountMinor", "total_amount_minor")
        major = _pick(payload, "totalAmount", "total_amount")
        try:
            if minor is not None:
                if isinstance(minor, bool) or not isinstance(minor, int):
                    raise ValueError("totalAmountMinor must be an integer")
                total = Money(minor, currency)
            elif major is not None:
                total = Money.from_decimal(major, currency)
            else:
                raise InvalidEventError("Missing field: totalAmount", details={"field": "totalAmount"})
        except (TypeError, ValueError) as e:
            raise InvalidEventError(f"Invalid totalAmount: {e}", details={"field": "totalAmount"}) from e

        if total.is_negative:
            raise InvalidEventError("totalAmount cannot be negative", details={"field": "totalAmount"})

        return cls(
            order_id=order_id,
            brand_id=brand_id,
            total=total,
            affiliate_click_ref=_opt_str(payload, 120, "affiliateClickRef", "affiliate_click_ref", "ref"),
            buyer_id=_opt_str(payload, 64, "buyerId", "buyer_id"),
        )


TRANSFER_SUCCEEDED = "succeeded"
TRANSFER_FAILED = "failed"
_TRANSFER_STATUSES = {TRANSFER_SUCCEEDED, TRANSFER_FAILED}


@dataclass(frozen=True)
class TransferStatusEvent:
    transfer_ref: str
    status: str
    failure_reason: Optional[str] = None
    event_id: Optional[str] = None

    @property
    def succeeded(self) -> bool:
        return self.status == TRANSFER_SUCCEEDED

    @classmethod
    def from_payload(cls, payload: Mapping[str, Any]) -> "TransferStatusEvent":
        if not isinstance(payload, Mapping):
            raise InvalidEventError("Transfer event must be an object")

        ref = _req_id(payload, 120, "transferRef", "transfer_ref")
        status = _req_str(payload, 20, "status").lower()
        if status not in _TRANSFER_STATUSES:
            raise InvalidEventError(f"Unknown transfer status: {status!r}", details={"field": "status"})

        return cls(
            transfer_ref=ref,
            status=status,
            failure_reason=_opt_str(payload, 500, "failureReason", "failure_reason"),
            event_id=_opt_str(payload, 120, "eventId", "event_id", "id"),
        )
