from __future__ import annotations

from typing import Any, Dict

from flask import Blueprint, current_app, jsonify

from settlement.errors import InvalidEventError
from settlement.money import Money
from settlement.routes import json_body, party_type_arg, services

payout_bp = Blueprint("payouts", __name__, url_prefix="/api/payouts")


def _amount(body: Dict[str, Any]) -> Money:
    currency = body.get("currency") or current_app.config.get("DEFAULT_CURRENCY", "USD")
    try:
        if body.get("amount_minor") is not None:
            minor = body["amount_minor"]
            if isinstance(minor, bool) or not isinstance(minor, int):
                raise ValueError("amount_minor must be an integer")
            return Money(minor, currency)
        if body.get("amount") is not None:
            return Money.from_decimal(body["amount"], currency)
    except (TypeError, ValueError) as e:
        raise InvalidEventError(f"Invalid amount: {e}", details={"field": "amount"}) from e
    raise InvalidEventError("Missing field: amount", details={"field": "amount"})


@payout_bp.post("")
def request_payout():
    """
    { party_type, party_id, amount | amount_minor, currency?, submit? }
    submit (default true) => intenta el transfer en la misma llamada.
    """
    body = json_body()
    party_id = str(body.get("party_id") or "").strip()
    if not party_id:
        raise InvalidEventError("party_id is required", details={"field": "party_id"})
    party_type = party_type_arg(body.get("party_type"))

    amount = _amount(body)
    svc = services().payouts
    payout = svc.request_payout(party_type, party_id, amount)
    if body.get("submit", True):
        payout = svc.submit(payout.public_id)

    failed = payout.status.value == "failed"
    return jsonify(
        ok=not failed,
        payout=payout.to_dict(),
        message=payout.failure_reason if failed else None,
    ), (502 if failed else 201)


@payout_bp.get("/<public_id>")
def get_payout(public_id: str):
    return jsonify(ok=True, payout=services().payouts.get(public_id).to_dict())


@payout_bp.post("/<public_id>/submit")
def submit_payout(public_id: str):
    payout = services().payouts.submit(public_id)
    failed = payout.status.value == "failed"
    return jsonify(ok=not failed, payout=payout.to_dict()), (502 if failed else 200)


@payout_bp.post("/<public_id>/cancel")
def cancel_payout(public_id: str):
    payout = services().payouts.cancel(public_id)
    return jsonify(ok=True, payout=payout.to_dict())


__all__ = ["payout_bp"]
