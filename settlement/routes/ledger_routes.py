from __future__ import annotations

from flask import Blueprint, current_app, jsonify, request

from settlement.routes import party_type_arg, services

ledger_bp = Blueprint("ledger", __name__, url_prefix="/api")


def _currency() -> str:
    return (request.args.get("currency") or current_app.config.get("DEFAULT_CURRENCY", "USD")).strip()


def _limit(default: int) -> int:
    try:
        return int(request.args.get("limit", default))
    except (TypeError, ValueError):
        return default


# ---------------------------------------------------------------------------
# Dashboards (solo lectura)
# ---------------------------------------------------------------------------

@ledger_bp.get("/ledger/<party_type>/<party_id>/balance")
def party_balance(party_type: str, party_id: str):
    return jsonify(ok=True, **services().queries.balance(party_type_arg(party_type), party_id, _currency()))


@ledger_bp.get("/ledger/<party_type>/<party_id>/entries")
def party_entries(party_type: str, party_id: str):
    return jsonify(ok=True, entries=services().queries.ledger_entries(party_type_arg(party_type), party_id, limit=_limit(200)))


@ledger_bp.get("/ledger/<party_type>/<party_id>/payouts")
def party_payouts(party_type: str, party_id: str):
    return jsonify(ok=True, payouts=services().queries.payout_history(party_type_arg(party_type), party_id, limit=_limit(100)))


@ledger_bp.get("/orders/<order_id>/settlement")
def order_settlement(order_id: str):
    return jsonify(ok=True, settlement=services().queries.settlement(order_id))


@ledger_bp.get("/affiliates/<affiliate_id>/summary")
def affiliate_summary(affiliate_id: str):
    return jsonify(ok=True, **services().queries.affiliate_summary(affiliate_id, _currency()))


@ledger_bp.get("/brands/<brand_id>/summary")
def brand_summary(brand_id: str):
    return jsonify(ok=True, **services().queries.brand_summary(brand_id, _currency()))


@ledger_bp.get("/referrals/<user_id>/summary")
def referral_summary(user_id: str):
    return jsonify(ok=True, **services().queries.referral_summary(user_id, _currency()))


__all__ = ["ledger_bp"]
