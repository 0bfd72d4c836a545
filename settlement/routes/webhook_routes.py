# settlement/routes/webhook_routes.py
from __future__ import annotations

import logging

from flask import Blueprint, current_app, jsonify, request

from settlement.events import OrderCompletedEvent, TransferStatusEvent, parse_json_body
from settlement.integrations import stripe_events
from settlement.routes import services
from settlement.services.reconciler import DEFERRED, ReconcileResult
from settlement.utils.security import hmac_ok

log = logging.getLogger("webhooks")

webhook_bp = Blueprint("webhooks", __name__, url_prefix="/webhooks")


def _raw_body() -> bytes:
    return request.get_data(cache=True) or b""


def _signed(secret_key: str) -> bool:
    """HMAC-SHA256 hex del raw body en X-Signature."""
    return hmac_ok(
        current_app.config.get(secret_key, ""),
        _raw_body(),
        (request.headers.get("X-Signature") or "").strip(),
        allow_unsigned=bool(current_app.config.get("WEBHOOK_ALLOW_UNSIGNED", False)),
    )


def _reconciled(result: ReconcileResult):
    # 202: estacionado hasta que el payout guarde el transfer_ref
    return jsonify(ok=True, **result.to_dict()), (202 if result.outcome == DEFERRED else 200)


# ============================================================
# Order Completed
# ============================================================

@webhook_bp.post("/orders")
def order_completed():
    """
    Venta completada (upstream checkout).
    Idempotente por orderId: reintentos devuelven el mismo settlement.
    """
    if not _signed("ORDER_WEBHOOK_SECRET"):
        log.warning("order webhook with invalid signature")
        return jsonify(ok=False, error="invalid_signature"), 401

    event = OrderCompletedEvent.from_payload(parse_json_body(_raw_body()))
    result = services().ingestion.ingest(event)

    return jsonify(
        ok=True,
        created=result.created,
        duplicate=not result.created,
        settlement=result.settlement.to_dict(),
    ), (201 if result.created else 200)


# ============================================================
# Transfer Status (genérico)
# ============================================================

@webhook_bp.post("/transfers")
def transfer_status():
    if not _signed("TRANSFER_WEBHOOK_SECRET"):
        log.warning("transfer webhook with invalid signature")
        return jsonify(ok=False, error="invalid_signature"), 401

    event = TransferStatusEvent.from_payload(parse_json_body(_raw_body()))
    result = services().reconciler.apply(event)
    return _reconciled(result)


# ============================================================
# Stripe (Connect transfers + accounts)
# ============================================================

@webhook_bp.post("/stripe")
def stripe_webhook():
    raw = _raw_body()
    event = stripe_events.verify_event(
        raw,
        (request.headers.get("Stripe-Signature") or "").strip(),
        current_app.config.get("STRIPE_WEBHOOK_SECRET", ""),
    )
    event_type = str(event.get("type") or "")
    log.info("stripe webhook %s (%s)", event_type, event.get("id"))

    transfer_event = stripe_events.to_transfer_event(event)
    if transfer_event is not None:
        result = services().reconciler.apply(transfer_event)
        return _reconciled(result)

    account = stripe_events.to_account_update(event)
    if account is not None:
        acc = services().accounts.apply_update(
            account.account_ref,
            active=account.active,
            details_submitted=account.details_submitted,
            party_type=account.party_type,
            party_id=account.party_id,
        )
        if acc is None:
            return jsonify(ok=True, ignored=True, reason="unknown_account")
        return jsonify(ok=True, account=acc.to_dict())

    return jsonify(ok=True, ignored=True, reason="unhandled_event_type")


__all__ = ["webhook_bp"]
