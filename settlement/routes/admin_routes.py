from __future__ import annotations

from flask import Blueprint, jsonify

from settlement.errors import InvalidEventError
from settlement.routes import json_body, services

# Autenticación/roles: la resuelve el gateway de la plataforma (fuera de este servicio)
admin_bp = Blueprint("admin", __name__, url_prefix="/api/admin")


@admin_bp.post("/affiliates/<affiliate_id>/<action>")
def affiliate_action(affiliate_id: str, action: str):
    """approve | reject (reason) | ban (reason, days?) | unban"""
    body = json_body()
    svc = services().affiliates
    by = body.get("by")

    if action == "approve":
        a = svc.approve(affiliate_id, by=by)
    elif action == "reject":
        a = svc.reject(affiliate_id, body.get("reason") or "")
    elif action == "ban":
        days = body.get("days")
        a = svc.ban(affiliate_id, body.get("reason") or "", days=int(days) if days is not None else None, by=by)
    elif action == "unban":
        a = svc.unban(affiliate_id)
    else:
        raise InvalidEventError(f"Unknown action: {action}", details={"action": action})

    return jsonify(ok=True, affiliate=a.to_dict())


@admin_bp.post("/brands/<brand_id>/<action>")
def brand_action(brand_id: str, action: str):
    """approve | reject (reason) | delete | commission (rate)"""
    body = json_body()
    svc = services().brands

    if action == "approve":
        b = svc.approve(brand_id)
    elif action == "reject":
        b = svc.reject(brand_id, body.get("reason") or "")
    elif action == "delete":
        b = svc.soft_delete(brand_id)
    elif action == "commission":
        if body.get("rate") is None:
            raise InvalidEventError("Missing field: rate", details={"field": "rate"})
        b = svc.set_commission_rate(brand_id, body["rate"])
    else:
        raise InvalidEventError(f"Unknown action: {action}", details={"action": action})

    return jsonify(ok=True, brand=b.to_dict())


@admin_bp.post("/orders/<order_id>/status")
def order_status(order_id: str):
    body = json_body()
    s = services().orders.transition(order_id, body.get("status") or "")
    return jsonify(ok=True, order_id=s.order_id, order_status=s.order_status.value)


__all__ = ["admin_bp"]
