from __future__ import annotations

from typing import Any, Dict

from flask import current_app, request

from settlement.container import SettlementServices
from settlement.errors import InvalidEventError, InvalidLedgerOperation
from settlement.events import parse_json_body
from settlement.models import PartyType
from settlement.services.ledger import party_type_of


def services() -> SettlementServices:
    return current_app.extensions["settlement"]


def json_body() -> Dict[str, Any]:
    """Body JSON con Decimal para montos (nunca float)."""
    raw = request.get_data(cache=True) or b""
    return parse_json_body(raw) if raw.strip() else {}


def party_type_arg(v: Any) -> PartyType:
    try:
        return party_type_of(v)
    except InvalidLedgerOperation as e:
        raise InvalidEventError(f"Unknown party type: {v!r}", details={"field": "party_type"}) from e


__all__ = ["services", "json_body", "party_type_arg"]
