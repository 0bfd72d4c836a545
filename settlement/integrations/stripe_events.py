from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from typing import Any, Dict, Optional

import stripe

from settlement.errors import InvalidEventError
from settlement.events import TRANSFER_FAILED, TRANSFER_SUCCEEDED, TransferStatusEvent

logger = logging.getLogger("stripe_events")

# tipo de evento Stripe -> estado terminal del transfer
TRANSFER_EVENT_STATUS = {
    "transfer.created": TRANSFER_SUCCEEDED,
    "transfer.paid": TRANSFER_SUCCEEDED,
    "transfer.failed": TRANSFER_FAILED,
    "transfer.reversed": TRANSFER_FAILED,
}


class InvalidSignatureError(InvalidEventError):
    code = "invalid_signature"
    http_status = 401
    default_message = "Invalid webhook signature"


@dataclass(frozen=True)
class AccountUpdate:
    account_ref: str
    active: bool
    details_submitted: bool
    party_type: Optional[str] = None
    party_id: Optional[str] = None


def verify_event(payload: bytes, sig_header: str, secret: str) -> Dict[str, Any]:
    """
    Verifica Stripe-Signature con la librería oficial y devuelve el evento como dict.
    """
    if not secret:
        raise InvalidSignatureError("STRIPE_WEBHOOK_SECRET is not configured")
    if not sig_header:
        raise InvalidSignatureError("Missing Stripe-Signature header")
    try:
        stripe.Webhook.construct_event(payload=payload, sig_header=sig_header, secret=secret)
    except ValueError as e:
        raise InvalidEventError("Invalid Stripe payload") from e
    except stripe.SignatureVerificationError as e:
        raise InvalidSignatureError() from e

    # payload ya autenticado; trabajamos con dicts planos
    try:
        event = json.loads(payload.decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError) as e:
        raise InvalidEventError("Invalid Stripe payload") from e
    if not isinstance(event, dict):
        raise InvalidEventError("Invalid Stripe payload")
    return event


def _object(event: Dict[str, Any]) -> Dict[str, Any]:
    data = event.get("data")
    obj = data.get("object") if isinstance(data, dict) else None
    return obj if isinstance(obj, dict) else {}


def to_transfer_event(event: Dict[str, Any]) -> Optional[TransferStatusEvent]:
    status = TRANSFER_EVENT_STATUS.get(str(event.get("type") or ""))
    if status is None:
        return None
    obj = _object(event)
    ref = str(obj.get("id") or "").strip()
    if not ref:
        raise InvalidEventError("Stripe transfer event without transfer id")
    if len(ref) > 120:
        raise InvalidEventError("Stripe transfer id is longer than 120 characters")

    reason = None
    if status == TRANSFER_FAILED:
        reason = obj.get("failure_message") or obj.get("failure_code") or str(event.get("type"))

    return TransferStatusEvent(
        transfer_ref=ref,
        status=status,
        failure_reason=str(reason)[:500] if reason else None,
        event_id=str(event.get("id") or "") or None,
    )


def to_account_update(event: Dict[str, Any]) -> Optional[AccountUpdate]:
    if event.get("type") != "account.updated":
        return None
    obj = _object(event)
    ref = str(obj.get("id") or "").strip()
    if not ref:
        raise InvalidEventError("Stripe account event without account id")
    md = obj.get("metadata") if isinstance(obj.get("metadata"), dict) else {}
    return AccountUpdate(
        account_ref=ref,
        active=bool(obj.get("charges_enabled")) or bool(obj.get("payouts_enabled")),
        details_submitted=bool(obj.get("details_submitted")),
        party_type=(md.get("party_type") or None),
        party_id=(md.get("party_id") or None),
    )
