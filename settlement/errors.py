# settlement/errors.py
from __future__ import annotations

from typing import Any, Dict, Optional

# =============================================================================
# Error taxonomy
# - code: estable, para clientes/UI
# - user_message: solo para errores que el usuario puede resolver
# - operator_only: nunca se muestra el detalle al usuario final
# =============================================================================


class SettlementError(RuntimeError):
    code = "settlement_error"
    http_status = 500
    operator_only = True
    default_message = "Settlement error"

    def __init__(self, message: Optional[str] = None, *, details: Optional[Dict[str, Any]] = None):
        super().__init__(message or self.default_message)
        self.details: Dict[str, Any] = dict(details or {})

    @property
    def user_message(self) -> str:
        if self.operator_only:
            return "Internal settlement error. The operations team has been notified."
        return str(self)

    def to_dict(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {"ok": False, "error": self.code, "message": self.user_message}
        if not self.operator_only and self.details:
            out["details"] = self.details
        return out


# -----------------------------------------------------------------------------
# Policy / input
# -----------------------------------------------------------------------------

class InvalidRateError(SettlementError):
    code = "invalid_rate"
    http_status = 422
    default_message = "Configured commission rate is outside its allowed domain"


class InvalidEventError(SettlementError):
    code = "invalid_event"
    http_status = 400
    operator_only = False
    default_message = "Malformed event payload"


class LifecycleError(SettlementError):
    code = "invalid_transition"
    http_status = 409
    operator_only = False
    default_message = "Transition not allowed from the current state"


class NotFoundError(SettlementError):
    code = "not_found"
    http_status = 404
    operator_only = False
    default_message = "Not found"


# -----------------------------------------------------------------------------
# Ledger
# -----------------------------------------------------------------------------

class LedgerError(SettlementError):
    code = "ledger_error"


class InvalidLedgerOperation(LedgerError):
    code = "invalid_ledger_operation"


class InsufficientBalanceError(LedgerError):
    code = "insufficient_balance"
    http_status = 409
    operator_only = False
    default_message = "Requested amount exceeds your available balance"


# -----------------------------------------------------------------------------
# Payouts
# -----------------------------------------------------------------------------

class PayoutError(SettlementError):
    code = "payout_error"
    http_status = 400
    operator_only = False
    default_message = "Payout could not be processed"


class NeedsAccountSetupError(PayoutError):
    code = "needs_account_setup"
    http_status = 400
    default_message = "Connect a payout account first, then request the payout again"


class PayoutBelowMinimumError(PayoutError):
    code = "payout_below_minimum"
    default_message = "Requested amount is below the minimum payout"


class PartyFrozenError(PayoutError):
    code = "party_frozen"
    http_status = 409
    default_message = "This account is frozen and cannot request payouts"


class InvalidPayoutStateError(PayoutError):
    code = "invalid_payout_state"
    http_status = 409
    default_message = "Payout is not in a state that allows this action"


class PayoutNotFoundError(PayoutError):
    code = "payout_not_found"
    http_status = 404
    default_message = "Payout not found"


# -----------------------------------------------------------------------------
# Transfer gateway
# -----------------------------------------------------------------------------

class GatewayError(SettlementError):
    code = "gateway_error"
    http_status = 502
    operator_only = False
    default_message = "Payment provider error"


class GatewayUnavailableError(GatewayError):
    code = "gateway_unavailable"
    http_status = 503
    default_message = "Payment provider is temporarily unavailable, try again later"


class TransferRejectedError(GatewayError):
    code = "transfer_rejected"
    default_message = "Payment provider rejected the transfer"


__all__ = [
    "SettlementError",
    "InvalidRateError",
    "InvalidEventError",
    "LifecycleError",
    "NotFoundError",
    "LedgerError",
    "InvalidLedgerOperation",
    "InsufficientBalanceError",
    "PayoutError",
    "NeedsAccountSetupError",
    "PayoutBelowMinimumError",
    "PartyFrozenError",
    "InvalidPayoutStateError",
    "PayoutNotFoundError",
    "GatewayError",
    "GatewayUnavailableError",
    "TransferRejectedError",
]
