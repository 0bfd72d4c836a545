from __future__ import annotations

from settlement.integrations.accounts import SqlPayoutAccountLookup
from settlement.integrations.stripe_gateway import StripeTransferGateway

__all__ = ["SqlPayoutAccountLookup", "StripeTransferGateway"]
