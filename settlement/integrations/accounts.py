from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Callable, Optional

from sqlalchemy import select
from sqlalchemy.orm import Session

from settlement.models import PartyType, PayoutAccount
from settlement.services.ledger import party_type_of
from settlement.services.transaction import tx
from settlement.utils.dates import utcnow

log = logging.getLogger("payout_accounts")


class SqlPayoutAccountLookup:
    """Payout Account Lookup sobre la tabla payout_accounts."""

    def __init__(self, session: Session, *, provider: str = "stripe", clock: Callable[[], datetime] = utcnow):
        self.session = session
        self.provider = provider
        self.clock = clock

    def _for_party(self, party_type: PartyType, party_id: str) -> Optional[PayoutAccount]:
        return self.session.execute(
            select(PayoutAccount).where(
                PayoutAccount.party_type == party_type,
                PayoutAccount.party_id == str(party_id),
                PayoutAccount.provider == self.provider,
            )
        ).scalar_one_or_none()

    def get_payout_account(self, party_type: PartyType, party_id: str) -> Optional[str]:
        acc = self._for_party(party_type_of(party_type), party_id)
        if acc is None or not acc.active:
            return None
        return acc.account_ref

    def link(self, party_type: Any, party_id: str, account_ref: str, *, active: bool = False) -> PayoutAccount:
        """Onboarding: asocia la cuenta externa a la parte (activa o no)."""
        pt = party_type_of(party_type)
        with tx(self.session):
            acc = self._for_party(pt, party_id)
            if acc is None:
                acc = PayoutAccount(party_type=pt, party_id=str(party_id), provider=self.provider)
                self.session.add(acc)
            acc.account_ref = account_ref
            acc.active = bool(active)
        return acc

    def apply_update(
        self,
        account_ref: str,
        *,
        active: bool,
        details_submitted: bool = False,
        party_type: Optional[str] = None,
        party_id: Optional[str] = None,
    ) -> Optional[PayoutAccount]:
        """account.updated: refresca el estado; crea la fila si el evento trae la parte en metadata."""
        with tx(self.session):
            acc = self.session.execute(
                select(PayoutAccount).where(PayoutAccount.account_ref == account_ref)
            ).scalar_one_or_none()
            if acc is None:
                if not (party_type and party_id):
                    log.warning("account.updated for unknown account %s ignored", account_ref)
                    return None
                pt = party_type_of(party_type)
                acc = self._for_party(pt, party_id)
                if acc is None:
                    acc = PayoutAccount(party_type=pt, party_id=str(party_id), provider=self.provider)
                    self.session.add(acc)
                acc.account_ref = account_ref
            acc.active = bool(active)
            acc.details_submitted = bool(details_submitted)
        log.info("payout account %s active=%s", account_ref, active)
        return acc
