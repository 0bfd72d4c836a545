# settlement/models/__init__.py
from __future__ import annotations

from typing import Any, Dict

from flask import Flask
from flask_sqlalchemy import SQLAlchemy
from sqlalchemy import BigInteger, Integer

# ==========================================================
# Settlement Ledger — Models HUB
# - 1 solo db global (extensión Flask, sin estado de negocio)
# - init_models(app)
# - exports reales para: from settlement.models import LedgerEntry, ...
# ==========================================================

db = SQLAlchemy()

# BIGINT en Postgres, INTEGER (rowid autoincrement) en SQLite
BigIntPK = BigInteger().with_variant(Integer(), "sqlite")


def init_models(app: Flask, *, auto_create_tables: bool = False) -> Dict[str, Any]:
    """
    Inicializa db + registra modelos (+ create_all opcional, solo local/tests).
    """
    db.init_app(app)

    out: Dict[str, Any] = {"ok": True, "models": sorted(_MODELS.keys())}

    if auto_create_tables:
        with app.app_context():
            db.create_all()

    return out


# ---------- carga de modelos (después de db) ----------
from settlement.models.brand import Brand, BrandStatus  # noqa: E402
from settlement.models.affiliate import Affiliate, AffiliateLink, AffiliateStatus  # noqa: E402
from settlement.models.referral import PlatformReferral, ReferralStatus  # noqa: E402
from settlement.models.settlement import OrderSettlement, OrderStatus  # noqa: E402
from settlement.models.ledger import (  # noqa: E402
    EntryReason,
    LedgerEntry,
    PartyAccount,
    PartyType,
    Reservation,
    ReservationStatus,
)
from settlement.models.payout import (  # noqa: E402
    PayoutAccount,
    PayoutRequest,
    ParkedTransferEvent,
    PayoutStatus,
    ReconciliationAnomaly,
)

_MODELS: Dict[str, Any] = {
    "Brand": Brand,
    "Affiliate": Affiliate,
    "AffiliateLink": AffiliateLink,
    "PlatformReferral": PlatformReferral,
    "OrderSettlement": OrderSettlement,
    "LedgerEntry": LedgerEntry,
    "PartyAccount": PartyAccount,
    "Reservation": Reservation,
    "PayoutRequest": PayoutRequest,
    "PayoutAccount": PayoutAccount,
    "ParkedTransferEvent": ParkedTransferEvent,
    "ReconciliationAnomaly": ReconciliationAnomaly,
}

__all__ = [
    "db",
    "BigIntPK",
    "init_models",
    "Brand",
    "BrandStatus",
    "Affiliate",
    "AffiliateLink",
    "AffiliateStatus",
    "PlatformReferral",
    "ReferralStatus",
    "OrderSettlement",
    "OrderStatus",
    "EntryReason",
    "LedgerEntry",
    "PartyAccount",
    "PartyType",
    "Reservation",
    "ReservationStatus",
    "PayoutAccount",
    "PayoutRequest",
    "PayoutStatus",
    "ParkedTransferEvent",
    "ReconciliationAnomaly",
]
