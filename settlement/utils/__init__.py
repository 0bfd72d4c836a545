"""
Utils Hub
---------
Punto único de entrada para utilidades compartidas.

Reglas:
- NO lógica de negocio acá
- SOLO imports limpios y explícitos
"""

from __future__ import annotations

from settlement.utils.dates import as_utc, iso, utcnow
from settlement.utils.security import hmac_ok, hmac_sha256_hex, safe_str

__all__ = [
    "as_utc",
    "iso",
    "utcnow",
    "hmac_ok",
    "hmac_sha256_hex",
    "safe_str",
]
