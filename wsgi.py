# wsgi.py — Settlement Ledger (gunicorn wsgi:app)
from __future__ import annotations

import logging
import os
import time
from typing import Any, Dict, Tuple

from dotenv import load_dotenv
from sqlalchemy import text

load_dotenv(override=False)

log = logging.getLogger("wsgi")

from settlement import create_app  # noqa: E402
from settlement.models import db  # noqa: E402

t0 = time.time()
app = create_app(os.getenv("ENV") or os.getenv("FLASK_ENV") or "production")
log.info("✅ create_app() OK en %.3fs", time.time() - t0)


@app.get("/ready")
def ready() -> Tuple[Dict[str, Any], int]:
    """Readiness: ping real a la DB."""
    t = time.time()
    try:
        db.session.execute(text("SELECT 1"))
    except Exception as e:
        db.session.rollback()
        log.warning("ready: db ping falló: %s", e)
        return {"ok": False, "db": "degraded", "error": type(e).__name__}, 503
    return {"ok": True, "db": "ok", "latency_s": round(time.time() - t, 4)}, 200
