from __future__ import annotations

import logging
import os
import sys

from dotenv import find_dotenv, load_dotenv

# ==========================================================
# Settlement Ledger — run.py (local)
# - Carga .env si existe
# - HOST/PORT desde env
# - En producción exige SECRET_KEY y secrets de webhooks
# ==========================================================


def _bool_env(key: str, default: bool = False) -> bool:
    v = os.getenv(key)
    if v is None:
        return default
    return v.strip().lower() in {"1", "true", "yes", "y", "on"}


def _load_dotenv() -> None:
    env_path = find_dotenv(usecwd=True)
    if env_path:
        load_dotenv(env_path, override=False)


def _check_production_secrets(env: str) -> None:
    if env != "production":
        return
    missing = [k for k in ("SECRET_KEY", "STRIPE_SECRET_KEY", "STRIPE_WEBHOOK_SECRET") if not os.getenv(k, "").strip()]
    if missing:
        raise RuntimeError(f"Faltan variables para producción: {', '.join(missing)}")


def main() -> None:
    _load_dotenv()

    if not os.getenv("ENV") and os.getenv("FLASK_ENV"):
        os.environ["ENV"] = os.getenv("FLASK_ENV", "production")

    env = (os.getenv("ENV") or "production").strip().lower()
    debug = _bool_env("DEBUG", env == "development")

    host = os.getenv("HOST", "127.0.0.1")
    port = int(os.getenv("PORT", "5000"))

    log = logging.getLogger("settlement")
    _check_production_secrets(env)

    # Import tardío para que ya estén cargadas las env vars
    from settlement import create_app

    app = create_app(env)
    log.info("🚀 Settlement ledger ENV=%s DEBUG=%s HOST=%s PORT=%s", env, debug, host, port)
    log.info("Python=%s | Platform=%s", sys.version.split()[0], sys.platform)

    app.run(host=host, port=port, debug=debug)


if __name__ == "__main__":
    main()
