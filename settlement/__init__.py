# settlement/__init__.py — Settlement Ledger (app factory)
from __future__ import annotations

import logging
import time
from datetime import datetime
from typing import Any, Callable, Dict, List, Mapping, Optional

import click
from flask import Flask, jsonify, request
from werkzeug.exceptions import HTTPException
from werkzeug.middleware.proxy_fix import ProxyFix

# ✅ db ÚNICO del hub de modelos
from settlement.config import get_config
from settlement.container import build_services
from settlement.errors import SettlementError
from settlement.models import db, init_models
from settlement.services.payouts import TransferGateway
from settlement.utils.dates import utcnow


# ============================================================
# Logging
# ============================================================

def _setup_logging(app: Flask) -> None:
    """
    Logging consistente local/prod.
    Respeta LOG_LEVEL (config o env).
    """
    lvl = str(app.config.get("LOG_LEVEL") or "").strip().upper()
    if lvl in {"CRITICAL", "ERROR", "WARNING", "INFO", "DEBUG"}:
        level = getattr(logging, lvl)
    else:
        level = logging.DEBUG if app.debug else logging.INFO

    root = logging.getLogger()
    if not root.handlers:
        logging.basicConfig(
            level=level,
            format="%(asctime)s | %(levelname)-8s | %(name)s:%(lineno)d - %(message)s",
        )
    app.logger.setLevel(level)


def _safe_init(app: Flask, label: str, fn: Callable[[], Any]) -> Any:
    try:
        out = fn()
        app.logger.info("✅ %s inicializado", label)
        return out
    except Exception as e:
        app.logger.warning("⚠️ %s no pudo inicializarse: %s", label, e, exc_info=app.debug)
        return None


# ============================================================
# App Factory
# ============================================================

def create_app(
    env_name: Optional[str] = None,
    *,
    overrides: Optional[Mapping[str, Any]] = None,
    gateway: Optional[TransferGateway] = None,
    clock: Callable[[], datetime] = utcnow,
    sleep: Callable[[float], None] = time.sleep,
) -> Flask:
    app = Flask(__name__)

    cfg = get_config(env_name)
    app.config.from_object(cfg)
    if overrides:
        app.config.update(dict(overrides))
    app.debug = bool(app.config.get("DEBUG"))

    if app.config.get("TRUST_PROXY_HEADERS"):
        app.wsgi_app = ProxyFix(app.wsgi_app, x_for=1, x_proto=1, x_host=1, x_port=1)

    _setup_logging(app)
    app.logger.info("🚀 create_app() ENV=%s DEBUG=%s", app.config.get("ENV"), app.debug)

    # -------------------------
    # Models hub (config ya resuelta: el engine se crea en init_app)
    # -------------------------
    out = init_models(app, auto_create_tables=bool(app.config.get("AUTO_CREATE_TABLES", False)))
    app.logger.info("✅ Models hub inicializado (%d modelos)", len(out["models"]))

    def _migrate():
        from flask_migrate import Migrate
        uri = str(app.config.get("SQLALCHEMY_DATABASE_URI") or "")
        Migrate(app, db, compare_type=True, render_as_batch=uri.startswith("sqlite"))

    _safe_init(app, "Flask-Migrate", _migrate)

    # -------------------------
    # Services (un set por app; la sesión es db.session con scope de request)
    # -------------------------
    app.extensions["settlement"] = build_services(
        app.config, db.session, gateway=gateway, clock=clock, sleep=sleep
    )

    # -------------------------
    # Blueprints
    # -------------------------
    registered: List[str] = []

    def reg(label: str, module_path: str, bp_name: str, url_prefix: Optional[str] = None):
        module = __import__(module_path, fromlist=[bp_name])
        bp = getattr(module, bp_name)
        app.register_blueprint(bp, url_prefix=url_prefix)
        registered.append(label)
        app.logger.info("🔗 Blueprint registrado: %s (%s)", label, url_prefix or bp.url_prefix or "/")

    reg("webhook_bp", "settlement.routes.webhook_routes", "webhook_bp")
    reg("payout_bp", "settlement.routes.payout_routes", "payout_bp")
    reg("ledger_bp", "settlement.routes.ledger_routes", "ledger_bp")
    reg("admin_bp", "settlement.routes.admin_routes", "admin_bp")

    @app.get("/health")
    def health():
        return {
            "status": "ok",
            "env": app.config.get("ENV"),
            "debug": bool(app.debug),
            "blueprints": registered,
        }

    # -------------------------
    # Errores => JSON
    # -------------------------
    @app.errorhandler(SettlementError)
    def settlement_error(e: SettlementError):
        db.session.rollback()
        if e.operator_only:
            app.logger.error("🔥 %s en %s %s: %s", e.code, request.method, request.path, e, exc_info=True)
        else:
            app.logger.info("%s en %s %s: %s", e.code, request.method, request.path, e)
        return jsonify(e.to_dict()), e.http_status

    @app.errorhandler(404)
    def not_found(_e):
        return jsonify({"ok": False, "error": "not_found", "path": request.path}), 404

    @app.errorhandler(405)
    def method_not_allowed(_e):
        return jsonify({"ok": False, "error": "method_not_allowed", "path": request.path}), 405

    @app.errorhandler(500)
    def server_error(e):
        app.logger.exception("🔥 Error 500: %s", e)
        return jsonify({"ok": False, "error": "server_error"}), 500

    @app.errorhandler(HTTPException)
    def http_error(e: HTTPException):
        return jsonify({"ok": False, "error": (e.name or "http_error").lower().replace(" ", "_")}), e.code or 500

    # -------------------------
    # CLI helpers
    # -------------------------
    @app.cli.command("create-tables")
    def cli_create_tables():
        """Crea tablas en DB (local rápido)."""
        db.create_all()
        click.echo("✅ Tablas creadas")

    @app.cli.command("lift-expired-bans")
    def cli_lift_expired_bans():
        """Levanta baneos de afiliados vencidos."""
        n = app.extensions["settlement"].affiliates.lift_expired_bans()
        click.echo(f"✅ {n} afiliado(s) reactivado(s)")

    @app.cli.command("balance")
    @click.argument("party_type")
    @click.argument("party_id")
    @click.option("--currency", default=None)
    def cli_balance(party_type: str, party_id: str, currency: Optional[str]):
        """Balance / reservado / disponible de una parte."""
        cur = currency or app.config.get("DEFAULT_CURRENCY", "USD")
        view: Dict[str, Any] = app.extensions["settlement"].queries.balance(party_type, party_id, cur)
        click.echo(view)

    @app.cli.command("submit-payout")
    @click.argument("public_id")
    def cli_submit_payout(public_id: str):
        """Reintenta el transfer de un payout en estado requested."""
        payout = app.extensions["settlement"].payouts.submit(public_id)
        click.echo(payout.to_dict())

    return app


__all__ = ["create_app", "db"]
