from __future__ import annotations

import os
from typing import Any, Dict, Optional


# =============================================================================
# Utils
# =============================================================================

_TRUTHY = {"1", "true", "yes", "y", "on"}
_FALSY = {"0", "false", "no", "n", "off"}


def truthy(value: Optional[str], default: bool = False) -> bool:
    if value is None:
        return default
    v = value.strip().lower()
    if v in _TRUTHY:
        return True
    if v in _FALSY:
        return False
    return default


def env_str(key: str, default: str = "") -> str:
    return (os.getenv(key) or default).strip()


def env_int(key: str, default: int) -> int:
    raw = os.getenv(key)
    if raw is None:
        return default
    try:
        return int(raw.strip())
    except ValueError:
        return default


def env_float(key: str, default: float) -> float:
    raw = os.getenv(key)
    if raw is None:
        return default
    try:
        return float(raw.strip())
    except ValueError:
        return default


def normalize_database_url(raw: Optional[str]) -> str:
    """
    Render suele entregar DATABASE_URL con 'postgres://'
    SQLAlchemy espera 'postgresql://'
    """
    if not raw or not raw.strip():
        return "sqlite:///settlement_local.db"

    url = raw.strip()
    if url.startswith("postgres://"):
        url = url.replace("postgres://", "postgresql://", 1)

    return url


# =============================================================================
# Config Base
# =============================================================================

class BaseConfig:
    """
    Configuración base del ledger de liquidaciones.
    - Segura por defecto
    - Ajustable por env vars
    """

    # -------------------------------------------------------------------------
    # Entorno
    # -------------------------------------------------------------------------
    ENV: str = env_str("FLASK_ENV", "production").lower()
    DEBUG: bool = False
    TESTING: bool = False

    HOST: str = env_str("HOST", "0.0.0.0")
    PORT: int = env_int("PORT", 5000)

    SECRET_KEY: str = env_str("SECRET_KEY", "dev_settlement_fallback")
    JSON_SORT_KEYS: bool = False
    TRUST_PROXY_HEADERS: bool = truthy(os.getenv("TRUST_PROXY_HEADERS"), default=False)
    AUTO_CREATE_TABLES: bool = False

    # -------------------------------------------------------------------------
    # Logging
    # -------------------------------------------------------------------------
    LOG_LEVEL: str = env_str("LOG_LEVEL", "INFO").upper()

    # -------------------------------------------------------------------------
    # Database (SQLAlchemy)
    # -------------------------------------------------------------------------
    DATABASE_URL: str = normalize_database_url(os.getenv("DATABASE_URL"))
    SQLALCHEMY_DATABASE_URI: str = DATABASE_URL
    SQLALCHEMY_TRACK_MODIFICATIONS: bool = False

    SQLALCHEMY_ENGINE_OPTIONS: Dict[str, Any] = {
        "pool_pre_ping": True,
        "pool_recycle": env_int("DB_POOL_RECYCLE", 280),
        "pool_size": env_int("DB_POOL_SIZE", 5),
        "max_overflow": env_int("DB_MAX_OVERFLOW", 10),
    }

    # -------------------------------------------------------------------------
    # Commission policy
    # BRAND_RATE_* = parte de la marca sobre el bruto (la plataforma se queda 1 - rate)
    # -------------------------------------------------------------------------
    DEFAULT_CURRENCY: str = env_str("DEFAULT_CURRENCY", "USD").upper()
    BRAND_RATE_DEFAULT: str = env_str("BRAND_RATE_DEFAULT", "0.50")
    BRAND_RATE_MIN: str = env_str("BRAND_RATE_MIN", "0.20")
    BRAND_RATE_MAX: str = env_str("BRAND_RATE_MAX", "0.50")

    REFERRAL_RATE: str = env_str("REFERRAL_RATE", "0.05")
    # 0 = sin vencimiento (comportamiento observado en producción)
    REFERRAL_LIFETIME_DAYS: int = env_int("REFERRAL_LIFETIME_DAYS", 0)
    REFERRAL_CREDIT_PENDING: bool = truthy(os.getenv("REFERRAL_CREDIT_PENDING"), default=False)

    AFFILIATE_BAN_DAYS_DEFAULT: int = env_int("AFFILIATE_BAN_DAYS_DEFAULT", 7)

    # -------------------------------------------------------------------------
    # Payouts
    # -------------------------------------------------------------------------
    PAYOUT_MIN_AMOUNT_CENTS: int = env_int("PAYOUT_MIN_AMOUNT_CENTS", 100)
    PAYOUT_MAX_ATTEMPTS: int = env_int("PAYOUT_MAX_ATTEMPTS", 3)
    PAYOUT_BACKOFF_BASE_SEC: float = env_float("PAYOUT_BACKOFF_BASE_SEC", 0.5)
    PAYOUT_BACKOFF_CAP_SEC: float = env_float("PAYOUT_BACKOFF_CAP_SEC", 8.0)
    PAYOUT_CLAIM_LEASE_SEC: int = env_int("PAYOUT_CLAIM_LEASE_SEC", 600)

    # -------------------------------------------------------------------------
    # Stripe (transfers + webhooks)
    # -------------------------------------------------------------------------
    STRIPE_SECRET_KEY: str = env_str("STRIPE_SECRET_KEY", "")
    STRIPE_WEBHOOK_SECRET: str = env_str("STRIPE_WEBHOOK_SECRET", "")
    STRIPE_API_BASE: str = env_str("STRIPE_API_BASE", "https://api.stripe.com").rstrip("/")
    GATEWAY_TIMEOUT_SEC: float = env_float("GATEWAY_TIMEOUT_SEC", 20.0)

    # -------------------------------------------------------------------------
    # Webhooks propios (HMAC SHA256 hex en X-Signature)
    # -------------------------------------------------------------------------
    ORDER_WEBHOOK_SECRET: str = env_str("ORDER_WEBHOOK_SECRET", "")
    TRANSFER_WEBHOOK_SECRET: str = env_str("TRANSFER_WEBHOOK_SECRET", "")
    WEBHOOK_ALLOW_UNSIGNED: bool = False

    # -------------------------------------------------------------------------
    # Helpers
    # -------------------------------------------------------------------------
    @classmethod
    def is_production(cls) -> bool:
        return cls.ENV == "production"

    @classmethod
    def is_development(cls) -> bool:
        return cls.ENV == "development"


class DevelopmentConfig(BaseConfig):
    ENV = "development"
    DEBUG = True
    LOG_LEVEL = env_str("LOG_LEVEL", "DEBUG").upper()

    # SQLite/Dev: pool simple
    SQLALCHEMY_ENGINE_OPTIONS = {"pool_pre_ping": True}
    AUTO_CREATE_TABLES = truthy(os.getenv("AUTO_CREATE_TABLES"), default=True)

    # En dev se aceptan webhooks sin firma si no hay secret configurado
    WEBHOOK_ALLOW_UNSIGNED = truthy(os.getenv("WEBHOOK_ALLOW_UNSIGNED"), default=True)


class TestingConfig(BaseConfig):
    ENV = "testing"
    TESTING = True
    DEBUG = False
    LOG_LEVEL = "WARNING"

    SQLALCHEMY_DATABASE_URI = "sqlite://"
    SQLALCHEMY_ENGINE_OPTIONS: Dict[str, Any] = {}

    PAYOUT_BACKOFF_BASE_SEC = 0.0
    PAYOUT_BACKOFF_CAP_SEC = 0.0
    WEBHOOK_ALLOW_UNSIGNED = False


class ProductionConfig(BaseConfig):
    ENV = "production"
    DEBUG = False
    LOG_LEVEL = env_str("LOG_LEVEL", "INFO").upper()

    # En producción: secret key real (sin fallback)
    SECRET_KEY = env_str("SECRET_KEY", "")
    WEBHOOK_ALLOW_UNSIGNED = False


def get_config(env_name: Optional[str] = None):
    """
    Devuelve la clase correcta.
    Prioridad:
      1) parámetro env_name
      2) ENV / FLASK_ENV
    """
    env = (env_name or env_str("ENV", "") or env_str("FLASK_ENV", "production")).lower()
    if env in {"development", "dev"}:
        return DevelopmentConfig
    if env in {"testing", "test"}:
        return TestingConfig
    return ProductionConfig


config = {
    "development": DevelopmentConfig,
    "testing": TestingConfig,
    "production": ProductionConfig,
}
