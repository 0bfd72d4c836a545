from __future__ import annotations

import logging
from typing import Any, Dict, Optional

import requests

from settlement.errors import GatewayUnavailableError, TransferRejectedError
from settlement.money import Money

logger = logging.getLogger("stripe_gateway")


class StripeTransferGateway:
    """
    Transfers a cuentas Stripe Connect (POST /v1/transfers).

    Un solo intento por llamada: los reintentos con backoff los hace el
    orquestador, siempre con el mismo Idempotency-Key.
    - red / 429 / 5xx  -> GatewayUnavailableError (transitorio)
    - otro 4xx         -> TransferRejectedError (permanente)
    """

    def __init__(
        self,
        secret_key: str,
        *,
        api_base: str = "https://api.stripe.com",
        timeout: float = 20.0,
        session: Optional[requests.Session] = None,
    ):
        self.secret_key = (secret_key or "").strip()
        self.api_base = (api_base or "https://api.stripe.com").rstrip("/")
        self.timeout = float(timeout)
        self.session = session or requests.Session()

    def _headers(self, idempotency_key: str) -> Dict[str, str]:
        return {
            "Authorization": f"Bearer {self.secret_key}",
            "Idempotency-Key": idempotency_key,
            "User-Agent": "MerchSettlement/1.0",
        }

    def create_transfer(
        self,
        destination_account: str,
        amount: Money,
        idempotency_key: str,
        metadata: Optional[Dict[str, str]] = None,
    ) -> str:
        if not self.secret_key:
            raise GatewayUnavailableError("STRIPE_SECRET_KEY is not configured")

        data: Dict[str, Any] = {
            "amount": amount.minor,
            "currency": amount.currency.lower(),
            "destination": destination_account,
        }
        for k, v in (metadata or {}).items():
            data[f"metadata[{k}]"] = v

        url = f"{self.api_base}/v1/transfers"
        try:
            resp = self.session.post(url, headers=self._headers(idempotency_key), data=data, timeout=self.timeout)
        except requests.RequestException as e:
            logger.warning("Stripe transfer request error: %s", e)
            raise GatewayUnavailableError(f"Stripe unreachable: {e.__class__.__name__}") from e

        if resp.status_code == 200:
            try:
                payload = resp.json()
            except ValueError as e:
                raise GatewayUnavailableError("Invalid (non JSON) response from Stripe") from e
            ref = str(payload.get("id") or "").strip()
            if not ref:
                raise GatewayUnavailableError("Stripe response without transfer id")
            logger.info("Stripe transfer %s created for %s (%s)", ref, destination_account, amount)
            return ref

        msg = self._error_message(resp)
        if resp.status_code == 429 or 500 <= resp.status_code < 600:
            logger.warning("Stripe %s on transfer: %s", resp.status_code, msg)
            raise GatewayUnavailableError(f"Stripe {resp.status_code}: {msg}")

        logger.error("Stripe rejected transfer (%s): %s", resp.status_code, msg)
        raise TransferRejectedError(f"Stripe {resp.status_code}: {msg}")

    @staticmethod
    def _error_message(resp: requests.Response) -> str:
        try:
            payload = resp.json()
        except ValueError:
            return (resp.text or "")[:300]
        err = payload.get("error") if isinstance(payload, dict) else None
        if isinstance(err, dict):
            return str(err.get("message") or err.get("code") or err)[:300]
        return str(payload)[:300]
