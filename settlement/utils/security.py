from __future__ import annotations

import hashlib
import hmac
from typing import Any


def hmac_sha256_hex(secret: str, body: bytes) -> str:
    return hmac.new(secret.encode("utf-8"), msg=body or b"", digestmod=hashlib.sha256).hexdigest()


def hmac_ok(secret: str, body: bytes, provided: str, *, allow_unsigned: bool = False) -> bool:
    """
    Firma HMAC-SHA256 (hex) sobre el raw body.
    Sin secret configurado solo se acepta si allow_unsigned (dev/testing).
    """
    if not secret:
        return bool(allow_unsigned)
    if not provided:
        return False
    mac = hmac_sha256_hex(secret, body)
    return hmac.compare_digest(mac, provided.strip().lower())


def safe_str(v: Any, max_len: int) -> str:
    s = "" if v is None else str(v).replace("\x00", "").strip()
    if len(s) > max_len:
        s = s[:max_len]
    return s
