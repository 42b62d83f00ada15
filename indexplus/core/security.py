"""
Webhook signature verification.

Meta:   x-hub-signature-256: sha256=<hex>  — HMAC-SHA256 על ה-body הגולמי.
Paymob: hmac (body או query)               — HMAC-SHA512 על שרשור שדות obj בסדר קבוע.

verify_* אף פעם לא זורקות: כל קלט לא תקין מחזיר False.
require_* זורקות SignatureInvalidError עבור אותו קלט.
"""
from __future__ import annotations

import hashlib
import hmac
from typing import Any

from indexplus.core.exceptions import SignatureInvalidError

META_SIGNATURE_PREFIX = "sha256="

# סדר השדות הוא חוזה של Paymob: אסור למיין / לשנות
PAYMOB_HMAC_FIELDS: tuple[str, ...] = (
    "amount_cents",
    "created_at",
    "currency",
    "error_occured",
    "has_parent_transaction",
    "id",
    "integration_id",
    "is_3d_secure",
    "is_auth",
    "is_capture",
    "is_refunded",
    "is_standalone_payment",
    "is_voided",
    "order.id",
    "owner",
    "pending",
    "source_data.pan",
    "source_data.sub_type",
    "source_data.type",
    "success",
)


def verify_meta_signature(
    raw_body: bytes,
    signature_header: str | None,
    secret: str | None,
) -> bool:
    """אימות x-hub-signature-256 של Meta בהשוואה constant-time"""
    if not secret or not signature_header:
        return False
    if not signature_header.startswith(META_SIGNATURE_PREFIX):
        return False
    try:
        received = bytes.fromhex(signature_header[len(META_SIGNATURE_PREFIX):])
    except ValueError:
        return False
    expected = hmac.new(secret.encode(), raw_body, hashlib.sha256).digest()
    return hmac.compare_digest(received, expected)


def _lookup(obj: dict[str, Any], dotted: str) -> Any:
    current: Any = obj
    for part in dotted.split("."):
        if not isinstance(current, dict):
            return None
        current = current.get(part)
    return current


def _render(value: Any) -> str:
    # Paymob מחשב את ה-HMAC בצד שלו עם ייצוג JS: true/false, null -> ""
    if value is None:
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    return str(value)


def build_paymob_hmac_message(obj: dict[str, Any]) -> str:
    return "".join(_render(_lookup(obj, field)) for field in PAYMOB_HMAC_FIELDS)


def compute_paymob_hmac(obj: dict[str, Any], secret: str) -> str:
    return hmac.new(
        secret.encode(),
        build_paymob_hmac_message(obj).encode(),
        hashlib.sha512,
    ).hexdigest()


def verify_paymob_hmac(
    obj: dict[str, Any] | None,
    received_hmac: str | None,
    secret: str | None,
) -> bool:
    """
    אימות HMAC של callback מ-Paymob.

    ההשוואה היא השוואת מחרוזות רגילה (לא constant-time) — בדיקת תקינות של
    callback ולא גבול אימות מקומי.
    """
    if not obj or not received_hmac or not secret or not isinstance(obj, dict):
        return False
    return compute_paymob_hmac(obj, secret) == received_hmac.lower()


def require_meta_signature(
    raw_body: bytes,
    signature_header: str | None,
    secret: str | None,
) -> None:
    if not verify_meta_signature(raw_body, signature_header, secret):
        raise SignatureInvalidError("meta")


def require_paymob_hmac(
    obj: dict[str, Any] | None,
    received_hmac: str | None,
    secret: str | None,
) -> None:
    if not verify_paymob_hmac(obj, received_hmac, secret):
        raise SignatureInvalidError("paymob")
