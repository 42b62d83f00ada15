"""
Registry של PaymobClient לפי טנאנט.

client אחד לכל טנאנט בתהליך, כדי שה-token cache ישותף בין בקשות.
כשה-credentials של הטנאנט משתנים (api key חדש וכו') נוצר client חדש.
"""
from __future__ import annotations

import threading

from indexplus.db.models.payment_gateway_config import PaymentGatewayConfig
from indexplus.domain.services.paymob.client import PaymobClient
from indexplus.domain.services.paymob.models import GatewayCredentials

_clients: dict[str, PaymobClient] = {}
_lock = threading.Lock()


def get_paymob_client(config: PaymentGatewayConfig | GatewayCredentials) -> PaymobClient:
    credentials = (
        config if isinstance(config, GatewayCredentials) else GatewayCredentials.from_config(config)
    )
    with _lock:
        client = _clients.get(credentials.tenant_id)
        if client is None or client.credentials != credentials:
            client = PaymobClient(credentials)
            _clients[credentials.tenant_id] = client
        return client


def reset_paymob_clients() -> None:
    """ניקוי ה-registry — לבדיקות ולהחלפת event loop ב-workers"""
    with _lock:
        _clients.clear()
