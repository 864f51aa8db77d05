from __future__ import annotations

import logging
import os

import requests

logger = logging.getLogger(__name__)

WEBHOOK_TIMEOUT_SEC = 5


def notify(msg: str, webhook_url: str | None = None) -> bool:
    """Post ``msg`` to the operator webhook (Discord/Slack compatible). Never raises."""
    url = webhook_url if webhook_url is not None else os.environ.get("ZONEKEEPER_WEBHOOK_URL", "")
    if not url:
        return False
    payload = {"content": msg, "text": msg}
    try:
        resp = requests.post(url, json=payload, timeout=WEBHOOK_TIMEOUT_SEC)
        resp.raise_for_status()
    except requests.RequestException as e:
        logger.warning(f"Webhook notify failed: {e}")
        return False
    return True
