from __future__ import annotations

import logging

import requests

logger = logging.getLogger(__name__)


class Notifier:
    """Posts operator notifications to a chat webhook. Never raises."""

    def __init__(self, webhook_url: str = "", timeout: float = 5.0):
        self.webhook_url = webhook_url
        self.timeout = timeout

    def notify(self, msg: str) -> bool:
        if not self.webhook_url:
            return False
        try:
            resp = requests.post(self.webhook_url, json={"content": msg}, timeout=self.timeout)
            resp.raise_for_status()
        except requests.RequestException as e:
            logger.warning(f"Webhook notify failed: {e}")
            return False
        return True
