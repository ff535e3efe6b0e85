from __future__ import annotations

import logging
import time
from typing import Callable, Dict, Optional

import httpx

logger = logging.getLogger(__name__)


class WebhookReceiver:
    """POSTs the Alertmanager-style JSON body, retrying transient failures with backoff."""

    def __init__(
        self,
        url: str,
        send_resolved: bool = True,
        max_attempts: int = 3,
        timeout: float = 10.0,
        headers: Optional[Dict[str, str]] = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.url = url
        self.send_resolved = send_resolved
        self.max_attempts = max(1, max_attempts)
        self.timeout = timeout
        self.headers = dict(headers or {})
        self._sleep = sleep

    def send(self, notification) -> bool:
        payload = notification.to_payload()
        for i in range(self.max_attempts):
            try:
                with httpx.Client(timeout=self.timeout, headers=self.headers) as client:
                    resp = client.post(self.url, json=payload)
                if 200 <= resp.status_code < 300:
                    return True
                # 4xx other than 429 won't get better on retry
                if 400 <= resp.status_code < 500 and resp.status_code != 429:
                    logger.warning("[webhook] %s rejected notification: HTTP %s %s", self.url, resp.status_code, resp.text[:200])
                    return False
                reason = f"HTTP {resp.status_code}"
            except httpx.HTTPError as e:
                reason = str(e) or e.__class__.__name__

            if i + 1 < self.max_attempts:
                sleep_s = 2 ** i
                logger.info("[webhook] Retry %d/%d for %s after %ss due to: %s", i + 1, self.max_attempts, self.url, sleep_s, reason)
                self._sleep(sleep_s)
            else:
                logger.warning("[webhook] giving up on %s after %d attempts: %s", self.url, self.max_attempts, reason)
        return False
