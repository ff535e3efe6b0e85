from __future__ import annotations

import json
import logging
import os

logger = logging.getLogger(__name__)


class JsonlReceiver:
    """Appends each notification payload as one JSON line."""

    def __init__(self, path: str = "data/notifications.jsonl", send_resolved: bool = True) -> None:
        self.path = path
        self.send_resolved = send_resolved

    def send(self, notification) -> bool:
        parent = os.path.dirname(self.path)
        try:
            if parent:
                os.makedirs(parent, exist_ok=True)
            with open(self.path, "a", encoding="utf-8") as f:
                f.write(json.dumps(notification.to_payload(), ensure_ascii=False) + "\n")
        except OSError as e:
            logger.warning("[jsonl] cannot write %s: %s", self.path, e)
            return False
        return True


class LogReceiver:
    def __init__(self, send_resolved: bool = True, level: int = logging.WARNING) -> None:
        self.send_resolved = send_resolved
        self.level = level

    def send(self, notification) -> bool:
        for a in notification.alerts:
            logger.log(
                self.level,
                "[ALERT] %s %s %s %s",
                a.status(notification.timestamp),
                a.name,
                a.fingerprint,
                a.annotations.get("summary", ""),
            )
        return True
