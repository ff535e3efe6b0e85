from __future__ import annotations

import logging
import os
from typing import Optional

import httpx

logger = logging.getLogger(__name__)

_SEVERITY_EMOJI = {
    "critical": "🔴",
    "warning": "🟡",
    "info": "🔵",
}
_RESOLVED_EMOJI = "🟢"

_API_BASE = "https://api.telegram.org/bot{token}/sendMessage"

# Telegram rejects messages over 4096 chars
_MAX_LEN = 4000


def format_message(notification) -> str:
    """One message per notification: header line, then one line per alert."""
    common = notification.common_labels
    severity = common.get("severity", "")
    if notification.status == "resolved":
        emoji = _RESOLVED_EMOJI
    else:
        emoji = _SEVERITY_EMOJI.get(severity, "⚪")

    name = common.get("alertname") or ", ".join(sorted({a.name for a in notification.alerts}))
    firing = notification.firing()
    resolved = notification.resolved()
    lines = [f"{emoji} [{notification.status.upper()}:{len(firing)}] {name}"]
    group = " ".join(f"{k}={v}" for k, v in sorted(notification.group_labels.items()))
    if group:
        lines.append(group)

    for a in firing + resolved:
        mark = "✅" if a in resolved else "🔥"
        summary = a.annotations.get("summary") or a.annotations.get("description") or ""
        where = a.labels.get("instance") or a.labels.get("job") or ""
        parts = [mark, a.name]
        if where:
            parts.append(f"@ {where}")
        if summary:
            parts.append(f": {summary}")
        lines.append(" ".join(parts))

    text = "\n".join(lines)
    if len(text) > _MAX_LEN:
        text = text[: _MAX_LEN - 1] + "…"
    return text


def send_message(text: str, token: Optional[str] = None, chat_id: Optional[str] = None) -> bool:
    """
    Send one text message to Telegram.
    Credentials fall back to TELEGRAM_BOT_TOKEN / TELEGRAM_CHAT_ID; if either
    is missing the send is skipped. Returns True only on HTTP 200.
    """
    token = (token or os.getenv("TELEGRAM_BOT_TOKEN", "")).strip()
    chat_id = (chat_id or os.getenv("TELEGRAM_CHAT_ID", "")).strip()

    if not token or not chat_id:
        return False

    url = _API_BASE.format(token=token)
    try:
        with httpx.Client(timeout=10) as client:
            resp = client.post(url, json={"chat_id": chat_id, "text": text})
            if resp.status_code == 200:
                return True
            logger.warning("[telegram] send failed HTTP %s: %s", resp.status_code, resp.text[:200])
            return False
    except httpx.HTTPError as e:
        logger.warning("[telegram] send error: %s", e)
        return False


class TelegramReceiver:
    def __init__(self, token: Optional[str] = None, chat_id: Optional[str] = None, send_resolved: bool = True) -> None:
        self.token = token
        self.chat_id = chat_id
        self.send_resolved = send_resolved

    def send(self, notification) -> bool:
        return send_message(format_message(notification), token=self.token, chat_id=self.chat_id)
