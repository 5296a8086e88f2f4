"""Notification boundary: forward follow events to a webhook."""

from __future__ import annotations

import hashlib
import json
import logging
import os
import socket
import time
import urllib.error
import urllib.request
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Optional

from core.models import EventKind, FollowEvent

logger = logging.getLogger(__name__)


class AlertSeverity(Enum):
    INFO = 10
    WARNING = 20
    CRITICAL = 30

    def __str__(self) -> str:  # pragma: no cover - trivial
        return self.name.lower()

    @classmethod
    def from_string(cls, value: str, default: Optional["AlertSeverity"] = None) -> "AlertSeverity":
        if not value:
            return default or cls.WARNING
        normalized = value.strip().lower()
        for member in cls:
            if member.name.lower() == normalized:
                return member
        return default or cls.WARNING


EVENT_SEVERITY: Dict[EventKind, AlertSeverity] = {
    EventKind.ENTER: AlertSeverity.INFO,
    EventKind.EXIT: AlertSeverity.INFO,
    EventKind.REPLACE: AlertSeverity.INFO,
    EventKind.TP_SL_CLOSE: AlertSeverity.INFO,
    EventKind.PROFIT_EXIT: AlertSeverity.INFO,
    EventKind.MANUAL_CLOSE: AlertSeverity.WARNING,
    EventKind.REPLACE_PARTIAL: AlertSeverity.WARNING,
    EventKind.REJECTED: AlertSeverity.WARNING,
}


@dataclass
class AlertConfig:
    enabled: bool
    webhook_url: Optional[str]
    min_severity: AlertSeverity
    dry_run: bool
    timeout: float = 5.0
    dedupe_seconds: float = 300.0  # Identical alerts within this window are sent once


class AlertService:
    """
    Send follow events to an external notifier.

    Delivery is best effort: failures are logged and never raised, so the
    follow tick does not depend on the notifier being up. Identical alerts
    (e.g. the same rejection every tick) are deduplicated.
    """

    def __init__(self, config: AlertConfig) -> None:
        self._config = config
        self._enabled = bool(config.enabled and (config.webhook_url or config.dry_run))
        if config.enabled and not self._enabled:
            logger.warning("Alerting enabled but no webhook URL set; disabling alerts")
        self._last_sent: Dict[str, float] = {}
        self._last_cleanup = 0.0

    @classmethod
    def from_config(cls, enabled: bool, raw_config: Optional[Dict[str, Any]]) -> "AlertService":
        raw_config = raw_config or {}

        webhook_url = raw_config.get("webhook_url")
        if webhook_url and "${" in webhook_url:
            webhook_url = os.path.expandvars(webhook_url)
        if not webhook_url:
            env_key = raw_config.get("webhook_env", "ALERT_WEBHOOK_URL")
            webhook_url = os.getenv(env_key, "")

        config = AlertConfig(
            enabled=enabled,
            webhook_url=webhook_url or None,
            min_severity=AlertSeverity.from_string(raw_config.get("min_severity", "info"),
                                                   default=AlertSeverity.INFO),
            dry_run=bool(raw_config.get("dry_run", False)),
            timeout=float(raw_config.get("timeout_seconds", 5.0)),
            dedupe_seconds=float(raw_config.get("dedupe_seconds", 300.0)),
        )
        return cls(config)

    def is_enabled(self) -> bool:
        return self._enabled

    def notify_event(self, event: FollowEvent) -> None:
        severity = EVENT_SEVERITY.get(event.kind, AlertSeverity.INFO)
        title = f"{event.kind.value.upper()} {event.symbol}"
        self.notify(severity, title, event.basis, event.to_dict())

    def notify(
        self,
        severity: AlertSeverity,
        title: str,
        message: str,
        context: Optional[Dict[str, Any]] = None,
    ) -> None:
        if not self._enabled:
            return
        if severity.value < self._config.min_severity.value:
            return

        fingerprint = hashlib.sha256(f"{severity.name}|{title}|{message}".encode("utf-8")).hexdigest()
        now = time.monotonic()
        self._cleanup_old_alerts(now)
        last = self._last_sent.get(fingerprint)
        if last is not None and now - last < self._config.dedupe_seconds:
            logger.debug(f"Alert deduped: {title}")
            return
        self._last_sent[fingerprint] = now

        self._send_alert(severity, title, message, context)

    def _cleanup_old_alerts(self, now: float) -> None:
        """Drop fingerprints past the dedupe window to prevent a memory leak."""
        # Cleanup every 60s
        if now - self._last_cleanup < 60.0:
            return
        self._last_cleanup = now

        expired = [
            fingerprint
            for fingerprint, sent_at in self._last_sent.items()
            if now - sent_at >= self._config.dedupe_seconds
        ]
        for fingerprint in expired:
            del self._last_sent[fingerprint]
        if expired:
            logger.debug(f"Pruned {len(expired)} expired alert fingerprint(s)")

    def _send_alert(
        self,
        severity: AlertSeverity,
        title: str,
        message: str,
        context: Optional[Dict[str, Any]],
    ) -> None:
        payload = {
            "severity": severity.name.lower(),
            "title": title,
            "message": message,
            "context": context or {},
            "source": "agent-mirror",
        }

        if self._config.dry_run:
            logger.info("[ALERT:%s] %s - %s | %s", severity.name, title, message, context or {})
            return

        request = urllib.request.Request(
            self._config.webhook_url,
            data=json.dumps(payload, default=str).encode("utf-8"),
            headers={"Content-Type": "application/json"},
        )
        try:
            with urllib.request.urlopen(request, timeout=self._config.timeout) as response:
                if response.status >= 400:
                    logger.error("Alert webhook returned HTTP %s for '%s'", response.status, title)
        except (urllib.error.URLError, socket.timeout, OSError) as exc:
            logger.error("Failed to deliver alert '%s': %s", title, exc)
