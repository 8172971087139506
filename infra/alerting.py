"""
perptrader Infrastructure: Alerting

Webhook notifications for conditions a human must look at: an open
position without a protective stop, a stop that could not be cancelled,
cycles that keep failing.

The same condition is re-detected every cycle, so alerts are keyed by a
fingerprint and repeats are suppressed inside a dedupe window. A condition
that is still firing after escalation_seconds is sent once more as CRITICAL.
"""

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
from typing import Any, Callable, Dict, Optional

logger = logging.getLogger(__name__)


class AlertSeverity(Enum):
    INFO = 10
    WARNING = 20
    CRITICAL = 30

    @classmethod
    def parse(cls, name: Optional[str]) -> "AlertSeverity":
        """Case-insensitive lookup; unknown or empty names fall back to WARNING."""
        try:
            return cls[(name or "").strip().upper()]
        except KeyError:
            return cls.WARNING


@dataclass
class AlertConfig:
    enabled: bool
    webhook_url: Optional[str]
    min_severity: AlertSeverity = AlertSeverity.WARNING
    dry_run: bool = False
    timeout: float = 5.0
    dedupe_seconds: float = 300.0
    escalation_seconds: float = 900.0


@dataclass
class _Occurrence:
    first_seen: float
    last_sent: float
    count: int = 1
    escalated: bool = False


def _fingerprint(severity: AlertSeverity, title: str, message: str) -> str:
    return hashlib.sha256(f"{severity.name}|{title}|{message}".encode()).hexdigest()[:16]


class AlertService:
    """Deduplicating webhook notifier. Delivery failures are logged, never raised."""

    def __init__(self, config: AlertConfig, clock: Callable[[], float] = time.monotonic) -> None:
        self.config = config
        self._clock = clock
        self._seen: Dict[str, _Occurrence] = {}
        self._enabled = config.enabled and bool(config.webhook_url or config.dry_run)
        if config.enabled and not self._enabled:
            logger.warning("Alerts enabled but no webhook URL configured; alerts are off")

    @classmethod
    def from_config(cls, enabled: bool, raw: Optional[Dict[str, Any]]) -> "AlertService":
        """Build from the monitoring.alerts section of app.yaml. The URL comes from the environment."""
        raw = raw or {}
        webhook_url = os.getenv(raw.get("webhook_env", "ALERT_WEBHOOK_URL"), "").strip()
        return cls(AlertConfig(
            enabled=bool(enabled),
            webhook_url=webhook_url or None,
            min_severity=AlertSeverity.parse(raw.get("min_severity")),
            dry_run=bool(raw.get("dry_run", False)),
            timeout=float(raw.get("timeout_seconds", 5.0)),
            dedupe_seconds=float(raw.get("dedupe_seconds", 300.0)),
            escalation_seconds=float(raw.get("escalation_seconds", 900.0)),
        ))

    def is_enabled(self) -> bool:
        return self._enabled

    def notify(self, severity: AlertSeverity, title: str, message: str,
               context: Optional[Dict[str, Any]] = None) -> bool:
        """Returns True when something went out (or was logged in dry-run)."""
        if not self._enabled or severity.value < self.config.min_severity.value:
            return False

        now = self._clock()
        key = _fingerprint(severity, title, message)
        seen = self._seen.get(key)

        if seen is None:
            self._seen[key] = _Occurrence(first_seen=now, last_sent=now)
            self._deliver(severity, title, message, context)
            return True

        seen.count += 1
        if not seen.escalated and now - seen.first_seen >= self.config.escalation_seconds:
            seen.escalated = True
            seen.last_sent = now
            self._deliver(AlertSeverity.CRITICAL, f"ESCALATED: {title}",
                          f"{message} (seen {seen.count}x)", context)
            return True

        if now - seen.last_sent < self.config.dedupe_seconds:
            logger.debug(f"Alert suppressed (duplicate within {self.config.dedupe_seconds:.0f}s): {title}")
            return False

        seen.last_sent = now
        self._deliver(severity, title, message, context)
        return True

    def resolve(self, severity: AlertSeverity, title: str, message: str) -> None:
        """Forget a condition so its next occurrence alerts immediately."""
        self._seen.pop(_fingerprint(severity, title, message), None)

    def _deliver(self, severity: AlertSeverity, title: str, message: str,
                 context: Optional[Dict[str, Any]]) -> None:
        text = format_alert_text(severity, title, message, context)
        if self.config.dry_run:
            logger.info(f"ALERT (dry-run): {text}")
            return

        request = urllib.request.Request(
            self.config.webhook_url,
            data=json.dumps({"text": text}).encode("utf-8"),
            headers={"Content-Type": "application/json"},
        )
        try:
            with urllib.request.urlopen(request, timeout=self.config.timeout) as response:
                if response.status >= 400:
                    logger.error(f"Alert webhook answered HTTP {response.status} for '{title}'")
        except (urllib.error.URLError, socket.timeout) as e:
            logger.error(f"Alert '{title}' not delivered: {e}")


def format_alert_text(severity: AlertSeverity, title: str, message: str,
                      context: Optional[Dict[str, Any]] = None) -> str:
    parts = [f"[{severity.name}] {title}", message]
    if context:
        parts.append("context=" + json.dumps(context, sort_keys=True, default=str))
    return " | ".join(p for p in parts if p)
