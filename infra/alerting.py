"""Operator alerting for liquidation failures and stuck positions."""

from __future__ import annotations

import hashlib
import json
import logging
import os
import threading
import time
from collections import deque
from dataclasses import dataclass
from enum import Enum
from typing import Any, Deque, Dict, List, Optional

import requests

logger = logging.getLogger(__name__)

SOURCE_NAME = "lp-autopilot"


class AlertSeverity(Enum):
    INFO = 10
    WARNING = 20
    CRITICAL = 30

    @property
    def label(self) -> str:
        return self.name.lower()

    @classmethod
    def from_string(cls, value: str, default: Optional["AlertSeverity"] = None) -> "AlertSeverity":
        fallback = default or cls.WARNING
        key = (value or "").strip().upper()
        return cls.__members__.get(key, fallback)


@dataclass
class AlertConfig:
    enabled: bool
    webhook_url: Optional[str]
    min_severity: AlertSeverity
    dry_run: bool
    timeout: float = 5.0
    dedupe_seconds: float = 60.0
    history_size: int = 200


@dataclass
class SentAlert:
    """An alert that passed the severity floor and dedupe window."""
    severity: AlertSeverity
    title: str
    message: str
    context: Dict[str, Any]
    sent_at: float


def _resolve_webhook(raw: Dict[str, Any]) -> Optional[str]:
    url = raw.get("webhook_url") or ""
    if "${" in url:
        url = os.path.expandvars(url)
    if not url or "${" in url:
        url = os.getenv(raw.get("webhook_env", "ALERT_WEBHOOK_URL"), "")
    return url or None


class AlertService:
    """
    Notify operators about events that need a human.

    - Severity floor: alerts below `min_severity` are dropped
    - Deduplication: same severity/title/message within `dedupe_seconds` is suppressed
    - Dry run: alerts are logged instead of posted
    - Recent history kept in memory for healthchecks and tests
    """

    def __init__(self, config: AlertConfig) -> None:
        self._config = config
        self._active = bool(config.enabled and (config.webhook_url or config.dry_run))
        if config.enabled and not self._active:
            logger.warning("Alerts enabled without a webhook URL or dry_run; alerting is off")

        self._lock = threading.Lock()
        self._seen_at: Dict[str, float] = {}
        self._history: Deque[SentAlert] = deque(maxlen=config.history_size)

    @classmethod
    def from_config(cls, enabled: bool, raw_config: Optional[Dict[str, Any]]) -> "AlertService":
        raw = raw_config or {}
        return cls(AlertConfig(
            enabled=enabled,
            webhook_url=_resolve_webhook(raw),
            min_severity=AlertSeverity.from_string(raw.get("min_severity", "warning")),
            dry_run=bool(raw.get("dry_run", False)),
            timeout=float(raw.get("timeout_seconds", 5.0)),
            dedupe_seconds=float(raw.get("dedupe_seconds", 60.0)),
        ))

    def is_enabled(self) -> bool:
        return self._active

    def notify(
        self,
        severity: AlertSeverity,
        title: str,
        message: str,
        context: Optional[Dict[str, Any]] = None,
    ) -> bool:
        """
        Send an alert unless filtered or deduped.

        Returns:
            True if the alert was delivered (or logged in dry run)
        """
        if not self._active or severity.value < self._config.min_severity.value:
            return False

        key = hashlib.sha256(f"{severity.name}\x1f{title}\x1f{message}".encode("utf-8")).hexdigest()
        sent_at = time.monotonic()
        with self._lock:
            expired = [k for k, seen in self._seen_at.items() if sent_at - seen > self._config.dedupe_seconds]
            for k in expired:
                del self._seen_at[k]
            previous = self._seen_at.get(key)
            if previous is not None and sent_at - previous <= self._config.dedupe_seconds:
                logger.debug("Suppressed duplicate alert %r (%s)", title, key[:8])
                return False
            self._seen_at[key] = sent_at
            self._history.append(SentAlert(severity, title, message, dict(context or {}), sent_at))

        if self._config.dry_run:
            logger.warning("ALERT %s: %s (%s) %s", severity.label, title, message, context or {})
            return True
        return self._post(self.render(severity, title, message, context))

    def recent_alerts(self, min_severity: AlertSeverity = AlertSeverity.INFO) -> List[SentAlert]:
        with self._lock:
            return [alert for alert in self._history if alert.severity.value >= min_severity.value]

    @staticmethod
    def render(
        severity: AlertSeverity,
        title: str,
        message: str,
        context: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        """Webhook body: a one-line `text` for chat hooks plus structured fields."""
        parts = [f"[{severity.name}] {title}"]
        if message:
            parts.append(message)
        if context:
            parts.append("context=" + json.dumps(context, sort_keys=True, default=str))
        return {
            "text": " | ".join(parts),
            "source": SOURCE_NAME,
            "severity": severity.label,
            "title": title,
            "message": message,
            "context": json.loads(json.dumps(context or {}, default=str)),
        }

    def _post(self, body: Dict[str, Any]) -> bool:
        try:
            resp = requests.post(self._config.webhook_url, json=body, timeout=self._config.timeout)
            resp.raise_for_status()
        except requests.RequestException as exc:
            logger.error("Alert webhook delivery failed for %r: %s", body.get("title"), exc)
            return False
        return True


__all__ = ["AlertService", "AlertSeverity", "AlertConfig", "SentAlert"]
