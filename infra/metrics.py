"""Prometheus-backed metrics hooks for the allocation and guardian loops."""

from __future__ import annotations

import logging
import threading
from collections import Counter as Tally
from typing import Dict, Mapping, Optional

from prometheus_client import CollectorRegistry, Counter, Gauge, Summary, start_http_server

logger = logging.getLogger(__name__)


class MetricsRecorder:
    """
    Expose loop stats via Prometheus.

    Singleton pattern so both scheduled tasks report into one registry.
    Counts are also tallied in memory so they can be inspected without
    scraping (healthchecks, tests).
    """
    _instance: Optional['MetricsRecorder'] = None
    _initialized: bool = False

    def __new__(cls, enabled: bool = True, port: int = 9100):
        """Ensure only one MetricsRecorder instance exists."""
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __init__(self, enabled: bool = True, port: int = 9100) -> None:
        if self.__class__._initialized:
            return

        self._enabled = bool(enabled)
        self._port = port
        self._started = False
        self.__class__._initialized = True

        self._lock = threading.Lock()
        self._tally: Tally = Tally()
        self._last_durations: Dict[str, float] = {}

        self.registry = CollectorRegistry()
        self._task_summary = Summary(
            "lp_task_duration_seconds",
            "Duration of a scheduled task run",
            labelnames=("task",),
            registry=self.registry,
        )
        self._sweep_counter = Counter(
            "lp_guardian_sweeps_total",
            "Guardian sweeps by outcome",
            labelnames=("outcome",),
            registry=self.registry,
        )
        self._liquidation_counter = Counter(
            "lp_liquidations_total",
            "Per-position liquidation attempts by outcome",
            labelnames=("outcome",),
            registry=self.registry,
        )
        self._decision_counter = Counter(
            "lp_allocation_decisions_total",
            "Allocation decisions by outcome",
            labelnames=("outcome",),
            registry=self.registry,
        )
        self._action_counter = Counter(
            "lp_rebalance_actions_total",
            "Executed rebalance actions",
            labelnames=("action", "status"),
            registry=self.registry,
        )
        self._retry_counter = Counter(
            "lp_chain_retries_total",
            "Chain calls retried after a transient failure",
            labelnames=("operation",),
            registry=self.registry,
        )
        self._positions_gauge = Gauge(
            "lp_positions",
            "Positions by lifecycle status",
            labelnames=("status",),
            registry=self.registry,
        )

    @classmethod
    def _reset_for_testing(cls) -> None:
        """
        Reset singleton state for testing.
        WARNING: Only call from test fixtures/teardown.
        """
        cls._instance = None
        cls._initialized = False

    def start(self) -> None:
        if not self._enabled or self._started:
            return

        ports_to_try = [self._port, self._port + 1, self._port + 2]
        last_error = None
        for port in ports_to_try:
            try:
                start_http_server(port, registry=self.registry)
            except OSError as exc:
                last_error = exc
                logger.debug("Port %s in use, trying next port...", port)
                continue
            self._started = True
            if port != self._port:
                logger.warning("Port %s in use, bound metrics exporter to %s instead", self._port, port)
                self._port = port
            logger.info("Prometheus metrics exporter listening on 0.0.0.0:%s", self._port)
            return

        self._enabled = False
        logger.error("Failed to start metrics exporter after trying ports %s: %s", ports_to_try, last_error)

    def is_enabled(self) -> bool:
        return self._enabled

    def _bump(self, key: str, amount: int = 1) -> None:
        with self._lock:
            self._tally[key] += amount

    def count(self, key: str) -> int:
        with self._lock:
            return self._tally[key]

    def record_task_duration(self, task: str, duration: float) -> None:
        self._last_durations[task] = duration
        if self._enabled:
            self._task_summary.labels(task=task).observe(duration)

    def record_sweep(self, outcome: str) -> None:
        self._bump(f"sweep.{outcome}")
        if self._enabled:
            self._sweep_counter.labels(outcome=outcome).inc()

    def record_liquidation(self, outcome: str) -> None:
        """outcome: settled, pending, conflict, failed"""
        self._bump(f"liquidation.{outcome}")
        if self._enabled:
            self._liquidation_counter.labels(outcome=outcome).inc()

    def record_decision(self, outcome: str) -> None:
        """outcome: executed, advisory, empty, error"""
        self._bump(f"decision.{outcome}")
        if self._enabled:
            self._decision_counter.labels(outcome=outcome).inc()

    def record_action(self, action: str, status: str) -> None:
        self._bump(f"action.{action}.{status}")
        if self._enabled:
            self._action_counter.labels(action=action, status=status).inc()

    def record_chain_retry(self, operation: str) -> None:
        self._bump(f"retry.{operation}")
        if self._enabled:
            self._retry_counter.labels(operation=operation).inc()

    def record_position_counts(self, counts: Mapping[str, int]) -> None:
        if self._enabled:
            for status, value in counts.items():
                self._positions_gauge.labels(status=status).set(max(value, 0))

    def duration_snapshot(self) -> Dict[str, float]:
        return dict(self._last_durations)


__all__ = ["MetricsRecorder"]
