"""
Health monitoring for shadowfuzz campaigns.

Records harness-level adverse events (spawn failures, unsatisfiable
schemas, exhausted minimization budgets, timeout streaks, truncated output)
to a JSONL log file. Detected toolchain bugs are findings, not health
events, and are not recorded here.

The HealthMonitor never raises: a broken health log must not abort a
campaign.
"""

import json
import threading
from datetime import datetime, timezone
from pathlib import Path
from typing import Any


# Threshold for consecutive timeout warnings
CONSECUTIVE_TIMEOUT_THRESHOLD = 5


class HealthMonitor:
    """Track and record adverse harness events.

    Writes events to a JSONL log file and keeps in-memory counters. Safe to
    share between worker threads.
    """

    def __init__(self, log_path: Path | None) -> None:
        """Initialize the HealthMonitor.

        Args:
            log_path: Path to the JSONL health events log file, or None to
                only keep the in-memory counters.
        """
        self.log_path = log_path
        self.counters: dict[str, int] = {}
        self._lock = threading.Lock()

        # State for consecutive timeout tracking
        self._timeout_key: str | None = None
        self._timeout_streak: int = 0

    def _write_event(self, category: str, event: str, **kwargs: Any) -> None:
        """Append a single event to the JSONL log.

        Args:
            category: Event category (generation, execution, minimization, corpus).
            event: Event type name.
            **kwargs: Additional event-specific fields.
        """
        record: dict[str, Any] = {
            "ts": datetime.now(timezone.utc).isoformat(),
            "cat": category,
            "event": event,
        }
        record.update(kwargs)
        with self._lock:
            if self.log_path is not None:
                try:
                    with open(self.log_path, "a", encoding="utf-8") as f:
                        f.write(json.dumps(record, default=str) + "\n")
                except OSError:
                    pass  # Never abort a campaign for a health event

            counter_key = f"{category}.{event}"
            self.counters[counter_key] = self.counters.get(counter_key, 0) + 1

    # =========================================================================
    # Generation Events
    # =========================================================================

    def record_precondition_unsatisfiable(self, schema: str) -> None:
        """Record a schema whose constructor enables no operation."""
        self._write_event("generation", "precondition_unsatisfiable", schema=schema)

    # =========================================================================
    # Execution Events
    # =========================================================================

    def record_spawn_failure(self, backend: str, error: str, test_id: str | None = None) -> None:
        self._write_event(
            "execution",
            "spawn_failure",
            backend=backend,
            error=error,
            test_id=test_id,
        )

    def record_output_truncated(self, backend: str, test_id: str | None, stream: str) -> None:
        self._write_event(
            "execution",
            "output_truncated",
            backend=backend,
            test_id=test_id,
            stream=stream,
        )

    def record_timeout(self, key: str) -> None:
        """Record a timeout and track consecutive streaks per schema.

        Writes a consecutive_timeouts event when the streak for a single
        schema reaches CONSECUTIVE_TIMEOUT_THRESHOLD.
        """
        with self._lock:
            if key == self._timeout_key:
                self._timeout_streak += 1
            else:
                self._timeout_key = key
                self._timeout_streak = 1
            streak = self._timeout_streak

        if streak == CONSECUTIVE_TIMEOUT_THRESHOLD:
            self._write_event("execution", "consecutive_timeouts", schema=key, count=streak)

    def reset_timeout_streak(self) -> None:
        """Reset the timeout streak (call after a non-timeout result)."""
        with self._lock:
            self._timeout_streak = 0
            self._timeout_key = None

    def record_flaky_finding(self, test_id: str, failure_class: str, reproduced: int, runs: int) -> None:
        """Record a failure that did not reproduce on confirmation runs."""
        self._write_event(
            "execution",
            "flaky_finding",
            test_id=test_id,
            failure_class=failure_class,
            reproduced=reproduced,
            runs=runs,
        )

    # =========================================================================
    # Minimization and Corpus Events
    # =========================================================================

    def record_minimization_budget_exceeded(self, test_id: str, attempts: int, length: int) -> None:
        self._write_event(
            "minimization",
            "budget_exceeded",
            test_id=test_id,
            attempts=attempts,
            best_length=length,
        )

    def record_corpus_write_failure(self, signature: str, error: str) -> None:
        self._write_event("corpus", "write_failure", signature=signature[:16], error=error)

    # =========================================================================
    # Summary
    # =========================================================================

    def get_summary(self) -> dict[str, int]:
        """Return a copy of the in-memory event counters.

        Returns:
            Dict mapping "category.event" keys to occurrence counts.
        """
        with self._lock:
            return dict(self.counters)
