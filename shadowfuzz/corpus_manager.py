"""
Persistent corpus of known failures.

Each entry lives in ``<corpus-dir>/<signature>.json``. The signature hashes
the failure family with the operation-name sequence of the minimized test
(arguments are ignored, so two reproductions that differ only in values are
the same bug); source-only tests hash their normalized source instead.

Entries are never deleted automatically. Replay demotes entries that no
longer fail to ``resolved`` and promotes them back when they fail again;
only `CorpusManager.prune` removes a file.
"""

from __future__ import annotations

import dataclasses
import fcntl
import hashlib
import json
import logging
import os
import secrets
import threading
from concurrent.futures import ThreadPoolExecutor
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Callable, Iterator

from shadowfuzz.differential import normalize_output
from shadowfuzz.errors import CorpusWriteError
from shadowfuzz.health import HealthMonitor
from shadowfuzz.oracle import FailureOracle, Verdict
from shadowfuzz.types import (
    CorpusEntry,
    DifferentialResult,
    ExecutionResult,
    FailureClass,
    GeneratedTest,
)

logger = logging.getLogger(__name__)

LOCK_FILE_NAME = ".corpus.lock"


class ReplayVerdict(str, Enum):
    STILL_FAILING = "STILL_FAILING"
    RESOLVED = "RESOLVED"
    REGRESSED = "REGRESSED"
    STILL_RESOLVED = "STILL_RESOLVED"
    # Still fails, but in another failure family than the one recorded.
    CHANGED_CLASS = "CHANGED_CLASS"


# Verdicts that fail the replay gate.
FAILING_VERDICTS = frozenset({ReplayVerdict.REGRESSED, ReplayVerdict.CHANGED_CLASS})


@dataclass(frozen=True)
class ReplayOutcome:
    entry: CorpusEntry
    verdict: ReplayVerdict
    observed: FailureClass | None
    result: ExecutionResult
    evidence: ExecutionResult | DifferentialResult


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


def compute_signature(test: GeneratedTest, failure_class: FailureClass) -> str:
    if test.operation_sequence:
        body = "\n".join(name.strip() for name in test.operation_names)
        kind = "ops"
    else:
        body = normalize_output(test.rendered_source)
        kind = "src"
    payload = f"{failure_class.family}\n{kind}\n{body}"
    return hashlib.sha256(payload.encode("utf-8")).hexdigest()


class CorpusManager:
    """Handle all interactions with the failure corpus on disk."""

    def __init__(
        self,
        corpus_dir: str | Path,
        oracle: FailureOracle | None = None,
        workers: int = 1,
        health_monitor: HealthMonitor | None = None,
        clock: Callable[[], str] = _now,
    ) -> None:
        self.corpus_dir = Path(corpus_dir)
        self.oracle = oracle
        self.workers = max(1, workers)
        self.health_monitor = health_monitor
        self.clock = clock
        self._lock = threading.Lock()
        self.corpus_dir.mkdir(parents=True, exist_ok=True)

    def path_for(self, signature: str) -> Path:
        return self.corpus_dir / f"{signature}.json"

    @contextmanager
    def _locked(self) -> Iterator[None]:
        """Serialize writers in this process and across processes."""
        with self._lock:
            with open(self.corpus_dir / LOCK_FILE_NAME, "a") as lock_file:
                fcntl.flock(lock_file.fileno(), fcntl.LOCK_EX)
                try:
                    yield
                finally:
                    fcntl.flock(lock_file.fileno(), fcntl.LOCK_UN)

    def _write(self, entry: CorpusEntry) -> None:
        """Save an entry atomically (temp file + rename)."""
        path = self.path_for(entry.signature)
        tmp_path = path.with_suffix(f".json.tmp.{secrets.token_hex(4)}")
        try:
            with open(tmp_path, "w", encoding="utf-8") as f:
                json.dump(entry.to_dict(), f, indent=2, sort_keys=True)
            os.replace(tmp_path, path)
        except (OSError, TypeError, ValueError) as e:
            tmp_path.unlink(missing_ok=True)
            if self.health_monitor:
                self.health_monitor.record_corpus_write_failure(entry.signature, str(e))
            raise CorpusWriteError(
                f"could not write corpus entry {path.name}: {e}",
                test_id=entry.minimal_test.id,
                schema=entry.minimal_test.schema_ref,
            ) from e

    def _read(self, path: Path) -> CorpusEntry:
        with open(path, "r", encoding="utf-8") as f:
            return CorpusEntry.from_dict(json.load(f))

    def get(self, signature: str) -> CorpusEntry | None:
        path = self.path_for(signature)
        if not path.is_file():
            return None
        return self._read(path)

    def entries(self) -> list[CorpusEntry]:
        """Load every readable entry, oldest first."""
        loaded = []
        for path in sorted(self.corpus_dir.glob("*.json")):
            try:
                loaded.append(self._read(path))
            except (OSError, ValueError, KeyError) as e:
                logger.warning("[-] Skipping unreadable corpus file %s: %s", path.name, e)
        loaded.sort(key=lambda entry: (entry.first_seen, entry.signature))
        return loaded

    def __len__(self) -> int:
        return sum(1 for _ in self.corpus_dir.glob("*.json"))

    def record(self, minimal_test: GeneratedTest, failure_class: FailureClass) -> CorpusEntry:
        """Add a failure, or bump the counters of the entry it duplicates.

        Rediscovering a resolved entry marks it as regressed.
        """
        signature = compute_signature(minimal_test, failure_class)
        with self._locked():
            now = self.clock()
            existing = self.get(signature)
            if existing is None:
                entry = CorpusEntry(
                    signature=signature,
                    minimal_test=minimal_test,
                    failure_class=failure_class,
                    first_seen=now,
                    last_seen=now,
                )
                logger.info("[+] New corpus entry %s (%s)", signature[:12], failure_class.value)
            else:
                entry = dataclasses.replace(
                    existing,
                    last_seen=now,
                    occurrence_count=existing.occurrence_count + 1,
                    resolved=False,
                    regressed_at=now if existing.resolved else existing.regressed_at,
                )
                logger.info(
                    "[*] Known corpus entry %s seen again (x%d)",
                    signature[:12],
                    entry.occurrence_count,
                )
            self._write(entry)
        return entry

    def prune(self, signature: str) -> bool:
        """Delete one entry. Returns False when it did not exist."""
        with self._locked():
            path = self.path_for(signature)
            if not path.is_file():
                return False
            path.unlink()
        logger.info("[-] Pruned corpus entry %s", signature[:12])
        return True

    # ------------------------------------------------------------------
    # Replay
    # ------------------------------------------------------------------

    def _replay_one(self, entry: CorpusEntry) -> ReplayOutcome:
        assert self.oracle is not None
        verdict: Verdict = self.oracle.classify(entry.minimal_test)
        observed = verdict.failure_class
        failing = entry.failure_class.matches(observed)

        if observed is not None and not failing:
            kind = ReplayVerdict.CHANGED_CLASS
        elif failing and entry.resolved:
            kind = ReplayVerdict.REGRESSED
        elif failing:
            kind = ReplayVerdict.STILL_FAILING
        elif entry.resolved:
            kind = ReplayVerdict.STILL_RESOLVED
        else:
            kind = ReplayVerdict.RESOLVED

        evidence = verdict.evidence
        result = evidence.backend_a if isinstance(evidence, DifferentialResult) else evidence
        return ReplayOutcome(entry, kind, verdict.failure_class, result, evidence)

    def _persist_verdict(self, outcome: ReplayOutcome) -> ReplayOutcome:
        if outcome.verdict not in (ReplayVerdict.RESOLVED, *FAILING_VERDICTS):
            return outcome
        with self._locked():
            # Re-read so concurrent record() bumps are not lost.
            current = self.get(outcome.entry.signature) or outcome.entry
            now = self.clock()
            if outcome.verdict is ReplayVerdict.RESOLVED:
                updated = dataclasses.replace(current, resolved=True, resolved_at=now)
            elif outcome.verdict is ReplayVerdict.REGRESSED or current.resolved:
                updated = dataclasses.replace(current, resolved=False, regressed_at=now, last_seen=now)
            else:
                updated = dataclasses.replace(current, last_seen=now)
            self._write(updated)
        return dataclasses.replace(outcome, entry=updated)

    def replay_report(self) -> list[ReplayOutcome]:
        """Re-execute every entry on the worker pool and classify the change."""
        if self.oracle is None:
            raise ValueError("replay needs a failure oracle")
        entries = self.entries()
        logger.info("[*] Replaying %d corpus entries with %d worker(s)", len(entries), self.workers)
        with ThreadPoolExecutor(max_workers=self.workers) as pool:
            outcomes = list(pool.map(self._replay_one, entries))
        return [self._persist_verdict(outcome) for outcome in outcomes]

    def replay_all(self) -> list[ExecutionResult]:
        return [outcome.result for outcome in self.replay_report()]
