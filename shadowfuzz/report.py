"""
Structured reports for `run` and `replay`.

A report is a plain dict (so it serializes straight to JSON) listing every
finding grouped by failure class, the flaky failures that did not
reproduce, replay verdicts and the health event counters. `format_text`
renders the same dict as a human-readable summary.
"""

from __future__ import annotations

import json
from collections import Counter
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Sequence

from shadowfuzz.campaign import CampaignResult
from shadowfuzz.corpus_manager import ReplayOutcome, ReplayVerdict
from shadowfuzz.types import DifferentialResult, FailureClass, Finding


def truncate_string(s: str, max_len: int, suffix: str = "...") -> str:
    """Truncate a string to max_len characters, adding suffix if truncated."""
    if len(s) <= max_len:
        return s
    return s[: max_len - len(suffix)] + suffix


def format_duration(seconds: float) -> str:
    """Format a duration in seconds to a human-readable string."""
    if seconds < 0:
        return "N/A"
    minutes, secs = divmod(seconds, 60)
    if minutes >= 1:
        return f"{int(minutes)}m {secs:.1f}s"
    return f"{secs:.1f}s"


def finding_to_dict(finding: Finding) -> dict[str, Any]:
    evidence = finding.evidence
    if isinstance(evidence, DifferentialResult):
        duration_ms = max(evidence.backend_a.duration_ms, evidence.backend_b.duration_ms)
        detail = evidence.diff_summary
    else:
        duration_ms = evidence.duration_ms
        detail = truncate_string(evidence.stderr.strip(), 400)
    minimized = finding.minimized
    return {
        "test_id": finding.test.id,
        "schema": finding.test.schema_ref,
        "strategy": finding.test.strategy.value,
        "failure_class": finding.failure_class.value,
        "corpus_signature": finding.corpus_signature,
        "new_in_corpus": finding.new_in_corpus,
        "original_length": len(finding.test.operation_sequence),
        "minimized_length": len(minimized.operation_sequence) if minimized else None,
        "minimized_operations": [str(call) for call in minimized.operation_sequence] if minimized else None,
        "duration_ms": duration_ms,
        "detail": detail,
        "evidence": evidence.to_dict(),
    }


def replay_to_dict(outcome: ReplayOutcome) -> dict[str, Any]:
    return {
        "signature": outcome.entry.signature,
        "failure_class": outcome.entry.failure_class.value,
        "verdict": outcome.verdict.value,
        "observed": outcome.observed.value if outcome.observed else None,
        "duration_ms": outcome.result.duration_ms,
        "occurrence_count": outcome.entry.occurrence_count,
    }


def build_report(
    command: str,
    result: CampaignResult | None = None,
    replay: Sequence[ReplayOutcome] | None = None,
    health: dict[str, int] | None = None,
) -> dict[str, Any]:
    report: dict[str, Any] = {
        "command": command,
        "generated_at": datetime.now(timezone.utc).isoformat(),
    }
    if result is not None:
        by_class = {cls.value: [] for cls in FailureClass}
        for finding in result.findings:
            by_class[finding.failure_class.value].append(finding_to_dict(finding))
        report["summary"] = {
            "total": result.total,
            "passed": result.passed,
            "findings": len(result.findings),
            "flaky": len(result.flaky),
            "new_corpus_entries": sum(1 for f in result.findings if f.new_in_corpus),
            "duration_s": round(result.duration_s, 3),
            "by_class": {name: len(items) for name, items in by_class.items()},
        }
        report["findings"] = by_class
        report["flaky"] = [finding_to_dict(finding) for finding in result.flaky]
    if replay is not None:
        counts = Counter(outcome.verdict.value for outcome in replay)
        report["replay"] = {
            "total": len(replay),
            "verdicts": {verdict.value: counts.get(verdict.value, 0) for verdict in ReplayVerdict},
            "entries": [replay_to_dict(outcome) for outcome in replay],
        }
    report["health"] = dict(health or {})
    return report


def format_text(report: dict[str, Any]) -> str:
    """Render a report dict as a text summary."""
    lines: list[str] = []
    lines.append("=" * 80)
    lines.append(f"SHADOWFUZZ {report['command'].upper()} REPORT")
    lines.append("=" * 80)
    lines.append(f"Generated:      {report['generated_at']}")

    summary = report.get("summary")
    if summary:
        lines.append(f"Tests:          {summary['total']}")
        lines.append(f"Passed:         {summary['passed']}")
        lines.append(f"Findings:       {summary['findings']} ({summary['new_corpus_entries']} new in corpus)")
        lines.append(f"Flaky:          {summary['flaky']}")
        lines.append(f"Duration:       {format_duration(summary['duration_s'])}")
        lines.append("")
        lines.append("-" * 80)
        lines.append("FINDINGS BY CLASS")
        lines.append("-" * 80)
        for name, findings in report["findings"].items():
            lines.append(f"{name}: {len(findings)}")
            for item in findings:
                shape = ""
                if item["minimized_operations"] is not None:
                    shape = f" -> {' ; '.join(item['minimized_operations'])}"
                signature = (item["corpus_signature"] or "")[:12]
                lines.append(
                    f"  - {item['test_id']} [{item['strategy']}] {item['duration_ms']}ms "
                    f"{signature}{shape}"
                )
        lines.append("")

    replay = report.get("replay")
    if replay:
        lines.append("-" * 80)
        lines.append("REPLAY")
        lines.append("-" * 80)
        for verdict, count in replay["verdicts"].items():
            lines.append(f"{verdict:<16}{count}")
        for entry in replay["entries"]:
            if entry["verdict"] not in (ReplayVerdict.STILL_FAILING.value, ReplayVerdict.STILL_RESOLVED.value):
                lines.append(f"  - {entry['signature'][:12]} {entry['failure_class']}: {entry['verdict']}")
        lines.append("")

    if report.get("health"):
        lines.append("-" * 80)
        lines.append("HEALTH EVENTS")
        lines.append("-" * 80)
        for key, count in sorted(report["health"].items()):
            lines.append(f"{key:<40}{count}")
        lines.append("")
    lines.append("=" * 80)
    return "\n".join(lines) + "\n"


def write_report(report: dict[str, Any], path: Path, fmt: str = "text") -> Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    if fmt == "json":
        path.write_text(json.dumps(report, indent=2, sort_keys=False) + "\n", encoding="utf-8")
    else:
        path.write_text(format_text(report), encoding="utf-8")
    return path

