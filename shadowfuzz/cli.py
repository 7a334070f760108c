"""
Command-line entry point for shadowfuzz.

Subcommands:

- ``generate``: build a batch of tests from a schema (or a grammar, or seeds)
- ``run``: execute a directory of tests, minimize and record failures
- ``minimize``: reduce one failing test file
- ``replay``: re-run the corpus as a regression gate
"""

from __future__ import annotations

import argparse
import dataclasses
import json
import logging
import os
import platform
import shutil
import socket
import sys
from datetime import datetime
from pathlib import Path
from textwrap import dedent

from shadowfuzz import __version__
from shadowfuzz.campaign import CampaignRunner
from shadowfuzz.config import HarnessConfig, load_config
from shadowfuzz.corpus_manager import FAILING_VERDICTS, CorpusManager
from shadowfuzz.differential import DifferentialComparator
from shadowfuzz.errors import HarnessError, SchemaError
from shadowfuzz.execution import ExecutionHarness, verify_backend
from shadowfuzz.generator import generate
from shadowfuzz.health import HealthMonitor
from shadowfuzz.minimize import Minimizer
from shadowfuzz.oracle import FailureOracle
from shadowfuzz.render import Renderer
from shadowfuzz.report import build_report, format_text, write_report
from shadowfuzz.schema import Schema, load_schema_file
from shadowfuzz.strategies.base import slugify
from shadowfuzz.strategies.grammar import Grammar
from shadowfuzz.types import GeneratedTest, StrategyKind
from shadowfuzz.utils import TeeLogger, load_test, load_tests, safe_timestamp, save_test

logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_FAILURES = 1
EXIT_SCHEMA_ERROR = 2

SCHEMA_COPY_SUFFIX = ".schema.yaml"
DEFAULT_OUT_DIR = Path("shadowfuzz_out")


def _setup_logging(verbose: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(message)s",
        stream=sys.stderr,
        force=True,
    )


def _load_config(args: argparse.Namespace) -> HarnessConfig:
    config = load_config(args.config)
    updates = {}
    if getattr(args, "workers", None):
        updates["workers"] = args.workers
    if getattr(args, "timeout_ms", None):
        updates["timeout_ms"] = args.timeout_ms
    if getattr(args, "max_attempts", None):
        updates["minimize_max_attempts"] = args.max_attempts
    if getattr(args, "confirm_runs", None) is not None:
        updates["confirm_runs"] = args.confirm_runs
    return dataclasses.replace(config, **updates) if updates else config


def _load_schemas(directories: list[Path], files: list[Path]) -> dict[str, Schema]:
    """Schemas saved next to generated tests plus any given explicitly."""
    schemas: dict[str, Schema] = {}
    paths = [p for d in directories for p in sorted(d.glob(f"*{SCHEMA_COPY_SUFFIX}"))]
    for path in [*paths, *files]:
        schema = load_schema_file(path)
        schemas[schema.type_name] = schema
    return schemas


def _build_oracle(
    config: HarnessConfig, differential: bool, health_monitor: HealthMonitor | None
) -> FailureOracle:
    if differential:
        backend_a, backend_b = config.differential_pair()
        comparator = DifferentialComparator(config, health_monitor=health_monitor)
        harness = ExecutionHarness(backend_a, config, health_monitor)
        return FailureOracle(harness, comparator, backend_b)
    return FailureOracle(ExecutionHarness(config.primary, config, health_monitor))


def _verify(config: HarnessConfig, differential: bool) -> None:
    backends = config.differential_pair() if differential else (config.primary,)
    for backend in backends:
        verify_backend(ExecutionHarness(backend, config))


def _load_seeds(seed_dir: Path, source_suffix: str) -> list[GeneratedTest]:
    """Test JSON files, corpus entries and raw source files in ``seed_dir``."""
    seeds = []
    for path in sorted(seed_dir.iterdir()):
        if path.suffix == ".json":
            seeds.append(load_test(path))
        elif path.is_file() and path.suffix in (source_suffix, ".txt"):
            seeds.append(
                GeneratedTest(
                    id=path.stem,
                    schema_ref=None,
                    operation_sequence=(),
                    rendered_source=path.read_text(encoding="utf-8"),
                    strategy=StrategyKind.MUTATION,
                )
            )
    return seeds


# ---------------------------------------------------------------------------
# generate
# ---------------------------------------------------------------------------


def cmd_generate(args: argparse.Namespace) -> int:
    config = _load_config(args)
    kind = StrategyKind(args.strategy)
    schema = None
    if args.schema is not None:
        try:
            schema = load_schema_file(args.schema)
        except SchemaError as e:
            print(f"[!] Schema error in {args.schema}: {e}", file=sys.stderr)
            return EXIT_SCHEMA_ERROR
        except OSError as e:
            print(f"[!] Cannot read schema {args.schema}: {e}", file=sys.stderr)
            return EXIT_SCHEMA_ERROR
    elif kind in (StrategyKind.SCHEMA, StrategyKind.BOUNDARY):
        print(f"[!] The {kind.value} strategy needs a schema file.", file=sys.stderr)
        return EXIT_SCHEMA_ERROR

    logs_dir = args.out / "logs"
    logs_dir.mkdir(parents=True, exist_ok=True)
    health_monitor = HealthMonitor(logs_dir / "health_events.jsonl")
    try:
        grammar = Grammar.from_file(args.grammar) if args.grammar else None
        seeds = _load_seeds(args.seeds, config.source_suffix) if args.seeds else None
        tests = generate(
            schema,
            kind,
            args.count,
            args.seed,
            renderer=Renderer(config.render),
            grammar=grammar,
            seeds=seeds,
            health_monitor=health_monitor,
        )
    except (ValueError, OSError) as e:
        print(f"[!] Cannot generate tests: {e}", file=sys.stderr)
        return EXIT_FAILURES

    if schema is not None:
        shutil.copyfile(args.schema, args.out / f"{slugify(schema.type_name)}{SCHEMA_COPY_SUFFIX}")
    for test in tests:
        save_test(test, args.out, config.source_suffix)
    print(f"[+] Wrote {len(tests)} test(s) to {args.out}")
    return EXIT_OK


# ---------------------------------------------------------------------------
# run / replay shared session handling
# ---------------------------------------------------------------------------


class _Session:
    """Tees console output into ``<out>/logs`` and prints header/footer."""

    def __init__(
        self,
        command: str,
        out_dir: Path,
        quiet: bool,
        details: dict[str, object],
        verbose: bool = False,
    ) -> None:
        self.command = command
        self.verbose = verbose
        self.out_dir = out_dir
        self.quiet = quiet
        self.details = details
        self.logs_dir = out_dir / "logs"
        self.start_time = datetime.now()
        self.log_path = self.logs_dir / f"shadowfuzz_{safe_timestamp(self.start_time)}.log"
        self.health_monitor = HealthMonitor(self.logs_dir / "health_events.jsonl")

    def __enter__(self) -> "_Session":
        self.logs_dir.mkdir(parents=True, exist_ok=True)
        self.original_stdout = sys.stdout
        self.original_stderr = sys.stderr
        self.tee = TeeLogger(self.log_path, self.original_stdout, verbose=not self.quiet)
        sys.stdout = self.tee
        sys.stderr = self.tee
        _setup_logging(self.verbose)
        detail_lines = "\n".join(f"- {key + ':':<19}{value}" for key, value in self.details.items())
        header = f"""
================================================================================
SHADOWFUZZ {self.command.upper()}
================================================================================
- Hostname:          {socket.gethostname()}
- Platform:          {platform.platform()}
- Process ID:        {os.getpid()}
- Working Dir:       {Path.cwd()}
- Log File:          {self.log_path}
- Start Time:        {self.start_time.isoformat()}
- Command:           {" ".join(sys.argv)}
{detail_lines}
================================================================================
"""
        print(dedent(header))
        return self

    def footer(self, summary: dict[str, object]) -> None:
        print("\n" + "=" * 80)
        print(f"{self.command.upper()} SUMMARY")
        print("=" * 80)
        duration = datetime.now() - self.start_time
        print(f"- Duration:          {str(duration).split('.')[0]}")
        for key, value in summary.items():
            print(f"- {key + ':':<19}{value}")
        print("=" * 80)

    def __exit__(self, *exc_info: object) -> None:
        self.tee.close()
        sys.stdout = self.original_stdout
        sys.stderr = self.original_stderr
        _setup_logging(self.verbose)


def _emit_report(report: dict, out_dir: Path, fmt: str, command: str) -> Path:
    suffix = "json" if fmt == "json" else "txt"
    path = out_dir / f"{command}_report_{safe_timestamp()}.{suffix}"
    write_report(report, path, fmt)
    if fmt == "json":
        print(json.dumps(report["summary"] if "summary" in report else report.get("replay", {}), indent=2))
    else:
        print(format_text(report))
    print(f"[+] Report written to {path}")
    return path


# ---------------------------------------------------------------------------
# run
# ---------------------------------------------------------------------------


def cmd_run(args: argparse.Namespace) -> int:
    config = _load_config(args)
    try:
        tests = load_tests(args.test_dir)
        schemas = _load_schemas([args.test_dir], args.schema or [])
    except SchemaError as e:
        print(f"[!] Schema error: {e}", file=sys.stderr)
        return EXIT_SCHEMA_ERROR
    except (OSError, ValueError, KeyError) as e:
        print(f"[!] Cannot load tests from {args.test_dir}: {e}", file=sys.stderr)
        return EXIT_FAILURES

    out_dir = args.out or DEFAULT_OUT_DIR
    corpus_dir = args.corpus or out_dir / "corpus"
    details = {
        "Tests": f"{len(tests)} from {args.test_dir}",
        "Backends": ", ".join(b.name for b in config.backends),
        "Differential": args.differential,
        "Workers": config.workers,
        "Corpus": corpus_dir,
    }
    with _Session("run", out_dir, args.quiet, details, args.verbose) as session:
        try:
            if not args.skip_verify:
                _verify(config, args.differential)
            oracle = _build_oracle(config, args.differential, session.health_monitor)
            runner = CampaignRunner(
                oracle,
                corpus=CorpusManager(corpus_dir, health_monitor=session.health_monitor),
                schemas=schemas,
                renderer=Renderer(config.render),
                workers=config.workers,
                confirm_runs=config.confirm_runs,
                minimize=not args.no_minimize,
                max_attempts=config.minimize_max_attempts,
                health_monitor=session.health_monitor,
            )
            result = runner.run_tests(tests)
        except (HarnessError, ValueError) as e:
            print(f"\n[!!!] Run aborted: {e}")
            session.footer({"Status": f"Error: {e}"})
            return EXIT_FAILURES

        report = build_report("run", result, health=session.health_monitor.get_summary())
        _emit_report(report, out_dir, args.report, "run")
        session.footer(
            {
                "Tests": result.total,
                "Passed": result.passed,
                "Findings": len(result.findings),
                "Flaky": len(result.flaky),
            }
        )
    return EXIT_FAILURES if result.failed else EXIT_OK


# ---------------------------------------------------------------------------
# minimize
# ---------------------------------------------------------------------------


def cmd_minimize(args: argparse.Namespace) -> int:
    config = _load_config(args)
    try:
        test = load_test(args.test_file)
        schemas = _load_schemas([args.test_file.parent], args.schema or [])
    except SchemaError as e:
        print(f"[!] Schema error: {e}", file=sys.stderr)
        return EXIT_SCHEMA_ERROR
    except (OSError, ValueError, KeyError) as e:
        print(f"[!] Cannot load {args.test_file}: {e}", file=sys.stderr)
        return EXIT_FAILURES

    try:
        oracle = _build_oracle(config, args.differential, None)
        minimizer = Minimizer(
            oracle,
            schema=schemas.get(test.schema_ref or ""),
            renderer=Renderer(config.render),
            max_attempts=config.minimize_max_attempts,
        )
        minimized = minimizer.minimize(test)
    except (HarnessError, ValueError) as e:
        print(f"[!] Minimization aborted: {e}", file=sys.stderr)
        return EXIT_FAILURES

    stem = f"{args.test_file.stem}.min"
    path = save_test(minimized, args.test_file.parent, config.source_suffix, stem=stem)
    stats = minimizer.last_stats
    print(
        f"[+] {stats.original_length} -> {stats.final_length} {stats.mode} "
        f"({stats.attempts} attempts); wrote {path}"
    )
    return EXIT_OK


# ---------------------------------------------------------------------------
# replay
# ---------------------------------------------------------------------------


def cmd_replay(args: argparse.Namespace) -> int:
    config = _load_config(args)
    if not args.corpus_dir.is_dir():
        print(f"[!] Corpus directory {args.corpus_dir} does not exist.", file=sys.stderr)
        return EXIT_FAILURES

    out_dir = args.out or DEFAULT_OUT_DIR
    details = {
        "Corpus": args.corpus_dir,
        "Backends": ", ".join(b.name for b in config.backends),
        "Differential": args.differential,
        "Workers": config.workers,
    }
    with _Session("replay", out_dir, args.quiet, details, args.verbose) as session:
        try:
            if not args.skip_verify:
                _verify(config, args.differential)
            corpus = CorpusManager(
                args.corpus_dir,
                oracle=_build_oracle(config, args.differential, session.health_monitor),
                workers=config.workers,
                health_monitor=session.health_monitor,
            )
            outcomes = corpus.replay_report()
        except (HarnessError, ValueError) as e:
            print(f"\n[!!!] Replay aborted: {e}")
            session.footer({"Status": f"Error: {e}"})
            return EXIT_FAILURES

        for outcome in outcomes:
            marker = "[!!!]" if outcome.verdict in FAILING_VERDICTS else "  [.]"
            line = f"{marker} {outcome.entry.signature[:12]} {outcome.entry.failure_class.value}: {outcome.verdict.value}"
            if outcome.observed is not None and not outcome.entry.failure_class.matches(outcome.observed):
                line += f" (now {outcome.observed.value})"
            print(line)
        report = build_report("replay", replay=outcomes, health=session.health_monitor.get_summary())
        _emit_report(report, out_dir, args.report, "replay")
        regressed = [o for o in outcomes if o.verdict in FAILING_VERDICTS]
        session.footer({"Entries": len(outcomes), "Regressed": len(regressed)})
    return EXIT_FAILURES if regressed else EXIT_OK


# ---------------------------------------------------------------------------
# argument parsing
# ---------------------------------------------------------------------------


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="shadowfuzz",
        description="shadowfuzz: schema-driven behavioral and differential fuzzing for a language toolchain.",
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    parser.add_argument("--config", type=Path, default=None, help="YAML harness configuration file.")
    parser.add_argument("-v", "--verbose", action="store_true", help="Enable debug logging.")
    sub = parser.add_subparsers(dest="command", required=True)

    gen = sub.add_parser("generate", help="Generate tests from a schema, grammar or seeds.")
    gen.add_argument("schema", type=Path, nargs="?", default=None, help="Schema file (YAML or JSON).")
    gen.add_argument(
        "--strategy",
        choices=[kind.value for kind in StrategyKind],
        default=StrategyKind.SCHEMA.value,
        help="Generation strategy (default: schema).",
    )
    gen.add_argument("--count", type=int, default=100, help="Number of tests (default: 100).")
    gen.add_argument("--seed", type=int, default=0, help="Batch seed (default: 0).")
    gen.add_argument("--out", type=Path, required=True, help="Directory for the generated tests.")
    gen.add_argument("--grammar", type=Path, default=None, help="YAML grammar for --strategy grammar.")
    gen.add_argument("--seeds", type=Path, default=None, help="Seed tests or sources for --strategy mutation.")
    gen.set_defaults(func=cmd_generate)

    run = sub.add_parser("run", help="Execute a directory of tests.")
    run.add_argument("test_dir", type=Path, help="Directory of generated test JSON files.")
    run.add_argument("--timeout-ms", type=int, default=None, help="Fixed per-test budget in milliseconds.")
    run.add_argument("--report", choices=["json", "text"], default="text", help="Report format.")
    run.add_argument("--no-minimize", action="store_true", help="Record failures without minimizing.")
    run.add_argument("--differential", action="store_true", help="Compare the first two backends.")
    run.add_argument("--corpus", type=Path, default=None, help="Corpus directory (default: <out>/corpus).")
    run.add_argument("--out", type=Path, default=None, help=f"Output directory (default: {DEFAULT_OUT_DIR}).")
    run.add_argument("--schema", type=Path, action="append", help="Extra schema file (repeatable).")
    run.add_argument("--workers", type=int, default=None, help="Worker pool size.")
    run.add_argument("--confirm-runs", type=int, default=None, help="Re-runs required to confirm a failure.")
    run.add_argument("--max-attempts", type=int, default=None, help="Minimization execution budget.")
    run.add_argument("--skip-verify", action="store_true", help="Skip the backend capability check.")
    run.add_argument("--quiet", action="store_true", help="Suppress per-test detail lines.")
    run.set_defaults(func=cmd_run)

    mini = sub.add_parser("minimize", help="Minimize one failing test file.")
    mini.add_argument("test_file", type=Path, help="Failing test JSON file.")
    mini.add_argument("--timeout-ms", type=int, default=None, help="Fixed per-test budget in milliseconds.")
    mini.add_argument("--differential", action="store_true", help="Compare the first two backends.")
    mini.add_argument("--schema", type=Path, action="append", help="Schema file (repeatable).")
    mini.add_argument("--max-attempts", type=int, default=None, help="Minimization execution budget.")
    mini.set_defaults(func=cmd_minimize)

    rep = sub.add_parser("replay", help="Re-run the corpus as a regression gate.")
    rep.add_argument("corpus_dir", type=Path, help="Corpus directory.")
    rep.add_argument("--report", choices=["json", "text"], default="text", help="Report format.")
    rep.add_argument("--differential", action="store_true", help="Compare the first two backends.")
    rep.add_argument("--out", type=Path, default=None, help=f"Output directory (default: {DEFAULT_OUT_DIR}).")
    rep.add_argument("--workers", type=int, default=None, help="Worker pool size.")
    rep.add_argument("--skip-verify", action="store_true", help="Skip the backend capability check.")
    rep.add_argument("--quiet", action="store_true", help="Suppress per-entry detail lines.")
    rep.set_defaults(func=cmd_replay)
    return parser


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    _setup_logging(args.verbose)
    try:
        return args.func(args)
    except ValueError as e:
        # Invalid configuration (config file, environment).
        print(f"[!] {e}", file=sys.stderr)
        return EXIT_FAILURES
    except KeyboardInterrupt:
        print("\n[!] Stopped by user.", file=sys.stderr)
        return EXIT_FAILURES


if __name__ == "__main__":
    sys.exit(main())
