"""
Generic helpers for shadowfuzz: console/log teeing, timestamps, and the
on-disk format of generated tests (one ``<id>.json`` plus the rendered
``<id><suffix>`` source next to it).
"""

import json
import threading
from datetime import datetime
from pathlib import Path
from typing import TextIO

from shadowfuzz.types import GeneratedTest

TEST_FILE_SUFFIX = ".json"
MINIMIZED_SUFFIX = ".min"


def safe_timestamp(moment: datetime | None = None) -> str:
    """ISO timestamp usable in a file name."""
    moment = moment or datetime.now()
    return moment.isoformat().replace(":", "-").replace("+", "Z")


def save_test(test: GeneratedTest, out_dir: Path, source_suffix: str, stem: str | None = None) -> Path:
    """Write the test's JSON and its source file; return the JSON path."""
    out_dir.mkdir(parents=True, exist_ok=True)
    stem = stem or test.id
    json_path = out_dir / f"{stem}{TEST_FILE_SUFFIX}"
    json_path.write_text(json.dumps(test.to_dict(), indent=2) + "\n", encoding="utf-8")
    (out_dir / f"{stem}{source_suffix}").write_text(test.rendered_source, encoding="utf-8")
    return json_path


def load_test(path: Path) -> GeneratedTest:
    with open(path, "r", encoding="utf-8") as f:
        data = json.load(f)
    # Corpus entries wrap the test; accept them too.
    if "minimal_test" in data:
        data = data["minimal_test"]
    return GeneratedTest.from_dict(data)


def load_tests(test_dir: Path) -> list[GeneratedTest]:
    """Load every test JSON in ``test_dir`` (sorted by name), skipping
    minimized outputs."""
    paths = sorted(
        p for p in test_dir.glob(f"*{TEST_FILE_SUFFIX}") if not p.stem.endswith(MINIMIZED_SUFFIX)
    )
    return [load_test(path) for path in paths]


class TeeLogger:
    """
    Stream wrapper that mirrors the session console into a log file.

    Runs of the same line are printed once with a (×N) count. With
    verbose=False, per-test detail lines (passing tests, minimizer steps,
    differential notes) are dropped from console and file alike.
    """

    # Detail-line prefixes hidden when verbose is off.
    _QUIET_SUPPRESS_PREFIXES: tuple[str, ...] = (
        "  [.]",
        "    -> ",
        "[DIFFERENTIAL]",
        "DEBUG:",
    )

    def __init__(
        self,
        file_path: str | Path,
        original_stream: TextIO,
        verbose: bool = True,
    ) -> None:
        """
        Args:
            file_path: Session log to create (truncated if it exists).
            original_stream: Console stream to mirror, usually sys.stdout.
            verbose: Keep per-test detail lines when True.
        """
        self.original_stream = original_stream
        self.log_file = open(file_path, "w", encoding="utf-8")
        self.verbose = verbose

        self._last_line: str | None = None
        self._repeat_count: int = 0
        # Set when the last message lacked its newline; the "\n" that
        # print() sends next is then already accounted for.
        self._expect_newline: bool = False
        # Worker threads print and log through different locks.
        self._lock = threading.RLock()

    def _is_suppressed(self, line: str) -> bool:
        if self.verbose:
            return False
        return line.startswith(self._QUIET_SUPPRESS_PREFIXES)

    def _emit(self, text: str) -> None:
        self.original_stream.write(text)
        self.log_file.write(text)

    def _flush_repeat(self) -> None:
        """Emit the pending line with its repeat count."""
        if self._last_line is None:
            return
        output = self._last_line
        if self._repeat_count > 1:
            suffix = f" (×{self._repeat_count})"
            if output.endswith("\n"):
                output = output[:-1] + suffix + "\n"
            else:
                output += suffix
        self._emit(output)
        self._last_line = None
        self._repeat_count = 0

    def write(self, message: str) -> None:
        """Write to both targets, collapsing consecutive identical lines."""
        if not message:
            return
        with self._lock:
            self._write(message)

    def _write(self, message: str) -> None:
        if message == "\n" and self._expect_newline:
            self._expect_newline = False
            return
        self._expect_newline = not message.endswith("\n")

        if self._is_suppressed(message):
            return

        stripped = message.rstrip("\n")
        if not stripped:
            self._flush_repeat()
            self._emit(message)
            self._do_flush()
            return

        if self._last_line is not None and stripped == self._last_line.rstrip("\n"):
            self._repeat_count += 1
            return

        self._flush_repeat()
        self._last_line = stripped + "\n"
        self._repeat_count = 1

    def _do_flush(self) -> None:
        self.original_stream.flush()
        self.log_file.flush()

    def flush(self) -> None:
        """Emit any pending line, then flush console and log."""
        with self._lock:
            self._flush_repeat()
            self._do_flush()

    def close(self) -> None:
        """Flush, then close the session log."""
        with self._lock:
            self.flush()
            self.log_file.close()

    @property
    def encoding(self) -> str:
        return getattr(self.original_stream, "encoding", "utf-8")

    def isatty(self) -> bool:
        return hasattr(self.original_stream, "isatty") and self.original_stream.isatty()

    def fileno(self) -> int:
        """Descriptor of the mirrored console stream (OSError if it has none)."""
        if hasattr(self.original_stream, "fileno"):
            return self.original_stream.fileno()
        raise OSError("mirrored stream has no file descriptor")

