"""Tests for test-file persistence and the TeeLogger."""

import json
import shutil
import tempfile
import threading
import unittest
from io import StringIO
from pathlib import Path

from shadowfuzz.types import CorpusEntry, FailureClass, GeneratedTest, OperationCall, StrategyKind
from shadowfuzz.utils import TeeLogger, load_test, load_tests, safe_timestamp, save_test

TEST = GeneratedTest(
    id="Stack-schema-s0-00000",
    schema_ref="Stack",
    operation_sequence=(OperationCall("push", ("1",), 100),),
    rendered_source="fun main() {}\n",
    strategy=StrategyKind.SCHEMA,
    seed=12345,
    constructor_call=OperationCall("new", (), 100),
)


class TestTestFiles(unittest.TestCase):
    """Test saving and loading generated tests."""

    def setUp(self):
        self.tmp_dir = Path(tempfile.mkdtemp())

    def tearDown(self):
        shutil.rmtree(self.tmp_dir)

    def test_save_writes_json_and_source(self):
        path = save_test(TEST, self.tmp_dir, ".ruchy")
        self.assertEqual(path.name, f"{TEST.id}.json")
        self.assertEqual((self.tmp_dir / f"{TEST.id}.ruchy").read_text(), TEST.rendered_source)
        self.assertEqual(load_test(path), TEST)

    def test_load_tests_skips_minimized(self):
        save_test(TEST, self.tmp_dir, ".ruchy")
        save_test(TEST, self.tmp_dir, ".ruchy", stem=f"{TEST.id}.min")
        self.assertEqual(load_tests(self.tmp_dir), [TEST])

    def test_load_corpus_entry(self):
        entry = CorpusEntry("s" * 64, TEST, FailureClass.TIMEOUT, "t0", "t0")
        path = self.tmp_dir / "entry.json"
        path.write_text(json.dumps(entry.to_dict()))
        self.assertEqual(load_test(path), TEST)

    def test_safe_timestamp(self):
        self.assertNotIn(":", safe_timestamp())


class TestTeeLogger(unittest.TestCase):
    """Test output teeing, repeat collapsing and quiet mode."""

    def setUp(self):
        self.tmp_dir = Path(tempfile.mkdtemp())
        self.log_path = self.tmp_dir / "run.log"
        self.stream = StringIO()

    def tearDown(self):
        shutil.rmtree(self.tmp_dir)

    def test_tees_to_both(self):
        tee = TeeLogger(self.log_path, self.stream)
        print("hello", file=tee)
        tee.close()
        self.assertEqual(self.stream.getvalue(), "hello\n")
        self.assertEqual(self.log_path.read_text(), "hello\n")

    def test_repeats_collapsed(self):
        tee = TeeLogger(self.log_path, self.stream)
        for _ in range(3):
            print("[-] same", file=tee)
        print("other", file=tee)
        tee.close()
        self.assertEqual(self.stream.getvalue(), "[-] same (×3)\nother\n")

    def test_blank_lines_kept(self):
        tee = TeeLogger(self.log_path, self.stream)
        print("a", file=tee)
        print(file=tee)
        print("b", file=tee)
        tee.close()
        self.assertEqual(self.stream.getvalue(), "a\n\nb\n")

    def test_quiet_mode_drops_detail_lines(self):
        tee = TeeLogger(self.log_path, self.stream, verbose=False)
        print("  [.] t1: pass (3ms)", file=tee)
        print("  [!!!] t2: Timeout DETECTED", file=tee)
        tee.close()
        self.assertEqual(self.stream.getvalue(), "  [!!!] t2: Timeout DETECTED\n")
        self.assertEqual(self.log_path.read_text(), "  [!!!] t2: Timeout DETECTED\n")

    def test_concurrent_writers_keep_repeat_count(self):
        tee = TeeLogger(self.log_path, self.stream)

        def worker():
            for _ in range(2000):
                tee.write("  [-] worker line\n")

        threads = [threading.Thread(target=worker) for _ in range(8)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()
        tee.close()
        self.assertEqual(self.stream.getvalue(), "  [-] worker line (×16000)\n")
        self.assertEqual(self.log_path.read_text(encoding="utf-8"), "  [-] worker line (×16000)\n")

    def test_fileno_without_descriptor(self):
        tee = TeeLogger(self.log_path, self.stream)
        with self.assertRaises(OSError):
            tee.fileno()
        tee.close()


if __name__ == "__main__":
    unittest.main()
