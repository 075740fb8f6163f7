"""Tests for the lazy line reader returned by command_by_line."""

import contextlib
import gc
import os
import sys
import time
import unittest

from running_command import CommandLineReader, EndOfStream, LineEncodingError, SpawnError, command_by_line
from running_command.process_utils import is_process_running


def _python(code: str) -> CommandLineReader:
    return command_by_line(sys.executable, ["-c", code])


def _wait_until_gone(pid: int, timeout: float = 10.0) -> bool:
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if not is_process_running(pid):
            return True
        time.sleep(0.05)
    return False


class TestLineReading(unittest.TestCase):
    """Test line splitting and end-of-stream behavior."""

    def _reap(self, pid: int) -> None:
        with contextlib.suppress(ChildProcessError):
            os.waitpid(pid, 0)

    def test_lines_with_mixed_terminators(self):
        reader = _python("import sys; sys.stdout.write('a\\nb\\r\\nc')")
        self.addCleanup(self._reap, reader.pid)

        self.assertEqual(reader.next_line(), "a")
        self.assertEqual(reader.next_line(), "b")
        self.assertEqual(reader.next_line(), "c")
        self.assertIsInstance(reader.next_line(), EndOfStream)
        self.assertTrue(reader.closed)
        # Closed is terminal
        self.assertIsInstance(reader.next_line(), EndOfStream)
        self.assertIsInstance(reader.next_line(), EndOfStream)

    def test_iteration(self):
        with _python("for i in range(5): print(f'Line {i}')") as reader:
            self.addCleanup(self._reap, reader.pid)
            lines = list(reader)

        self.assertEqual(lines, [f"Line {i}" for i in range(5)])
        self.assertEqual(list(reader), [])

    def test_empty_lines_are_kept(self):
        with _python("print('first'); print(); print('third')") as reader:
            self.addCleanup(self._reap, reader.pid)
            lines = list(reader)

        self.assertEqual(lines, ["first", "", "third"])

    def test_no_output(self):
        with _python("pass") as reader:
            self.addCleanup(self._reap, reader.pid)
            self.assertIsInstance(reader.next_line(), EndOfStream)

    def test_utf8_lines(self):
        with _python("import sys; sys.stdout.buffer.write('h\\u00e9llo \\u2603\\n'.encode('utf-8'))") as reader:
            self.addCleanup(self._reap, reader.pid)
            self.assertEqual(list(reader), ["héllo ☃"])

    def test_invalid_utf8_fails_loudly(self):
        reader = _python("import sys; sys.stdout.buffer.write(b'ok\\n\\xff\\xfe\\nafter\\n')")
        self.addCleanup(self._reap, reader.pid)

        self.assertEqual(reader.next_line(), "ok")
        with self.assertRaises(LineEncodingError) as cm:
            reader.next_line()

        self.assertIsInstance(cm.exception, ValueError)
        self.assertIsInstance(cm.exception.__cause__, UnicodeDecodeError)
        self.assertTrue(reader.closed)
        self.assertIsInstance(reader.next_line(), EndOfStream)

    def test_env_override(self):
        with command_by_line("sh", ["-c", 'printf "%s\\n" "$FOO"'], env={"FOO": "bar"}) as reader:
            self.addCleanup(self._reap, reader.pid)
            self.assertEqual(list(reader), ["bar"])

    def test_wait_returns_exit_code(self):
        reader = _python("import sys; print('done', flush=True); sys.exit(4)")
        self.assertEqual(reader.next_line(), "done")

        returncode = reader.wait(timeout=10)
        self.assertEqual(returncode, 4)
        self.assertEqual(reader.poll(), 4)
        reader.close()


class TestCleanup(unittest.TestCase):
    """Test that the child does not outlive its reader."""

    def _reap(self, pid: int) -> None:
        with contextlib.suppress(ChildProcessError):
            os.waitpid(pid, 0)

    def test_explicit_close_terminates_child(self):
        reader = _python("import time\nprint('started', flush=True)\ntime.sleep(60)")
        pid = reader.pid
        self.addCleanup(self._reap, pid)

        self.assertEqual(reader.next_line(), "started")
        reader.close()
        reader.close()

        self.assertTrue(reader.closed)
        self.assertIsInstance(reader.next_line(), EndOfStream)
        self.assertTrue(_wait_until_gone(pid))

    def test_context_manager_exit_terminates_child(self):
        with _python("import time\nprint('started', flush=True)\ntime.sleep(60)") as reader:
            pid = reader.pid
            self.addCleanup(self._reap, pid)
            self.assertEqual(next(reader), "started")

        self.assertTrue(_wait_until_gone(pid))

    def test_abandoned_reader_terminates_child(self):
        reader = _python("import time\nprint('started', flush=True)\ntime.sleep(60)")
        pid = reader.pid
        self.addCleanup(self._reap, pid)
        self.assertEqual(reader.next_line(), "started")

        del reader
        gc.collect()

        self.assertTrue(_wait_until_gone(pid))


class TestSpawnFailure(unittest.TestCase):
    def test_nonexistent_executable(self):
        with self.assertRaises(SpawnError):
            command_by_line("this_command_does_not_exist_12345")


if __name__ == "__main__":
    unittest.main()
