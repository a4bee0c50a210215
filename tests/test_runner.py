"""
Tests for the subprocess runner and the scoped work area.
"""

import stat
import sys

from mailpgp.runner import CommandResult, SubprocessRunner, WorkArea


class TestSubprocessRunner:
    """Tests for SubprocessRunner against real processes."""

    def test_captures_output(self):
        result = SubprocessRunner().run(
            [sys.executable, "-c", "import sys; print('out'); print('err', file=sys.stderr)"]
        )
        assert result.ok
        assert result.stdout.strip() == "out"
        assert result.stderr.strip() == "err"

    def test_passes_input_and_env(self):
        result = SubprocessRunner().run(
            [sys.executable, "-c",
             "import os, sys; print(sys.stdin.read() + os.environ['MAILPGP_TEST'])"],
            input_text="in-",
            env={"MAILPGP_TEST": "env"},
        )
        assert result.stdout.strip() == "in-env"

    def test_non_zero_exit(self):
        result = SubprocessRunner().run([sys.executable, "-c", "raise SystemExit(3)"])
        assert not result.ok
        assert result.returncode == 3

    def test_missing_binary(self):
        result = SubprocessRunner().run(["mailpgp-no-such-tool-xyz", "--version"])
        assert result.not_found
        assert not result.ok
        assert result.returncode == 127

    def test_timeout(self):
        result = SubprocessRunner().run(
            [sys.executable, "-c", "import time; time.sleep(10)"], timeout=0.5
        )
        assert result.timed_out
        assert not result.ok


class TestCommandResult:
    def test_output_joins_streams(self):
        result = CommandResult(["x"], 0, "a", "b")
        assert "a" in result.output and "b" in result.output


class TestWorkArea:
    """Tests for WorkArea permissions and cleanup."""

    def test_directory_is_private(self):
        with WorkArea() as area:
            assert stat.S_IMODE(area.path.stat().st_mode) == 0o700

    def test_secret_file_mode(self):
        with WorkArea() as area:
            secret = area.write_secret("pin", "123456")
            assert stat.S_IMODE(secret.stat().st_mode) == 0o600
            assert secret.read_text() == "123456"

    def test_removed_on_exit(self):
        with WorkArea() as area:
            path = area.path
            area.write("data.txt", "hello")
            area.write_secret("pin", "123456")
        assert not path.exists()
        assert area.path is None

    def test_removed_on_error(self):
        path = None
        try:
            with WorkArea() as area:
                path = area.path
                area.write_secret("pin", "123456")
                raise RuntimeError("boom")
        except RuntimeError:
            pass
        assert path is not None and not path.exists()

    def test_secret_overwritten_before_removal(self):
        area = WorkArea().__enter__()
        secret = area.write_secret("pin", "123456")
        # Keep a handle so the overwrite is observable after unlink
        with open(secret, "rb") as handle:
            area.cleanup()
            handle.seek(0)
            assert handle.read() == b"\0" * 6
