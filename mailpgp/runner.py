"""
External Command Runner

All calls to gpg, ykman and signing scripts go through a
HardwareCommandRunner so tests can script the tool output. The
SubprocessRunner implementation never raises for tool failures: a
missing binary, a non-zero exit and a timeout all come back as a
CommandResult.

WorkArea is the scoped temporary directory used for one token
invocation. Secret files written into it are overwritten before the
directory is removed, on every exit path.
"""

import logging
import os
import shutil
import subprocess
import tempfile
from dataclasses import dataclass
from pathlib import Path
from typing import Optional, Protocol, Sequence


logger = logging.getLogger(__name__)


@dataclass
class CommandResult:
    """Outcome of one external command."""
    args: list[str]
    returncode: int
    stdout: str = ""
    stderr: str = ""
    timed_out: bool = False
    not_found: bool = False

    @property
    def ok(self) -> bool:
        return self.returncode == 0 and not self.timed_out and not self.not_found

    @property
    def output(self) -> str:
        """stdout and stderr joined, for pattern matching."""
        return f"{self.stdout}\n{self.stderr}"


class HardwareCommandRunner(Protocol):
    """Runs an external command and reports what happened."""

    def run(
        self,
        args: Sequence[str],
        *,
        input_text: Optional[str] = None,
        env: Optional[dict[str, str]] = None,
        timeout: float = 20.0,
    ) -> CommandResult:
        ...


class SubprocessRunner:
    """HardwareCommandRunner backed by subprocess.run."""

    def run(
        self,
        args: Sequence[str],
        *,
        input_text: Optional[str] = None,
        env: Optional[dict[str, str]] = None,
        timeout: float = 20.0,
    ) -> CommandResult:
        argv = [str(a) for a in args]
        full_env = None
        if env:
            full_env = os.environ.copy()
            full_env.update(env)

        logger.debug(f"Running {argv[0]} {' '.join(argv[1:3])} (timeout {timeout}s)")
        try:
            proc = subprocess.run(
                argv,
                input=input_text,
                capture_output=True,
                text=True,
                env=full_env,
                timeout=timeout,
            )
        except subprocess.TimeoutExpired as e:
            logger.warning(f"{argv[0]} timed out after {timeout}s")
            return CommandResult(
                argv, -1,
                stdout=_as_text(e.stdout),
                stderr=_as_text(e.stderr),
                timed_out=True,
            )
        except FileNotFoundError:
            logger.info(f"{argv[0]} is not installed")
            return CommandResult(argv, 127, stderr=f"{argv[0]}: command not found", not_found=True)

        if proc.returncode != 0:
            logger.debug(f"{argv[0]} exited with {proc.returncode}")
        return CommandResult(argv, proc.returncode, proc.stdout or "", proc.stderr or "")


def _as_text(value) -> str:
    if value is None:
        return ""
    if isinstance(value, bytes):
        return value.decode("utf-8", errors="replace")
    return value


class WorkArea:
    """
    Private temporary directory for a single token invocation.

    Usage:
        with WorkArea() as area:
            data = area.write("data.txt", text)
            pin_file = area.write_secret("pin", pin)
            ...
    """

    def __init__(self, prefix: str = "mailpgp-"):
        self._prefix = prefix
        self.path: Optional[Path] = None
        self._secrets: list[Path] = []

    def __enter__(self) -> "WorkArea":
        self.path = Path(tempfile.mkdtemp(prefix=self._prefix))
        os.chmod(self.path, 0o700)
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.cleanup()

    def file(self, name: str) -> Path:
        """Path inside the work area; the file is not created."""
        if self.path is None:
            raise RuntimeError("WorkArea is not active")
        return self.path / name

    def write(self, name: str, content: str) -> Path:
        target = self.file(name)
        target.write_text(content, encoding="utf-8")
        return target

    def write_secret(self, name: str, secret: str) -> Path:
        """Write a secret into a new 0600 file; it is overwritten on cleanup."""
        target = self.file(name)
        fd = os.open(target, os.O_CREAT | os.O_EXCL | os.O_WRONLY, 0o600)
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            f.write(secret)
        self._secrets.append(target)
        return target

    def cleanup(self) -> None:
        if self.path is None:
            return
        for secret in self._secrets:
            try:
                size = secret.stat().st_size
                with open(secret, "r+b") as f:
                    f.write(b"\0" * size)
                    f.flush()
                    os.fsync(f.fileno())
            except OSError as e:
                logger.warning(f"Could not overwrite {secret.name}: {e}")
        self._secrets.clear()
        shutil.rmtree(self.path, ignore_errors=True)
        self.path = None
