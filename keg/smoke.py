"""
smoke.py

Responsibility: Run a formula's post-install smoke test.

The command is split with `shlex` and executed without a shell, from a scratch
working directory, with `<prefix>/bin` first on PATH. The test passes when the
exit status matches and stdout contains the expected substring.
"""

from __future__ import annotations

import logging
import os
import shlex
import subprocess
import tempfile
from dataclasses import dataclass
from pathlib import Path

from keg.errors import SmokeTestFailed

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SmokeTestResult:
    command: str
    expected: str
    output: str
    returncode: int

    @property
    def passed(self) -> bool:
        return self.expected in self.output


def _test_env(prefix: Path) -> dict[str, str]:
    env = os.environ.copy()
    bin_dir = prefix / "bin"
    env["PATH"] = os.pathsep.join(p for p in (str(bin_dir), env.get("PATH", "")) if p)
    env["HOME"] = env.get("HOME") or tempfile.gettempdir()
    return env


def run_smoke_test(
    command: str,
    expected: str,
    *,
    prefix: str | Path,
    exit_status: int = 0,
    timeout: float = 60.0,
) -> SmokeTestResult:
    """
    Execute `command` against an installed prefix and check its output for `expected`.

    Raises SmokeTestFailed on a missing executable, timeout, unexpected exit
    status or missing substring.
    """
    try:
        argv = shlex.split(command)
    except ValueError as e:
        raise SmokeTestFailed(f"Cannot parse test command {command!r}: {e}") from e
    if not argv:
        raise SmokeTestFailed("Test command is empty")

    logger.info("Running smoke test: %s", command)
    with tempfile.TemporaryDirectory(prefix="keg-test-") as workdir:
        try:
            proc = subprocess.run(
                argv,
                cwd=workdir,
                env=_test_env(Path(prefix)),
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                text=True,
                timeout=timeout,
            )
        except FileNotFoundError as e:
            raise SmokeTestFailed(f"Test command not found: {argv[0]}") from e
        except subprocess.TimeoutExpired as e:
            raise SmokeTestFailed(f"Test command timed out after {timeout:g}s: {command}") from e

    result = SmokeTestResult(command=command, expected=expected, output=proc.stdout, returncode=proc.returncode)
    if proc.returncode != exit_status:
        raise SmokeTestFailed(
            f"Test command exited with status {proc.returncode} (expected {exit_status}): {command}\n\n{proc.stderr}",
            output=proc.stdout,
        )
    if not result.passed:
        raise SmokeTestFailed(
            f"Test output does not contain {expected!r}: {command}\n\n{proc.stdout}",
            output=proc.stdout,
        )
    logger.info("Smoke test passed")
    return result
