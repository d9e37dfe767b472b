"""Bounded dependency install: run the package manager with a wall-clock timeout."""

from __future__ import annotations

import subprocess
from dataclasses import dataclass
from pathlib import Path
from typing import Sequence

from maestro import log
from maestro.config import DEFAULT_INSTALL_TIMEOUT
from maestro.markers import looks_like_environment_failure

DEFAULT_INSTALL_CMD: tuple[str, ...] = ("bun", "install")


@dataclass
class InstallResult:
    success: bool
    timed_out: bool = False
    error: str = ""
    output: str = ""


def _remediation(cmd: Sequence[str], cwd: Path) -> str:
    return f"run '{' '.join(cmd)}' manually in {cwd}"


def _terminate_process(proc: subprocess.Popen[str]) -> None:
    """Terminate a subprocess promptly, killing it if it ignores SIGTERM."""
    try:
        if proc.poll() is None:
            proc.terminate()
        proc.wait(timeout=2)
        return
    except (OSError, subprocess.TimeoutExpired):
        pass

    try:
        if proc.poll() is None:
            proc.kill()
        proc.wait(timeout=2)
    except (OSError, subprocess.TimeoutExpired) as exc:
        log.debug(f"Could not reap pid {proc.pid}: {exc}")


def run_dependency_install(
    cmd: Sequence[str] = DEFAULT_INSTALL_CMD,
    cwd: Path | None = None,
    timeout: float = DEFAULT_INSTALL_TIMEOUT,
) -> InstallResult:
    """Run *cmd* in *cwd*, giving up after *timeout* seconds.

    Never raises for environment problems: a missing executable, a non-zero
    exit or a timeout all come back as a failed :class:`InstallResult` whose
    ``error`` tells the user what to run by hand.
    """
    workdir = Path(cwd) if cwd is not None else Path.cwd()
    cmd = list(cmd)
    log.debug(f"Running {' '.join(cmd)} in {workdir} (timeout {timeout}s)")

    try:
        proc = subprocess.Popen(
            cmd,
            stdout=subprocess.PIPE,
            stderr=subprocess.STDOUT,
            text=True,
            encoding="utf-8",
            errors="replace",
            cwd=workdir,
        )
    except FileNotFoundError:
        return InstallResult(
            success=False,
            error=f"{cmd[0]} not found in PATH. Install it and {_remediation(cmd, workdir)}",
        )
    except OSError as exc:
        return InstallResult(success=False, error=f"{exc}. To retry, {_remediation(cmd, workdir)}")

    try:
        output, _ = proc.communicate(timeout=timeout)
    except subprocess.TimeoutExpired:
        _terminate_process(proc)
        return InstallResult(
            success=False,
            timed_out=True,
            error=f"{' '.join(cmd)} timed out after {timeout:g}s. To retry, {_remediation(cmd, workdir)}",
        )
    except KeyboardInterrupt:
        _terminate_process(proc)
        raise

    output = output or ""
    if proc.returncode != 0:
        first = next((line.strip() for line in output.splitlines() if line.strip()), "")
        reason = first or f"exit code {proc.returncode}"
        if looks_like_environment_failure(output):
            reason = f"environment problem: {reason}"
        return InstallResult(
            success=False,
            error=f"{' '.join(cmd)} failed ({reason}). To retry, {_remediation(cmd, workdir)}",
            output=output,
        )
    return InstallResult(success=True, output=output)
