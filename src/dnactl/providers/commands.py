"""Subprocess helper shared by the external-tool providers."""
from __future__ import annotations

import os
import subprocess
from collections.abc import Mapping, Sequence
from pathlib import Path


class ProviderError(RuntimeError):
    """Base class for failures reported by an external tool.

    ``tool_missing`` is set when the executable itself could not be found.
    """

    def __init__(self, message: str, *, tool_missing: bool = False) -> None:
        super().__init__(message)
        self.tool_missing = tool_missing


def run_command(
    args: Sequence[str],
    *,
    error_cls: type[ProviderError] = ProviderError,
    check: bool = True,
    error_prefix: str | None = None,
    capture_output: bool = True,
    timeout: float | None = None,
    cwd: Path | None = None,
    env: Mapping[str, str] | None = None,
) -> subprocess.CompletedProcess[str]:
    """Run *args* without a shell and map failures onto *error_cls*.

    ``env`` entries are layered over the current process environment.
    """
    prefix = error_prefix or " ".join(args[:2])
    merged_env: dict[str, str] | None = None
    if env is not None:
        merged_env = os.environ.copy()
        merged_env.update(env)
    try:
        result = subprocess.run(  # noqa: S603, S607
            list(args),
            capture_output=capture_output,
            text=True,
            check=False,
            timeout=timeout,
            cwd=str(cwd) if cwd is not None else None,
            env=merged_env,
        )
    except FileNotFoundError as exc:
        raise error_cls(f"{args[0]} not found: {exc}", tool_missing=True) from exc
    except subprocess.TimeoutExpired as exc:
        raise error_cls(f"{prefix} timed out after {exc.timeout:.0f}s") from exc
    if check and result.returncode != 0:
        stdout = getattr(result, "stdout", "") or ""
        stderr = getattr(result, "stderr", "") or ""
        message = stderr.strip() or stdout.strip() or "no output"
        raise error_cls(f"{prefix} failed (exit {result.returncode}): {message}")
    return result


__all__ = ["ProviderError", "run_command"]
