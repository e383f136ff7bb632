from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import replace
from pathlib import Path
from typing import Awaitable, Callable, Sequence

from reviewgate.errors import GenericCommandFailure, LockFailure, TimeoutFailure
from reviewgate.models.command import CommandResult
from reviewgate.services.audit import AuditSink, NullAuditSink, record_event
from reviewgate.services.classification import classify_failure

logger = logging.getLogger(__name__)

Sleeper = Callable[[float], Awaitable[None]]


class CommandRunner:
    """Run external version-control commands with timeouts and lock retries.

    Design:
    - One subprocess at a time per call; the caller suspends until it exits,
      fails, or the timeout fires. A timed out process is killed and reaped.
    - Non-zero exits are classified by :func:`classify_failure`.
    - Lock contention is the only retried failure (when ``retry_on_lock`` is
      set): git's lock files are its single-writer mechanism, so a held lock
      is transient. Everything else fails fast.
    - Every attempt is reported to the audit sink without affecting the result.
    """

    def __init__(
        self,
        cwd: Path,
        *,
        program: str = "git",
        timeout: float = 30.0,
        lock_retries: int = 5,
        backoff_base: float = 0.2,
        audit: AuditSink | None = None,
        sleep: Sleeper = asyncio.sleep,
    ):
        self.cwd = Path(cwd)
        self.program = program
        self.timeout = timeout
        self.lock_retries = lock_retries
        self.backoff_base = backoff_base
        self.audit: AuditSink = audit or NullAuditSink()
        self._sleep = sleep

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def run(
        self,
        args: Sequence[str],
        *,
        timeout: float | None = None,
        retry_on_lock: bool = False,
        check: bool = True,
        trace_id: str | None = None,
        cwd: Path | None = None,
    ) -> CommandResult:
        """Run ``program *args`` and return its result.

        Raises a :class:`CommandFailure` subclass on a classified non-zero exit
        (unless ``check`` is false) and :class:`TimeoutFailure` on expiry.
        """
        bound = self.timeout if timeout is None else timeout
        workdir = Path(cwd) if cwd else self.cwd
        attempt = 0

        while True:
            attempt += 1
            result = await self._attempt(list(args), workdir, bound, attempt, trace_id)
            if result.ok or not check:
                return result

            failure_cls = classify_failure(result.output)
            result = _with_classification(result, failure_cls.kind)
            failure = failure_cls.from_result(result)

            if (
                isinstance(failure, LockFailure)
                and retry_on_lock
                and attempt <= self.lock_retries
            ):
                delay = self.backoff_base * (2 ** (attempt - 1))
                logger.info(
                    "Lock held for '%s' (attempt %d/%d), retrying in %.2fs",
                    result.command_line(),
                    attempt,
                    self.lock_retries + 1,
                    delay,
                )
                await self._sleep(delay)
                continue

            logger.debug("Command failed (%s): %s", failure.kind, result.command_line())
            raise failure

    async def output(self, args: Sequence[str], **kwargs) -> str:
        """Convenience wrapper returning stripped stdout."""
        result = await self.run(args, **kwargs)
        return result.stdout.strip()

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    async def _attempt(
        self,
        args: list[str],
        cwd: Path,
        timeout: float,
        attempt: int,
        trace_id: str | None,
    ) -> CommandResult:
        argv = (self.program, *args)
        start = time.monotonic()
        try:
            proc = await asyncio.create_subprocess_exec(
                *argv,
                cwd=str(cwd),
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except (FileNotFoundError, NotADirectoryError, PermissionError) as exc:
            result = CommandResult(
                args=argv,
                cwd=cwd,
                exit_code=-1,
                stderr=str(exc),
                duration=time.monotonic() - start,
                attempt=attempt,
                timeout=timeout,
                classification=GenericCommandFailure.kind,
            )
            await self._report(result, trace_id)
            raise GenericCommandFailure(
                f"Command could not be started: {' '.join(argv)}: {exc}", result
            ) from exc

        try:
            stdout, stderr = await asyncio.wait_for(proc.communicate(), timeout=timeout)
        except asyncio.TimeoutError:
            _kill(proc)
            await proc.wait()
            result = CommandResult(
                args=argv,
                cwd=cwd,
                exit_code=proc.returncode if proc.returncode is not None else -1,
                duration=time.monotonic() - start,
                attempt=attempt,
                timeout=timeout,
                classification=TimeoutFailure.kind,
            )
            await self._report(result, trace_id)
            raise TimeoutFailure(
                f"Command timed out after {timeout:g}s: {' '.join(argv)}", result
            ) from None
        except asyncio.CancelledError:
            _kill(proc)
            await proc.wait()
            raise

        result = CommandResult(
            args=argv,
            cwd=cwd,
            exit_code=proc.returncode if proc.returncode is not None else -1,
            stdout=stdout.decode(errors="replace"),
            stderr=stderr.decode(errors="replace"),
            duration=time.monotonic() - start,
            attempt=attempt,
            timeout=timeout,
        )
        if not result.ok:
            result = _with_classification(result, classify_failure(result.output).kind)
        await self._report(result, trace_id)
        return result

    async def _report(self, result: CommandResult, trace_id: str | None) -> None:
        await record_event(
            self.audit,
            "command.attempt",
            result.args[1] if len(result.args) > 1 else result.args[0],
            {
                "args": list(result.args),
                "cwd": str(result.cwd),
                "exit_code": result.exit_code,
                "success": result.ok,
                "duration_ms": round(result.duration * 1000, 1),
                "attempt": result.attempt,
                "classification": result.classification,
            },
            trace_id,
        )


def _with_classification(result: CommandResult, kind: str) -> CommandResult:
    return replace(result, classification=kind)


def _kill(proc: asyncio.subprocess.Process) -> None:
    if proc.returncode is None:
        try:
            proc.kill()
        except ProcessLookupError:
            pass
