from __future__ import annotations

import logging
import secrets
import string
import time

from reviewgate.errors import CommandFailure
from reviewgate.services.audit import AuditSink, NullAuditSink, record_event
from reviewgate.services.classification import is_ref_collision
from reviewgate.services.git_client import GitClient
from reviewgate.services.repository import RepositoryLifecycle

logger = logging.getLogger(__name__)

BRANCH_PREFIX = "feat"
_BASE36 = string.digits + string.ascii_lowercase


def to_base36(value: int) -> str:
    if value == 0:
        return "0"
    digits: list[str] = []
    while value:
        value, rem = divmod(value, 36)
        digits.append(_BASE36[rem])
    return "".join(reversed(digits))


def random_suffix(length: int = 6) -> str:
    return "".join(secrets.choice(_BASE36) for _ in range(length))


class _MonotonicToken:
    """Base-36 millisecond timestamps that never repeat within a process."""

    def __init__(self) -> None:
        self._last = 0

    def __call__(self) -> str:
        now = time.time_ns() // 1_000_000
        if now <= self._last:
            now = self._last + 1
        self._last = now
        return to_base36(now)


class BranchAllocator:
    """Create a uniquely named feature branch for a request.

    Names follow ``feat/<request_id>-<trace prefix>``. A name already taken at
    call time gets a timestamp token; a name that turns out to be taken during
    creation (a concurrent writer, or a truncated trace id colliding) gets a
    random suffix and is retried up to ``max_retries`` times.
    """

    def __init__(
        self,
        git: GitClient,
        repository: RepositoryLifecycle,
        *,
        trace_prefix_length: int = 8,
        max_retries: int = 5,
        audit: AuditSink | None = None,
    ):
        self.git = git
        self.repository = repository
        self.trace_prefix_length = trace_prefix_length
        self.max_retries = max_retries
        self.audit: AuditSink = audit or NullAuditSink()
        self._token = _MonotonicToken()

    def base_name(self, request_id: str, trace_id: str) -> str:
        return f"{BRANCH_PREFIX}/{request_id}-{trace_id[: self.trace_prefix_length]}"

    async def create_branch(self, request_id: str, trace_id: str) -> str:
        start = time.monotonic()
        await self.repository.ensure_ready()

        base = self.base_name(request_id, trace_id)
        branch = base
        last_error: CommandFailure | None = None

        for attempt in range(max(1, self.max_retries)):
            if attempt == 0:
                if await self.git.branch_exists(branch):
                    branch = f"{base}-{self._token()}"
            else:
                branch = f"{base}-{random_suffix()}"

            try:
                await self.git.create_and_checkout(branch, trace_id=trace_id)
            except CommandFailure as exc:
                if is_ref_collision(exc.output or str(exc)):
                    logger.info("Branch name %s is taken, retrying", branch)
                    last_error = exc
                    continue
                await self._record_failure(exc, request_id, trace_id, start)
                raise

            logger.debug("Created branch %s for %s", branch, request_id)
            await record_event(
                self.audit,
                "git.branch_created",
                branch,
                {
                    "success": True,
                    "branch": branch,
                    "request_id": request_id,
                    "trace_id": trace_id,
                    "attempts": attempt + 1,
                    "duration_ms": round((time.monotonic() - start) * 1000, 1),
                },
                trace_id,
            )
            return branch

        assert last_error is not None
        await self._record_failure(last_error, request_id, trace_id, start)
        raise last_error

    async def _record_failure(
        self, exc: CommandFailure, request_id: str, trace_id: str, start: float
    ) -> None:
        await record_event(
            self.audit,
            "git.branch_created",
            request_id,
            {
                "success": False,
                "error": str(exc),
                "duration_ms": round((time.monotonic() - start) * 1000, 1),
            },
            trace_id,
        )
