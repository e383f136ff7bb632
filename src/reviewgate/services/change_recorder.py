from __future__ import annotations

import logging
import time

from reviewgate.errors import CommandFailure, NothingToCommitFailure
from reviewgate.models.changeset import CommitInfo
from reviewgate.models.command import CommandResult
from reviewgate.services.audit import AuditSink, NullAuditSink, record_event
from reviewgate.services.git_client import GitClient
from reviewgate.services.repository import RepositoryLifecycle

logger = logging.getLogger(__name__)

TRACE_TRAILER = "Trace-Id"


def build_commit_message(message: str, trace_id: str, description: str | None = None) -> str:
    """Summary, optional long description, and a ``Trace-Id`` trailer."""
    parts = [message.strip()]
    if description and description.strip():
        parts.append(description.strip())
    parts.append(f"{TRACE_TRAILER}: {trace_id}")
    return "\n\n".join(parts)


def extract_trace_id(message: str) -> str | None:
    """Return the trace id from the last ``Trace-Id`` trailer in a message."""
    prefix = f"{TRACE_TRAILER}:"
    found = None
    for line in message.splitlines():
        line = line.strip()
        if line.startswith(prefix):
            found = line[len(prefix):].strip() or found
    return found


class ChangeRecorder:
    """Commit outstanding changes tagged with the originating trace id.

    The trailer lets the audit trail be rebuilt from repository history alone:
    ``git log --grep "Trace-Id: <id>"`` finds every commit for a work item.
    """

    def __init__(
        self,
        git: GitClient,
        repository: RepositoryLifecycle,
        *,
        audit: AuditSink | None = None,
    ):
        self.git = git
        self.repository = repository
        self.audit: AuditSink = audit or NullAuditSink()

    async def commit(
        self,
        message: str,
        *,
        trace_id: str,
        description: str | None = None,
    ) -> str:
        """Stage everything and commit; return the new commit sha.

        Raises :class:`NothingToCommitFailure` when the working tree is clean.
        """
        start = time.monotonic()
        await self.repository.ensure_ready()
        try:
            status = await self.git.status_porcelain()
            if not status.strip():
                raise NothingToCommitFailure(
                    "nothing to commit, working tree clean",
                    CommandResult(
                        args=("git", "status", "--porcelain"),
                        cwd=self.git.runner.cwd,
                        exit_code=0,
                        classification=NothingToCommitFailure.kind,
                    ),
                )

            await self.git.stage_all(trace_id=trace_id)
            await self.git.commit(
                build_commit_message(message, trace_id, description), trace_id=trace_id
            )
            sha = await self.git.head_sha()
        except CommandFailure as exc:
            await record_event(
                self.audit,
                "git.committed",
                None,
                {
                    "success": False,
                    "error": str(exc),
                    "classification": exc.kind,
                    "duration_ms": round((time.monotonic() - start) * 1000, 1),
                },
                trace_id,
            )
            raise

        logger.debug("Committed %s for trace %s", sha[:8], trace_id)
        await record_event(
            self.audit,
            "git.committed",
            sha,
            {
                "success": True,
                "message": message,
                "trace_id": trace_id,
                "commit_sha": sha,
                "duration_ms": round((time.monotonic() - start) * 1000, 1),
            },
            trace_id,
        )
        return sha

    async def history_for_trace(self, trace_id: str) -> list[CommitInfo]:
        """Every commit on any branch carrying the trace trailer, oldest first."""
        return await self.git.grep_log(f"{TRACE_TRAILER}: {trace_id}")
