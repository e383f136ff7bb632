from __future__ import annotations

import logging
import time
from pathlib import Path

from reviewgate.errors import WorkflowError
from reviewgate.services.audit import AuditSink, NullAuditSink, record_event
from reviewgate.services.git_client import GitClient

logger = logging.getLogger(__name__)

DEFAULT_GITIGNORE = (
    "Inbox/\n"
    ".reviewgate/\n"
    "*.db\n"
    "*.db-*\n"
)

INITIAL_COMMIT_MESSAGE = "Initial commit\n\n[reviewgate: repository initialized]"


class RepositoryLifecycle:
    """Make sure a repository and a committer identity exist.

    Both checks are idempotent and cheap when the repository is already set
    up, so every session can call :meth:`ensure_ready` before its first git
    mutation.
    """

    def __init__(
        self,
        git: GitClient,
        root: Path,
        *,
        trunk_branch: str = "main",
        bot_name: str = "Reviewgate Bot",
        bot_email: str = "bot@reviewgate.local",
        audit: AuditSink | None = None,
    ):
        self.git = git
        self.root = Path(root)
        self.trunk_branch = trunk_branch
        self.bot_name = bot_name
        self.bot_email = bot_email
        self.audit: AuditSink = audit or NullAuditSink()
        self._ready = False

    async def ensure_ready(self) -> None:
        if self._ready:
            return
        await self.ensure_repository()
        await self.ensure_identity()
        self._ready = True

    async def ensure_repository(self) -> None:
        start = time.monotonic()
        if (self.root / ".git").exists():
            await record_event(
                self.audit,
                "git.check", str(self.root), {"status": "exists", "duration_ms": _ms(start)}
            )
            return

        try:
            self.root.mkdir(parents=True, exist_ok=True)
            await self.git.runner.run(["init"])
            # Name the unborn branch so the first commit lands on trunk
            # regardless of the user's init.defaultBranch.
            await self.git.runner.run(
                ["symbolic-ref", "HEAD", f"refs/heads/{self.trunk_branch}"]
            )
            await self.ensure_identity()
            await self._create_initial_commit()
        except WorkflowError as exc:
            await record_event(
                self.audit,
                "git.init",
                str(self.root),
                {"success": False, "error": str(exc), "duration_ms": _ms(start)},
            )
            raise

        logger.debug("Initialized repository at %s on '%s'", self.root, self.trunk_branch)
        await record_event(
            self.audit,
            "git.init",
            str(self.root),
            {"success": True, "branch": self.trunk_branch, "duration_ms": _ms(start)},
        )

    async def ensure_identity(self) -> None:
        start = time.monotonic()
        name = await self.git.config_get("user.name")
        email = await self.git.config_get("user.email")
        if name and email:
            await record_event(
                self.audit,
                "git.identity_check",
                str(self.root),
                {"status": "exists", "duration_ms": _ms(start)},
            )
            return

        # Scoped to this repository; the user's global config is never touched.
        await self.git.config_set("user.name", self.bot_name)
        await self.git.config_set("user.email", self.bot_email)
        logger.debug("Configured local git identity %s <%s>", self.bot_name, self.bot_email)
        await record_event(
            self.audit,
            "git.identity_configured",
            str(self.root),
            {
                "success": True,
                "user": self.bot_name,
                "email": self.bot_email,
                "duration_ms": _ms(start),
            },
        )

    async def _create_initial_commit(self) -> None:
        gitignore = self.root / ".gitignore"
        if not gitignore.exists():
            gitignore.write_text(DEFAULT_GITIGNORE, encoding="utf-8")
        await self.git.runner.run(["add", ".gitignore"], retry_on_lock=True)
        await self.git.commit(INITIAL_COMMIT_MESSAGE)


def _ms(start: float) -> float:
    return round((time.monotonic() - start) * 1000, 1)
