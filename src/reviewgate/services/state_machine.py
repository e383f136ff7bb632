"""Review transitions for plans (documents) and changesets (branches).

Plans move between directories as their status changes; every move writes
the new copy first and removes the old one second, so an interrupted
transition leaves at most a duplicate. Changesets live as ``feat/*``
branches; their status is not stored anywhere in git and is derived from the
last terminal event in the activity journal.
"""

from __future__ import annotations

import logging
import os
import re
import time
from datetime import datetime, timezone
from pathlib import Path
from typing import Awaitable, Callable, Iterable, Optional

from pydantic import ValidationError

from reviewgate.errors import (
    CommandFailure,
    DocumentFormatError,
    NotOnTrunkError,
    PartialMergeError,
    PreconditionError,
)
from reviewgate.frontmatter import Document, parse_document, render_document
from reviewgate.models.changeset import Changeset, ChangesetDetails, ChangesetStatus
from reviewgate.models.plan import (
    PLAN_TRANSITIONS,
    PlanDetails,
    PlanHeader,
    PlanStatus,
    PlanSummary,
    can_transition,
)
from reviewgate.services.audit import (
    ActivityJournal,
    AuditSink,
    NullAuditSink,
    bind_actor,
    record_event,
)
from reviewgate.services.branch_allocator import BRANCH_PREFIX
from reviewgate.services.change_recorder import TRACE_TRAILER, extract_trace_id
from reviewgate.services.git_client import GitClient
from reviewgate.services.repository import RepositoryLifecycle
from reviewgate.utils.config import WorkspacePaths
from reviewgate.utils.files import atomic_write_text

logger = logging.getLogger(__name__)

ReviewerResolver = Callable[[], Awaitable[str]]

REVIEW_COMMENTS_HEADING = "## Review Comments"
COMMENT_MARKER = "⚠️"

_PLAN_ID_RE = re.compile(r"^[A-Za-z0-9][A-Za-z0-9._-]*$")

# feat/<request_id>-<trace prefix>[-<disambiguator>], where a request id is
# one or more words followed by a number, e.g. request-001.
_BRANCH_RE = re.compile(
    rf"^{BRANCH_PREFIX}/"
    r"(?P<request_id>[A-Za-z][A-Za-z0-9_]*(?:-[A-Za-z][A-Za-z0-9_]*)*-\d+)"
    r"-(?P<trace>[A-Za-z0-9]+)"
    r"(?:-(?P<suffix>[0-9a-z]+))?$"
)
_LOOSE_BRANCH_RE = re.compile(rf"^{BRANCH_PREFIX}/(?P<request_id>.+)-(?P<trace>[A-Za-z0-9]+)$")


def _now() -> datetime:
    return datetime.now(timezone.utc)


def parse_branch_name(branch: str) -> Optional[tuple[str, str]]:
    """Split a changeset branch into ``(request_id, trace_prefix)``."""
    match = _BRANCH_RE.match(branch) or _LOOSE_BRANCH_RE.match(branch)
    if match is None:
        return None
    return match.group("request_id"), match.group("trace")


def _require_reason(reason: Optional[str], item: str) -> str:
    if reason is None or not reason.strip():
        raise PreconditionError(f"A rejection reason is required to reject {item}", item_id=item)
    return reason.strip()


def _elapsed_ms(start: float) -> float:
    return round((time.monotonic() - start) * 1000, 1)


def _write_plan(path: Path, document: Document) -> None:
    atomic_write_text(path, render_document(document))


# ----------------------------------------------------------------------
# Plans
# ----------------------------------------------------------------------


class PlanStateMachine:
    """Approve, reject, and request revisions of plan documents."""

    def __init__(
        self,
        paths: WorkspacePaths,
        *,
        reviewer: ReviewerResolver,
        audit: AuditSink | None = None,
        clock: Callable[[], datetime] = _now,
    ):
        self.paths = paths
        self.reviewer = reviewer
        self.audit: AuditSink = audit or NullAuditSink()
        self.clock = clock

    # ------------------------------------------------------------------
    # Transitions
    # ------------------------------------------------------------------

    async def approve(self, plan_id: str) -> PlanDetails:
        plan_id = self._check_id(plan_id)
        source, document, header = self._load_for_transition(plan_id, PlanStatus.APPROVED)

        actor = await self.reviewer()
        now = self.clock()
        metadata = dict(document.metadata)
        metadata["status"] = PlanStatus.APPROVED.value
        metadata["approved_by"] = actor
        metadata["approved_at"] = now.isoformat()

        target = self.paths.system_active / f"{plan_id}.md"
        archived = None
        if target.exists():
            archived = self._archive(plan_id, target, now)

        _write_plan(target, Document(metadata, document.body, document.delimiter))
        source.unlink()

        logger.debug("Plan %s approved by %s", plan_id, actor)
        payload = {
            "plan_id": plan_id,
            "approved_by": actor,
            "approved_at": metadata["approved_at"],
            "via": "cli",
        }
        if archived is not None:
            payload["archived_to"] = str(archived)
        await record_event(
            bind_actor(self.audit, actor), "plan.approved", plan_id, payload, header.trace_id
        )
        return self._details(plan_id, metadata, document.body)

    async def reject(self, plan_id: str, reason: str) -> PlanDetails:
        reason = _require_reason(reason, f"plan {plan_id}")
        plan_id = self._check_id(plan_id)
        source, document, header = self._load_for_transition(plan_id, PlanStatus.REJECTED)

        target = self.paths.inbox_rejected / f"{plan_id}_rejected.md"
        if target.exists():
            raise PreconditionError(
                f"Plan {plan_id} already has a rejected copy at {target}; "
                "remove it before rejecting again",
                item_id=plan_id,
            )

        actor = await self.reviewer()
        metadata = dict(document.metadata)
        metadata["status"] = PlanStatus.REJECTED.value
        metadata["rejected_by"] = actor
        metadata["rejected_at"] = self.clock().isoformat()
        metadata["rejection_reason"] = reason

        _write_plan(target, Document(metadata, document.body, document.delimiter))
        source.unlink()

        logger.debug("Plan %s rejected by %s", plan_id, actor)
        await record_event(
            bind_actor(self.audit, actor),
            "plan.rejected",
            plan_id,
            {
                "plan_id": plan_id,
                "rejected_by": actor,
                "rejected_at": metadata["rejected_at"],
                "reason": reason,
                "via": "cli",
            },
            header.trace_id,
        )
        return self._details(plan_id, metadata, document.body)

    async def revise(self, plan_id: str, comments: Iterable[str]) -> PlanDetails:
        comments = [c.strip() for c in comments if c and c.strip()]
        if not comments:
            raise PreconditionError(
                f"At least one review comment is required to request revision of plan {plan_id}",
                item_id=plan_id,
            )
        plan_id = self._check_id(plan_id)
        source, document, header = self._load_for_transition(plan_id, PlanStatus.NEEDS_REVISION)

        actor = await self.reviewer()
        metadata = dict(document.metadata)
        metadata["status"] = PlanStatus.NEEDS_REVISION.value
        metadata["reviewed_by"] = actor
        metadata["reviewed_at"] = self.clock().isoformat()
        body = add_review_comments(document.body, comments)

        _write_plan(source, Document(metadata, body, document.delimiter))

        logger.debug("Plan %s sent back for revision by %s", plan_id, actor)
        await record_event(
            bind_actor(self.audit, actor),
            "plan.revision_requested",
            plan_id,
            {
                "plan_id": plan_id,
                "reviewed_by": actor,
                "reviewed_at": metadata["reviewed_at"],
                "comment_count": len(comments),
                "via": "cli",
            },
            header.trace_id,
        )
        return self._details(plan_id, metadata, body)

    async def resubmit(self, plan_id: str) -> PlanDetails:
        """Move a revised plan back to ``review``; used by the plan's producer."""
        plan_id = self._check_id(plan_id)
        source, document, header = self._load_for_transition(plan_id, PlanStatus.REVIEW)

        metadata = dict(document.metadata)
        metadata["status"] = PlanStatus.REVIEW.value
        _write_plan(source, Document(metadata, document.body, document.delimiter))

        await record_event(
            self.audit, "plan.resubmitted", plan_id, {"plan_id": plan_id}, header.trace_id
        )
        return self._details(plan_id, metadata, document.body)

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    async def list(self, status: Optional[str] = None) -> list[PlanSummary]:
        """Plans waiting in the inbox, optionally filtered by status."""
        directory = self.paths.inbox_plans
        if not directory.exists():
            return []

        plans = []
        for path in sorted(directory.glob("*.md")):
            try:
                metadata = parse_document(path.read_text(encoding="utf-8")).metadata
            except (OSError, UnicodeDecodeError, DocumentFormatError) as exc:
                logger.warning("Skipping unreadable plan %s: %s", path, exc)
                continue
            summary = PlanSummary.from_metadata(path.stem, metadata)
            if status is None or summary.status == status:
                plans.append(summary)
        return plans

    async def show(self, plan_id: str) -> PlanDetails:
        plan_id = self._check_id(plan_id)
        path = self._locate(plan_id)
        if path is None:
            raise PreconditionError(f"Plan not found: {plan_id}", item_id=plan_id)
        document = parse_document(path.read_text(encoding="utf-8"))
        return self._details(plan_id, document.metadata, document.body)

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _check_id(self, plan_id: str) -> str:
        plan_id = (plan_id or "").strip()
        if plan_id.endswith(".md"):
            plan_id = plan_id[:-3]
        if not _PLAN_ID_RE.match(plan_id) or ".." in plan_id:
            raise PreconditionError(f"Invalid plan id: {plan_id!r}", item_id=plan_id)
        return plan_id

    def _locate(self, plan_id: str) -> Optional[Path]:
        for path in (
            self.paths.inbox_plans / f"{plan_id}.md",
            self.paths.system_active / f"{plan_id}.md",
            self.paths.inbox_rejected / f"{plan_id}_rejected.md",
        ):
            if path.exists():
                return path
        return None

    def _load_for_transition(
        self, plan_id: str, target: PlanStatus
    ) -> tuple[Path, Document, PlanHeader]:
        source = self.paths.inbox_plans / f"{plan_id}.md"
        path = source if source.exists() else self._locate(plan_id)
        if path is None:
            raise PreconditionError(f"Plan not found: {plan_id}", item_id=plan_id)

        document = parse_document(path.read_text(encoding="utf-8"))
        try:
            header = PlanHeader.model_validate(document.metadata)
        except ValidationError as exc:
            raise DocumentFormatError(f"Plan {plan_id} has an invalid header: {exc}") from exc

        if path != source or not can_transition(header.status, target):
            raise PreconditionError(
                _transition_message(plan_id, header.status, target), item_id=plan_id
            )
        return path, document, header

    def _archive(self, plan_id: str, target: Path, now: datetime) -> Path:
        stamp = now.strftime("%Y%m%dT%H%M%S%fZ")
        archived = self.paths.system_archive / f"{plan_id}_archived_{stamp}.md"
        archived.parent.mkdir(parents=True, exist_ok=True)
        os.replace(target, archived)
        logger.debug("Archived previous approved copy of %s to %s", plan_id, archived)
        return archived

    @staticmethod
    def _details(plan_id: str, metadata: dict[str, str], body: str) -> PlanDetails:
        summary = PlanSummary.from_metadata(plan_id, metadata)
        return PlanDetails(**summary.model_dump(), content=body)


def _transition_message(plan_id: str, current: PlanStatus, target: PlanStatus) -> str:
    allowed = sorted(s.value for s, targets in PLAN_TRANSITIONS.items() if target in targets)
    sources = " or ".join(f"'{s}'" for s in allowed)
    verb = {
        PlanStatus.APPROVED: "approved",
        PlanStatus.REJECTED: "rejected",
        PlanStatus.NEEDS_REVISION: "sent back for revision",
        PlanStatus.REVIEW: "resubmitted",
    }[target]
    return (
        f"Plan {plan_id} cannot be {verb}: its status is '{current.value}', "
        f"only plans with status {sources} can be {verb}"
    )


def add_review_comments(body: str, comments: list[str]) -> str:
    """Append comments under the review heading, creating it if needed."""
    lines = "\n".join(f"{COMMENT_MARKER} {comment}" for comment in comments)
    if REVIEW_COMMENTS_HEADING in body:
        head, _, tail = body.partition(REVIEW_COMMENTS_HEADING)
        section, sep, rest = tail.partition("\n## ")
        section = section.rstrip("\n") + "\n" + lines + "\n"
        if sep:
            section += "\n" + sep.lstrip("\n") + rest
        return head + REVIEW_COMMENTS_HEADING + section
    return f"{body.rstrip()}\n\n{REVIEW_COMMENTS_HEADING}\n\n{lines}\n"


# ----------------------------------------------------------------------
# Changesets
# ----------------------------------------------------------------------


class ChangesetStateMachine:
    """Merge or discard ``feat/*`` branches produced by agents."""

    def __init__(
        self,
        git: GitClient,
        repository: RepositoryLifecycle,
        *,
        reviewer: ReviewerResolver,
        audit: AuditSink | None = None,
        journal: ActivityJournal | None = None,
        trunk_branch: str = "main",
        clock: Callable[[], datetime] = _now,
    ):
        self.git = git
        self.repository = repository
        self.reviewer = reviewer
        self.audit: AuditSink = audit or NullAuditSink()
        self.journal = journal
        self.trunk_branch = trunk_branch
        self.clock = clock

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    async def list(self, status: Optional[str] = None) -> list[Changeset]:
        changesets = []
        for branch in await self.git.list_branches(f"{BRANCH_PREFIX}/*"):
            changeset = await self._describe(branch)
            if status is None or changeset.status.value == status:
                changesets.append(changeset)
        changesets.sort(key=lambda c: c.created_at, reverse=True)
        return changesets

    async def show(self, ref: str) -> ChangesetDetails:
        branch = await self._resolve_branch(ref)
        changeset = await self._describe(branch)
        commits = await self.git.commits_between(self.trunk_branch, branch)
        diff = await self.git.diff(self.trunk_branch, branch)
        return ChangesetDetails(**changeset.model_dump(), diff=diff, commits=commits)

    # ------------------------------------------------------------------
    # Transitions
    # ------------------------------------------------------------------

    async def approve(self, ref: str) -> str:
        """Merge the changeset into trunk and return the merge commit sha."""
        await self.repository.ensure_ready()
        changeset = await self.show(ref)
        self._require_pending(changeset, "approved")

        current = await self.git.current_branch()
        if current != self.trunk_branch:
            raise NotOnTrunkError(
                f"Must be on trunk branch '{self.trunk_branch}' to approve "
                f"{changeset.branch} (currently on '{current or 'detached HEAD'}').\n"
                f"Run: git checkout {self.trunk_branch}",
                current_branch=current,
                trunk_branch=self.trunk_branch,
            )

        actor = await self.reviewer()
        audit = bind_actor(self.audit, actor)
        subject = changeset.commits[0].message if changeset.commits else "agent changes"
        message = (
            f"Merge {changeset.request_id}: {subject}\n\n"
            f"{TRACE_TRAILER}: {changeset.trace_id}"
        )

        start = time.monotonic()
        try:
            await self.git.merge_no_ff(changeset.branch, message, trace_id=changeset.trace_id)
        except CommandFailure as exc:
            await record_event(
                audit,
                "changeset.approve_failed",
                changeset.request_id,
                {
                    "branch": changeset.branch,
                    "error": str(exc),
                    "classification": exc.kind,
                    "duration_ms": _elapsed_ms(start),
                    "via": "cli",
                },
                changeset.trace_id,
            )
            if await self.git.merge_in_progress():
                raise PartialMergeError(
                    f"Merge of {changeset.branch} into '{self.trunk_branch}' stopped "
                    "part way and the repository is mid-merge. Resolve the conflicts "
                    "and commit, or run: git merge --abort\n"
                    f"{exc}",
                    exc,
                ) from exc
            raise

        sha = await self.git.head_sha()
        logger.debug("Merged %s into %s as %s", changeset.branch, self.trunk_branch, sha[:8])
        await record_event(
            audit,
            "changeset.approved",
            changeset.request_id,
            {
                "branch": changeset.branch,
                "tip_sha": changeset.tip_sha,
                "commit_sha": sha,
                "files_changed": changeset.files_changed,
                "approved_by": actor,
                "approved_at": self.clock().isoformat(),
                "duration_ms": _elapsed_ms(start),
                "via": "cli",
            },
            changeset.trace_id,
        )
        return sha

    async def reject(self, ref: str, reason: str) -> None:
        reason = _require_reason(reason, f"changeset {ref}")
        await self.repository.ensure_ready()
        changeset = await self.show(ref)
        self._require_pending(changeset, "rejected")

        if await self.git.current_branch() == changeset.branch:
            raise PreconditionError(
                f"Cannot reject {changeset.branch} while it is checked out. "
                f"Run: git checkout {self.trunk_branch}",
                item_id=changeset.branch,
            )

        actor = await self.reviewer()
        await self.git.delete_branch(changeset.branch, trace_id=changeset.trace_id)

        logger.debug("Rejected and deleted %s", changeset.branch)
        await record_event(
            bind_actor(self.audit, actor),
            "changeset.rejected",
            changeset.request_id,
            {
                "branch": changeset.branch,
                "tip_sha": changeset.tip_sha,
                "rejected_by": actor,
                "rejected_at": self.clock().isoformat(),
                "reason": reason,
                "commit_count": len(changeset.commits),
                "via": "cli",
            },
            changeset.trace_id,
        )

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    async def _resolve_branch(self, ref: str) -> str:
        ref = (ref or "").strip()
        if not ref:
            raise PreconditionError("A changeset branch or request id is required")

        branch = ref if ref.startswith(f"{BRANCH_PREFIX}/") else f"{BRANCH_PREFIX}/{ref}"
        if await self.git.branch_exists(branch):
            return branch

        matches = []
        for candidate in await self.git.list_branches(f"{BRANCH_PREFIX}/*"):
            parsed = parse_branch_name(candidate)
            if parsed is not None and parsed[0] == ref:
                matches.append(candidate)
        if len(matches) == 1:
            return matches[0]
        if matches:
            raise PreconditionError(
                f"Request {ref} has several changesets ({', '.join(matches)}); "
                "pass the branch name instead",
                item_id=ref,
            )
        raise PreconditionError(f"Changeset not found: {ref}", item_id=ref)

    async def _describe(self, branch: str) -> Changeset:
        parsed = parse_branch_name(branch)
        request_id, trace_prefix = parsed if parsed else (branch.split("/", 1)[-1], "")

        # A merged branch has no commits of its own; its tip still has the trailer.
        bodies = await self.git.commit_bodies(self.trunk_branch, branch)
        if not bodies:
            bodies = [await self.git.commit_body(branch)]

        trace_id = None
        for body in bodies:
            trace_id = extract_trace_id(body)
            if trace_id:
                break

        commits = await self.git.commits_between(self.trunk_branch, branch)
        files = await self.git.changed_files(self.trunk_branch, branch)
        agent = await self.git.tip_author(branch)
        tip_sha = await self.git.rev_parse(branch)
        trace_id = trace_id or trace_prefix or request_id

        return Changeset(
            branch=branch,
            trace_id=trace_id,
            request_id=request_id,
            files_changed=len(files),
            created_at=commits[0].timestamp if commits else "",
            agent_id=agent or "unknown",
            tip_sha=tip_sha,
            status=await self._status(branch, trace_id, tip_sha),
        )

    async def _status(self, branch: str, trace_id: str, tip_sha: str) -> ChangesetStatus:
        if self.journal is None:
            return ChangesetStatus.PENDING
        status = ChangesetStatus.PENDING
        for record in await self.journal.activities_by_trace(trace_id):
            if record.payload.get("branch", branch) != branch:
                continue
            # A recreated branch reuses the name; only decisions on this tip count.
            if record.payload.get("tip_sha", tip_sha) != tip_sha:
                continue
            if record.action_type == "changeset.approved":
                status = ChangesetStatus.APPROVED
            elif record.action_type == "changeset.rejected":
                status = ChangesetStatus.REJECTED
        return status

    @staticmethod
    def _require_pending(changeset: Changeset, verb: str) -> None:
        if changeset.status != ChangesetStatus.PENDING:
            raise PreconditionError(
                f"Changeset {changeset.branch} cannot be {verb}: its status is "
                f"'{changeset.status.value}', only 'pending' changesets can be {verb}",
                item_id=changeset.branch,
            )
