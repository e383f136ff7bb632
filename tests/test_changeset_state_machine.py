from __future__ import annotations

from pathlib import Path

import pytest

from reviewgate.errors import (
    CommandFailure,
    NotOnTrunkError,
    PartialMergeError,
    PreconditionError,
)
from reviewgate.models.changeset import ChangesetStatus
from reviewgate.services.audit import ActivityJournal
from reviewgate.services.change_recorder import ChangeRecorder
from reviewgate.services.git_client import GitClient
from reviewgate.services.repository import RepositoryLifecycle
from reviewgate.services.state_machine import ChangesetStateMachine, parse_branch_name

BRANCH = "feat/request-001-abcdef"
TRACE = "abcdef00-0000-4000-8000-000000000001"


@pytest.fixture
async def feature(
    ready_repo: RepositoryLifecycle, git: GitClient, recorder: ChangeRecorder, repo_path: Path
) -> str:
    """A changeset branch with two commits, left checked out."""
    await git.create_and_checkout(BRANCH)
    (repo_path / "login.py").write_text("def login():\n    return True\n")
    await recorder.commit("Add login", trace_id=TRACE)
    (repo_path / "test_login.py").write_text("def test_login():\n    assert True\n")
    await recorder.commit("Add login test", trace_id=TRACE)
    return BRANCH


@pytest.mark.parametrize(
    "branch, expected",
    [
        ("feat/request-001-abcdef", ("request-001", "abcdef")),
        ("feat/request-001-550e8400-lx3k9q", ("request-001", "550e8400")),
        ("feat/fix-login-12-550e8400", ("fix-login-12", "550e8400")),
        ("feat/adhoc-550e8400", ("adhoc", "550e8400")),
        ("main", None),
    ],
)
def test_parse_branch_name(branch: str, expected) -> None:
    assert parse_branch_name(branch) == expected


@pytest.mark.asyncio
class TestChangesetQueries:
    async def test_list_describes_pending_changeset(
        self, changesets: ChangesetStateMachine, feature: str
    ) -> None:
        (changeset,) = await changesets.list()

        assert changeset.branch == feature
        assert changeset.request_id == "request-001"
        assert changeset.trace_id == TRACE
        assert changeset.files_changed == 2
        assert changeset.agent_id == "bot@reviewgate.local"
        assert changeset.created_at
        assert changeset.status == ChangesetStatus.PENDING
        assert await changesets.list("approved") == []

    async def test_show_includes_commits_and_diff(
        self, changesets: ChangesetStateMachine, feature: str
    ) -> None:
        details = await changesets.show("request-001")

        assert details.branch == feature
        assert [c.message for c in details.commits] == ["Add login", "Add login test"]
        assert "+def login():" in details.diff

    async def test_trace_falls_back_to_branch_name(
        self, changesets: ChangesetStateMachine, ready_repo, git: GitClient, repo_path: Path
    ) -> None:
        await git.create_and_checkout("feat/request-002-1234abcd")
        (repo_path / "notes.txt").write_text("no trailer\n")
        await git.stage_all()
        await git.commit("Commit without trailer")

        details = await changesets.show("feat/request-002-1234abcd")
        assert details.trace_id == "1234abcd"

    async def test_unknown_changeset(self, changesets: ChangesetStateMachine, ready_repo) -> None:
        with pytest.raises(PreconditionError, match="Changeset not found: request-404"):
            await changesets.show("request-404")


@pytest.mark.asyncio
class TestChangesetApprove:
    async def test_approve_off_trunk_fails_without_merge(
        self,
        changesets: ChangesetStateMachine,
        journal: ActivityJournal,
        git: GitClient,
        feature: str,
    ) -> None:
        trunk_before = await git.runner.output(["rev-parse", "main"])

        with pytest.raises(NotOnTrunkError) as exc_info:
            await changesets.approve(feature)

        assert "must be on trunk" in str(exc_info.value).lower()
        assert exc_info.value.recoverable
        assert exc_info.value.current_branch == feature
        assert await git.runner.output(["rev-parse", "main"]) == trunk_before
        assert not await git.merge_in_progress()
        assert await journal.activities_by_type("changeset.approved") == []

    async def test_approve_on_trunk_merges(
        self,
        changesets: ChangesetStateMachine,
        journal: ActivityJournal,
        git: GitClient,
        feature: str,
    ) -> None:
        await git.checkout("main")

        sha = await changesets.approve("request-001")

        assert sha == await git.head_sha()
        parents = (await git.runner.output(["rev-list", "--parents", "-n", "1", "HEAD"])).split()
        assert len(parents) == 3
        message = await git.runner.output(["log", "-1", "--format=%B"])
        assert message.startswith("Merge request-001: Add login")
        assert message.splitlines()[-1] == f"Trace-Id: {TRACE}"

        (record,) = await journal.activities_by_type("changeset.approved")
        assert record.trace_id == TRACE
        assert record.actor == "reviewer@example.com"
        assert record.payload["commit_sha"] == sha
        assert record.payload["branch"] == feature
        assert record.payload["via"] == "cli"

        (changeset,) = await changesets.list()
        assert changeset.status == ChangesetStatus.APPROVED

    async def test_approved_changeset_cannot_be_approved_again(
        self, changesets: ChangesetStateMachine, git: GitClient, feature: str
    ) -> None:
        await git.checkout("main")
        await changesets.approve(feature)

        with pytest.raises(PreconditionError, match="pending"):
            await changesets.approve(feature)

    async def test_conflicting_merge_is_partial(
        self,
        changesets: ChangesetStateMachine,
        git: GitClient,
        recorder: ChangeRecorder,
        ready_repo,
        repo_path: Path,
    ) -> None:
        (repo_path / "shared.txt").write_text("base\n")
        await recorder.commit("Add shared file", trace_id="base")

        await git.create_and_checkout("feat/request-003-deadbeef")
        (repo_path / "shared.txt").write_text("feature side\n")
        await recorder.commit("Edit shared file", trace_id="deadbeef")

        await git.checkout("main")
        (repo_path / "shared.txt").write_text("trunk side\n")
        await recorder.commit("Edit shared file on trunk", trace_id="trunk")

        with pytest.raises(PartialMergeError) as exc_info:
            await changesets.approve("request-003")

        assert not exc_info.value.recoverable
        assert isinstance(exc_info.value.cause, CommandFailure)
        assert "git merge --abort" in str(exc_info.value)
        assert await git.merge_in_progress()


@pytest.mark.asyncio
class TestChangesetReject:
    async def test_reject_deletes_branch(
        self,
        changesets: ChangesetStateMachine,
        journal: ActivityJournal,
        git: GitClient,
        feature: str,
    ) -> None:
        await git.checkout("main")

        await changesets.reject(feature, "Duplicates existing auth module")

        assert not await git.branch_exists(feature)
        (record,) = await journal.activities_by_type("changeset.rejected")
        assert record.trace_id == TRACE
        assert record.payload["reason"] == "Duplicates existing auth module"
        assert record.payload["commit_count"] == 2
        assert await changesets.list() == []

    @pytest.mark.parametrize("reason", ["", "   "])
    async def test_blank_reason_keeps_branch(
        self,
        changesets: ChangesetStateMachine,
        journal: ActivityJournal,
        git: GitClient,
        feature: str,
        reason: str,
    ) -> None:
        await git.checkout("main")

        with pytest.raises(PreconditionError, match="reason is required"):
            await changesets.reject(feature, reason)

        assert await git.branch_exists(feature)
        assert await journal.activities_by_type("changeset.rejected") == []

    async def test_cannot_reject_checked_out_branch(
        self, changesets: ChangesetStateMachine, git: GitClient, feature: str
    ) -> None:
        with pytest.raises(PreconditionError, match="checked out"):
            await changesets.reject(feature, "Not needed")
        assert await git.branch_exists(feature)

    async def test_recreated_branch_after_rejection_is_pending(
        self,
        changesets: ChangesetStateMachine,
        journal: ActivityJournal,
        git: GitClient,
        recorder: ChangeRecorder,
        repo_path: Path,
        feature: str,
    ) -> None:
        await git.checkout("main")
        await changesets.reject(feature, "Wrong approach")

        await git.create_and_checkout(feature)
        (repo_path / "login.py").write_text("def login():\n    return check_password()\n")
        await recorder.commit("Rework login", trace_id=TRACE)
        await git.checkout("main")

        details = await changesets.show(feature)
        assert details.status == ChangesetStatus.PENDING
        assert [c.message for c in details.commits] == ["Rework login"]

        sha = await changesets.approve(feature)

        assert sha == await git.head_sha()
        (changeset,) = await changesets.list()
        assert changeset.status == ChangesetStatus.APPROVED
        (rejected,) = await journal.activities_by_type("changeset.rejected")
        (approved,) = await journal.activities_by_type("changeset.approved")
        assert rejected.payload["tip_sha"] != approved.payload["tip_sha"]


async def _reviewer() -> str:
    return "reviewer@example.com"


@pytest.fixture
def unaudited(
    git: GitClient, repository: RepositoryLifecycle, journal: ActivityJournal, failing_sink
) -> ChangesetStateMachine:
    return ChangesetStateMachine(
        git, repository, reviewer=_reviewer, audit=failing_sink, journal=journal
    )


@pytest.mark.asyncio
class TestChangesetAuditFailures:
    async def test_approve_merges_when_sink_fails(
        self, unaudited: ChangesetStateMachine, git: GitClient, feature: str
    ) -> None:
        await git.checkout("main")

        sha = await unaudited.approve(feature)

        assert sha == await git.head_sha()
        message = await git.runner.output(["log", "-1", "--format=%s"])
        assert message.startswith("Merge request-001")

    async def test_reject_deletes_when_sink_fails(
        self, unaudited: ChangesetStateMachine, git: GitClient, feature: str
    ) -> None:
        await git.checkout("main")

        await unaudited.reject(feature, "Not needed")

        assert not await git.branch_exists(feature)
