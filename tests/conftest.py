from __future__ import annotations

from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable

import pytest

from reviewgate.db.database import Database
from reviewgate.frontmatter import Document, render_document
from reviewgate.services.audit import ActivityJournal
from reviewgate.services.change_recorder import ChangeRecorder
from reviewgate.services.command_runner import CommandRunner
from reviewgate.services.git_client import GitClient
from reviewgate.services.repository import RepositoryLifecycle
from reviewgate.services.state_machine import ChangesetStateMachine, PlanStateMachine
from reviewgate.utils.config import WorkspacePaths

REVIEWER = "reviewer@example.com"
FIXED_NOW = datetime(2024, 5, 1, 12, 30, 0, tzinfo=timezone.utc)


class RecordingSink:
    """In-memory audit sink for assertions."""

    def __init__(self) -> None:
        self.events: list[tuple[str, Any, dict[str, Any], Any]] = []

    async def record(self, event_type, target_id, payload, trace_id=None) -> None:
        self.events.append((event_type, target_id, payload, trace_id))

    def of_type(self, event_type: str) -> list[tuple[str, Any, dict[str, Any], Any]]:
        return [e for e in self.events if e[0] == event_type]


class FailingSink:
    """Audit sink whose backing store is unavailable."""

    async def record(self, event_type, target_id, payload, trace_id=None) -> None:
        raise RuntimeError("sink down")


@pytest.fixture(autouse=True)
def isolated_git(tmp_path_factory: pytest.TempPathFactory, monkeypatch: pytest.MonkeyPatch) -> Path:
    """Keep the user's git and reviewgate settings out of every test."""
    home = tmp_path_factory.mktemp("home")
    gitconfig = home / ".gitconfig"
    gitconfig.write_text("")
    monkeypatch.setenv("HOME", str(home))
    monkeypatch.setenv("GIT_CONFIG_GLOBAL", str(gitconfig))
    monkeypatch.setenv("GIT_CONFIG_NOSYSTEM", "1")
    for var in (
        "GIT_DIR",
        "GIT_WORK_TREE",
        "GIT_INDEX_FILE",
        "REVIEWGATE_REVIEWER",
        "REVIEWGATE_ROOT",
        "REVIEWGATE_DB_PATH",
        "REVIEWGATE_TRUNK_BRANCH",
        "REVIEWGATE_REQUIRE_IDENTITY",
    ):
        monkeypatch.delenv(var, raising=False)
    return gitconfig


@pytest.fixture
async def db(tmp_path: Path) -> Database:
    database = Database(tmp_path / "journal.db")
    await database.initialize()
    yield database  # type: ignore[misc]
    await database.close()


@pytest.fixture
def journal(db: Database) -> ActivityJournal:
    return ActivityJournal(db)


@pytest.fixture
def sink() -> RecordingSink:
    return RecordingSink()


@pytest.fixture
def failing_sink() -> FailingSink:
    return FailingSink()


@pytest.fixture
def repo_path(tmp_path: Path) -> Path:
    path = tmp_path / "repo"
    path.mkdir()
    return path


@pytest.fixture
def runner(repo_path: Path, sink: RecordingSink) -> CommandRunner:
    return CommandRunner(repo_path, timeout=30, lock_retries=3, backoff_base=0.05, audit=sink)


@pytest.fixture
def git(runner: CommandRunner) -> GitClient:
    return GitClient(runner)


@pytest.fixture
def repository(git: GitClient, repo_path: Path, sink: RecordingSink) -> RepositoryLifecycle:
    return RepositoryLifecycle(git, repo_path, trunk_branch="main", audit=sink)


@pytest.fixture
async def ready_repo(repository: RepositoryLifecycle) -> RepositoryLifecycle:
    await repository.ensure_ready()
    return repository


@pytest.fixture
def recorder(
    git: GitClient, repository: RepositoryLifecycle, sink: RecordingSink
) -> ChangeRecorder:
    return ChangeRecorder(git, repository, audit=sink)


async def _reviewer() -> str:
    return REVIEWER


@pytest.fixture
def paths(tmp_path: Path) -> WorkspacePaths:
    return WorkspacePaths(tmp_path / "workspace")


@pytest.fixture
def plans(paths: WorkspacePaths, sink: RecordingSink) -> PlanStateMachine:
    return PlanStateMachine(paths, reviewer=_reviewer, audit=sink, clock=lambda: FIXED_NOW)


@pytest.fixture
def write_plan(paths: WorkspacePaths) -> Callable[..., Path]:
    def _write(
        plan_id: str,
        status: str = "review",
        trace_id: str = "550e8400-e29b-41d4-a716-446655440000",
        body: str = "# Plan\n\nDo the thing.\n",
        **extra: str,
    ) -> Path:
        metadata = {"trace_id": trace_id, "status": status, "agent_id": "senior-coder", **extra}
        path = paths.inbox_plans / f"{plan_id}.md"
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(render_document(Document(metadata, body)), encoding="utf-8")
        return path

    return _write


@pytest.fixture
def changesets(
    git: GitClient,
    repository: RepositoryLifecycle,
    journal: ActivityJournal,
) -> ChangesetStateMachine:
    return ChangesetStateMachine(
        git,
        repository,
        reviewer=_reviewer,
        audit=journal,
        journal=journal,
        trunk_branch="main",
        clock=lambda: FIXED_NOW,
    )
