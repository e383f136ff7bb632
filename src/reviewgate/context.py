from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import AsyncIterator

from reviewgate.db.database import Database
from reviewgate.services.audit import ActivityJournal
from reviewgate.services.branch_allocator import BranchAllocator
from reviewgate.services.change_recorder import ChangeRecorder
from reviewgate.services.command_runner import CommandRunner
from reviewgate.services.git_client import GitClient
from reviewgate.services.identity import resolve_reviewer
from reviewgate.services.repository import RepositoryLifecycle
from reviewgate.services.state_machine import ChangesetStateMachine, PlanStateMachine
from reviewgate.utils.config import Config

logger = logging.getLogger(__name__)


@dataclass
class WorkflowContext:
    """Every service one invocation needs, built once and passed explicitly."""

    config: Config
    db: Database
    journal: ActivityJournal
    runner: CommandRunner
    git: GitClient
    repository: RepositoryLifecycle
    branches: BranchAllocator
    recorder: ChangeRecorder
    plans: PlanStateMachine
    changesets: ChangesetStateMachine


@asynccontextmanager
async def open_context(config: Config) -> AsyncIterator[WorkflowContext]:
    """Open the journal, wire the services, and close the journal on exit."""
    # --- Database ---
    db = Database(config.journal_path)
    await db.initialize()
    journal = ActivityJournal(db)

    # --- Git ---
    runner = CommandRunner(
        config.root,
        timeout=config.git_timeout,
        lock_retries=config.lock_retries,
        backoff_base=config.lock_backoff_base,
        audit=journal,
    )
    git = GitClient(runner)
    repository = RepositoryLifecycle(
        git,
        config.root,
        trunk_branch=config.trunk_branch,
        bot_name=config.bot_name,
        bot_email=config.bot_email,
        audit=journal,
    )

    # --- Identity ---
    reviewer_cache: list[str] = []

    async def reviewer() -> str:
        if not reviewer_cache:
            reviewer_cache.append(
                await resolve_reviewer(git, require=config.require_identity)
            )
        return reviewer_cache[0]

    # --- Services ---
    context = WorkflowContext(
        config=config,
        db=db,
        journal=journal,
        runner=runner,
        git=git,
        repository=repository,
        branches=BranchAllocator(
            git,
            repository,
            trace_prefix_length=config.trace_prefix_length,
            max_retries=config.branch_retries,
            audit=journal,
        ),
        recorder=ChangeRecorder(git, repository, audit=journal),
        plans=PlanStateMachine(config.paths, reviewer=reviewer, audit=journal),
        changesets=ChangesetStateMachine(
            git,
            repository,
            reviewer=reviewer,
            audit=journal,
            journal=journal,
            trunk_branch=config.trunk_branch,
        ),
    )
    logger.debug("Workflow context opened for %s", config.root)
    try:
        yield context
    finally:
        await db.close()
