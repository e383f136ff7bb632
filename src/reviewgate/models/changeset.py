from __future__ import annotations

from enum import Enum

from pydantic import BaseModel, Field


class ChangesetStatus(str, Enum):
    PENDING = "pending"  # created by an agent, awaiting review
    APPROVED = "approved"  # merged into trunk
    REJECTED = "rejected"  # branch deleted


class CommitInfo(BaseModel):
    sha: str
    message: str
    timestamp: str


class Changeset(BaseModel):
    """A branch-backed unit of reviewable code."""

    branch: str
    trace_id: str
    request_id: str
    files_changed: int = 0
    created_at: str = ""
    agent_id: str = "unknown"
    tip_sha: str = ""
    status: ChangesetStatus = ChangesetStatus.PENDING


class ChangesetDetails(Changeset):
    diff: str = ""
    commits: list[CommitInfo] = Field(default_factory=list)
