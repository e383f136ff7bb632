from __future__ import annotations

from enum import Enum
from typing import Optional

from pydantic import BaseModel, ConfigDict, field_validator


class PlanStatus(str, Enum):
    REVIEW = "review"
    APPROVED = "approved"
    REJECTED = "rejected"
    NEEDS_REVISION = "needs_revision"


# Allowed transitions; approved and rejected are terminal.
PLAN_TRANSITIONS: dict[PlanStatus, frozenset[PlanStatus]] = {
    PlanStatus.REVIEW: frozenset(
        {PlanStatus.APPROVED, PlanStatus.REJECTED, PlanStatus.NEEDS_REVISION}
    ),
    PlanStatus.NEEDS_REVISION: frozenset(
        {PlanStatus.REVIEW, PlanStatus.REJECTED, PlanStatus.NEEDS_REVISION}
    ),
    PlanStatus.APPROVED: frozenset(),
    PlanStatus.REJECTED: frozenset(),
}


def can_transition(current: PlanStatus, target: PlanStatus) -> bool:
    return target in PLAN_TRANSITIONS[current]


class PlanHeader(BaseModel):
    """Validated view over a plan document's metadata header.

    Unknown keys are kept so that rewriting a plan never drops fields the
    producer added.
    """

    model_config = ConfigDict(extra="allow")

    status: PlanStatus
    trace_id: Optional[str] = None
    agent_id: Optional[str] = None
    created_at: Optional[str] = None
    approved_by: Optional[str] = None
    approved_at: Optional[str] = None
    rejected_by: Optional[str] = None
    rejected_at: Optional[str] = None
    rejection_reason: Optional[str] = None
    reviewed_by: Optional[str] = None
    reviewed_at: Optional[str] = None

    @field_validator("trace_id")
    @classmethod
    def _trace_id_not_blank(cls, value: Optional[str]) -> Optional[str]:
        if value is not None and not value.strip():
            raise ValueError("trace_id must not be blank")
        return value


class PlanSummary(BaseModel):
    """Listing entry for a plan."""

    id: str
    status: str
    trace_id: Optional[str] = None
    agent_id: Optional[str] = None
    created_at: Optional[str] = None
    approved_by: Optional[str] = None
    approved_at: Optional[str] = None
    rejected_by: Optional[str] = None
    rejected_at: Optional[str] = None
    rejection_reason: Optional[str] = None
    reviewed_by: Optional[str] = None
    reviewed_at: Optional[str] = None

    @classmethod
    def from_metadata(cls, plan_id: str, metadata: dict[str, str]) -> "PlanSummary":
        known = {k: v for k, v in metadata.items() if k in cls.model_fields and k != "id"}
        known.setdefault("status", "unknown")
        return cls(id=plan_id, **known)


class PlanDetails(PlanSummary):
    content: str = ""
