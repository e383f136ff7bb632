from reviewgate.models.activity import ActivityRecord
from reviewgate.models.changeset import Changeset, ChangesetDetails, ChangesetStatus, CommitInfo
from reviewgate.models.command import CommandResult
from reviewgate.models.plan import PlanDetails, PlanHeader, PlanStatus, PlanSummary

__all__ = [
    "ActivityRecord",
    "Changeset",
    "ChangesetDetails",
    "ChangesetStatus",
    "CommandResult",
    "CommitInfo",
    "PlanDetails",
    "PlanHeader",
    "PlanStatus",
    "PlanSummary",
]
