from __future__ import annotations

from typing import Any, Optional

from pydantic import BaseModel, Field


class ActivityRecord(BaseModel):
    """One row of the activity journal."""

    id: str
    trace_id: str
    actor: str
    action_type: str
    target: Optional[str] = None
    payload: dict[str, Any] = Field(default_factory=dict)
    timestamp: str
