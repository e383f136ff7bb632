from __future__ import annotations

import logging
from typing import Any, Protocol, runtime_checkable

from reviewgate.db.database import Database
from reviewgate.models.activity import ActivityRecord

logger = logging.getLogger("reviewgate.audit")


@runtime_checkable
class AuditSink(Protocol):
    """Append-only record of command attempts and state transitions."""

    async def record(
        self,
        event_type: str,
        target_id: str | None,
        payload: dict[str, Any],
        trace_id: str | None = None,
    ) -> None: ...


class NullAuditSink:
    """Sink that only logs; used when no journal is available."""

    async def record(
        self,
        event_type: str,
        target_id: str | None,
        payload: dict[str, Any],
        trace_id: str | None = None,
    ) -> None:
        logger.debug("%s %s trace=%s %s", event_type, target_id, trace_id, payload)


class ActivityJournal:
    """AuditSink backed by the SQLite activity table.

    Write failures are logged on the ``reviewgate.audit`` logger and never
    reach the caller: an unavailable journal must not fail a review.
    """

    def __init__(self, db: Database, actor: str = "system"):
        self.db = db
        self.actor = actor

    def with_actor(self, actor: str) -> "ActivityJournal":
        return ActivityJournal(self.db, actor=actor)

    async def record(
        self,
        event_type: str,
        target_id: str | None,
        payload: dict[str, Any],
        trace_id: str | None = None,
    ) -> None:
        try:
            await self.db.log_activity(self.actor, event_type, target_id, payload, trace_id)
        except Exception as exc:
            logger.warning("Failed to record %s for %s: %s", event_type, target_id, exc)

    async def activities_by_trace(self, trace_id: str) -> list[ActivityRecord]:
        rows = await self.db.get_activities_by_trace(trace_id)
        return [ActivityRecord(**row) for row in rows]

    async def activities_by_type(self, action_type: str) -> list[ActivityRecord]:
        rows = await self.db.get_activities_by_type(action_type)
        return [ActivityRecord(**row) for row in rows]

    async def recent_activities(self, limit: int = 20) -> list[ActivityRecord]:
        """Newest first."""
        rows = await self.db.get_recent_activities(limit)
        return [ActivityRecord(**row) for row in rows]


def bind_actor(sink: AuditSink, actor: str) -> AuditSink:
    """Return a sink that records events as ``actor`` when the sink supports it."""
    with_actor = getattr(sink, "with_actor", None)
    return with_actor(actor) if callable(with_actor) else sink


async def record_event(
    sink: AuditSink,
    event_type: str,
    target_id: str | None,
    payload: dict[str, Any],
    trace_id: str | None = None,
) -> None:
    """Record an event on ``sink``; a failing sink is logged, never raised."""
    try:
        await sink.record(event_type, target_id, payload, trace_id)
    except Exception as exc:
        logger.warning("Audit sink failed to record %s for %s: %s", event_type, target_id, exc)
