"""
Matterflow — Matter timeline.

The timeline is the matter's user-facing activity feed. The engine emits
one event per state change through ``create_timeline_event``; this module
is the default sink and persists events to ``timeline_events``.
"""

import uuid
from datetime import datetime, timezone
from enum import Enum

from matterflow.models import db


class TimelineEventType(str, Enum):
    STAGE_SKIPPED = "stage_skipped"
    WORKFLOW_ACTIVATED = "workflow_activated"
    STAGE_STARTED = "stage_started"
    STAGE_COMPLETED = "stage_completed"
    STAGE_GATE_OVERRIDDEN = "stage_gate_overridden"


class TimelineEvent(db.Model):
    """Immutable activity-feed entry for a matter."""

    __tablename__ = "timeline_events"
    __table_args__ = (
        db.Index("ix_timeline_events_matter_ts", "matter_id", "occurred_at"),
        db.Index("ix_timeline_events_entity", "entity_type", "entity_id"),
    )

    id = db.Column(db.String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    firm_id = db.Column(db.String(36), nullable=False)
    matter_id = db.Column(db.String(36), nullable=False)
    event_type = db.Column("type", db.String(40), nullable=False)
    title = db.Column(db.String(300), nullable=False)
    description = db.Column(db.Text, nullable=True)
    actor_type = db.Column(db.String(10), nullable=False, default="system", comment="system | user")
    actor_id = db.Column(db.String(36), nullable=True)
    entity_type = db.Column(db.String(30), nullable=False)
    entity_id = db.Column(db.String(36), nullable=False)
    event_metadata = db.Column("metadata", db.JSON, nullable=True)
    occurred_at = db.Column(
        db.DateTime(timezone=True), nullable=False,
        default=lambda: datetime.now(timezone.utc),
    )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "firm_id": self.firm_id,
            "matter_id": self.matter_id,
            "type": self.event_type,
            "title": self.title,
            "description": self.description,
            "actor_type": self.actor_type,
            "actor_id": self.actor_id,
            "entity_type": self.entity_type,
            "entity_id": self.entity_id,
            "metadata": self.event_metadata or {},
            "occurred_at": self.occurred_at.isoformat() if self.occurred_at else None,
        }

    def __repr__(self):
        return f"<TimelineEvent {self.event_type}: {self.title}>"


def create_timeline_event(
    session,
    *,
    firm_id: str,
    matter_id: str,
    event_type: TimelineEventType,
    title: str,
    actor_type: str,
    actor_id: str | None,
    entity_type: str,
    entity_id: str,
    description: str | None = None,
    metadata: dict | None = None,
    occurred_at: datetime | None = None,
) -> TimelineEvent:
    """Append a timeline event and flush; the caller owns the transaction."""
    event = TimelineEvent(
        firm_id=firm_id,
        matter_id=matter_id,
        event_type=TimelineEventType(event_type).value,
        title=title,
        description=description,
        actor_type=actor_type,
        actor_id=actor_id,
        entity_type=entity_type,
        entity_id=str(entity_id),
        event_metadata=metadata,
        occurred_at=occurred_at or datetime.now(timezone.utc),
    )
    session.add(event)
    session.flush()
    return event
