"""Issue connection model"""
import json
from datetime import datetime, timezone

from sqlalchemy import Column, DateTime, Integer, String, Text, UniqueConstraint

from roombridge.models.base import Base


def utcnow() -> datetime:
    """UTC 'now' as tz-naive datetime."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


class IssueConnectionRecord(Base):
    """Persisted state of one bridged (room, issue) pair.

    Mirrors the room state event content so connections can be restored at
    startup without reading room state back from the homeserver.
    """

    __tablename__ = "issue_connections"
    __table_args__ = (
        UniqueConstraint("room_id", "state_key", name="uq_issue_connections_room_state_key"),
    )

    id = Column(Integer, primary_key=True, index=True)

    # Room side
    room_id = Column(String, nullable=False, index=True)
    state_key = Column(String, nullable=False)  # issue web_url

    # GitLab side
    instance = Column(String, nullable=False)  # GitLabInstance.name
    projects = Column(Text, nullable=False)  # JSON list of path segments
    iid = Column(Integer, nullable=False)
    issue_id = Column(Integer, nullable=False)
    state = Column(String, nullable=False, default="opened")

    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    @property
    def project_segments(self) -> list[str]:
        return list(json.loads(self.projects or "[]"))

    def __repr__(self):
        return f"<IssueConnectionRecord(room_id={self.room_id}, state_key={self.state_key})>"
