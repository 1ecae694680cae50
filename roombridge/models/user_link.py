"""User link model"""
from sqlalchemy import Column, Integer, String, ForeignKey, DateTime, UniqueConstraint
from sqlalchemy.orm import relationship
from datetime import datetime
from roombridge.models.base import Base


class UserLink(Base):
    """Link between a room user and their account on a GitLab instance"""

    __tablename__ = "user_links"
    __table_args__ = (
        # One link per room user per instance; a room user may be linked on several instances.
        UniqueConstraint("instance_id", "room_user_id", name="uq_user_link_room_user_per_instance"),
        UniqueConstraint("instance_id", "gitlab_username", name="uq_user_link_gitlab_user_per_instance"),
    )

    id = Column(Integer, primary_key=True, index=True)

    instance_id = Column(Integer, ForeignKey("gitlab_instances.id"), nullable=False)

    # Room side, e.g. @alice:example.org
    room_user_id = Column(String, nullable=False, index=True)

    # GitLab side. The username lets notes by this user be attributed to the real room
    # user instead of a virtual one; the token lets room messages be posted as them.
    gitlab_username = Column(String, nullable=True, index=True)
    access_token = Column(String, nullable=True)

    # Timestamps
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    # Relationships
    instance = relationship("GitLabInstance")

    def __repr__(self):
        return f"<UserLink({self.room_user_id} -> {self.gitlab_username})>"
