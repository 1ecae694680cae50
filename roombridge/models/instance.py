"""GitLab instance model"""

from datetime import datetime

from sqlalchemy import Column, DateTime, Integer, String

from roombridge.models.base import Base


class GitLabInstance(Base):
    """A configured GitLab server that issues can be bridged from"""

    __tablename__ = "gitlab_instances"

    id = Column(Integer, primary_key=True, index=True)
    # Stored verbatim in connection state; ledger keys are scoped by it.
    name = Column(String, unique=True, nullable=False, index=True)
    url = Column(String, nullable=False)
    # Bot token, used for read-only lookups (issue metadata when setting up rooms).
    access_token = Column(String, nullable=True)
    # Value GitLab sends in X-Gitlab-Token. If unset, webhooks are not verified.
    webhook_secret = Column(String, nullable=True)
    description = Column(String, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    def __repr__(self):
        return f"<GitLabInstance(name='{self.name}', url='{self.url}')>"
