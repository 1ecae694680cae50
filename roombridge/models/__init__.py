"""Database models"""

from roombridge.models.base import Base
from roombridge.models.instance import GitLabInstance
from roombridge.models.issue_connection import IssueConnectionRecord
from roombridge.models.user_link import UserLink

__all__ = [
    "Base",
    "GitLabInstance",
    "IssueConnectionRecord",
    "UserLink",
]
