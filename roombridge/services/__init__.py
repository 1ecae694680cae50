"""Services"""

from roombridge.services.comment_ledger import CommentLedger
from roombridge.services.connection_manager import ConnectionManager
from roombridge.services.gitlab_client import GitLabClient
from roombridge.services.issue_connection import GitLabIssueConnection, IssueConnectionState

__all__ = [
    "CommentLedger",
    "ConnectionManager",
    "GitLabClient",
    "GitLabIssueConnection",
    "IssueConnectionState",
]
