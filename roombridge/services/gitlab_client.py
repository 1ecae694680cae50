"""GitLab API client wrapper"""
import gitlab
import logging
from typing import Any, List, Union
import time

logger = logging.getLogger(__name__)


ProjectRef = Union[str, int, List[str]]


class GitLabClient:
    """Wrapper for the GitLab API operations the bridge needs"""

    def __init__(self, url: str, access_token: str, *, authenticate: bool = True):
        """Initialize GitLab client"""
        self.url = url
        self.gl = gitlab.Gitlab(url, private_token=access_token)
        if authenticate:
            self.gl.auth()

    @staticmethod
    def _project_id(project: ProjectRef) -> Union[str, int]:
        """Accept a project id, a full path, or a list of path segments."""
        if isinstance(project, (list, tuple)):
            return "/".join(project)
        return project

    @staticmethod
    def _should_retry(exc: Exception) -> bool:
        """Best-effort retry predicate for transient GitLab failures."""
        # python-gitlab exceptions often carry an HTTP response code
        rc = getattr(exc, "response_code", None)
        if rc in (429, 502, 503, 504):
            return True
        # If we can't classify, don't retry to avoid hiding real issues.
        return False

    def _with_retries(self, fn, *, max_attempts: int = 3, base_delay_s: float = 0.5):
        """Run callable with small exponential backoff on transient errors."""
        attempt = 1
        while True:
            try:
                return fn()
            except Exception as e:
                if attempt >= max_attempts or not self._should_retry(e):
                    raise
                time.sleep(base_delay_s * (2 ** (attempt - 1)))
                attempt += 1

    def get_project(self, project: ProjectRef):
        """Get project by ID or path"""
        project_id = self._project_id(project)
        try:
            return self._with_retries(lambda: self.gl.projects.get(project_id, lazy=True))
        except gitlab.exceptions.GitlabGetError as e:
            logger.error(f"Failed to get project {project_id}: {e}")
            raise

    def get_issue(self, project: ProjectRef, issue_iid: int) -> Any:
        """Get a specific issue by IID"""
        try:
            gl_project = self.get_project(project)
            return self._with_retries(lambda: gl_project.issues.get(issue_iid))
        except gitlab.exceptions.GitlabGetError as e:
            logger.error(f"Failed to get issue {issue_iid} from project {self._project_id(project)}: {e}")
            raise

    def create_issue_note(self, project: ProjectRef, issue_iid: int, note_body: str) -> Any:
        """Create a note (comment) on an issue.

        Not retried: a retry after a timeout could post the note twice.
        """
        try:
            gl_project = self.get_project(project)
            issue = gl_project.issues.get(issue_iid, lazy=True)
            note = issue.notes.create({"body": note_body})
            logger.info(f"Created note {note.id} on issue #{issue_iid}")
            return note
        except Exception as e:
            logger.error(f"Failed to create note on issue {issue_iid}: {e}")
            raise
