"""Typed views of the inbound GitLab webhook and room event payloads.

Only the fields the bridge reads are declared; everything else is kept
(``extra = "allow"``) so handlers and logs can still see it.
"""

from typing import Any, Dict, List, Optional, Union

from pydantic import BaseModel, Field


class GitLabUser(BaseModel):
    name: str
    username: Optional[str] = None
    avatar_url: Optional[str] = None

    class Config:
        extra = "allow"


class GitLabProject(BaseModel):
    id: int
    path_with_namespace: str
    web_url: Optional[str] = None

    class Config:
        extra = "allow"

    @property
    def path_segments(self) -> List[str]:
        return self.path_with_namespace.split("/")


class GitLabRepository(BaseModel):
    name: Optional[str] = None
    url: Optional[str] = None
    homepage: Optional[str] = None

    class Config:
        extra = "allow"


class GitLabIssueAttributes(BaseModel):
    id: int
    iid: int
    title: str = ""
    state: Optional[str] = None
    action: Optional[str] = None
    url: Optional[str] = None

    class Config:
        extra = "allow"


class GitLabNoteAttributes(BaseModel):
    id: Union[int, str]
    note: str
    noteable_type: str
    noteable_id: Optional[int] = None
    url: Optional[str] = None

    class Config:
        extra = "allow"


class GitLabNoteEvent(BaseModel):
    """``Note Hook`` payload"""

    object_kind: str = "note"
    user: GitLabUser
    project: GitLabProject
    # Present on hooks GitLab delivers for repository-backed projects; its presence
    # means the note may be the echo of a post this bridge just made.
    repository: Optional[GitLabRepository] = None
    object_attributes: GitLabNoteAttributes
    issue: Optional[GitLabIssueAttributes] = None

    class Config:
        extra = "allow"


class GitLabIssueEvent(BaseModel):
    """``Issue Hook`` payload"""

    object_kind: str = "issue"
    user: Optional[GitLabUser] = None
    project: GitLabProject
    object_attributes: GitLabIssueAttributes
    # {"title": {"previous": ..., "current": ...}, ...}; missing or empty when nothing changed.
    changes: Optional[Dict[str, Any]] = None

    class Config:
        extra = "allow"

    @property
    def issue(self) -> GitLabIssueAttributes:
        return self.object_attributes


class MatrixEvent(BaseModel):
    """A room event as pushed by the homeserver in an appservice transaction"""

    event_id: str
    room_id: str
    sender: str
    type: str
    state_key: Optional[str] = None
    content: Dict[str, Any] = Field(default_factory=dict)

    class Config:
        extra = "allow"

    @property
    def body(self) -> str:
        return str(self.content.get("body") or "")
