"""Connection between one room and one GitLab issue"""

import asyncio
import logging
from typing import Any, Awaitable, Callable, List, Optional

from pydantic import BaseModel

from roombridge.services.comment_ledger import CommentLedger
from roombridge.services.delivery import DeliverySink
from roombridge.services.events import GitLabIssueEvent, GitLabNoteEvent, MatrixEvent
from roombridge.services.formatting import (
    comment_body_for_room_event,
    format_issue_room_name,
    format_room_topic,
    room_message_for_gitlab_note,
)
from roombridge.services.identity import IdentityResolver

logger = logging.getLogger(__name__)

NOT_BRIDGED_KEY = "⚠️ Not bridged"
SYNC_COMMAND = "!sync"


class IssueConnectionState(BaseModel):
    """Content of the connection's room state event"""

    instance: str
    projects: List[str]
    state: str
    iid: int
    id: int

    @property
    def project_path(self) -> str:
        return "/".join(self.projects)


def _safe_attr(obj: Any, name: str, default: Any = None) -> Any:
    """Get attribute or dict key safely."""
    if obj is None:
        return default
    if isinstance(obj, dict):
        return obj.get(name, default)
    return getattr(obj, name, default)


class GitLabIssueConnection:
    """Bridges a room and a GitLab issue in both directions.

    Notes posted on the issue are mirrored into the room as the note's author;
    messages sent in the room are posted as notes using the sender's own GitLab
    token. Each note a room message creates is marked in the comment ledger
    immediately, so the webhook GitLab sends for it is recognised as an echo.
    Inbound note webhooks that may be such an echo wait ``grace_period``
    seconds before checking the ledger. This narrows the race with a concurrent
    outbound post but does not close it: a post whose note id arrives later
    than the grace period can still be mirrored back.
    """

    CANONICAL_EVENT_TYPE = "uk.half-shot.matrix-github.gitlab.issue"
    EVENT_TYPES = [CANONICAL_EVENT_TYPE]

    def __init__(
        self,
        room_id: str,
        state: IssueConnectionState,
        state_key: str,
        *,
        instance_url: str,
        ledger: CommentLedger,
        identities: IdentityResolver,
        sink: DeliverySink,
        grace_period: float = 0.5,
        on_state_change: Optional[Callable[["GitLabIssueConnection"], Awaitable[None]]] = None,
    ):
        self.room_id = room_id
        self.state = state
        self.state_key = state_key
        self.instance_url = instance_url
        self.ledger = ledger
        self.identities = identities
        self.sink = sink
        self.grace_period = grace_period
        self.on_state_change = on_state_change

    @classmethod
    async def create_room_for_issue(
        cls,
        instance_name: str,
        instance_url: str,
        issue: Any,
        projects: List[str],
        *,
        sink: DeliverySink,
        **kwargs: Any,
    ) -> "GitLabIssueConnection":
        """Create a room for ``issue`` (a python-gitlab issue or its JSON) and connect it."""
        state = IssueConnectionState(
            instance=instance_name,
            projects=list(projects),
            state=_safe_attr(issue, "state", "opened"),
            iid=int(_safe_attr(issue, "iid")),
            id=int(_safe_attr(issue, "id")),
        )
        web_url = _safe_attr(issue, "web_url")
        references = _safe_attr(issue, "references") or {}
        name = references.get("full") or f"{state.project_path}#{state.iid}"
        author = _safe_attr(_safe_attr(issue, "author"), "name")

        room_id = await sink.create_room(
            name=name,
            topic=format_room_topic(state.state, author),
            initial_state=[
                {
                    "type": cls.CANONICAL_EVENT_TYPE,
                    "content": state.model_dump(),
                    "state_key": web_url,
                }
            ],
        )
        return cls(room_id, state, web_url, instance_url=instance_url, sink=sink, **kwargs)

    @property
    def project_path(self) -> str:
        return self.state.project_path

    @property
    def issue_number(self) -> int:
        return self.state.iid

    def is_interested_in_state_event(self, event_type: str, state_key: str) -> bool:
        return event_type in self.EVENT_TYPES and self.state_key == state_key

    def is_for_issue(self, instance: str, project_path: str, iid: int) -> bool:
        return (
            self.state.instance == instance
            and self.project_path == project_path
            and self.state.iid == int(iid)
        )

    async def on_comment_created(self, event: GitLabNoteEvent) -> None:
        note_id = event.object_attributes.id
        if event.repository is not None:
            # Delay to stop comments racing sends
            await asyncio.sleep(self.grace_period)
        if not self.ledger.test_and_mark(self.state.instance, self.project_path, self.state.iid, note_id):
            logger.debug(f"{self}: note {note_id} already processed, skipping")
            return

        identity = await self.identities.resolve_room_identity(event.user, instance=self.state.instance)
        content = room_message_for_gitlab_note(event)
        await self.sink.send_message(self.room_id, content, "m.room.message", identity.user_id)

    async def on_matrix_issue_comment(self, event: MatrixEvent, allow_echo: bool = False) -> None:
        client = await self.identities.resolve_tracker_credentials(event.sender, self.instance_url)
        if client is None:
            await self.sink.send_reaction(self.room_id, event.event_id, NOT_BRIDGED_KEY)
            logger.info("Ignoring comment, user is not authenticated")
            return

        note = await asyncio.to_thread(
            client.create_issue_note,
            self.state.projects,
            self.state.iid,
            comment_body_for_room_event(event),
        )

        if not allow_echo:
            self.ledger.mark_processed(self.state.instance, self.project_path, self.state.iid, note.id)

    async def on_issue_edited(self, event: GitLabIssueEvent) -> None:
        if not event.changes:
            logger.debug("No changes given")
            return

        issue = event.issue
        if "title" in event.changes:
            await self.sink.set_room_metadata(
                self.room_id, "name", format_issue_room_name(issue, self.project_path)
            )

        if issue.state and issue.state != self.state.state:
            # Last write wins if two edits race.
            self.state.state = issue.state
            await self.sink.set_room_metadata(self.room_id, "topic", format_room_topic(issue.state))
            await self.sink.send_state_event(
                self.room_id, self.CANONICAL_EVENT_TYPE, self.state_key, self.state.model_dump()
            )
            if self.on_state_change is not None:
                await self.on_state_change(self)

    async def on_message_event(self, event: MatrixEvent) -> None:
        if event.body.strip() == SYNC_COMMAND:
            logger.info(f"{self}: resync requested but not supported, ignoring")
            return
        await self.on_matrix_issue_comment(event)

    def __str__(self) -> str:
        return f"GitLabIssue {self.instance_url}/{self.project_path}#{self.issue_number}"
