"""Connection registry and event dispatch"""

import asyncio
import json
import logging
from typing import Any, Awaitable, Callable, Dict, List, Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session
from starlette.requests import Request

from roombridge.models import GitLabInstance, IssueConnectionRecord
from roombridge.services.comment_ledger import CommentLedger
from roombridge.services.delivery import DeliverySink
from roombridge.services.events import GitLabIssueEvent, GitLabNoteEvent, MatrixEvent
from roombridge.services.gitlab_client import GitLabClient
from roombridge.services.identity import IdentityResolver
from roombridge.services.issue_connection import GitLabIssueConnection, IssueConnectionState

logger = logging.getLogger(__name__)


class ConnectionManager:
    """Owns the live connections and routes inbound events to them.

    Webhook events are routed by (instance name, project path, issue iid);
    room events by room id, and state events additionally by (event type,
    state key). A failing handler is logged and does not stop dispatch to
    other connections.

    Connections for the same issue are awaited one after another, so each adds
    its own grace period. The comment ledger is keyed by issue, not by room:
    when several rooms bridge one issue, a note is mirrored into the first
    room that claims it and the others skip it.
    """

    def __init__(
        self,
        session_factory: Callable[[], Session],
        *,
        ledger: CommentLedger,
        identities: IdentityResolver,
        sink: DeliverySink,
        grace_period: float = 0.5,
        ignored_sender: Optional[Callable[[str], bool]] = None,
    ):
        self.session_factory = session_factory
        self.ledger = ledger
        self.identities = identities
        self.sink = sink
        self.grace_period = grace_period
        # Senders whose messages came from this bridge (bot and virtual users).
        self.ignored_sender = ignored_sender or (lambda _user_id: False)
        self.connections: List[GitLabIssueConnection] = []

    def _build(
        self, room_id: str, state: IssueConnectionState, state_key: str, instance_url: str
    ) -> GitLabIssueConnection:
        return GitLabIssueConnection(
            room_id,
            state,
            state_key,
            instance_url=instance_url,
            ledger=self.ledger,
            identities=self.identities,
            sink=self.sink,
            grace_period=self.grace_period,
            on_state_change=self.persist,
        )

    def _get_instance(self, db: Session, name: str) -> GitLabInstance:
        instance = db.query(GitLabInstance).filter(GitLabInstance.name == name).first()
        if not instance:
            raise ValueError(f"GitLab instance '{name}' not found")
        return instance

    def load_from_db(self) -> int:
        """Restore connections persisted by earlier runs."""
        db = self.session_factory()
        try:
            instance_urls = {i.name: i.url for i in db.query(GitLabInstance).all()}
            loaded = 0
            for record in db.query(IssueConnectionRecord).all():
                if record.instance not in instance_urls:
                    logger.warning(
                        f"Skipping connection for room {record.room_id}: "
                        f"instance '{record.instance}' is not configured"
                    )
                    continue
                state = IssueConnectionState(
                    instance=record.instance,
                    projects=record.project_segments,
                    state=record.state,
                    iid=record.iid,
                    id=record.issue_id,
                )
                self._add(self._build(record.room_id, state, record.state_key, instance_urls[record.instance]))
                loaded += 1
            logger.info(f"Restored {loaded} issue connections")
            return loaded
        finally:
            db.close()

    def _add(self, connection: GitLabIssueConnection) -> None:
        if self.get_connection(connection.room_id, connection.state_key) is not None:
            raise ValueError(
                f"Room {connection.room_id} already has a connection for {connection.state_key}"
            )
        self.connections.append(connection)
        logger.info(f"Registered {connection} in {connection.room_id}")

    def _save_record(self, connection: GitLabIssueConnection) -> None:
        db = self.session_factory()
        try:
            record = (
                db.query(IssueConnectionRecord)
                .filter(
                    IssueConnectionRecord.room_id == connection.room_id,
                    IssueConnectionRecord.state_key == connection.state_key,
                )
                .first()
            )
            if record is None:
                record = IssueConnectionRecord(room_id=connection.room_id, state_key=connection.state_key)
                db.add(record)
            record.instance = connection.state.instance
            record.projects = json.dumps(connection.state.projects)
            record.iid = connection.state.iid
            record.issue_id = connection.state.id
            record.state = connection.state.state
            try:
                db.commit()
            except IntegrityError:
                # Another writer inserted the same (room, state key); it carries the same state.
                db.rollback()
                logger.warning(f"Connection row for {connection.room_id} was written concurrently")
        finally:
            db.close()

    async def persist(self, connection: GitLabIssueConnection) -> None:
        await asyncio.to_thread(self._save_record, connection)

    def _delete_record(self, room_id: str, state_key: str) -> None:
        db = self.session_factory()
        try:
            db.query(IssueConnectionRecord).filter(
                IssueConnectionRecord.room_id == room_id,
                IssueConnectionRecord.state_key == state_key,
            ).delete()
            db.commit()
        finally:
            db.close()

    async def register(
        self, room_id: str, state: IssueConnectionState, state_key: str
    ) -> GitLabIssueConnection:
        """Register a connection for a room that already carries the state event."""
        db = self.session_factory()
        try:
            instance_url = self._get_instance(db, state.instance).url
        finally:
            db.close()
        connection = self._build(room_id, state, state_key, instance_url)
        self._add(connection)
        await self.persist(connection)
        return connection

    async def create_connection_for_issue(
        self, instance_name: str, project_path: str, issue_iid: int
    ) -> GitLabIssueConnection:
        """Set up a new bridge: create a room for the issue and connect it."""
        db = self.session_factory()
        try:
            instance = self._get_instance(db, instance_name)
            instance_url, bot_token = instance.url, instance.access_token
        finally:
            db.close()
        if not bot_token:
            raise ValueError(f"GitLab instance '{instance_name}' has no access token to look up issues")

        def _fetch_issue():
            return GitLabClient(instance_url, bot_token).get_issue(project_path, issue_iid)

        issue = await asyncio.to_thread(_fetch_issue)
        connection = await GitLabIssueConnection.create_room_for_issue(
            instance_name,
            instance_url,
            issue,
            project_path.split("/"),
            sink=self.sink,
            ledger=self.ledger,
            identities=self.identities,
            grace_period=self.grace_period,
            on_state_change=self.persist,
        )
        self._add(connection)
        await self.persist(connection)
        return connection

    async def remove(self, room_id: str, state_key: str) -> bool:
        connection = self.get_connection(room_id, state_key)
        if connection is None:
            return False
        self.connections.remove(connection)
        await asyncio.to_thread(self._delete_record, room_id, state_key)
        logger.info(f"Removed {connection} from {room_id}")
        return True

    def get_connection(self, room_id: str, state_key: str) -> Optional[GitLabIssueConnection]:
        for connection in self.connections:
            if connection.room_id == room_id and connection.state_key == state_key:
                return connection
        return None

    def connections_for_room(self, room_id: str) -> List[GitLabIssueConnection]:
        return [c for c in self.connections if c.room_id == room_id]

    def connections_for_issue(
        self, instance: str, project_path: str, iid: int
    ) -> List[GitLabIssueConnection]:
        return [c for c in self.connections if c.is_for_issue(instance, project_path, iid)]

    async def _run_handlers(
        self,
        connections: List[GitLabIssueConnection],
        handler: Callable[[GitLabIssueConnection], Awaitable[Any]],
        what: str,
    ) -> Dict[str, int]:
        stats = {"handled": 0, "failed": 0}
        for connection in connections:
            try:
                await handler(connection)
                stats["handled"] += 1
            except Exception as e:
                stats["failed"] += 1
                logger.error(f"{connection}: failed to handle {what}: {e}")
        return stats

    async def dispatch_note_event(self, instance: str, event: GitLabNoteEvent) -> Dict[str, int]:
        if event.object_attributes.noteable_type != "Issue" or event.issue is None:
            logger.debug(f"Ignoring {event.object_attributes.noteable_type} note")
            return {"handled": 0, "failed": 0}
        targets = self.connections_for_issue(
            instance, event.project.path_with_namespace, event.issue.iid
        )
        return await self._run_handlers(
            targets, lambda c: c.on_comment_created(event), f"note {event.object_attributes.id}"
        )

    async def dispatch_issue_event(self, instance: str, event: GitLabIssueEvent) -> Dict[str, int]:
        targets = self.connections_for_issue(
            instance, event.project.path_with_namespace, event.issue.iid
        )
        return await self._run_handlers(targets, lambda c: c.on_issue_edited(event), "issue edit")

    async def dispatch_room_event(self, event: MatrixEvent) -> Dict[str, int]:
        if event.state_key is not None and event.type in GitLabIssueConnection.EVENT_TYPES:
            return await self._handle_state_event(event)

        if event.type != "m.room.message":
            return {"handled": 0, "failed": 0}
        if self.ignored_sender(event.sender):
            # Our own mirrored messages coming back from the homeserver.
            return {"handled": 0, "failed": 0}
        return await self._run_handlers(
            self.connections_for_room(event.room_id),
            lambda c: c.on_message_event(event),
            f"room event {event.event_id}",
        )

    async def _handle_state_event(self, event: MatrixEvent) -> Dict[str, int]:
        existing = next(
            (
                c
                for c in self.connections_for_room(event.room_id)
                if c.is_interested_in_state_event(event.type, event.state_key)
            ),
            None,
        )
        if not event.content:
            # Emptied state means the room was disconnected.
            if existing is not None and await self.remove(event.room_id, event.state_key):
                return {"handled": 1, "failed": 0}
            return {"handled": 0, "failed": 0}
        if existing is not None:
            # Already connected; we are the usual author of this state.
            return {"handled": 0, "failed": 0}
        try:
            state = IssueConnectionState(**event.content)
            await self.register(event.room_id, state, event.state_key)
        except Exception as e:
            logger.error(f"Could not connect room {event.room_id} from state event: {e}")
            return {"handled": 0, "failed": 1}
        return {"handled": 1, "failed": 0}


def get_bridge(request: Request) -> ConnectionManager:
    """FastAPI dependency returning the app's connection manager"""
    return request.app.state.bridge
