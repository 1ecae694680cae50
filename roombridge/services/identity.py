"""Identity resolution between GitLab users and room users"""

import asyncio
import logging
import re
from dataclasses import dataclass
from typing import Callable, Dict, Optional, Protocol, Tuple

from sqlalchemy.orm import Session

from roombridge.models import GitLabInstance, UserLink
from roombridge.services.delivery import DeliverySink
from roombridge.services.events import GitLabUser
from roombridge.services.gitlab_client import GitLabClient

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RoomIdentity:
    """The room user a mirrored message is sent as"""

    user_id: str
    display_name: Optional[str] = None
    avatar_url: Optional[str] = None


class IdentityResolver(Protocol):
    async def resolve_room_identity(
        self, actor: GitLabUser, *, instance: Optional[str] = None
    ) -> RoomIdentity:
        ...

    async def resolve_tracker_credentials(
        self, room_user_id: str, instance_url: str
    ) -> Optional[GitLabClient]:
        """GitLab client acting as the room user, or None if they have not linked an account."""
        ...


_LOCALPART_INVALID_RE = re.compile(r"[^a-z0-9._=\-/]")


def _normalize_instance_url(url: str) -> str:
    return (url or "").rstrip("/")


class DatabaseIdentityResolver:
    """IdentityResolver backed by the ``user_links`` table.

    Every GitLab actor is mirrored as a virtual user inside the bridge's
    namespace, linked or not: only those users can be masqueraded, and their
    messages are recognised as the bridge's own when the homeserver echoes
    them back. A profile (display name and avatar) is set up through the
    delivery sink the first time a virtual user is used. ``_profiles_ready``
    grows with every distinct author and is not pruned.
    """

    def __init__(
        self,
        session_factory: Callable[[], Session],
        sink: DeliverySink,
        *,
        server_name: str,
        virtual_user_prefix: str = "_gitlab_",
        client_factory: Callable[[str, str], GitLabClient] = GitLabClient,
    ):
        self.session_factory = session_factory
        self.sink = sink
        self.server_name = server_name
        self.virtual_user_prefix = virtual_user_prefix
        self.client_factory = client_factory
        self._profiles_ready: set[str] = set()
        self.clients: Dict[Tuple[str, str], GitLabClient] = {}

    def virtual_user_id(self, actor: GitLabUser) -> str:
        handle = (actor.username or actor.name).lower()
        localpart = _LOCALPART_INVALID_RE.sub("_", handle)
        return f"@{self.virtual_user_prefix}{localpart}:{self.server_name}"

    def _user_token(self, room_user_id: str, instance_url: str) -> Optional[str]:
        db = self.session_factory()
        try:
            rows = (
                db.query(UserLink, GitLabInstance)
                .join(GitLabInstance, UserLink.instance_id == GitLabInstance.id)
                .filter(UserLink.room_user_id == room_user_id)
                .all()
            )
            wanted = _normalize_instance_url(instance_url)
            for link, instance in rows:
                if _normalize_instance_url(instance.url) == wanted and link.access_token:
                    return link.access_token
            return None
        finally:
            db.close()

    async def resolve_room_identity(
        self, actor: GitLabUser, *, instance: Optional[str] = None
    ) -> RoomIdentity:
        user_id = self.virtual_user_id(actor)
        if user_id not in self._profiles_ready:
            await self.sink.ensure_profile(user_id, actor.name, actor.avatar_url)
            self._profiles_ready.add(user_id)
        return RoomIdentity(user_id=user_id, display_name=actor.name, avatar_url=actor.avatar_url)

    async def resolve_tracker_credentials(
        self, room_user_id: str, instance_url: str
    ) -> Optional[GitLabClient]:
        key = (room_user_id, _normalize_instance_url(instance_url))
        if key in self.clients:
            return self.clients[key]

        token = await asyncio.to_thread(self._user_token, room_user_id, instance_url)
        if not token:
            return None
        client = await asyncio.to_thread(self.client_factory, instance_url, token)
        self.clients[key] = client
        return client

    def forget_user(self, room_user_id: str) -> None:
        """Drop cached clients after a user's link changed."""
        for key in [k for k in self.clients if k[0] == room_user_id]:
            del self.clients[key]
