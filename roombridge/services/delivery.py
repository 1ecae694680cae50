"""Delivery sink: the outbound channel into rooms.

Connections only talk to the ``DeliverySink`` protocol. ``MatrixDeliverySink``
implements it against the Matrix client-server API as an application
service, masquerading as virtual users via the ``user_id`` query parameter.
"""

import logging
import uuid
from typing import Any, Dict, List, Optional, Protocol
from urllib.parse import quote

import httpx

logger = logging.getLogger(__name__)


class DeliveryError(Exception):
    """The homeserver rejected a request."""

    def __init__(self, message: str, *, status_code: Optional[int] = None, errcode: Optional[str] = None):
        super().__init__(message)
        self.status_code = status_code
        self.errcode = errcode


class DeliverySink(Protocol):
    async def send_message(
        self,
        room_id: str,
        content: Dict[str, Any],
        event_type: str = "m.room.message",
        user_id: Optional[str] = None,
    ) -> str:
        """Send an event into a room, optionally as a virtual user. Returns the event id."""
        ...

    async def send_reaction(self, room_id: str, relates_to_event_id: str, key: str) -> str:
        ...

    async def set_room_metadata(self, room_id: str, field: str, value: str) -> None:
        """Set ``name`` or ``topic`` of a room."""
        ...

    async def send_state_event(
        self, room_id: str, event_type: str, state_key: str, content: Dict[str, Any]
    ) -> None:
        ...

    async def create_room(
        self,
        *,
        name: str,
        topic: str,
        initial_state: List[Dict[str, Any]],
        invite: Optional[List[str]] = None,
    ) -> str:
        ...

    async def ensure_profile(
        self, user_id: str, display_name: Optional[str], avatar_url: Optional[str]
    ) -> None:
        ...


_METADATA_EVENT_TYPES = {
    "name": "m.room.name",
    "topic": "m.room.topic",
}


class MatrixDeliverySink:
    """DeliverySink backed by a homeserver's client-server API"""

    def __init__(
        self,
        homeserver_url: str,
        as_token: str,
        *,
        bot_user_id: Optional[str] = None,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self.homeserver_url = homeserver_url.rstrip("/")
        self.as_token = as_token
        self.bot_user_id = bot_user_id
        self._client = client
        self._registered: set[str] = set()

    def _get_client(self) -> httpx.AsyncClient:
        """Return the HTTP client, creating one if needed."""
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=30.0)
        return self._client

    async def aclose(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    async def _request(
        self,
        method: str,
        path: str,
        *,
        json: Optional[Any] = None,
        user_id: Optional[str] = None,
        content: Optional[bytes] = None,
        headers: Optional[Dict[str, str]] = None,
    ) -> Dict[str, Any]:
        params = {"user_id": user_id} if user_id else None
        req_headers = {"Authorization": f"Bearer {self.as_token}"}
        if headers:
            req_headers.update(headers)
        resp = await self._get_client().request(
            method,
            f"{self.homeserver_url}{path}",
            json=json,
            content=content,
            params=params,
            headers=req_headers,
        )
        if resp.status_code >= 400:
            errcode = None
            try:
                errcode = resp.json().get("errcode")
            except ValueError:
                pass
            raise DeliveryError(
                f"{method} {path} failed with HTTP {resp.status_code}",
                status_code=resp.status_code,
                errcode=errcode,
            )
        return resp.json() if resp.content else {}

    async def send_message(
        self,
        room_id: str,
        content: Dict[str, Any],
        event_type: str = "m.room.message",
        user_id: Optional[str] = None,
    ) -> str:
        if user_id and user_id != self.bot_user_id:
            await self._ensure_joined(room_id, user_id)
        txn_id = uuid.uuid4().hex
        path = (
            f"/_matrix/client/v3/rooms/{quote(room_id, safe='')}/send/"
            f"{quote(event_type, safe='')}/{txn_id}"
        )
        data = await self._request("PUT", path, json=content, user_id=user_id)
        return data.get("event_id", "")

    async def send_reaction(self, room_id: str, relates_to_event_id: str, key: str) -> str:
        return await self.send_message(
            room_id,
            {
                "m.relates_to": {
                    "rel_type": "m.annotation",
                    "event_id": relates_to_event_id,
                    "key": key,
                }
            },
            event_type="m.reaction",
        )

    async def send_state_event(
        self, room_id: str, event_type: str, state_key: str, content: Dict[str, Any]
    ) -> None:
        path = (
            f"/_matrix/client/v3/rooms/{quote(room_id, safe='')}/state/"
            f"{quote(event_type, safe='')}/{quote(state_key, safe='')}"
        )
        await self._request("PUT", path, json=content)

    async def set_room_metadata(self, room_id: str, field: str, value: str) -> None:
        event_type = _METADATA_EVENT_TYPES.get(field)
        if event_type is None:
            raise ValueError(f"Unsupported room metadata field: {field}")
        await self.send_state_event(room_id, event_type, "", {field: value})

    async def create_room(
        self,
        *,
        name: str,
        topic: str,
        initial_state: List[Dict[str, Any]],
        invite: Optional[List[str]] = None,
    ) -> str:
        data = await self._request(
            "POST",
            "/_matrix/client/v3/createRoom",
            json={
                "visibility": "private",
                "preset": "private_chat",
                "name": name,
                "topic": topic,
                "invite": invite or [],
                "initial_state": initial_state,
            },
        )
        room_id = data["room_id"]
        logger.info(f"Created room {room_id} ({name})")
        return room_id

    async def _ensure_registered(self, user_id: str) -> None:
        if user_id in self._registered:
            return
        localpart = user_id[1:].split(":", 1)[0]
        try:
            await self._request(
                "POST",
                "/_matrix/client/v3/register",
                json={"type": "m.login.application_service", "username": localpart},
            )
        except DeliveryError as e:
            if e.errcode != "M_USER_IN_USE":
                raise
        self._registered.add(user_id)

    async def _ensure_joined(self, room_id: str, user_id: str) -> None:
        await self._ensure_registered(user_id)
        # Joining a room the user is already in is a no-op on the homeserver.
        await self._request(
            "POST", f"/_matrix/client/v3/join/{quote(room_id, safe='')}", json={}, user_id=user_id
        )

    async def _upload_avatar(self, avatar_url: str) -> Optional[str]:
        if avatar_url.startswith("mxc://"):
            return avatar_url
        try:
            resp = await self._get_client().get(avatar_url, follow_redirects=True)
            resp.raise_for_status()
        except httpx.HTTPError as e:
            logger.warning(f"Failed to fetch avatar {avatar_url}: {e}")
            return None
        data = await self._request(
            "POST",
            "/_matrix/media/v3/upload",
            content=resp.content,
            headers={"Content-Type": resp.headers.get("Content-Type", "application/octet-stream")},
        )
        return data.get("content_uri")

    async def ensure_profile(
        self, user_id: str, display_name: Optional[str], avatar_url: Optional[str]
    ) -> None:
        await self._ensure_registered(user_id)
        profile_path = f"/_matrix/client/v3/profile/{quote(user_id, safe='')}"
        if display_name:
            await self._request(
                "PUT", f"{profile_path}/displayname", json={"displayname": display_name}, user_id=user_id
            )
        if avatar_url:
            mxc = await self._upload_avatar(avatar_url)
            if mxc:
                await self._request(
                    "PUT", f"{profile_path}/avatar_url", json={"avatar_url": mxc}, user_id=user_id
                )
