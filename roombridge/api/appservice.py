"""Homeserver-facing application service endpoints"""
import logging
from collections import OrderedDict
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, BackgroundTasks, Body, Depends, Header, HTTPException, Query
from pydantic import ValidationError

from roombridge.config import settings
from roombridge.security import parse_bearer_token, tokens_match
from roombridge.services.connection_manager import ConnectionManager, get_bridge
from roombridge.services.events import MatrixEvent

logger = logging.getLogger(__name__)

router = APIRouter(tags=["appservice"])


class TransactionLog:
    """Remembers recently processed transaction ids; the homeserver retries unacknowledged ones."""

    def __init__(self, max_size: int = 1000):
        self.max_size = max_size
        self._seen: "OrderedDict[str, None]" = OrderedDict()

    def seen(self, txn_id: str) -> bool:
        return txn_id in self._seen

    def add(self, txn_id: str) -> None:
        self._seen[txn_id] = None
        while len(self._seen) > self.max_size:
            self._seen.popitem(last=False)

    def clear(self) -> None:
        self._seen.clear()


# Global transaction log
transactions = TransactionLog()


def require_hs_token(
    authorization: Optional[str] = Header(None),
    access_token: Optional[str] = Query(None),
):
    """Check the token the homeserver presents on every push."""
    provided = parse_bearer_token(authorization) or access_token
    if not provided:
        raise HTTPException(status_code=401, detail={"errcode": "M_UNAUTHORIZED"})
    if not tokens_match(provided, settings.hs_token):
        raise HTTPException(status_code=403, detail={"errcode": "M_FORBIDDEN"})


async def _process_events(bridge: ConnectionManager, txn_id: str, events: List[MatrixEvent]):
    for event in events:
        await bridge.dispatch_room_event(event)
    logger.debug(f"Processed transaction {txn_id} ({len(events)} events)")


def _parse_events(raw_events: List[Dict[str, Any]]) -> List[MatrixEvent]:
    events = []
    for raw in raw_events:
        try:
            events.append(MatrixEvent(**raw))
        except ValidationError:
            # Ephemeral and malformed events are not ours to handle.
            logger.debug(f"Skipping unparseable event {raw.get('event_id')}")
    return events


@router.put("/_matrix/app/v1/transactions/{txn_id}", dependencies=[Depends(require_hs_token)])
@router.put("/transactions/{txn_id}", dependencies=[Depends(require_hs_token)])
async def push_transaction(
    txn_id: str,
    background_tasks: BackgroundTasks,
    body: Dict[str, Any] = Body(...),
    bridge: ConnectionManager = Depends(get_bridge),
):
    """Receive a batch of room events from the homeserver"""
    if transactions.seen(txn_id):
        return {}
    transactions.add(txn_id)

    events = _parse_events(body.get("events") or [])
    background_tasks.add_task(_process_events, bridge, txn_id, events)
    return {}


@router.get("/_matrix/app/v1/users/{user_id}", dependencies=[Depends(require_hs_token)])
async def query_user(user_id: str):
    """Claim virtual users so the homeserver lets us register them on demand"""
    if user_id.startswith(f"@{settings.virtual_user_prefix}"):
        return {}
    raise HTTPException(status_code=404, detail={"errcode": "M_NOT_FOUND"})
