"""GitLab webhook receiver"""
import logging
from typing import Any, Dict, Optional

from fastapi import APIRouter, BackgroundTasks, Depends, Header, HTTPException, Request
from pydantic import ValidationError
from sqlalchemy.orm import Session

from roombridge.models import GitLabInstance
from roombridge.models.base import get_db
from roombridge.security import tokens_match
from roombridge.services.connection_manager import ConnectionManager, get_bridge
from roombridge.services.events import GitLabIssueEvent, GitLabNoteEvent

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/webhooks", tags=["webhooks"])

# Title edits arrive as "update"; closing and reopening carry their own action.
BRIDGED_ISSUE_ACTIONS = ("update", "close", "reopen")


def _normalize_instance_url(url: str) -> str:
    return (url or "").rstrip("/")


def find_instance_for_project_url(db: Session, project_web_url: Optional[str]) -> Optional[GitLabInstance]:
    """Find the configured instance a project URL lives on (longest URL prefix wins)."""
    if not project_web_url:
        return None
    best = None
    for instance in db.query(GitLabInstance).all():
        base = _normalize_instance_url(instance.url)
        if project_web_url.startswith(base + "/"):
            if best is None or len(base) > len(_normalize_instance_url(best.url)):
                best = instance
    return best


@router.post("/gitlab")
async def receive_gitlab_webhook(
    request: Request,
    background_tasks: BackgroundTasks,
    x_gitlab_token: Optional[str] = Header(None),
    db: Session = Depends(get_db),
    bridge: ConnectionManager = Depends(get_bridge),
):
    """Accept a GitLab webhook and hand it to the interested connections.

    Handlers run after the response is sent: note handlers deliberately wait
    before acting, and GitLab only needs to know the hook was received.
    """
    try:
        payload: Dict[str, Any] = await request.json()
    except ValueError:
        raise HTTPException(status_code=400, detail="Body is not JSON")

    object_kind = payload.get("object_kind")
    if object_kind not in ("note", "issue"):
        return {"status": "ignored", "reason": f"unsupported event '{object_kind}'"}

    project_url = (payload.get("project") or {}).get("web_url")
    instance = find_instance_for_project_url(db, project_url)
    if instance is None:
        raise HTTPException(status_code=404, detail="No GitLab instance configured for this project")
    if instance.webhook_secret and not tokens_match(x_gitlab_token, instance.webhook_secret):
        raise HTTPException(status_code=401, detail="Invalid webhook token")

    try:
        if object_kind == "note":
            note_event = GitLabNoteEvent(**payload)
            background_tasks.add_task(bridge.dispatch_note_event, instance.name, note_event)
        else:
            issue_event = GitLabIssueEvent(**payload)
            if issue_event.object_attributes.action not in BRIDGED_ISSUE_ACTIONS:
                return {"status": "ignored", "reason": f"issue action '{issue_event.object_attributes.action}'"}
            background_tasks.add_task(bridge.dispatch_issue_event, instance.name, issue_event)
    except ValidationError as e:
        logger.warning(f"Malformed {object_kind} webhook from {instance.name}: {e}")
        raise HTTPException(status_code=400, detail=f"Malformed {object_kind} event")

    return {"status": "accepted"}
