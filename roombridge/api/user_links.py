"""User link management endpoints"""
from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.orm import Session
from typing import List, Optional
from pydantic import BaseModel
from datetime import datetime

from roombridge.models.base import get_db
from roombridge.models import GitLabInstance, UserLink
from roombridge.services.connection_manager import ConnectionManager, get_bridge

router = APIRouter(prefix="/api/user-links", tags=["user-links"])


class UserLinkCreate(BaseModel):
    instance_id: int
    room_user_id: str
    gitlab_username: Optional[str] = None
    access_token: Optional[str] = None


class UserLinkResponse(BaseModel):
    id: int
    instance_id: int
    room_user_id: str
    gitlab_username: Optional[str] = None
    has_access_token: bool = False
    created_at: datetime
    updated_at: datetime

    class Config:
        from_attributes = True


def _to_response(link: UserLink) -> UserLinkResponse:
    response = UserLinkResponse.model_validate(link)
    response.has_access_token = bool(link.access_token)
    return response


def _forget_cached_credentials(bridge: ConnectionManager, room_user_id: str) -> None:
    forget = getattr(bridge.identities, "forget_user", None)
    if forget is not None:
        forget(room_user_id)


@router.get("/", response_model=List[UserLinkResponse])
def list_user_links(db: Session = Depends(get_db)):
    """List all user links"""
    return [_to_response(link) for link in db.query(UserLink).all()]


@router.post("/", response_model=UserLinkResponse)
def create_user_link(
    link: UserLinkCreate,
    db: Session = Depends(get_db),
    bridge: ConnectionManager = Depends(get_bridge),
):
    """Link a room user to a GitLab account"""
    instance = db.query(GitLabInstance).filter(GitLabInstance.id == link.instance_id).first()
    if not instance:
        raise HTTPException(status_code=404, detail="Instance not found")

    # Check if link already exists
    existing = db.query(UserLink).filter(
        UserLink.instance_id == link.instance_id,
        UserLink.room_user_id == link.room_user_id,
    ).first()
    if existing:
        raise HTTPException(status_code=400, detail="User link already exists")

    db_link = UserLink(**link.dict())
    db.add(db_link)
    db.commit()
    db.refresh(db_link)
    _forget_cached_credentials(bridge, db_link.room_user_id)
    return _to_response(db_link)


@router.get("/{link_id}", response_model=UserLinkResponse)
def get_user_link(link_id: int, db: Session = Depends(get_db)):
    """Get a specific user link"""
    link = db.query(UserLink).filter(UserLink.id == link_id).first()
    if not link:
        raise HTTPException(status_code=404, detail="User link not found")
    return _to_response(link)


@router.delete("/{link_id}")
def delete_user_link(
    link_id: int,
    db: Session = Depends(get_db),
    bridge: ConnectionManager = Depends(get_bridge),
):
    """Delete a user link"""
    link = db.query(UserLink).filter(UserLink.id == link_id).first()
    if not link:
        raise HTTPException(status_code=404, detail="User link not found")

    room_user_id = link.room_user_id
    db.delete(link)
    db.commit()
    _forget_cached_credentials(bridge, room_user_id)
    return {"message": "User link deleted successfully"}
