"""GitLab instance management endpoints"""
from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.orm import Session
from typing import List, Optional
from pydantic import BaseModel
from datetime import datetime

from roombridge.models.base import get_db
from roombridge.models import GitLabInstance, IssueConnectionRecord

router = APIRouter(prefix="/api/instances", tags=["instances"])


class GitLabInstanceCreate(BaseModel):
    name: str
    url: str
    access_token: Optional[str] = None
    webhook_secret: Optional[str] = None
    description: Optional[str] = None


class GitLabInstanceResponse(BaseModel):
    id: int
    name: str
    url: str
    description: Optional[str] = None
    has_webhook_secret: bool = False
    created_at: datetime
    updated_at: datetime

    class Config:
        from_attributes = True


def _to_response(instance: GitLabInstance) -> GitLabInstanceResponse:
    # Secrets never leave the service; only whether one is configured.
    response = GitLabInstanceResponse.model_validate(instance)
    response.has_webhook_secret = bool(instance.webhook_secret)
    return response


@router.get("/", response_model=List[GitLabInstanceResponse])
def list_instances(db: Session = Depends(get_db)):
    """List all GitLab instances"""
    return [_to_response(i) for i in db.query(GitLabInstance).all()]


@router.post("/", response_model=GitLabInstanceResponse)
def create_instance(instance: GitLabInstanceCreate, db: Session = Depends(get_db)):
    """Create a new GitLab instance"""
    # Check if name already exists
    existing = db.query(GitLabInstance).filter(
        GitLabInstance.name == instance.name
    ).first()
    if existing:
        raise HTTPException(status_code=400, detail="Instance name already exists")

    payload = instance.dict()
    payload["url"] = payload["url"].rstrip("/")
    db_instance = GitLabInstance(**payload)
    db.add(db_instance)
    db.commit()
    db.refresh(db_instance)
    return _to_response(db_instance)


@router.get("/{instance_id}", response_model=GitLabInstanceResponse)
def get_instance(instance_id: int, db: Session = Depends(get_db)):
    """Get a specific GitLab instance"""
    instance = db.query(GitLabInstance).filter(
        GitLabInstance.id == instance_id
    ).first()
    if not instance:
        raise HTTPException(status_code=404, detail="Instance not found")
    return _to_response(instance)


@router.put("/{instance_id}", response_model=GitLabInstanceResponse)
def update_instance(
    instance_id: int, instance: GitLabInstanceCreate, db: Session = Depends(get_db)
):
    """Update a GitLab instance.

    The name is part of every bridged room's state, so it cannot change while
    connections reference it.
    """
    db_instance = db.query(GitLabInstance).filter(
        GitLabInstance.id == instance_id
    ).first()
    if not db_instance:
        raise HTTPException(status_code=404, detail="Instance not found")

    if instance.name != db_instance.name:
        in_use = db.query(IssueConnectionRecord).filter(
            IssueConnectionRecord.instance == db_instance.name
        ).first()
        if in_use:
            raise HTTPException(status_code=400, detail="Instance is in use by bridged rooms; name cannot change")

    for key, value in instance.dict().items():
        setattr(db_instance, key, value)
    db_instance.url = db_instance.url.rstrip("/")

    db.commit()
    db.refresh(db_instance)
    return _to_response(db_instance)


@router.delete("/{instance_id}")
def delete_instance(instance_id: int, db: Session = Depends(get_db)):
    """Delete a GitLab instance"""
    instance = db.query(GitLabInstance).filter(
        GitLabInstance.id == instance_id
    ).first()
    if not instance:
        raise HTTPException(status_code=404, detail="Instance not found")

    db.delete(instance)
    db.commit()
    return {"message": "Instance deleted successfully"}
