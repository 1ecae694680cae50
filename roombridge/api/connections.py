"""Issue connection management endpoints"""
from typing import List

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel

from roombridge.services.connection_manager import ConnectionManager, get_bridge
from roombridge.services.issue_connection import GitLabIssueConnection

router = APIRouter(prefix="/api/connections", tags=["connections"])


class ConnectionCreate(BaseModel):
    instance: str
    project_path: str
    iid: int


class ConnectionResponse(BaseModel):
    room_id: str
    state_key: str
    instance: str
    projects: List[str]
    iid: int
    issue_id: int
    state: str


def _to_response(connection: GitLabIssueConnection) -> ConnectionResponse:
    return ConnectionResponse(
        room_id=connection.room_id,
        state_key=connection.state_key,
        instance=connection.state.instance,
        projects=connection.state.projects,
        iid=connection.state.iid,
        issue_id=connection.state.id,
        state=connection.state.state,
    )


@router.get("/", response_model=List[ConnectionResponse])
def list_connections(bridge: ConnectionManager = Depends(get_bridge)):
    """List live issue connections"""
    return [_to_response(c) for c in bridge.connections]


@router.post("/", response_model=ConnectionResponse)
async def create_connection(body: ConnectionCreate, bridge: ConnectionManager = Depends(get_bridge)):
    """Create a room for an issue and bridge it"""
    existing = bridge.connections_for_issue(body.instance, body.project_path.strip("/"), body.iid)
    if existing:
        raise HTTPException(status_code=400, detail=f"Issue is already bridged to {existing[0].room_id}")
    try:
        connection = await bridge.create_connection_for_issue(
            body.instance, body.project_path.strip("/"), body.iid
        )
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except Exception as e:
        raise HTTPException(status_code=500, detail=str(e))
    return _to_response(connection)


@router.delete("/")
async def delete_connection(room_id: str, state_key: str, bridge: ConnectionManager = Depends(get_bridge)):
    """Tear down a connection (the room itself is left alone)"""
    if not await bridge.remove(room_id, state_key):
        raise HTTPException(status_code=404, detail="Connection not found")
    return {"message": "Connection deleted successfully"}
