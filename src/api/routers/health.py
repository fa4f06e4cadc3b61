"""Health check endpoints."""
from fastapi import APIRouter, Depends
from pydantic import BaseModel

from api.sessions import SyncSessionRegistry, get_session_registry

router = APIRouter(tags=["health"])


class HealthResponse(BaseModel):
    """Health check response."""

    status: str
    sessions: int


@router.get("/health", response_model=HealthResponse)
async def health_check(
    registry: SyncSessionRegistry = Depends(get_session_registry),
) -> HealthResponse:
    """Check application health."""
    return HealthResponse(status="healthy", sessions=len(registry))
