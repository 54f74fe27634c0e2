# tripchat/api/routes/health.py

from fastapi import APIRouter, Request

router = APIRouter()

@router.get("/health")
async def health(request: Request):
    """
    Health check endpoint.

    Returns current system status, connection counts, and room counts.
    Used by container health probes and monitoring.

    Returns:
        dict: Status, connection count, active room count, store backend
    """
    gateway = request.app.state.gateway
    return {
        "status": "healthy",
        "connections": len(gateway.handles),
        "active_rooms_with_members": len(gateway.registry.rooms),
        "message_store": gateway.store.name,
    }
