# tripchat/api/routes/root.py

from fastapi import APIRouter

router = APIRouter()


@router.get("/")
async def root():
    """
    Root endpoint - API information.

    Returns basic info about the API and its features.
    """
    return {
        "message": "Trip Chat - realtime rooms",
        "version": "1.0",
        "features": ["trip_rooms", "persisted_history", "idempotent_send", "presence"],
        "endpoints": {
            "websocket": "/ws",
            "history": "/rooms/{room_id}/messages",
            "health": "/health",
            "metrics": "/metrics",
        },
    }
