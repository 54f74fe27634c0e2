# tripchat/api/routes/metrics.py
from datetime import datetime, timezone

from fastapi import APIRouter, Request

router = APIRouter()

@router.get("/metrics")
async def get_metrics(request: Request):
    """
    Chat traffic and capacity metrics for this process.

    Returns:
        dict: Metrics including:
            - Message statistics (total, failed sends, messages/sec, daily projection)
            - Capacity (connections, active rooms and their member counts)

    Example Response:
        {
            "total_messages": 1200,
            "failed_sends": 2,
            "uptime_hours": 3.5,
            "messages_per_second": 0.1,
            "daily_messages_projected": 8228,
            "concurrent_connections": 40,
            "active_rooms_with_members": 6,
            "rooms": {"trip-1": {"member_count": 4, "online_users": 3}}
        }
    """
    gateway = request.app.state.gateway
    uptime_seconds = (datetime.now(timezone.utc) - gateway.started_at).total_seconds()

    if uptime_seconds > 0:
        messages_per_second = gateway.message_counter / uptime_seconds
        daily_messages = int(messages_per_second * 86400)
    else:
        messages_per_second = 0
        daily_messages = 0

    return {
        # Statistics
        "total_messages": gateway.message_counter,
        "failed_sends": gateway.failed_sends,
        "uptime_hours": round(uptime_seconds / 3600, 2) if uptime_seconds > 0 else 0,
        "messages_per_second": round(messages_per_second, 2),
        "daily_messages_projected": daily_messages,

        # Capacity
        "concurrent_connections": len(gateway.handles),
        "active_rooms_with_members": len(gateway.registry.rooms),
        "rooms": gateway.registry.rooms_info(),
    }
