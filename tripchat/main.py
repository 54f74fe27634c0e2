# tripchat/main.py

from __future__ import annotations

from typing import Optional

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from tripchat.core.config import Settings, settings as default_settings
from tripchat.core.logging import setup_logging, get_logger
from tripchat.services.gateway import ChatGateway
from tripchat.services.membership import MembershipDirectory, build_membership
from tripchat.services.message_store import MessageStore, build_message_store
from tripchat.api.routes import root, health, metrics, messages
from tripchat.api import websocket as websocket_module

# Configure logging first
setup_logging()
logger = get_logger(__name__)


def create_app(
    settings: Optional[Settings] = None,
    store: Optional[MessageStore] = None,
    membership: Optional[MembershipDirectory] = None,
) -> FastAPI:
    """
    Build the application and its one chat gateway.

    The gateway, its message store and its membership directory are created
    here exactly once and shared by the websocket endpoint and the HTTP
    routes through app.state.
    """
    settings = settings or default_settings

    app = FastAPI(title="Trip Chat")
    app.state.settings = settings
    app.state.gateway = ChatGateway(
        store=store or build_message_store(settings),
        membership=membership or build_membership(settings),
        settings=settings,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.CORS_ORIGINS,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # REST routes
    app.include_router(root.router)
    app.include_router(health.router)
    app.include_router(metrics.router)
    app.include_router(messages.router)

    # WebSocket routes
    app.include_router(websocket_module.router)

    @app.on_event("startup")
    async def startup_event():
        gateway: ChatGateway = app.state.gateway
        await gateway.store.connect()
        logger.info(
            "🚀 Trip chat starting - store=%s, membership=%s",
            gateway.store.name, settings.MEMBERSHIP_BACKEND,
        )

    @app.on_event("shutdown")
    async def on_shutdown():
        gateway: ChatGateway = app.state.gateway
        for handle in list(gateway.handles):
            await gateway.disconnect(handle)
        await gateway.store.close()
        await gateway.membership.close()

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn
    uvicorn.run("tripchat.main:app", host="0.0.0.0", port=8000)
