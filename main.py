"""
Showtime Guest Check-In - FastAPI Backend
Main application entry point
"""

import logging
from contextlib import asynccontextmanager
from typing import Callable

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
import uvicorn

from showtime.core.config import Settings, settings
from showtime.core.exceptions import RosterError
from showtime.api import routes_admin, routes_controller, routes_organizer, routes_public, ws
from showtime.api.ws import WebSocketManager
from showtime.services.checkin_service import CheckInService
from showtime.services.repositories import RosterStore
from showtime.services.roster_service import RosterService, build_roster_store
from showtime.services.sync_service import SyncedRosterStore
from showtime.utils.responses import roster_error_handler

# Configure logging
logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

def create_app(store_factory: Callable[[Settings], RosterStore] = build_roster_store) -> FastAPI:
    """Build the application; ``store_factory`` supplies the roster store at startup"""

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Application lifespan management"""
        store = store_factory(settings)
        if isinstance(store, SyncedRosterStore):
            status = store.load()
            logger.info(
                "Roster cache ready (online=%s, pending changes=%d)",
                status.online, status.pending_changes
            )
            store.start_polling(settings.SYNC_POLL_SECONDS)

        roster_service = RosterService(store)
        websocket_manager = WebSocketManager()
        app.state.roster_service = roster_service
        app.state.websocket_manager = websocket_manager
        app.state.checkin_service = CheckInService(roster_service.resolver, websocket_manager)
        yield

        if isinstance(store, SyncedRosterStore):
            store.stop()
        logger.info("Application shutdown")

    app = FastAPI(
        title="Showtime Guest Check-In",
        description="Guest lists, invitation tokens and at-most-once admission",
        version="1.0.0",
        lifespan=lifespan
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.ALLOW_ORIGINS,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.add_exception_handler(RosterError, roster_error_handler)

    # Include routers
    app.include_router(routes_public.router, tags=["public"])
    app.include_router(routes_organizer.router, prefix="/organizer", tags=["organizer"])
    app.include_router(routes_controller.router, prefix="/controller", tags=["controller"])
    app.include_router(routes_admin.router, prefix="/admin", tags=["admin"])
    app.include_router(ws.router, prefix="/ws", tags=["websocket"])

    return app

app = create_app()

# Note: Run this ASGI app directly with Uvicorn or Hypercorn. For Gunicorn,
# use `uvicorn.workers.UvicornWorker` instead of wrapping the app.

if __name__ == "__main__":
    uvicorn.run(
        "main:app",
        host="127.0.0.1",
        port=8000,
        reload=True
    )
