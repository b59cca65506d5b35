"""FastAPI application factory: function endpoints, polling routes, SSE."""

from __future__ import annotations

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from inboxpilot.web.api import router as api_router

CORS_HEADERS = ["authorization", "x-client-info", "apikey", "content-type"]


def create_app() -> FastAPI:
    """Build the FastAPI application."""
    app = FastAPI(title="InboxPilot", version="0.1.0")

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["*"],
        allow_headers=CORS_HEADERS,
    )
    app.include_router(api_router, prefix="/api")

    @app.get("/healthz")
    async def _health():
        return {"ok": True, "service": "inboxpilot"}

    return app
