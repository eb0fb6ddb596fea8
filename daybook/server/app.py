"""FastAPI application exposing the sync endpoint."""

import logging
from typing import Any

from fastapi import FastAPI, HTTPException
from pydantic import BaseModel, Field

from ..config import Config
from ..storage import (
    Entry,
    EntryValidationError,
    format_timestamp,
    parse_timestamp,
    utcnow,
    validate_date,
)
from .server_store import ServerStore

logger = logging.getLogger(__name__)


class EntryPayload(BaseModel):
    date: str
    message: str
    timestamp: str


class SyncRequest(BaseModel):
    """Body of ``POST /api/sync``; ``action`` selects pull or push."""

    action: str
    lastSync: str | None = None
    entries: list[EntryPayload] = Field(default_factory=list)
    chunkIndex: int | None = None
    totalChunks: int | None = None


def create_app(config: Config, store: ServerStore) -> FastAPI:
    """Create the journal server application.

    Args:
        config: Application configuration.
        store: Connected server store.

    Returns:
        Configured FastAPI application.
    """
    app = FastAPI(
        title="Daybook Server",
        description="Sync endpoint for the offline-first journal",
        version="0.1.0",
    )

    app.state.config = config
    app.state.store = store

    # ==================== Sync ====================

    def _pull(request: SyncRequest) -> dict[str, Any]:
        try:
            last_sync = parse_timestamp(request.lastSync) if request.lastSync else None
        except EntryValidationError as e:
            raise HTTPException(status_code=400, detail=str(e))

        entries = store.entries_since(last_sync)
        logger.debug(f"Pull since {request.lastSync}: {len(entries)} entries")
        return {"entries": [entry.to_dict() for entry in entries]}

    def _push(request: SyncRequest) -> dict[str, Any]:
        # Validate the whole chunk before writing any of it
        try:
            entries = [Entry.from_dict(item.model_dump()) for item in request.entries]
        except EntryValidationError as e:
            raise HTTPException(status_code=400, detail=str(e))

        count = store.upsert(entries)
        if request.totalChunks:
            logger.info(
                f"Push chunk {(request.chunkIndex or 0) + 1}/{request.totalChunks}: "
                f"{count} entries"
            )
        else:
            logger.info(f"Push: {count} entries")
        return {"success": True, "count": count}

    @app.post("/api/sync")
    async def api_sync(request: SyncRequest) -> dict[str, Any]:
        """Pull entries newer than ``lastSync`` or push a chunk of entries."""
        if request.action == "pull":
            return _pull(request)
        if request.action == "push":
            return _push(request)
        raise HTTPException(status_code=400, detail=f"Unknown action: {request.action}")

    # ==================== Read routes ====================

    @app.get("/api/entries")
    async def api_entries() -> list[dict[str, Any]]:
        """Visible entries, newest date first."""
        return [entry.to_dict() for entry in store.visible_entries()]

    @app.get("/api/entries/{date}")
    async def api_entry(date: str) -> dict[str, Any]:
        """One visible entry."""
        try:
            validate_date(date)
        except EntryValidationError as e:
            raise HTTPException(status_code=400, detail=str(e))

        entry = store.get(date)
        if entry is None or entry.is_tombstone:
            raise HTTPException(status_code=404, detail="Entry not found")
        return entry.to_dict()

    @app.get("/api/export")
    async def api_export() -> list[dict[str, Any]]:
        """Every stored record, tombstones included, ordered by date."""
        return [entry.to_dict() for entry in store.all()]

    @app.get("/api/health")
    async def api_health() -> dict[str, Any]:
        """Health check endpoint. Always returns 200 OK."""
        health: dict[str, Any] = {
            "status": "ok",
            "timestamp": format_timestamp(utcnow()),
        }
        try:
            health["store"] = store.get_stats()
        except Exception as e:
            health["store_error"] = str(e)
        return health

    return app
