"""HTTP API: import triggers, status polling, live progress stream and cron resync."""

from __future__ import annotations

import asyncio
import hmac
import json
from collections.abc import AsyncIterator
from typing import TYPE_CHECKING, Any

import structlog
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse, StreamingResponse
from pydantic import BaseModel, ConfigDict, Field, ValidationError

from encore import __version__
from encore.errors import NotFoundError, ProviderAuthError, ProviderError
from encore.importer.resync import ResyncRequest
from encore.importer.status import to_status_payload
from encore.server.rpc import create_rpc_router

if TYPE_CHECKING:
    from encore.importer.progress import ProgressBus
    from encore.server.state import AppState

log = structlog.get_logger(__name__)

_SSE_HEADERS = {
    "Cache-Control": "no-cache",
    "Connection": "keep-alive",
    "X-Accel-Buffering": "no",
}

# camelCase request keys -> ResyncRequest fields
_CRON_PARAMS = {
    "limit": "limit",
    "mode": "mode",
    "forceResync": "force_resync",
    "maxAge": "max_age_hours",
}


class ImportArtistBody(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    tm_attraction_id: str = Field(alias="tmAttractionId", min_length=1)


def _sse(payload: dict[str, Any]) -> str:
    return f"data: {json.dumps(payload)}\n\n"


async def progress_stream(
    bus: ProgressBus,
    artist_id: str,
    *,
    keepalive_seconds: float,
    fallback: dict[str, Any] | None = None,
    importing: bool = False,
) -> AsyncIterator[str]:
    """Yield SSE frames: the current snapshot, then live events until a terminal one.

    The listener is registered before the snapshot is read, so nothing
    published in between is lost.  When the bus has no snapshot for the
    artist, *fallback* (the persisted status) is sent instead; if it shows
    no running import the stream ends right away.

    *importing* says a run is in flight for the artist; a terminal snapshot
    then belongs to the previous run and is not sent.
    """
    async with bus.subscribe(artist_id) as queue:
        snapshot = bus.get_status(artist_id)
        if snapshot is not None and snapshot.is_terminal and importing:
            log.debug("stream_skipped_previous_run", artist_id=artist_id, stage=snapshot.stage.value)
        elif snapshot is not None:
            yield _sse(snapshot.to_dict())
            if snapshot.is_terminal:
                return
        elif fallback is not None:
            yield _sse({"artistId": artist_id, **fallback})
            if not (fallback.get("isImporting") or importing):
                return

        while True:
            try:
                event = await asyncio.wait_for(queue.get(), timeout=keepalive_seconds)
            except TimeoutError:
                yield ": ping\n\n"
                continue
            if snapshot is not None and event.at <= snapshot.at:
                continue
            yield _sse(event.to_dict())
            if event.is_terminal:
                return


def create_api_app(state: AppState) -> FastAPI:
    """Build the FastAPI application serving the public API and ``/rpc``."""
    app = FastAPI(title="encore", version=__version__, docs_url=None, redoc_url=None)
    app.include_router(create_rpc_router(state))

    # -- imports --------------------------------------------------------------

    @app.post("/api/artists/import", status_code=202)
    async def api_import_new(body: ImportArtistBody):  # noqa: ANN202
        try:
            artist = await state.orchestrator.initiate_import(body.tm_attraction_id)
        except NotFoundError:
            return JSONResponse({"error": f"attraction not found: {body.tm_attraction_id}"}, status_code=404)
        except ProviderAuthError as exc:
            return JSONResponse({"error": str(exc)}, status_code=503)
        except ProviderError as exc:
            log.warning("initiate_import_failed", tm_attraction_id=body.tm_attraction_id, error=str(exc))
            return JSONResponse({"error": str(exc)}, status_code=502)

        already = state.orchestrator.is_importing(artist.id)
        state.orchestrator.submit(artist.id)
        return {"artistId": artist.id, "slug": artist.slug, "started": not already}

    @app.post("/api/artists/{artist_id}/import", status_code=202)
    async def api_import_existing(artist_id: str):  # noqa: ANN202
        artist = await state.db.get_artist(artist_id)
        if artist is None:
            return JSONResponse({"error": "artist not found"}, status_code=404)
        already = state.orchestrator.is_importing(artist_id)
        state.orchestrator.submit(artist_id)
        return {"artistId": artist_id, "started": not already, "alreadyRunning": already}

    @app.get("/api/artists/{artist_id}/import/status")
    async def api_import_status(artist_id: str):  # noqa: ANN202
        progress = await state.status.get_progress(artist_id)
        artist = await state.db.get_artist(artist_id)
        if progress is None and artist is None:
            return JSONResponse({"error": "artist not found"}, status_code=404)
        return to_status_payload(progress, artist)

    @app.get("/api/artists/{artist_id}/import/stream")
    async def api_import_stream(artist_id: str):  # noqa: ANN202
        fallback: dict[str, Any] | None = None
        if state.bus.get_status(artist_id) is None:
            progress = await state.status.get_progress(artist_id)
            artist = await state.db.get_artist(artist_id)
            if progress is None and artist is None:
                return JSONResponse({"error": "artist not found"}, status_code=404)
            fallback = to_status_payload(progress, artist)

        return StreamingResponse(
            progress_stream(
                state.bus,
                artist_id,
                keepalive_seconds=state.config.server.keepalive_seconds,
                fallback=fallback,
                importing=state.orchestrator.is_importing(artist_id),
            ),
            media_type="text/event-stream",
            headers=_SSE_HEADERS,
        )

    @app.get("/api/imports/active")
    async def api_active_imports() -> dict:
        imports = [a.to_dict() for a in state.bus.get_active_imports()]
        return {"imports": imports, "count": len(imports)}

    # -- cron -----------------------------------------------------------------

    def _cron_auth_error(request: Request) -> JSONResponse | None:
        secret = state.config.server.cron_secret.get_secret_value()
        if not secret:
            return JSONResponse({"error": "cron secret not configured"}, status_code=503)
        header = request.headers.get("authorization", "")
        if not hmac.compare_digest(header.encode(), f"Bearer {secret}".encode()):
            log.warning("cron_unauthorized", client=request.client.host if request.client else None)
            return JSONResponse({"error": "unauthorized"}, status_code=401)
        return None

    @app.api_route("/api/cron/resync", methods=["GET", "POST"])
    async def api_cron_resync(request: Request):  # noqa: ANN202
        if (error := _cron_auth_error(request)) is not None:
            return error

        raw: dict[str, Any] = dict(request.query_params)
        if request.method == "POST" and await request.body():
            try:
                body = await request.json()
            except ValueError:
                return JSONResponse({"error": "body must be a JSON object"}, status_code=400)
            if not isinstance(body, dict):
                return JSONResponse({"error": "body must be a JSON object"}, status_code=400)
            raw.update(body)

        try:
            resync = ResyncRequest.model_validate(
                {field: raw[key] for key, field in _CRON_PARAMS.items() if raw.get(key) is not None}
            )
        except ValidationError as exc:
            return JSONResponse(
                {"error": "invalid parameters", "detail": exc.errors(include_url=False, include_context=False)},
                status_code=422,
            )

        summary = await state.driver.run(resync)
        return summary.to_dict()

    # -- health ---------------------------------------------------------------

    @app.get("/api/health")
    async def api_health() -> dict:
        return {
            "status": "ok",
            "version": __version__,
            "uptime_seconds": state.uptime_seconds(),
            "activeImports": len(state.orchestrator.active_artist_ids()),
            "scheduler": state.scheduler.get_status(),
        }

    return app
