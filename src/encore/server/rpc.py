"""Typed RPC endpoint used by the ``encore`` CLI."""

from __future__ import annotations

from typing import TYPE_CHECKING, Annotated, Literal

import structlog
from fastapi import APIRouter, FastAPI, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field, TypeAdapter, ValidationError, model_validator

from encore.config import ResyncMode
from encore.errors import EncoreError
from encore.importer.resync import ResyncRequest
from encore.importer.status import to_status_payload

if TYPE_CHECKING:
    from encore.server.state import AppState

log = structlog.get_logger(__name__)


# ---------------------------------------------------------------------------
# Wire models
# ---------------------------------------------------------------------------


class PingCommand(BaseModel):
    cmd: Literal["ping"]


class StatusCommand(BaseModel):
    cmd: Literal["status"]


class ImportArtistCommand(BaseModel):
    """Import an existing artist, or create one from a Ticketmaster attraction first."""

    cmd: Literal["import_artist"]
    artist_id: str | None = None
    tm_attraction_id: str | None = None
    wait: bool = False

    @model_validator(mode="after")
    def _one_target(self) -> ImportArtistCommand:
        if not (self.artist_id or self.tm_attraction_id):
            msg = "artist_id or tm_attraction_id is required"
            raise ValueError(msg)
        return self


class ImportStatusCommand(BaseModel):
    cmd: Literal["import_status"]
    artist_id: str


class ResyncCommand(BaseModel):
    cmd: Literal["resync"]
    mode: ResyncMode = "auto"
    limit: int = Field(default=10, ge=1, le=100)
    force: bool = False
    max_age_hours: int | None = Field(default=None, ge=1)


class ActiveImportsCommand(BaseModel):
    cmd: Literal["active_imports"]


class PauseCommand(BaseModel):
    cmd: Literal["pause"]


class ResumeCommand(BaseModel):
    cmd: Literal["resume"]


class ShutdownCommand(BaseModel):
    cmd: Literal["shutdown"]


RpcCommand = Annotated[
    PingCommand
    | StatusCommand
    | ImportArtistCommand
    | ImportStatusCommand
    | ResyncCommand
    | ActiveImportsCommand
    | PauseCommand
    | ResumeCommand
    | ShutdownCommand,
    Field(discriminator="cmd"),
]

_command_adapter: TypeAdapter[RpcCommand] = TypeAdapter(RpcCommand)


class RpcResponse(BaseModel):
    """Outgoing RPC response sent back to the CLI client."""

    ok: bool = True
    data: dict = {}
    error: str | None = None


def parse_command(payload: object) -> RpcCommand:
    return _command_adapter.validate_python(payload)


# ---------------------------------------------------------------------------
# Dispatch
# ---------------------------------------------------------------------------


async def _import_artist(command: ImportArtistCommand, state: AppState) -> RpcResponse:
    orchestrator = state.orchestrator
    if command.artist_id:
        artist = await state.db.get_artist(command.artist_id)
        if artist is None:
            return RpcResponse(ok=False, error=f"artist not found: {command.artist_id}")
    else:
        artist = await orchestrator.initiate_import(command.tm_attraction_id)

    if command.wait:
        result = await orchestrator.run_full_import(artist.id)
        return RpcResponse(ok=result.success, data=result.to_dict(), error=result.error)

    already = orchestrator.is_importing(artist.id)
    orchestrator.submit(artist.id)
    return RpcResponse(
        data={"artistId": artist.id, "slug": artist.slug, "started": not already, "alreadyRunning": already}
    )


async def dispatch(command: RpcCommand, state: AppState) -> RpcResponse:
    """Execute one validated command."""
    match command:
        case PingCommand():
            return RpcResponse(data={"message": "pong"})
        case StatusCommand():
            return RpcResponse(data=await state.get_status())
        case ImportArtistCommand():
            return await _import_artist(command, state)
        case ImportStatusCommand(artist_id=artist_id):
            artist = await state.db.get_artist(artist_id)
            progress = await state.status.get_progress(artist_id)
            if artist is None and progress is None:
                return RpcResponse(ok=False, error=f"artist not found: {artist_id}")
            data = to_status_payload(progress, artist)
            if artist is not None:
                data["name"] = artist.name
            return RpcResponse(data=data)
        case ResyncCommand():
            summary = await state.driver.run(
                ResyncRequest(
                    mode=command.mode,
                    limit=command.limit,
                    force_resync=command.force,
                    max_age_hours=command.max_age_hours,
                )
            )
            return RpcResponse(data=summary.to_dict())
        case ActiveImportsCommand():
            return RpcResponse(data={"imports": [a.to_dict() for a in state.bus.get_active_imports()]})
        case PauseCommand():
            state.scheduler.pause()
            return RpcResponse(data={"message": "resync paused"})
        case ResumeCommand():
            state.scheduler.resume()
            return RpcResponse(data={"message": "resync resumed"})
        case ShutdownCommand():
            state.request_shutdown()
            return RpcResponse(data={"message": "shutdown initiated"})


# ---------------------------------------------------------------------------
# FastAPI wiring
# ---------------------------------------------------------------------------


def create_rpc_router(state: AppState) -> APIRouter:
    router = APIRouter()

    @router.post("/rpc", response_model=RpcResponse)
    async def rpc_endpoint(request: Request):  # noqa: ANN202
        try:
            command = parse_command(await request.json())
        except ValidationError as exc:
            log.warning("rpc_invalid_command", errors=exc.error_count())
            return JSONResponse({"detail": exc.errors(include_url=False, include_context=False)}, status_code=422)
        except ValueError:
            return JSONResponse({"detail": "request body must be JSON"}, status_code=422)

        log.info("rpc_request", cmd=command.cmd)
        try:
            response = await dispatch(command, state)
        except EncoreError as exc:
            response = RpcResponse(ok=False, error=str(exc))
        if not response.ok:
            log.warning("rpc_error", cmd=command.cmd, error=response.error)
        return response

    return router


def create_rpc_app(state: AppState) -> FastAPI:
    """Build a standalone FastAPI application serving only the RPC endpoint."""
    app = FastAPI(title="encore-rpc", docs_url=None, redoc_url=None)
    app.include_router(create_rpc_router(state))

    @app.get("/health", response_model=RpcResponse)
    async def health_endpoint() -> RpcResponse:
        return RpcResponse(data={"uptime_seconds": state.uptime_seconds()})

    return app
