#!/usr/bin/env python3
"""
QueryRelay - Main Entry Point

This is the thin orchestration layer that:
1. Loads configuration
2. Initializes modules
3. Runs the API server

All protocol logic is in the modules, following black box principles.
"""

import asyncio
import json
import logging
import logging.config as log_config
from contextlib import asynccontextmanager
from typing import AsyncGenerator, List, Optional, Tuple

import redis.asyncio as redis
import uvicorn
from fastapi import Depends, FastAPI, Header, HTTPException, Query, Request, Response
from fastapi.responses import JSONResponse
from sse_starlette.sse import EventSourceResponse

from queryrelay.errors import (
    ChannelNotFound,
    ClaimConflict,
    CommandNotFound,
    DiscoveryAmbiguous,
    DocumentExists,
    ExecutionFailed,
    IllegalTransition,
    InvalidRequest,
    StoreError,
    TargetUnavailable,
    WatchTimeout,
)
from queryrelay.logging_config import get_logging_config

# Import modules through their black box interfaces
from queryrelay.modules.api import (
    CommandResponse,
    DeleteCommandResponse,
    PullRequest,
    RowsResponse,
    SubmitCommandRequest,
    SubmitCommandResponse,
    TargetRequest,
    TargetResponse,
    TeardownResponse,
    TemplateRequest,
    TemplateResponse,
)
from queryrelay.modules.auth import AuthModule
from queryrelay.modules.channel import RESERVED_ID_CHARS, ChannelHandle, ResultChannelModule, derive_key
from queryrelay.modules.commands import CommandRecord, CommandStatus, ResultKind
from queryrelay.modules.config import get_config
from queryrelay.modules.dispatcher import Dispatcher
from queryrelay.modules.export import CSVExportSink
from queryrelay.modules.observer import CancellationToken, StatusObserver
from queryrelay.modules.pull import BulkPullService
from queryrelay.modules.registry import StoreTargetRegistry, StoreTemplateRepository
from queryrelay.modules.storage import StorageModule, Store

# Get configuration
config = get_config()

# Configure logging with health check suppression
log_config.dictConfig(get_logging_config(config.get("log_level")))
logger = logging.getLogger("queryrelay.api")

# Module instances (initialized at startup)
storage: Optional[StorageModule] = None
store: Optional[Store] = None
auth_module: Optional[AuthModule] = None
channels: Optional[ResultChannelModule] = None
dispatcher: Optional[Dispatcher] = None
observer: Optional[StatusObserver] = None
pull_service: Optional[BulkPullService] = None
targets: Optional[StoreTargetRegistry] = None
templates: Optional[StoreTemplateRepository] = None
export_sink = CSVExportSink()


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Manage application lifecycle - initialize and cleanup resources.
    """
    global storage, store, auth_module, channels, dispatcher, observer, pull_service, targets, templates

    # Startup
    logger.info("Starting QueryRelay API...")

    storage = StorageModule(
        config.redis_url,
        password=config.get("redis_password"),
        backend=config.get("store_backend"),
    )
    store = await storage.connect()
    logger.info(f"Shared store connected ({config.get('store_backend')})")

    targets = StoreTargetRegistry(store)
    templates = StoreTemplateRepository(store)
    auth_module = AuthModule()
    channels = ResultChannelModule(store)
    dispatcher = Dispatcher(store, targets, templates)
    observer = StatusObserver(
        store,
        channels,
        mode=config.get("watch_mode"),
        poll_interval=config.get("poll_interval"),
        max_duration=config.get("watch_timeout"),
    )
    pull_service = BulkPullService(targets, channels)

    logger.info("QueryRelay API started successfully")

    yield

    # Shutdown
    logger.info("Shutting down QueryRelay API...")
    await storage.disconnect()
    store = None
    logger.info("QueryRelay API shutdown complete")


# Create FastAPI application
app = FastAPI(
    title="QueryRelay API",
    description="QueryRelay - asynchronous command/result exchange with disconnected query agents",
    version="1.0.0",
    lifespan=lifespan,
)


# Dependency injection helpers


async def verify_api_key(
    x_api_key: str = Header(..., description="API key for authentication")
) -> Tuple[bool, Optional[str]]:
    """Verify API key and return service identity."""
    if not auth_module:
        raise HTTPException(503, "Service not initialized")

    is_valid, service_identity = await auth_module.verify_api_key(x_api_key)
    if not is_valid:
        raise HTTPException(401, "Invalid API key")

    return is_valid, service_identity


async def verify_pull_key(
    x_api_key: Optional[str] = Header(None, description="Pull API key")
) -> bool:
    """Verify the bulk pull API key."""
    if not auth_module:
        raise HTTPException(503, "Service not initialized")

    if not await auth_module.verify_pull_key(x_api_key):
        raise HTTPException(401, "Unauthorized")
    return True


def _require_modules() -> None:
    if not all([dispatcher, observer, channels]):
        raise HTTPException(503, "Service not initialized")


async def _discover(record: CommandRecord) -> ChannelHandle:
    """Channel for a finished row-producing command, or an HTTP error."""
    if not record.status.is_terminal:
        raise HTTPException(409, f"Command {record.id} is still {record.status.value}")
    if record.status == CommandStatus.FAILED:
        raise ExecutionFailed(record.id, record.error_detail)
    if record.result_kind != ResultKind.ROW_PRODUCING:
        raise HTTPException(409, f"Command {record.id} did not produce rows")
    return await observer.discover_channel(record)


def _channel_keys_for(record: CommandRecord) -> List[str]:
    """Every channel address a command's rows could live under."""
    keys = []
    if record.result_locator:
        keys.append(record.result_locator)
    if record.claimed_by and not any(c in record.claimed_by for c in RESERVED_ID_CHARS):
        keys.append(derive_key(record.id, record.claimed_by))
    return keys


async def _teardown_for_command(record: CommandRecord) -> List[str]:
    torn_down = []
    for key in _channel_keys_for(record):
        try:
            if await channels.teardown(key):
                torn_down.append(key)
        except ChannelNotFound as e:
            logger.warning(f"Skipping unusable locator for command {record.id}: {e}")
    return torn_down


# Requester Endpoints


@app.post("/commands", response_model=SubmitCommandResponse, status_code=201)
async def submit_command(
    request: SubmitCommandRequest,
    auth_info: Tuple[bool, Optional[str]] = Depends(verify_api_key),
):
    """
    Submit a query for a target's agent to execute.

    Returns immediately; watch the command to follow its progress.

    Returns:
        201: Command created in pending
        400: Malformed payload or missing issuer
        503: Target unavailable
    """
    _require_modules()
    _, service_identity = auth_info

    issuer_id = request.issuer_id or service_identity
    if not issuer_id:
        raise InvalidRequest("issuer_id is required when the API key has no service identity")

    command_id = await dispatcher.submit(request.requester_context, issuer_id, request.to_payload())
    return SubmitCommandResponse(command_id=command_id)


@app.get("/commands/{command_id}", response_model=CommandResponse)
async def get_command(command_id: str, auth_info: Tuple[bool, Optional[str]] = Depends(verify_api_key)):
    """
    Get the current state of a command record.

    Returns:
        200: Command record
        404: Unknown command
    """
    _require_modules()
    record = await dispatcher.get(command_id)
    return CommandResponse.from_record(record)


@app.get("/commands/{command_id}/watch")
async def watch_command(
    command_id: str,
    request: Request,
    auth_info: Tuple[bool, Optional[str]] = Depends(verify_api_key),
):
    """
    SSE stream of a command's progress.

    Emits ``status`` events until the first terminal snapshot, then one
    ``row`` event per result row for row-producing successes, then a single
    ``complete`` (or ``error``) event. Disconnecting cancels the watch; no
    data is deleted.

    Returns:
        SSE stream
        404: Unknown command
    """
    _require_modules()
    # Fail fast with 404 before opening the stream
    await dispatcher.get(command_id)

    cancel = CancellationToken()

    async def event_generator() -> AsyncGenerator:
        try:
            last = None
            async for update in observer.watch(command_id, cancel=cancel):
                last = update
                yield {"event": "status", "data": update.model_dump_json()}

            if last is None or not last.is_terminal:
                return

            complete = {"command_id": command_id, "status": last.status.value,
                        "result_kind": last.result_kind.value}

            if last.status == CommandStatus.FAILED:
                complete["error_detail"] = last.error_detail
            elif last.result_kind == ResultKind.ROW_PRODUCING:
                record = await dispatcher.get(command_id)
                handle = await observer.discover_channel(record)
                subscription = await observer.subscribe_rows(handle, cancel=cancel)
                completion = (await channels.get_metadata(handle)).get("completion", {})
                expected = completion.get("row_count")
                columns_sent: List[str] = []
                if expected != 0:
                    # Rows stream live; a finalized channel ends the stream at its row count
                    stream = subscription.follow(idle_timeout=config.get("row_idle_timeout"))
                    try:
                        async for row in stream:
                            if await request.is_disconnected():
                                cancel.cancel()
                                return
                            payload = {"row": row}
                            if subscription.columns != columns_sent:
                                columns_sent = subscription.columns
                                payload["columns"] = columns_sent
                            yield {"event": "row", "data": json.dumps(payload, default=str)}
                            if expected is not None and len(subscription.rows) >= expected:
                                break
                    finally:
                        await stream.aclose()
                complete["channel_key"] = handle.key
                complete["columns"] = subscription.columns
                complete["row_count"] = len(subscription.rows)
            else:
                complete["result_message"] = last.result_message

            yield {"event": "complete", "data": json.dumps(complete)}

        except asyncio.CancelledError:
            logger.info(f"Watcher of command {command_id} disconnected")
            cancel.cancel()
            raise
        except (WatchTimeout, CommandNotFound, ChannelNotFound, DiscoveryAmbiguous, StoreError) as e:
            logger.warning(f"Watch on command {command_id} ended with error: {e}")
            yield {
                "event": "error",
                "data": json.dumps({"command_id": command_id, "error": type(e).__name__, "detail": str(e)}),
            }

    return EventSourceResponse(event_generator())


@app.get("/commands/{command_id}/rows", response_model=RowsResponse)
async def get_command_rows(
    command_id: str, auth_info: Tuple[bool, Optional[str]] = Depends(verify_api_key)
):
    """
    Discover and read the rows of a finished command.

    Non-row-producing successes return their message and no rows.

    Returns:
        200: Rows and observed columns
        404: Unknown command or channel
        409: Command not finished, or discovery ambiguous
        502: Command failed
    """
    _require_modules()
    record = await dispatcher.get(command_id)

    if record.status.is_terminal and record.result_kind == ResultKind.NON_ROW_PRODUCING:
        return RowsResponse(
            command_id=command_id,
            result_kind=record.result_kind,
            result_message=record.result_message,
        )

    handle = await _discover(record)
    subscription = await observer.subscribe_rows(handle)
    rows = await subscription.snapshot()
    return RowsResponse(
        command_id=command_id,
        channel_key=handle.key,
        result_kind=record.result_kind,
        columns=subscription.columns,
        rows=rows,
        row_count=len(rows),
    )


@app.get("/commands/{command_id}/export")
async def export_command(
    command_id: str,
    cleanup: bool = Query(True, description="Tear down the channel and delete the command afterwards"),
    auth_info: Tuple[bool, Optional[str]] = Depends(verify_api_key),
):
    """
    Download a command's rows as CSV.

    By default the result channel is torn down and the command record
    deleted once the artifact has been produced.

    Returns:
        200: CSV attachment
        404, 409, 502: As for /rows
    """
    _require_modules()
    record = await dispatcher.get(command_id)
    handle = await _discover(record)

    subscription = await observer.subscribe_rows(handle)
    rows = await subscription.snapshot()
    artifact = export_sink.export(rows, subscription.columns, name=f"query-{command_id}")

    if cleanup:
        await channels.teardown(handle)
        await dispatcher.delete(command_id)
        logger.info(f"Exported and cleaned up command {command_id} ({artifact.row_count} rows)")

    return Response(
        content=artifact.content,
        media_type=artifact.media_type,
        headers={
            "Content-Disposition": f'attachment; filename="{artifact.filename}"',
            "X-Row-Count": str(artifact.row_count),
            "X-Content-SHA256": artifact.sha256,
        },
    )


@app.delete("/commands/{command_id}", response_model=DeleteCommandResponse)
async def delete_command(
    command_id: str, auth_info: Tuple[bool, Optional[str]] = Depends(verify_api_key)
):
    """
    Tear down a command's result channel and delete the command record.

    Returns:
        200: Deletion outcome
        404: Unknown command
    """
    _require_modules()
    record = await dispatcher.get(command_id)
    torn_down = await _teardown_for_command(record)
    deleted = await dispatcher.delete(command_id)
    return DeleteCommandResponse(command_id=command_id, deleted=deleted, channels_torn_down=torn_down)


@app.delete("/channels", response_model=TeardownResponse)
async def teardown_principal_channels(
    principal_id: Optional[str] = Query(
        None, min_length=1, description="Executing principal (omit to sweep every channel)"
    ),
    auth_info: Tuple[bool, Optional[str]] = Depends(verify_api_key),
):
    """
    Tear down every result channel belonging to a principal, or all of them.

    Channels are torn down independently; failures are reported per channel.

    Returns:
        200: All channels torn down
        207: Some channels failed (see failures)
    """
    _require_modules()
    if principal_id:
        report = await channels.teardown_for_principal(principal_id)
    else:
        report = await channels.teardown_all()
    body = TeardownResponse.model_validate(report.to_dict())
    if not report.ok:
        return JSONResponse(status_code=207, content=body.model_dump())
    return body


# Registry Endpoints


@app.post("/templates", response_model=TemplateResponse, status_code=201)
async def save_template(
    request: TemplateRequest, auth_info: Tuple[bool, Optional[str]] = Depends(verify_api_key)
):
    """
    Register or replace a query template.

    Placeholders written as ``{{name}}`` are declared automatically.

    Returns:
        201: Stored template with its declared variables
    """
    if not templates:
        raise HTTPException(503, "Service not initialized")
    template = await templates.save(request.to_template())
    return TemplateResponse.from_template(template)


@app.get("/templates", response_model=List[TemplateResponse])
async def list_templates(auth_info: Tuple[bool, Optional[str]] = Depends(verify_api_key)):
    """List registered query templates."""
    if not templates:
        raise HTTPException(503, "Service not initialized")
    return [TemplateResponse.from_template(t) for t in await templates.list()]


@app.post("/targets", response_model=TargetResponse, status_code=201)
async def save_target(
    request: TargetRequest, auth_info: Tuple[bool, Optional[str]] = Depends(verify_api_key)
):
    """
    Register or replace a target and assign its agent.

    Returns:
        201: Stored target
    """
    if not targets:
        raise HTTPException(503, "Service not initialized")
    target = await targets.save(request.to_target())
    return TargetResponse.from_target(target)


@app.get("/targets", response_model=List[TargetResponse])
async def list_targets(auth_info: Tuple[bool, Optional[str]] = Depends(verify_api_key)):
    """List registered targets."""
    if not targets:
        raise HTTPException(503, "Service not initialized")
    return [TargetResponse.from_target(t) for t in await targets.list()]


# Bulk Pull Endpoint


@app.post("/api/pull/client-data")
async def pull_client_data(request: PullRequest, authorized: bool = Depends(verify_pull_key)):
    """
    Pull the most recent result rows for one or more tenants.

    Without command_ids the channel is chosen by recency, so concurrent
    requests for the same tenant can see each other's rows.

    Returns:
        200: Rows keyed by tenant name (per-tenant errors inline)
        404: Single tenant requested and nothing found
        401: Bad key
    """
    if not pull_service:
        raise HTTPException(503, "Service not initialized")

    result = await pull_service.pull(request.names, request.command_ids)

    # Single-client requests keep the flat {clientName, data} shape
    if request.client_name and not request.client_names:
        pulled = result.tenants[request.client_name.strip()]
        if not pulled.ok:
            return JSONResponse(status_code=404, content={"error": pulled.error})
        return {"clientName": pulled.tenant_name, "data": pulled.rows}

    return {"clients": result.to_dict()}


# Health/Monitoring Endpoints


@app.get("/healthz")
async def healthz():
    """
    Minimal health check endpoint for readiness/liveness probes.

    Returns:
        200: Service is running
    """
    return {"status": "ok"}


@app.get("/health")
async def health_check():
    """
    Health check endpoint with store status.

    Returns:
        200: Service healthy
        503: Service unhealthy
    """
    try:
        if store:
            await store.ping()
            store_status = "connected"
        else:
            store_status = "disconnected"

        modules_ready = all([auth_module, dispatcher, observer, channels, pull_service])

        if store_status == "connected" and modules_ready:
            return {
                "status": "healthy",
                "store": store_status,
                "backend": config.get("store_backend"),
                "watch_mode": config.get("watch_mode"),
                "modules": "initialized",
                "version": "1.0.0",
            }
        return JSONResponse(
            status_code=503,
            content={
                "status": "unhealthy",
                "store": store_status,
                "modules": "not initialized" if not modules_ready else "initialized",
            },
        )
    except Exception as e:
        logger.error(f"Health check failed: {e}")
        return JSONResponse(status_code=503, content={"status": "unhealthy", "error": str(e)})


# Error handlers


def _error(status_code: int, exc: Exception) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"error": type(exc).__name__, "detail": str(exc)})


@app.exception_handler(InvalidRequest)
async def invalid_request_handler(request, exc):
    logger.info(f"Invalid request: {exc}")
    return _error(400, exc)


@app.exception_handler(TargetUnavailable)
async def target_unavailable_handler(request, exc):
    logger.warning(f"Target unavailable: {exc}")
    return _error(503, exc)


@app.exception_handler(CommandNotFound)
async def command_not_found_handler(request, exc):
    return _error(404, exc)


@app.exception_handler(ChannelNotFound)
async def channel_not_found_handler(request, exc):
    logger.warning(f"Result channel not found: {exc}")
    return _error(404, exc)


@app.exception_handler(DiscoveryAmbiguous)
async def discovery_ambiguous_handler(request, exc):
    logger.error(f"Discovery ambiguous: {exc}")
    return JSONResponse(
        status_code=409,
        content={"error": "DiscoveryAmbiguous", "detail": str(exc), "candidates": exc.candidates},
    )


@app.exception_handler(ClaimConflict)
async def claim_conflict_handler(request, exc):
    return _error(409, exc)


@app.exception_handler(IllegalTransition)
async def illegal_transition_handler(request, exc):
    logger.error(f"Illegal transition: {exc}")
    return _error(409, exc)


@app.exception_handler(ExecutionFailed)
async def execution_failed_handler(request, exc):
    return JSONResponse(
        status_code=502,
        content={"error": "ExecutionFailed", "detail": str(exc), "error_detail": exc.error_detail},
    )


@app.exception_handler(WatchTimeout)
async def watch_timeout_handler(request, exc):
    return _error(504, exc)


@app.exception_handler(DocumentExists)
async def document_exists_handler(request, exc):
    logger.warning(f"Create conflict: {exc}")
    return _error(409, exc)


@app.exception_handler(StoreError)
async def store_error_handler(request, exc):
    """Handle shared store errors."""
    logger.error(f"Store error: {exc}")
    return JSONResponse(status_code=503, content={"error": "Database connection failed"})


@app.exception_handler(redis.ConnectionError)
async def redis_error_handler(request, exc):
    """Handle Redis connection errors."""
    logger.error(f"Redis connection error: {exc}")
    return JSONResponse(status_code=503, content={"error": "Database connection failed"})


@app.exception_handler(ValueError)
async def validation_error_handler(request, exc):
    """Handle validation errors."""
    logger.error(f"Validation error: {exc}")
    return JSONResponse(status_code=400, content={"error": str(exc)})


def main():
    # Use dict config for logging, not file path
    uvicorn.run(
        "queryrelay.main:app",
        host=config.get("host"),
        port=config.get("port"),
        log_level=config.get("log_level").lower(),
        reload=config.get("debug"),
        log_config=get_logging_config(config.get("log_level")),
    )


if __name__ == "__main__":
    main()
