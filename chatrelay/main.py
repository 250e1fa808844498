import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Response, WebSocket, WebSocketDisconnect, status
from pydantic import ValidationError

from chatrelay.backup import BackupSynchronizer, RemoteBackupStore
from chatrelay.config import settings
from chatrelay.connections import ConnectionManager
from chatrelay.logging_utils import RequestLoggingMiddleware, connection_id_ctx, setup_logging
from chatrelay.metrics import get_metrics, get_metrics_content_type
from chatrelay.presence import PresenceRegistry
from chatrelay.router import RelayRouter
from chatrelay.schemas import ErrorResponse, HealthResponse, InboundFrame, OutboundEvent
from chatrelay.storage import SessionLocal, check_db_health, init_db


# Setup structured JSON logging
setup_logging(settings.LOG_LEVEL)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Lifespan context manager for startup and shutdown events.
    - Startup: create tables, wire the relay, restore from backup, then
      start the backup push loop
    - Shutdown: stop the push loop and close the backup client
    """
    init_db()

    registry = PresenceRegistry()
    connections = ConnectionManager()
    app.state.registry = registry
    app.state.connections = connections
    app.state.relay = RelayRouter(
        registry=registry,
        transport=connections,
        session_factory=SessionLocal,
        snapshot_on_send=settings.SNAPSHOT_ON_SEND,
    )

    remote = None
    synchronizer = None
    if settings.backup_enabled:
        remote = RemoteBackupStore(
            base_url=settings.SUPABASE_URL,
            api_key=settings.SUPABASE_KEY,
            table=settings.BACKUP_TABLE,
            timeout=settings.BACKUP_TIMEOUT_SECONDS,
            page_size=settings.RESTORE_PAGE_SIZE,
        )
        synchronizer = BackupSynchronizer(
            remote=remote,
            session_factory=SessionLocal,
            interval_seconds=settings.BACKUP_INTERVAL_MS / 1000,
            batch_size=settings.BACKUP_BATCH_SIZE,
            persist_watermark=settings.BACKUP_PERSIST_WATERMARK,
        )
        await synchronizer.restore()
        synchronizer.start()
    else:
        logger.warning("SUPABASE_URL/SUPABASE_KEY not set, backup service disabled")
    app.state.synchronizer = synchronizer

    yield

    if synchronizer is not None:
        await synchronizer.stop()
    if remote is not None:
        await remote.aclose()


app = FastAPI(
    title="Chat Relay",
    description="Presence-aware chat and call-signaling relay with durable message backup",
    version="1.0.0",
    lifespan=lifespan,
)

# Add request logging middleware
app.add_middleware(RequestLoggingMiddleware)


# =============================================================================
# Health Check Routes
# =============================================================================

@app.get("/health/live", response_model=HealthResponse)
async def health_live() -> HealthResponse:
    """
    Liveness probe - always returns 200 once the app is running.
    """
    return HealthResponse(status="ok")


@app.get("/health/ready", response_model=HealthResponse)
async def health_ready(response: Response) -> HealthResponse:
    """
    Readiness probe - returns 200 only if the DB is reachable and the
    schema is applied, otherwise 503 (Service Unavailable).
    """
    if not check_db_health():
        response.status_code = status.HTTP_503_SERVICE_UNAVAILABLE
        return HealthResponse(
            status="not_ready",
            reason="Database not reachable or schema not applied"
        )

    return HealthResponse(status="ready")


# =============================================================================
# Relay WebSocket
# =============================================================================

@app.websocket("/ws")
async def relay_socket(websocket: WebSocket) -> None:
    """
    One relay session per socket.

    Frames are JSON objects {"event": <name>, "data": <payload>}. Each
    frame is handled to completion before the next one is read, which
    keeps per-connection ordering.
    """
    connections: ConnectionManager = websocket.app.state.connections
    relay: RelayRouter = websocket.app.state.relay

    connection = await connections.connect(websocket)
    token = connection_id_ctx.set(connection.id)
    try:
        while True:
            raw = await websocket.receive_text()
            try:
                frame = InboundFrame.model_validate_json(raw)
            except ValidationError:
                logger.warning("Malformed frame received")
                await connections.send(
                    connection.id,
                    OutboundEvent.ERROR.value,
                    ErrorResponse(error="Malformed frame").model_dump(),
                )
                continue
            try:
                await relay.handle(connection.id, frame)
            except Exception:
                logger.exception(f"Error handling {frame.event}")
                await connections.send(
                    connection.id,
                    OutboundEvent.ERROR.value,
                    ErrorResponse(error="Internal error").model_dump(),
                )
    except WebSocketDisconnect:
        logger.info("Client closed connection")
    finally:
        relay.disconnect(connection.id)
        connections.disconnect(connection.id)
        connection_id_ctx.reset(token)


# =============================================================================
# Metrics Route
# =============================================================================

@app.get("/metrics")
async def metrics() -> Response:
    """
    Expose Prometheus-style metrics.
    """
    return Response(
        content=get_metrics(),
        media_type=get_metrics_content_type()
    )
