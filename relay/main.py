import asyncio
import logging
from contextlib import asynccontextmanager
from typing import Annotated

from fastapi import FastAPI, Query, Request, Response, WebSocket, WebSocketDisconnect, status

from relay.broadcaster import Broadcaster
from relay.config import settings
from relay.connections import WebSocketConnection
from relay.history import HistoryLog
from relay.hub import RelayHub
from relay.logging_utils import RequestLoggingMiddleware, connection_context, setup_logging
from relay.metrics import get_metrics, get_metrics_content_type
from relay.scheduler import AsyncioScheduler
from relay.schemas import HealthResponse, MessagesSinceResponse, StatsResponse
from relay.sessions import SessionRegistry
from relay.storage import SessionLocal, check_db_health, init_db


# Setup structured JSON logging
setup_logging(settings.LOG_LEVEL)
logger = logging.getLogger(__name__)


def build_hub(scheduler: AsyncioScheduler) -> RelayHub:
    """Assemble the relay from settings: history log, broadcaster, session registry."""
    history = HistoryLog(
        session_factory=SessionLocal,
        capacity=settings.HISTORY_LIMIT,
        dedup_window_ms=settings.DEDUP_WINDOW_MS,
    )
    history.load()

    broadcaster = Broadcaster()
    registry = SessionRegistry(
        broadcaster,
        scheduler,
        grace_window=settings.GRACE_WINDOW_SECONDS,
        away_threshold=settings.AWAY_THRESHOLD_SECONDS,
        sweep_interval=settings.SWEEP_INTERVAL_SECONDS,
    )
    return RelayHub(
        history,
        scheduler,
        broadcaster=broadcaster,
        registry=registry,
        max_text_length=settings.MAX_TEXT_LENGTH,
        history_seed_limit=settings.HISTORY_SEED_LIMIT,
        clear_chat_max_occupancy=settings.CLEAR_CHAT_MAX_OCCUPANCY,
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Lifespan context manager for startup and shutdown events.
    - Startup: initialize database, load history, start presence sweep
    - Shutdown: cancel timers and close every connection
    """
    try:
        init_db()
    except Exception as e:
        logger.error(f"Database unavailable, history will be memory-only: {e}")

    hub = build_hub(AsyncioScheduler())
    hub.start()
    app.state.hub = hub
    logger.info("Relay started")
    yield
    hub.shutdown()
    logger.info("Relay stopped")


app = FastAPI(
    title="Chat Relay",
    description="Real-time group chat relay with presence and delivery acknowledgements",
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
async def health_ready(request: Request, response: Response) -> HealthResponse:
    """
    Readiness probe - returns 200 only if the history database is reachable
    and its schema is applied. A relay running on its in-memory fallback is
    reported as not ready (503) while it keeps serving chat traffic.
    """
    if not check_db_health():
        response.status_code = status.HTTP_503_SERVICE_UNAVAILABLE
        return HealthResponse(
            status="not_ready",
            reason="Database not reachable or schema not applied"
        )

    if request.app.state.hub.history.degraded:
        response.status_code = status.HTTP_503_SERVICE_UNAVAILABLE
        return HealthResponse(
            status="not_ready",
            reason="History log running in memory only"
        )

    return HealthResponse(status="ready")


# =============================================================================
# Catch-up Route
# =============================================================================

@app.get(
    "/messages",
    response_model=MessagesSinceResponse,
)
async def messages_since(
    request: Request,
    since: Annotated[int, Query(ge=0, description="Return messages with timestamp > since (ms since epoch)")] = 0,
    limit: Annotated[int | None, Query(ge=1, description="Page size, capped by CATCHUP_PAGE_SIZE")] = None,
    after_id: Annotated[str | None, Query(min_length=1, max_length=64, description="Id of the last message already seen at `since`")] = None,
) -> MessagesSinceResponse:
    """
    Read-only catch-up for clients without a live connection.

    Ordering:
        - Oldest first by (timestamp, id)
        - Page with the last returned message's timestamp as `since` and its
          id as `after_id`; messages sharing that millisecond are not skipped
    """
    page_size = min(limit or settings.CATCHUP_PAGE_SIZE, settings.CATCHUP_PAGE_SIZE)
    history = request.app.state.hub.history
    data = history.since(since, page_size, after_id=after_id)
    logger.info(f"GET /messages: since={since}, after_id={after_id}, returned {len(data)} (page size {page_size})")
    return MessagesSinceResponse(data=data, count=len(data), since=since, after_id=after_id)


# =============================================================================
# Stats Route
# =============================================================================

@app.get("/stats", response_model=StatsResponse)
async def get_statistics(request: Request) -> StatsResponse:
    """
    Snapshot of relay state: history size, present sessions, history time span.
    """
    hub = request.app.state.hub
    first_ts, last_ts = hub.history.bounds()
    return StatsResponse(
        total_messages=len(hub.history),
        online_count=hub.registry.online_count,
        first_message_ts=first_ts,
        last_message_ts=last_ts,
    )


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


# =============================================================================
# Relay WebSocket
# =============================================================================

@app.websocket("/ws")
async def relay_socket(websocket: WebSocket) -> None:
    """
    Chat relay endpoint. Inbound frames are handled one at a time; outbound
    frames are drained by a per-connection writer task.
    """
    await websocket.accept()
    hub: RelayHub = websocket.app.state.hub
    connection = WebSocketConnection(websocket, max_outbox=settings.OUTBOX_LIMIT)

    with connection_context(connection.id):
        writer = asyncio.create_task(connection.run_writer())
        hub.handle_connect(connection)
        try:
            while connection.open:
                message = await websocket.receive()
                if message["type"] == "websocket.disconnect":
                    raise WebSocketDisconnect(message.get("code", 1000))
                raw = message.get("text")
                if raw is None:
                    raw = message.get("bytes", b"")
                hub.handle_raw(connection, raw)
        except WebSocketDisconnect as e:
            logger.info(f"Client disconnected with code {e.code}")
            connection.detach()
        finally:
            hub.handle_disconnect(connection)
            connection.close()
            await writer
