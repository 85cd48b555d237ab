import logging
from contextlib import asynccontextmanager
from datetime import timedelta
from functools import lru_cache
from typing import Annotated

from fastapi import FastAPI, Response, Request, Depends, Header, HTTPException, status, Query
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from chatpipe.assembler import ConversationAssembler
from chatpipe.codec import ContentCodec, build_codec
from chatpipe.config import settings
from chatpipe.editing import EditController
from chatpipe.errors import (
    ChatPipelineError,
    EditWindowExpired,
    NotAuthorized,
    NotFound,
    RateLimitExceeded,
    TransientIOError,
    ValidationError,
)
from chatpipe.logging_utils import setup_logging, RequestLoggingMiddleware, log_send_data
from chatpipe.metrics import get_metrics, get_metrics_content_type
from chatpipe.pipeline import MessagePipeline
from chatpipe.rate_limit import FixedWindowRateLimiter
from chatpipe.schemas import (
    BatchDeliveredRequest,
    BatchDeliveredResponse,
    ConversationReadResponse,
    ConversationResponse,
    EditHistoryResponse,
    EditMessageRequest,
    EditRecordResponse,
    ErrorResponse,
    HealthResponse,
    MessageResponse,
    ReadReceiptResponse,
    SendMessageRequest,
    SendMessageResponse,
    StatusResponse,
    StatusUpdateRequest,
    UnreadCountResponse,
)
from chatpipe.status import DeliveryStatusTracker
from chatpipe.storage import MessageStore, init_db, check_db_health, get_db
from chatpipe.utils import utc_now


# Setup structured JSON logging
setup_logging(settings.LOG_LEVEL)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Lifespan context manager for startup and shutdown events.
    - Startup: Initialize database and create tables
    """
    init_db()
    yield


app = FastAPI(
    title="Chat Delivery Pipeline",
    description="Message delivery and reconstruction pipeline for person-to-person chat",
    version="1.0.0",
    lifespan=lifespan,
)

app.add_middleware(RequestLoggingMiddleware)

# Per-app collaborators, replaceable in tests
app.state.clock = utc_now
app.state.rate_limiter = FixedWindowRateLimiter(
    limit=settings.RATE_LIMIT_MESSAGES,
    window_seconds=settings.RATE_LIMIT_WINDOW_SECONDS,
)


# =============================================================================
# Error Handling
# =============================================================================

ERROR_STATUS = [
    (ValidationError, status.HTTP_422_UNPROCESSABLE_ENTITY),
    (NotAuthorized, status.HTTP_403_FORBIDDEN),
    (NotFound, status.HTTP_404_NOT_FOUND),
    (EditWindowExpired, status.HTTP_409_CONFLICT),
    (RateLimitExceeded, status.HTTP_429_TOO_MANY_REQUESTS),
    (TransientIOError, status.HTTP_503_SERVICE_UNAVAILABLE),
]


@app.exception_handler(ChatPipelineError)
async def pipeline_error_handler(request: Request, exc: ChatPipelineError) -> JSONResponse:
    status_code = status.HTTP_500_INTERNAL_SERVER_ERROR
    for error_type, code in ERROR_STATUS:
        if isinstance(exc, error_type):
            status_code = code
            break

    headers = None
    if isinstance(exc, RateLimitExceeded):
        headers = {"Retry-After": str(max(1, int(exc.retry_after)))}

    return JSONResponse(
        status_code=status_code,
        content={"detail": exc.message, "code": exc.code},
        headers=headers,
    )


# =============================================================================
# Dependencies
# =============================================================================

@lru_cache()
def get_codec() -> ContentCodec:
    """Content codec selected once from configuration."""
    return build_codec(settings.CODEC, settings.CODEC_SECRET, settings.CODEC_PRIVATE_KEY_PEM)


def get_store(db: Session = Depends(get_db)) -> MessageStore:
    return MessageStore(db)


def get_current_user(
    x_user_id: Annotated[str | None, Header(alias="X-User-Id")] = None,
) -> str:
    """Caller identity as established by the authentication layer."""
    if not x_user_id or not x_user_id.strip():
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="missing X-User-Id header"
        )
    return x_user_id.strip()


def get_pipeline(
    request: Request,
    store: MessageStore = Depends(get_store),
    codec: ContentCodec = Depends(get_codec),
) -> MessagePipeline:
    return MessagePipeline(
        store,
        codec,
        chunk_threshold=settings.CHUNK_THRESHOLD,
        chunk_size=settings.CHUNK_SIZE,
        max_content_length=settings.MAX_CONTENT_LENGTH,
        store_self_copy=settings.STORE_SELF_COPY,
        rate_limiter=request.app.state.rate_limiter,
        clock=request.app.state.clock,
    )


def get_assembler(
    store: MessageStore = Depends(get_store),
    codec: ContentCodec = Depends(get_codec),
) -> ConversationAssembler:
    return ConversationAssembler(store, codec, default_limit=settings.CONVERSATION_LIMIT)


def get_editor(
    request: Request,
    store: MessageStore = Depends(get_store),
    codec: ContentCodec = Depends(get_codec),
) -> EditController:
    return EditController(
        store,
        codec,
        window=timedelta(seconds=settings.EDIT_WINDOW_SECONDS),
        max_length=settings.CHUNK_THRESHOLD,
        clock=request.app.state.clock,
    )


def get_tracker(request: Request, store: MessageStore = Depends(get_store)) -> DeliveryStatusTracker:
    return DeliveryStatusTracker(store, clock=request.app.state.clock)


CurrentUser = Annotated[str, Depends(get_current_user)]


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
    Readiness probe - returns 200 only if the store is reachable and
    both tables exist; otherwise 503.
    """
    if not check_db_health():
        response.status_code = status.HTTP_503_SERVICE_UNAVAILABLE
        return HealthResponse(
            status="not_ready",
            reason="Database not reachable or schema not applied"
        )

    return HealthResponse(status="ready")


# =============================================================================
# Send Route
# =============================================================================

@app.post(
    "/messages",
    response_model=SendMessageResponse,
    status_code=status.HTTP_201_CREATED,
    responses={
        401: {"description": "Missing caller identity"},
        422: {"model": ErrorResponse, "description": "Validation error"},
        429: {"model": ErrorResponse, "description": "Rate limit exceeded"},
        503: {"model": ErrorResponse, "description": "Store unavailable, retry later"},
    }
)
async def send_message(
    request: Request,
    body: SendMessageRequest,
    user_id: CurrentUser,
    pipeline: MessagePipeline = Depends(get_pipeline),
) -> SendMessageResponse:
    """
    Persist a message from the caller to body.receiver_id.

    Text longer than CHUNK_THRESHOLD is stored as fragments of at most
    CHUNK_SIZE characters sharing one group id.
    """
    logger.info(f"Send request from {user_id} to {body.receiver_id} ({len(body.content)} chars)")
    try:
        result = pipeline.send_message(user_id, body.receiver_id, body.content, body.content_type)
    except ChatPipelineError as e:
        log_send_data(request, result="error" if isinstance(e, TransientIOError) else "rejected")
        raise

    log_send_data(
        request,
        message_id=result.message_id,
        fragments=result.fragments,
        result="chunked" if result.group_id else "stored",
    )
    return SendMessageResponse(
        message_ids=result.message_ids,
        group_id=result.group_id,
        fragments=result.fragments,
        created_at=result.created_at,
    )


# =============================================================================
# Conversation Routes
# =============================================================================

@app.get("/conversations/{other_id}", response_model=ConversationResponse)
async def load_conversation(
    other_id: str,
    user_id: CurrentUser,
    limit: Annotated[int | None, Query(ge=1, le=500, description="Maximum rows to fetch")] = None,
    assembler: ConversationAssembler = Depends(get_assembler),
) -> ConversationResponse:
    """
    Logical messages between the caller and other_id, oldest first.

    Complete chunk groups are reassembled; fragments of incomplete groups are
    returned individually with chunk_info. Duplicate copies are collapsed.
    """
    limit = limit or settings.CONVERSATION_LIMIT
    messages = assembler.load_conversation(user_id, other_id, limit)
    logger.info(f"Conversation {user_id}<->{other_id}: returned {len(messages)} messages")
    return ConversationResponse(
        data=[MessageResponse.model_validate(m.to_dict()) for m in messages],
        count=len(messages),
        limit=limit,
    )


@app.post("/conversations/{other_id}/read", response_model=ConversationReadResponse)
async def mark_conversation_read(
    other_id: str,
    user_id: CurrentUser,
    tracker: DeliveryStatusTracker = Depends(get_tracker),
) -> ConversationReadResponse:
    """Mark everything other_id sent to the caller as read."""
    return ConversationReadResponse(marked=tracker.mark_conversation_read(user_id, other_id))


# =============================================================================
# Edit Routes
# =============================================================================

@app.patch("/messages/{message_id}", response_model=MessageResponse)
async def edit_message(
    message_id: str,
    body: EditMessageRequest,
    user_id: CurrentUser,
    editor: EditController = Depends(get_editor),
    assembler: ConversationAssembler = Depends(get_assembler),
) -> MessageResponse:
    """
    Replace the content of the caller's own message within the edit window.

    Errors: 404 unknown id, 403 not the sender, 409 window expired,
    422 empty or oversized content.
    """
    row = editor.edit(message_id, body.content, user_id)
    message = assembler.to_logical(row)
    return MessageResponse.model_validate(message.to_dict())


@app.get("/messages/{message_id}/history", response_model=EditHistoryResponse)
async def edit_history(
    message_id: str,
    user_id: CurrentUser,
    editor: EditController = Depends(get_editor),
) -> EditHistoryResponse:
    """Superseded versions of a message, oldest first (participants only)."""
    history = editor.get_edit_history(message_id, user_id)
    return EditHistoryResponse(
        message_id=message_id,
        history=[EditRecordResponse(content=r.content, edited_at=r.edited_at) for r in history],
    )


# =============================================================================
# Status Routes
# =============================================================================

@app.post("/messages/delivered", response_model=BatchDeliveredResponse)
async def batch_mark_delivered(
    body: BatchDeliveredRequest,
    user_id: CurrentUser,
    tracker: DeliveryStatusTracker = Depends(get_tracker),
) -> BatchDeliveredResponse:
    """Advance sent messages to delivered; more advanced ones are untouched."""
    return BatchDeliveredResponse(advanced=tracker.batch_mark_delivered(body.message_ids))


@app.post("/messages/{message_id}/status", response_model=StatusResponse)
async def mark_status(
    message_id: str,
    body: StatusUpdateRequest,
    user_id: CurrentUser,
    tracker: DeliveryStatusTracker = Depends(get_tracker),
) -> StatusResponse:
    """Single-message status transition; repeating the current status is a no-op."""
    new_status = tracker.mark_status(message_id, body.status)
    return StatusResponse(message_id=message_id, status=new_status)


@app.post("/messages/{message_id}/read", response_model=ReadReceiptResponse)
async def mark_read(
    message_id: str,
    user_id: CurrentUser,
    tracker: DeliveryStatusTracker = Depends(get_tracker),
) -> ReadReceiptResponse:
    """Record a read receipt for the caller."""
    return ReadReceiptResponse(message_id=message_id, recorded=tracker.mark_read(message_id, user_id))


@app.get("/unread", response_model=UnreadCountResponse)
async def unread_count(
    user_id: CurrentUser,
    from_user: Annotated[str | None, Query(description="Only count messages from this sender")] = None,
    tracker: DeliveryStatusTracker = Depends(get_tracker),
) -> UnreadCountResponse:
    return UnreadCountResponse(
        user_id=user_id,
        from_user=from_user,
        unread=tracker.unread_count(user_id, from_user),
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
