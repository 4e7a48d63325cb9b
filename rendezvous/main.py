from fastapi import FastAPI
from .routers.health import router as health_router
from .routers.likes import router as likes_router
from .routers.matches import router as matches_router
from .routers.conversations import router as conversations_router
from .routers.realtime_ws import router as realtime_ws_router
from .database import create_tables
from .exceptions import RendezvousError
from .services.presence import presence_hub
from .services.realtime_bus import bus
from contextlib import asynccontextmanager
from fastapi.middleware.cors import CORSMiddleware
from .config import settings
import random
import time
import uuid
from fastapi import Request
from starlette.exceptions import HTTPException as StarletteHTTPException
from fastapi.exceptions import RequestValidationError
import logging
from fastapi.responses import JSONResponse, PlainTextResponse
from prometheus_client import Counter, Histogram, generate_latest, CONTENT_TYPE_LATEST
from sqlalchemy.exc import SQLAlchemyError

# Configure logging
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    await create_tables()
    bus.start()

    yield

    # Presence first: its sweeper publishes on the bus
    try:
        await presence_hub.shutdown()
    except Exception as e:
        logger.error(f"Error shutting down presence hub: {e}")
    try:
        await bus.shutdown()
    except Exception as e:
        logger.error(f"Error shutting down realtime bus: {e}")


app = FastAPI(
    title="Rendezvous - Matching & Chat",
    description="""
# Rendezvous API Documentation

Mutual-interest matching with realtime one-to-one chat.

## 🔐 Authentication

Tokens are issued by the auth service. Include the token in the Authorization
header: `Authorization: Bearer <your_token>`. The realtime socket takes it as
a query parameter: `/ws?token=<your_token>`.

## 💘 Likes & Matches

- **Like**: `POST /likes/{user_id}`. Liking someone who already liked you creates the match.
- **Requests**: `GET /likes/incoming`, then accept or reject.
- **Matches**: `GET /matches`

## 💬 Conversations

- **Inbox**: `GET /conversations` with last message, unread count and presence
- **Messages**: send with an optional `client_key` so retries are not duplicated
- **Read state**: `POST /matches/{match_id}/read`; the watermark only moves forward
- **Typing**: ping `POST /matches/{match_id}/typing` while typing, there is no stop call

## 📱 Realtime

One socket per device at `/ws`. Send `ping` frames to stay online, `subscribe`
to a conversation's messages or typing, and `sync` from your last message
after a reconnect. A `closing` frame followed by close code 4408 means events
were lost: reconnect and resync.

### Rate Limits
- Likes: 30 per minute per user
- Messages: 20 per minute per user

### Error Handling
All endpoints return `{"error": {"code", "message"}, "request_id"}`.
""",
    version="1.0.0",
    lifespan=lifespan
)

# Include routers
app.include_router(health_router)
app.include_router(likes_router)
app.include_router(matches_router)
app.include_router(conversations_router)
app.include_router(realtime_ws_router)

# CORS for UI
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_allowed_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Prometheus metrics
REQUEST_COUNT = Counter("http_requests_total", "Total HTTP requests", [
                        "method", "route", "status"])
REQUEST_LATENCY = Histogram(
    "http_request_duration_seconds",
    "HTTP request latency in seconds",
    buckets=(0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1, 2, 5)
)

HTTP_ERROR_CODES = {
    400: "bad_request",
    401: "unauthorized",
    403: "forbidden",
    404: "not_found",
    405: "method_not_allowed",
    409: "conflict",
    422: "validation_error",
    429: "too_many_requests",
    503: "storage_unavailable",
}


def _error_response(request: Request, status_code: int, code: str, message: str, **extra) -> JSONResponse:
    request_id = getattr(request.state, "request_id", None) or str(uuid.uuid4())
    body = {
        "error": {"code": code, "message": message, **extra},
        "request_id": request_id,
    }
    headers = {"X-Request-ID": request_id}
    if status_code == 401:
        headers["WWW-Authenticate"] = "Bearer"
    return JSONResponse(status_code=status_code, content=body, headers=headers)


@app.exception_handler(RendezvousError)
async def rendezvous_error_handler(request: Request, exc: RendezvousError):
    return _error_response(request, exc.status_code, exc.code, str(exc))


@app.exception_handler(StarletteHTTPException)
async def http_exception_handler(request: Request, exc: StarletteHTTPException):
    message = exc.detail if isinstance(exc.detail, str) else str(exc.detail)
    return _error_response(
        request, exc.status_code, HTTP_ERROR_CODES.get(exc.status_code, "error"), message)


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    return _error_response(
        request, 422, "validation_error", "Validation error",
        details=jsonable_errors(exc))


@app.exception_handler(SQLAlchemyError)
async def storage_error_handler(request: Request, exc: SQLAlchemyError):
    logging.exception(f"Storage error rid={getattr(request.state, 'request_id', None)}")
    return _error_response(
        request, 503, "storage_unavailable", "Could not complete request, try again.")


def jsonable_errors(exc: RequestValidationError) -> list:
    # ctx may hold exception instances that JSON can't encode
    return [
        {key: value for key, value in error.items() if key != "ctx"}
        for error in exc.errors()
    ]


@app.middleware("http")
async def add_request_id_and_errors(request: Request, call_next):
    request_id = str(uuid.uuid4())
    request.state.request_id = request_id
    # Lightweight JSON log (sample all in debug, a fraction in prod)
    if settings.debug or random.random() < settings.log_sample_rate:
        logging.info({
            "event": "request",
            "method": request.method,
            "path": request.url.path,
            "rid": request_id,
        })
    try:
        start = time.perf_counter()
        response = await call_next(request)
        elapsed = time.perf_counter() - start
        REQUEST_LATENCY.observe(elapsed)
        route = getattr(request.scope.get("route"), "path", request.url.path)
        REQUEST_COUNT.labels(method=request.method,
                             route=route, status=response.status_code).inc()
        response.headers["X-Request-ID"] = request_id
        return response
    except Exception:
        logging.exception(f"Unhandled error rid={request_id}")
        route = getattr(request.scope.get("route"), "path", request.url.path)
        REQUEST_COUNT.labels(method=request.method,
                             route=route, status=500).inc()
        return _error_response(request, 500, "internal_server_error", "Internal Server Error")


@app.get("/")
async def root():
    return {"app": settings.app_name, "docs": "/docs"}


@app.get("/metrics")
async def metrics(request: Request):
    # In dev/debug mode, expose metrics without auth
    if not settings.debug:
        token = request.headers.get("X-Metrics-Token")
        if not settings.metrics_token or token != settings.metrics_token:
            return _error_response(request, 403, "forbidden", "Forbidden")
    data = generate_latest()
    return PlainTextResponse(content=data, media_type=CONTENT_TYPE_LATEST)
