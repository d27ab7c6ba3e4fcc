import asyncio
import logging
import re

from fastapi import FastAPI, HTTPException, Request, WebSocket, WebSocketDisconnect, status
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.gzip import GZipMiddleware
from fastapi.responses import JSONResponse, Response
from sqlalchemy.orm import sessionmaker

from .core.cache import cache_client
from .core.config import (
    CORS_ORIGINS,
    LOG_LEVEL,
    RATE_LIMIT_ENABLED,
    STREAM_STATUS_POLL_ENABLED,
    STREAM_STATUS_POLL_SECONDS,
)
from .core.errors import NotAuthenticated, StreamaniaError
from .core.events import EventHub
from .db import SessionLocal, get_db, init_db
from .middleware import RateLimitMiddleware
from .routes import auth, chat, quizzes, streams, users
from .services.identity import IdentityProvider, SessionContext, log_reset_delivery
from .services.streams import StatusPoller, YouTubeClient
from .websocket import ConnectionManager

logger = logging.getLogger(__name__)

_LOCAL_ORIGIN_REGEX = re.compile(r"^https?://(localhost|127\.0\.0\.1)(:\d+)?$", re.IGNORECASE)


def _is_origin_allowed(origin: str) -> bool:
    if not origin:
        return False
    if "*" in CORS_ORIGINS or origin in CORS_ORIGINS:
        return True
    return bool(_LOCAL_ORIGIN_REGEX.match(origin))


def _error_response(request: Request, status_code: int, detail) -> JSONResponse:
    """Error payload with CORS headers, which CORSMiddleware skips for handled errors."""
    origin = request.headers.get("origin", "")
    response = JSONResponse(status_code=status_code, content={"detail": detail})
    if _is_origin_allowed(origin):
        response.headers["Access-Control-Allow-Origin"] = origin
        response.headers["Access-Control-Allow-Credentials"] = "true"
        response.headers["Access-Control-Allow-Methods"] = "*"
        response.headers["Access-Control-Allow-Headers"] = "*"
    return response


def _validation_errors(exc: RequestValidationError) -> list:
    return [
        {"loc": list(error.get("loc", ())), "msg": error.get("msg", ""), "type": error.get("type", "")}
        for error in exc.errors()
    ]


def _configure_logging() -> None:
    logging.basicConfig(
        level=getattr(logging, LOG_LEVEL, logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def create_app(
    session_factory: sessionmaker = SessionLocal,
    youtube: YouTubeClient | None = None,
    start_poller: bool = STREAM_STATUS_POLL_ENABLED,
    rate_limit: bool = RATE_LIMIT_ENABLED,
    reset_delivery=log_reset_delivery,
) -> FastAPI:
    _configure_logging()
    app = FastAPI(title="Streamania API", version="0.1.0")

    hub = EventHub()
    manager = ConnectionManager()
    youtube = youtube or YouTubeClient()
    app.state.hub = hub
    app.state.manager = manager
    app.state.youtube = youtube
    app.state.session_factory = session_factory
    app.state.sessions = SessionContext(session_factory, hub)
    app.state.reset_delivery = reset_delivery
    app.state.poller = StatusPoller(session_factory, hub, youtube, STREAM_STATUS_POLL_SECONDS)

    if session_factory is not SessionLocal:

        def _get_db():
            db = session_factory()
            try:
                yield db
            finally:
                db.close()

        app.dependency_overrides[get_db] = _get_db

    @app.exception_handler(StreamaniaError)
    async def streamania_error_handler(request: Request, exc: StreamaniaError):
        return _error_response(request, exc.status_code, exc.message)

    @app.exception_handler(HTTPException)
    async def http_exception_handler(request: Request, exc: HTTPException):
        """Custom exception handler that adds CORS headers to all HTTP exceptions."""
        return _error_response(request, exc.status_code, exc.detail)

    @app.exception_handler(RequestValidationError)
    async def validation_exception_handler(request: Request, exc: RequestValidationError):
        return _error_response(request, 422, _validation_errors(exc))

    # Note: Middleware is executed in REVERSE order of addition.
    # Order of execution: RateLimitMiddleware -> CORSMiddleware -> GZipMiddleware
    app.add_middleware(RateLimitMiddleware, enabled=rate_limit)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=CORS_ORIGINS,
        allow_origin_regex=r"^https?://(localhost|127\.0\.0\.1)(:\d+)?$",
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.add_middleware(GZipMiddleware, minimum_size=1000)

    @app.on_event("startup")
    async def on_startup() -> None:
        init_db(bind=session_factory.kw.get("bind"))
        cache_client.connect()
        app.state.sessions.start()
        manager.attach(hub, asyncio.get_running_loop())
        if start_poller:
            app.state.poller.start()
        logger.info("Streamania API started")

    @app.on_event("shutdown")
    async def on_shutdown() -> None:
        await app.state.poller.stop()
        manager.detach()
        app.state.sessions.stop()
        cache_client.disconnect()

    @app.get("/health")
    def health_check():
        return {
            "status": "ok",
            "realtime_connections": sum(len(sockets) for sockets in manager.connections.values()),
            "status_poller": start_poller,
        }

    @app.head("/health")
    def health_check_head():
        return Response(status_code=200)

    app.include_router(auth.router, prefix="/auth", tags=["auth"])
    app.include_router(users.router, prefix="/users", tags=["users"])
    app.include_router(streams.router, prefix="/streams", tags=["streams"])
    app.include_router(quizzes.router, prefix="/quizzes", tags=["quizzes"])
    app.include_router(chat.router, prefix="/chat", tags=["chat"])

    @app.websocket("/ws")
    async def websocket_endpoint(websocket: WebSocket, token: str):
        db = session_factory()
        try:
            identity = IdentityProvider(db, hub).verify_token(token)
        except NotAuthenticated:
            await websocket.close(code=status.WS_1008_POLICY_VIOLATION)
            return
        finally:
            db.close()

        user_id = identity.user_id
        await manager.connect(websocket, user_id)
        try:
            while True:
                data = await websocket.receive_json()
                if data.get("type") == "heartbeat":
                    await websocket.send_json({"type": "pong"})
        except WebSocketDisconnect:
            manager.disconnect(websocket, user_id)

    return app


app = create_app()
