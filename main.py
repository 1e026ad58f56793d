import json
import logging
import os
import time
from contextlib import asynccontextmanager
from typing import Callable, Optional

from fastapi import FastAPI, Query, Request, WebSocket, WebSocketDisconnect, status
from fastapi.responses import HTMLResponse, JSONResponse
from fastapi.staticfiles import StaticFiles
from pydantic import BaseModel, field_validator
from starlette.concurrency import run_in_threadpool
from starlette.middleware.base import BaseHTTPMiddleware

# Local Imports
from config import Settings, configure_logging, load_settings
from database import init_db, make_engine, make_session_factory, utcnow
from delivery import DeliveryRouter
from errors import AuthError, MessengerError, RecipientUnknown, StoreUnavailable, ValidationError
from identity import IdentityStore
from message_store import MessageStore, RetentionSweeper
from notifications import LogNotifier, Notifier
from presence import PresenceRegistry
from rate_limiter import LoginLockout, RateLimitMiddleware, WebSocketRateLimiter
from session import Authenticator, SessionBinding
from status import router as status_router

LOGGER = logging.getLogger("messenger.api")

STATIC_DIR = os.path.join(os.path.dirname(os.path.abspath(__file__)), "static")


# ==================== SECURITY MIDDLEWARE ====================

class CSPMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next):
        response = await call_next(request)

        csp_directives = [
            "default-src 'self'",
            "script-src 'self'",
            "style-src 'self' 'unsafe-inline'",
            "worker-src 'self'",
            "connect-src 'self' ws: wss:",
            "img-src 'self' data: blob:",
            "object-src 'none'",
            "base-uri 'self'",
            "frame-ancestors 'none'"
        ]

        response.headers["Content-Security-Policy"] = "; ".join(csp_directives)
        response.headers["X-Content-Type-Options"] = "nosniff"
        response.headers["X-Frame-Options"] = "DENY"
        response.headers["Referrer-Policy"] = "strict-origin-when-cross-origin"

        return response


# ==================== PYDANTIC MODELS ====================

def _clean_display_name(v: str) -> str:
    v = v.strip()
    if not v or len(v) > 64:
        raise ValueError('Display name must be 1-64 characters')
    return v


class RegisterRequest(BaseModel):
    username: str
    password: str
    display_name: Optional[str] = None

    @field_validator('username')
    @classmethod
    def validate_username(cls, v):
        if not v or len(v) < 3 or len(v) > 32:
            raise ValueError('Username must be 3-32 characters')
        if not v.isalnum():
            raise ValueError('Username must be alphanumeric')
        return v.lower()

    @field_validator('password')
    @classmethod
    def validate_password(cls, v):
        if len(v) < 6:
            raise ValueError('Password must be at least 6 characters')
        return v

    @field_validator('display_name')
    @classmethod
    def validate_display_name(cls, v):
        return _clean_display_name(v) if v is not None else None


class CredentialsRequest(BaseModel):
    username: str
    password: str


class FriendRequest(CredentialsRequest):
    friend: str

    @field_validator('friend')
    @classmethod
    def normalize_friend(cls, v):
        return v.strip().lower()


class DisplayNameRequest(CredentialsRequest):
    display_name: str

    @field_validator('display_name')
    @classmethod
    def validate_display_name(cls, v):
        return _clean_display_name(v)


class PushSubscriptionRequest(CredentialsRequest):
    subscription: dict


# ==================== APPLICATION FACTORY ====================

def create_app(
    settings: Optional[Settings] = None,
    session_factory=None,
    clock: Callable = utcnow,
    notifier: Optional[Notifier] = None,
    lockout_clock: Callable[[], float] = time.monotonic,
    start_sweeper: bool = True,
) -> FastAPI:
    settings = settings or load_settings()
    configure_logging(settings.log_level)

    if session_factory is None:
        engine = make_engine(settings.database_url)
        init_db(engine)
        session_factory = make_session_factory(engine)

    presence = PresenceRegistry()
    identities = IdentityStore(session_factory)
    message_store = MessageStore(
        session_factory, settings.pending_ttl_seconds, archive_enabled=settings.archive_messages
    )
    router = DeliveryRouter(
        presence,
        message_store,
        identities,
        notifier or LogNotifier(),
        clock,
        max_image_bytes=settings.max_image_bytes,
        preview_chars=settings.push_preview_chars,
    )
    authenticator = Authenticator(
        identities,
        LoginLockout(settings.login_max_failures, settings.login_lockout_seconds, clock=lockout_clock),
    )
    ws_rate_limiter = WebSocketRateLimiter(settings.messages_per_minute)
    sweeper = RetentionSweeper(
        message_store,
        settings.retention_sweep_interval_seconds,
        clock,
        on_sweep=ws_rate_limiter.cleanup,
    )

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if start_sweeper:
            sweeper.start()
        yield
        await sweeper.stop()

    app = FastAPI(title="Messenger", version="1.0.0", lifespan=lifespan)
    app.state.settings = settings
    app.state.session_factory = session_factory
    app.state.presence = presence
    app.state.identities = identities
    app.state.message_store = message_store
    app.state.router = router
    app.state.authenticator = authenticator
    app.state.sweeper = sweeper

    app.include_router(status_router)
    app.add_middleware(CSPMiddleware)
    app.add_middleware(RateLimitMiddleware)

    # ==================== ERROR MAPPING ====================

    @app.exception_handler(MessengerError)
    async def messenger_error_handler(request: Request, exc: MessengerError):
        headers = None
        if isinstance(exc, AuthError):
            if exc.reason == AuthError.LOCKED:
                code = status.HTTP_429_TOO_MANY_REQUESTS
                headers = {"Retry-After": str(exc.retry_after or 60)}
            else:
                code = status.HTTP_401_UNAUTHORIZED
        elif isinstance(exc, RecipientUnknown):
            code = status.HTTP_404_NOT_FOUND
        elif isinstance(exc, StoreUnavailable):
            code = status.HTTP_503_SERVICE_UNAVAILABLE
        elif isinstance(exc, ValidationError):
            code = status.HTTP_400_BAD_REQUEST
        else:
            code = status.HTTP_500_INTERNAL_SERVER_ERROR
        return JSONResponse(
            status_code=code,
            content={"detail": str(exc), "reason": exc.reason},
            headers=headers,
        )

    # ==================== API ENDPOINTS ====================

    @app.post("/api/register")
    async def register(req: RegisterRequest):
        """Create an account; display name defaults to the username"""
        identity = await run_in_threadpool(
            identities.create, req.username, req.password, req.display_name or req.username
        )
        return {
            "status": "success",
            "username": identity.username,
            "display_name": identity.display_name,
        }

    @app.post("/api/friends/add")
    async def add_friend(req: FriendRequest):
        identity = await authenticator.verify(req.username, req.password)
        identities.add_friend(identity.username, req.friend)
        return {"status": "success", "friends": identities.list_friends(identity.username)}

    @app.post("/api/friends/remove")
    async def remove_friend(req: FriendRequest):
        identity = await authenticator.verify(req.username, req.password)
        identities.remove_friend(identity.username, req.friend)
        return {"status": "success", "friends": identities.list_friends(identity.username)}

    @app.post("/api/friends/list")
    async def list_friends(req: CredentialsRequest):
        identity = await authenticator.verify(req.username, req.password)
        friends = identities.list_friends(identity.username)
        for friend in friends:
            friend["online"] = presence.is_online(friend["username"])
        return {"friends": friends}

    @app.post("/api/display-name")
    async def update_display_name(req: DisplayNameRequest):
        """Rename; later messages carry the new name, earlier ones keep their snapshot"""
        identity = await authenticator.verify(req.username, req.password)
        identities.update_display_name(identity.username, req.display_name)
        if presence.is_online(identity.username):
            presence.update_display_name(identity.username, req.display_name)
            await router.broadcast_presence()
        return {"status": "success", "display_name": req.display_name}

    @app.post("/api/push-subscription")
    async def save_push_subscription(req: PushSubscriptionRequest):
        identity = await authenticator.verify(req.username, req.password)
        identities.set_push_subscription(identity.username, req.subscription)
        return {"status": "success"}

    @app.get("/api/users/search")
    async def search_users(q: str = Query("", max_length=32)):
        return {"users": identities.search(q)}

    # ==================== WEBSOCKET ENDPOINT ====================

    @app.websocket("/ws")
    async def websocket_endpoint(websocket: WebSocket):
        """Live messaging; the first useful event is `authenticate`"""
        await websocket.accept()
        session = SessionBinding(websocket, router, authenticator, ws_rate_limiter, clock)

        try:
            while True:
                raw = await websocket.receive_text()
                try:
                    data = json.loads(raw)
                except ValueError:
                    await websocket.send_json({"type": "error", "message": "Malformed JSON"})
                    continue
                if not isinstance(data, dict):
                    await websocket.send_json({"type": "error", "message": "Expected a JSON object"})
                    continue
                await session.handle(data)
        except WebSocketDisconnect:
            pass
        except Exception:
            LOGGER.exception("WebSocket error for %s", session.username or "anonymous")
        finally:
            await session.close()

    # ==================== STATIC FILES ====================

    if os.path.isdir(STATIC_DIR):
        app.mount("/static", StaticFiles(directory=STATIC_DIR), name="static")

    @app.get("/")
    async def read_root():
        """Serve index.html with proper UTF-8 encoding"""
        try:
            with open(os.path.join(STATIC_DIR, "index.html"), "r", encoding="utf-8") as f:
                return HTMLResponse(content=f.read())
        except FileNotFoundError:
            return HTMLResponse(
                content="<h1>Error: index.html not found. Please ensure static/index.html exists.</h1>",
                status_code=500
            )

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host="0.0.0.0", port=app.state.settings.port)
