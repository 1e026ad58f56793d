"""
Session binding: ties one live connection to one authenticated identity.

Per connection: ANONYMOUS -> AUTHENTICATED -> CLOSED. Logging in registers
presence, replays the offline queue and broadcasts the presence list;
closing unregisters, stamps last-seen and broadcasts again. A closed
session never comes back; a reconnect is a new SessionBinding. A newer
login for the same user evicts this one, which then closes itself.
"""
import enum
import logging
from typing import Any, Callable, Optional

from starlette.concurrency import run_in_threadpool

from delivery import DeliveryRouter
from errors import AuthError, MessengerError, StoreUnavailable
from identity import Identity, IdentityStore, verify_password
from rate_limiter import LoginLockout, WebSocketRateLimiter

LOGGER = logging.getLogger("messenger.session")


class Authenticator:
    """Credential check shared by the WebSocket and the REST endpoints"""

    def __init__(self, identities: IdentityStore, lockout: LoginLockout):
        self.identities = identities
        self.lockout = lockout

    def check(self, username: str, password: str) -> Identity:
        username = (username or "").strip().lower()

        retry_after = self.lockout.retry_after(username)
        if retry_after is not None:
            raise AuthError(
                AuthError.LOCKED,
                f"Too many failed login attempts. Try again in {retry_after} seconds.",
                retry_after=retry_after,
            )

        identity = self.identities.find_by_username(username)
        if identity is None:
            raise AuthError(AuthError.NOT_FOUND, "User not found")

        if not verify_password(password or "", identity.password_hash):
            self.lockout.record_failure(username)
            raise AuthError(AuthError.INVALID_CREDENTIALS, "Invalid credentials")

        self.lockout.clear(username)
        return identity

    async def verify(self, username: str, password: str) -> Identity:
        """`check` on a worker thread; PBKDF2 must not stall the event loop"""
        return await run_in_threadpool(self.check, username, password)


class SessionState(enum.Enum):
    ANONYMOUS = "anonymous"
    AUTHENTICATED = "authenticated"
    CLOSED = "closed"


class SessionBinding:
    def __init__(
        self,
        connection: Any,
        router: DeliveryRouter,
        authenticator: Authenticator,
        rate_limiter: WebSocketRateLimiter,
        clock: Callable,
    ):
        self.connection = connection
        self.router = router
        self.authenticator = authenticator
        self.rate_limiter = rate_limiter
        self._clock = clock
        self.state = SessionState.ANONYMOUS
        self.username: Optional[str] = None

    @property
    def presence(self):
        return self.router.presence

    @property
    def identities(self):
        return self.router.identities

    async def handle(self, data: dict) -> None:
        """Dispatch one inbound event; errors are answered, never raised"""
        if self.state is SessionState.CLOSED:
            return

        event = data.get("type") if isinstance(data, dict) else None

        if event == "authenticate":
            await self.authenticate(data.get("username"), data.get("password"))
            return

        if self.state is not SessionState.AUTHENTICATED:
            await self.connection.send_json({"type": "error", "message": "Authentication required"})
            return

        if not await self._ensure_current():
            return

        if event == "send_message":
            await self.send_message(data)
        elif event in ("typing_start", "typing_stop"):
            await self.typing(data.get("to"), event == "typing_start")
        else:
            await self.connection.send_json({"type": "error", "message": f"Unknown event: {event}"})

    async def authenticate(self, username: Any, password: Any) -> bool:
        if self.state is SessionState.AUTHENTICATED:
            await self.connection.send_json({"type": "error", "message": "Already authenticated"})
            return False

        if not isinstance(username, str) or not isinstance(password, str):
            await self.connection.send_json(
                {"type": "auth_failed", "reason": AuthError.INVALID_CREDENTIALS,
                 "message": "Username and password are required"}
            )
            return False

        try:
            identity = await self.authenticator.verify(username, password)
            friends = self.identities.list_friends(identity.username)
        except AuthError as exc:
            LOGGER.info("Login failed for %s: %s", username, exc.reason)
            payload = {"type": "auth_failed", "reason": exc.reason, "message": str(exc)}
            if exc.retry_after is not None:
                payload["retry_after"] = exc.retry_after
            await self.connection.send_json(payload)
            return False
        except StoreUnavailable:
            await self.connection.send_json(
                {"type": "auth_failed", "reason": StoreUnavailable.reason,
                 "message": "Server error, please retry"}
            )
            return False

        self.username = identity.username
        self.state = SessionState.AUTHENTICATED

        # Live pushes to this user wait until the backlog has been replayed
        async with self.router.recipient_lock(identity.username):
            evicted = self.presence.register(
                identity.username, self.connection, identity.display_name
            )
            LOGGER.info("%s connected", identity.username)

            for friend in friends:
                friend["online"] = self.presence.is_online(friend["username"])
            await self.connection.send_json({
                "type": "auth_ok",
                "username": identity.username,
                "display_name": identity.display_name,
                "friends": friends,
            })

            try:
                await self.router.drain(identity.username, self.connection)
            except StoreUnavailable:
                LOGGER.warning("Pending messages for %s could not be loaded", identity.username)

        if evicted is not None:
            await self._notify_replaced(evicted)
        await self.router.broadcast_presence()
        return True

    async def _notify_replaced(self, connection: Any) -> None:
        try:
            await connection.send_json({"type": "session_replaced"})
        except Exception:
            LOGGER.debug("Evicted connection for %s already closed", self.username, exc_info=True)

    async def _ensure_current(self) -> bool:
        """False (and the session is closed) once a newer login took over presence"""
        if self.presence.lookup(self.username) is self.connection:
            return True
        self.state = SessionState.CLOSED
        await self.connection.send_json(
            {"type": "error", "message": "Session replaced by a newer login"}
        )
        return False

    async def send_message(self, data: dict) -> None:
        to = data.get("to")
        if not self.rate_limiter.check_message(self.username):
            await self.connection.send_json({
                "type": "send_failed", "to": to, "reason": "rate_limited",
                "message": "Message rate limit exceeded. Please slow down.",
            })
            return
        try:
            await self.router.send_message(self.username, self.connection, data)
        except MessengerError as exc:
            LOGGER.info("send_message from %s rejected: %s", self.username, exc.reason)
            await self.connection.send_json(
                {"type": "send_failed", "to": to, "reason": exc.reason, "message": str(exc)}
            )

    async def typing(self, to: Any, started: bool) -> None:
        if not isinstance(to, str) or not to:
            return
        if not self.rate_limiter.check_typing(self.username):
            return
        await self.router.relay_typing(self.username, to.strip().lower(), started)

    async def close(self) -> None:
        if self.state is SessionState.CLOSED:
            return
        was_authenticated = self.state is SessionState.AUTHENTICATED
        self.state = SessionState.CLOSED
        if not was_authenticated:
            return

        self.presence.unregister(self.username, self.connection)
        if self.presence.is_online(self.username):
            # A newer login owns the presence entry; the user has not left
            return
        try:
            self.identities.touch_last_seen(self.username, self._clock())
        except StoreUnavailable:
            LOGGER.warning("Could not record last_seen for %s", self.username)
        LOGGER.info("%s disconnected", self.username)
        await self.router.broadcast_presence()
