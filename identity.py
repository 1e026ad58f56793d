"""
Identity store: account records, friend lists, last-seen stamps and push
subscriptions, backed by SQLAlchemy.
"""
import hashlib
import hmac
import logging
import secrets
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime
from typing import List, Optional

from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from errors import RecipientUnknown, StoreUnavailable, ValidationError
from models import Friendship, PushSubscription, User

LOGGER = logging.getLogger("messenger.identity")

PBKDF2_ITERATIONS = 200_000
SEARCH_LIMIT = 20


def hash_password(password: str, salt: Optional[str] = None) -> str:
    salt = salt or secrets.token_hex(16)
    dk = hashlib.pbkdf2_hmac("sha256", password.encode(), salt.encode(), PBKDF2_ITERATIONS)
    return f"pbkdf2_sha256${PBKDF2_ITERATIONS}${salt}${dk.hex()}"


def verify_password(password: str, stored: str) -> bool:
    """Recompute the PBKDF2 digest and compare in constant time"""
    try:
        algorithm, iterations, salt, digest = stored.split("$", 3)
        iterations = int(iterations)
    except ValueError:
        return False
    if algorithm != "pbkdf2_sha256":
        return False
    dk = hashlib.pbkdf2_hmac("sha256", password.encode(), salt.encode(), iterations)
    return hmac.compare_digest(dk.hex().encode(), digest.encode())


@dataclass(frozen=True)
class Identity:
    username: str
    password_hash: str
    display_name: str
    last_seen: Optional[datetime]


def _to_identity(user: User) -> Identity:
    return Identity(
        username=user.username,
        password_hash=user.password_hash,
        display_name=user.display_name,
        last_seen=user.last_seen,
    )


def _iso(ts: Optional[datetime]) -> Optional[str]:
    return ts.isoformat(timespec="seconds") + "Z" if ts else None


class IdentityStore:
    def __init__(self, session_factory):
        self._session_factory = session_factory

    @contextmanager
    def _session(self):
        db = self._session_factory()
        try:
            yield db
            db.commit()
        except IntegrityError:
            db.rollback()
            raise
        except SQLAlchemyError as exc:
            db.rollback()
            LOGGER.error("Identity store failure: %s", exc)
            raise StoreUnavailable("Identity store unavailable") from exc
        finally:
            db.close()

    def find_by_username(self, username: str) -> Optional[Identity]:
        with self._session() as db:
            user = db.query(User).filter(User.username == username).first()
            return _to_identity(user) if user else None

    def create(self, username: str, password: str, display_name: str) -> Identity:
        user = User(
            username=username,
            password_hash=hash_password(password),
            display_name=display_name,
        )
        try:
            with self._session() as db:
                db.add(user)
                db.flush()
                identity = _to_identity(user)
        except IntegrityError as exc:
            raise ValidationError("Username already exists", reason="username_taken") from exc
        LOGGER.info("Registered %s", username)
        return identity

    def update_display_name(self, username: str, display_name: str) -> None:
        with self._session() as db:
            updated = db.query(User).filter(User.username == username).update(
                {User.display_name: display_name}
            )
        if not updated:
            raise RecipientUnknown(username)

    def add_friend(self, owner: str, friend: str) -> None:
        if owner == friend:
            raise ValidationError("Cannot add yourself as a friend")
        if self.find_by_username(friend) is None:
            raise RecipientUnknown(friend)
        try:
            with self._session() as db:
                db.add(Friendship(owner_username=owner, friend_username=friend))
        except IntegrityError:
            # Already friends
            pass

    def remove_friend(self, owner: str, friend: str) -> None:
        with self._session() as db:
            db.query(Friendship).filter(
                Friendship.owner_username == owner,
                Friendship.friend_username == friend,
            ).delete()

    def list_friends(self, owner: str) -> List[dict]:
        with self._session() as db:
            rows = (
                db.query(User)
                .join(Friendship, Friendship.friend_username == User.username)
                .filter(Friendship.owner_username == owner)
                .order_by(Friendship.id)
                .all()
            )
            return [
                {
                    "username": u.username,
                    "display_name": u.display_name,
                    "last_seen": _iso(u.last_seen),
                }
                for u in rows
            ]

    def touch_last_seen(self, username: str, now: datetime) -> None:
        with self._session() as db:
            db.query(User).filter(User.username == username).update({User.last_seen: now})

    def search(self, prefix: str) -> List[dict]:
        prefix = prefix.strip().lower()
        if not prefix:
            return []
        with self._session() as db:
            rows = (
                db.query(User)
                .filter(User.username.startswith(prefix, autoescape=True))
                .order_by(User.username)
                .limit(SEARCH_LIMIT)
                .all()
            )
            return [{"username": u.username, "display_name": u.display_name} for u in rows]

    def set_push_subscription(self, username: str, endpoint: dict) -> None:
        with self._session() as db:
            sub = db.query(PushSubscription).filter(PushSubscription.username == username).first()
            if sub:
                sub.endpoint = endpoint
            else:
                db.add(PushSubscription(username=username, endpoint=endpoint))

    def get_push_subscription(self, username: str) -> Optional[dict]:
        with self._session() as db:
            sub = db.query(PushSubscription).filter(PushSubscription.username == username).first()
            return sub.endpoint if sub else None
