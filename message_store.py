"""
Durable message log.

The pending partition holds messages for recipients that were offline at
send time; rows are deleted when drained or once they outlive the
retention window. The optional archive partition keeps a permanent copy of
every sent message and is never consulted for delivery.
"""
import asyncio
import logging
from contextlib import contextmanager
from datetime import datetime, timedelta
from typing import Callable, List, Optional, Tuple

from sqlalchemy.exc import SQLAlchemyError

from errors import StoreUnavailable
from messages import ChatMessage
from models import ArchivedMessage, PendingMessage

LOGGER = logging.getLogger("messenger.store")


def _columns(message: ChatMessage) -> dict:
    return {
        "from_username": message.sender,
        "from_display_name": message.sender_display_name,
        "to_username": message.to,
        "kind": message.kind,
        "body": message.body,
        "image_payload": message.image_payload,
        "reply_to": message.reply_to,
        "sent_at": message.sent_at,
        "created_at": message.created_at,
    }


def _from_row(row: PendingMessage) -> ChatMessage:
    return ChatMessage(
        sender=row.from_username,
        sender_display_name=row.from_display_name,
        to=row.to_username,
        kind=row.kind,
        body=row.body,
        image_payload=row.image_payload,
        reply_to=row.reply_to,
        sent_at=row.sent_at,
        created_at=row.created_at,
    )


class MessageStore:
    def __init__(self, session_factory, pending_ttl_seconds: int, archive_enabled: bool = True):
        self._session_factory = session_factory
        self.pending_ttl = timedelta(seconds=pending_ttl_seconds)
        self.archive_enabled = archive_enabled

    @contextmanager
    def _session(self):
        db = self._session_factory()
        try:
            yield db
            db.commit()
        except SQLAlchemyError as exc:
            db.rollback()
            LOGGER.error("Message store failure: %s", exc)
            raise StoreUnavailable("Message store unavailable") from exc
        finally:
            db.close()

    def archive(self, message: ChatMessage) -> None:
        if not self.archive_enabled:
            return
        with self._session() as db:
            db.add(ArchivedMessage(**_columns(message)))

    def save_pending(self, message: ChatMessage) -> int:
        with self._session() as db:
            row = PendingMessage(**_columns(message))
            db.add(row)
            db.flush()
            return row.id

    def pending_for(self, username: str, now: datetime) -> List[Tuple[int, ChatMessage]]:
        """Unexpired pending messages addressed to `username`, oldest first"""
        cutoff = now - self.pending_ttl
        with self._session() as db:
            rows = (
                db.query(PendingMessage)
                .filter(
                    PendingMessage.to_username == username,
                    PendingMessage.created_at > cutoff,
                )
                .order_by(PendingMessage.id)
                .all()
            )
            return [(row.id, _from_row(row)) for row in rows]

    def delete_pending(self, pending_id: int) -> None:
        with self._session() as db:
            db.query(PendingMessage).filter(PendingMessage.id == pending_id).delete()

    def count_pending(self, username: str) -> int:
        with self._session() as db:
            return db.query(PendingMessage).filter(PendingMessage.to_username == username).count()

    def count_archived(self) -> int:
        with self._session() as db:
            return db.query(ArchivedMessage).count()

    def purge_expired(self, now: datetime) -> int:
        cutoff = now - self.pending_ttl
        with self._session() as db:
            return (
                db.query(PendingMessage)
                .filter(PendingMessage.created_at <= cutoff)
                .delete(synchronize_session=False)
            )


class RetentionSweeper:
    """Periodically purges pending messages older than the retention window"""

    def __init__(
        self,
        store: MessageStore,
        interval_seconds: int,
        clock: Callable[[], datetime],
        on_sweep: Optional[Callable[[], None]] = None,
    ):
        self.store = store
        self.interval_seconds = interval_seconds
        self._clock = clock
        self._on_sweep = on_sweep
        self._task = None

    def sweep_once(self) -> int:
        try:
            removed = self.store.purge_expired(self._clock())
        except StoreUnavailable:
            LOGGER.warning("Retention sweep failed; retrying next interval", exc_info=True)
            return 0
        if removed:
            LOGGER.info("Retention sweep removed %s expired pending messages", removed)
        if self._on_sweep is not None:
            self._on_sweep()
        return removed

    async def _run(self):
        while True:
            try:
                self.sweep_once()
            except Exception:
                LOGGER.exception("Retention sweep crashed; retrying next interval")
            await asyncio.sleep(self.interval_seconds)

    def start(self) -> None:
        if self._task is None:
            self._task = asyncio.get_running_loop().create_task(self._run())

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None
