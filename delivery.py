"""
Delivery router: decides, per outgoing message, whether the recipient is
reachable right now, and either pushes it live or queues it.

Guarantee is "pushed or queued", not "received": there are no recipient
acknowledgements. Drain deletes each pending row right after pushing it,
so a crash between the two can redeliver on the next login
(at-least-once).
"""
import asyncio
import logging
from datetime import datetime
from typing import Any, Callable, Dict

from errors import RecipientUnknown, StoreUnavailable
from identity import IdentityStore
from message_store import MessageStore
from messages import SELF_SENDER, ChatMessage, compose_message, parse_send_request
from notifications import Notifier, notify_best_effort
from presence import PresenceRegistry

LOGGER = logging.getLogger("messenger.delivery")


def incoming_event(message: ChatMessage) -> dict:
    return {"type": "message_incoming", **message.to_wire()}


class DeliveryRouter:
    def __init__(
        self,
        presence: PresenceRegistry,
        store: MessageStore,
        identities: IdentityStore,
        notifier: Notifier,
        clock: Callable[[], datetime],
        max_image_bytes: int = 10_000_000,
        preview_chars: int = 40,
    ):
        self.presence = presence
        self.store = store
        self.identities = identities
        self.notifier = notifier
        self._clock = clock
        self.max_image_bytes = max_image_bytes
        self.preview_chars = preview_chars
        self._recipient_locks: Dict[str, asyncio.Lock] = {}

    def recipient_lock(self, username: str) -> asyncio.Lock:
        """
        Serializes frames to one recipient. Login holds it across
        register + drain so live sends queue behind older pending messages.
        """
        lock = self._recipient_locks.get(username)
        if lock is None:
            lock = self._recipient_locks[username] = asyncio.Lock()
        return lock

    async def push(self, username: str, payload: dict) -> bool:
        """Send to the user's live connection; a dead socket is dropped from presence"""
        async with self.recipient_lock(username):
            connection = self.presence.lookup(username)
            if connection is None:
                return False
            try:
                await connection.send_json(payload)
                return True
            except Exception:
                LOGGER.warning("Live push to %s failed; dropping stale connection", username, exc_info=True)
                self.presence.unregister(username, connection)
                return False

    async def send_message(self, sender: str, sender_connection: Any, data: dict) -> ChatMessage:
        """
        Validate, compose, archive and route one message.

        Raises ValidationError, RecipientUnknown or StoreUnavailable; nothing
        is queued or delivered when any of them is raised. The sender's echo
        goes out after routing, so a failed pending write is never echoed.
        """
        request = parse_send_request(data)
        if self.identities.find_by_username(request.to) is None:
            raise RecipientUnknown(request.to)

        display_name = self.presence.display_name(sender)
        if display_name is None:
            identity = self.identities.find_by_username(sender)
            display_name = identity.display_name if identity else sender

        message = compose_message(
            sender, display_name, request, self._clock(), self.max_image_bytes
        )

        try:
            self.store.archive(message)
        except StoreUnavailable:
            LOGGER.warning("Archiving message from %s failed; delivering anyway", sender)

        if await self.push(message.to, incoming_event(message)):
            LOGGER.info("Delivered %s -> %s live", sender, message.to)
        else:
            self.store.save_pending(message)
            LOGGER.info("Queued %s -> %s (recipient offline)", sender, message.to)
            await self._notify_offline(message)

        await sender_connection.send_json(
            {"type": "message_delivered", **message.to_wire(sender=SELF_SENDER)}
        )
        return message

    async def _notify_offline(self, message: ChatMessage) -> None:
        try:
            endpoint = self.identities.get_push_subscription(message.to)
        except StoreUnavailable:
            LOGGER.warning("Could not load push subscription for %s", message.to)
            return
        if endpoint is None:
            return
        await notify_best_effort(
            self.notifier,
            endpoint,
            message.sender_display_name,
            message.preview(self.preview_chars),
        )

    async def drain(self, username: str, connection: Any) -> int:
        """
        Replay queued messages for a user who just logged in, deleting each
        after its push. Login calls this under recipient_lock(username).
        """
        delivered = 0
        for pending_id, message in self.store.pending_for(username, self._clock()):
            try:
                await connection.send_json(incoming_event(message))
            except Exception:
                LOGGER.warning("Drain for %s interrupted; remaining messages stay queued", username)
                break
            self.store.delete_pending(pending_id)
            delivered += 1
        if delivered:
            LOGGER.info("Drained %s pending messages to %s", delivered, username)
        return delivered

    async def relay_typing(self, sender: str, to: str, typing: bool) -> bool:
        event = "peer_typing" if typing else "peer_typing_stopped"
        return await self.push(to, {"type": event, "from": sender})

    async def broadcast_presence(self) -> None:
        payload = {"type": "presence_list_updated", "users": self.presence.list_all()}
        for connection in self.presence.connections():
            try:
                await connection.send_json(payload)
            except Exception:
                LOGGER.debug("Presence broadcast to a closing connection failed", exc_info=True)
