"""
Out-of-band notifications for recipients who are offline.

Sending is best effort: failures are logged and never reach the sender.
"""
import logging
from typing import Any, List, Protocol, Tuple

LOGGER = logging.getLogger("messenger.notify")


class Notifier(Protocol):
    async def send(self, endpoint: Any, title: str, body: str) -> None:
        ...


class LogNotifier:
    """Default notifier: records the preview in the log only"""

    async def send(self, endpoint: Any, title: str, body: str) -> None:
        LOGGER.info("Push notification title=%r body=%r", title, body)


class NullNotifier:
    """Swallows notifications; keeps what it was asked to send for inspection"""

    def __init__(self):
        self.sent: List[Tuple[Any, str, str]] = []

    async def send(self, endpoint: Any, title: str, body: str) -> None:
        self.sent.append((endpoint, title, body))


async def notify_best_effort(notifier: Notifier, endpoint: Any, title: str, body: str) -> bool:
    try:
        await notifier.send(endpoint, title, body)
        return True
    except Exception:
        LOGGER.warning("Push notification failed", exc_info=True)
        return False
