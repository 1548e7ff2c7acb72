from __future__ import annotations

import asyncio
from dataclasses import dataclass
import logging

from chatgate.core.config import get_settings
from chatgate.providers.push.base import PushSender
from chatgate.providers.push.factory import get_push_sender
from chatgate.services.accounts import AccountStore, get_account_store
from chatgate.services.telemetry import increment_counter


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PushNotification:
    account_id: str
    title: str
    body: str


class Notifier:
    """Best-effort push notifications addressed by account id.

    `notify` only enqueues and returns immediately; a background task owned by the
    running event loop resolves the account's push token and calls the sender. Every
    failure is logged and counted, never raised to the caller.
    """

    def __init__(
        self,
        *,
        store: AccountStore,
        sender: PushSender,
        default_title: str | None = None,
        queue_size: int | None = None,
    ) -> None:
        settings = get_settings()
        self._store = store
        self._sender = sender
        self._default_title = default_title or settings.notification_title
        self._queue_size = queue_size if queue_size is not None else settings.notification_queue_size
        self._queue: asyncio.Queue[PushNotification] | None = None
        self._loop: asyncio.AbstractEventLoop | None = None
        self._worker: asyncio.Task | None = None

    def notify(self, account_id: str, body: str, *, title: str | None = None) -> None:
        queue = self._ensure_worker()
        item = PushNotification(account_id=account_id, title=title or self._default_title, body=body)
        try:
            queue.put_nowait(item)
        except asyncio.QueueFull:
            increment_counter("notifications_dropped_total")
            logger.warning("push_notification_dropped account_id=%s reason=queue_full", account_id)

    async def deliver(self, account_id: str, body: str, *, title: str | None = None) -> bool:
        # Returns True only when the sender accepted the message.
        try:
            record = await self._store.get(account_id)
            push_token = record.push_token if record is not None else None
            if not push_token:
                logger.debug("push_notification_skipped account_id=%s reason=no_push_token", account_id)
                return False
            await self._sender.send(
                push_token=push_token,
                title=title or self._default_title,
                body=body,
            )
        except Exception as exc:  # noqa: BLE001 - notifications never fail the owning operation
            increment_counter("notifications_failed_total")
            logger.warning("push_notification_failed account_id=%s", account_id, exc_info=exc)
            return False
        increment_counter("notifications_sent_total")
        return True

    async def drain(self) -> None:
        # Wait until every queued notification has been attempted.
        if self._queue is not None:
            await self._queue.join()

    async def aclose(self) -> None:
        await self.drain()
        if self._worker is not None and not self._worker.done():
            self._worker.cancel()
        self._worker = None

    def _ensure_worker(self) -> asyncio.Queue[PushNotification]:
        loop = asyncio.get_running_loop()
        if self._queue is None or self._loop is not loop:
            # Queues are bound to the loop that first awaits them; rebuild per loop.
            self._queue = asyncio.Queue(maxsize=self._queue_size)
            self._loop = loop
            self._worker = None
        if self._worker is None or self._worker.done():
            self._worker = loop.create_task(self._run(self._queue))
        return self._queue

    async def _run(self, queue: asyncio.Queue[PushNotification]) -> None:
        while True:
            item = await queue.get()
            try:
                await self.deliver(item.account_id, item.body, title=item.title)
            finally:
                queue.task_done()


_notifier: Notifier | None = None


def get_notifier() -> Notifier:
    global _notifier
    if _notifier is None:
        _notifier = Notifier(store=get_account_store(), sender=get_push_sender())
    return _notifier


def reset_notifier() -> None:
    # Reset cached services for deterministic tests.
    global _notifier
    _notifier = None
