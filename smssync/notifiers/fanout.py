"""In-process live fan-out of newly stored messages.

The sync engine publishes every *newly inserted* message here, in the order
the provider reported them.  UI sessions, webhooks or CLI watchers subscribe
per rental:

    channel = FanoutChannel()
    sub = channel.subscribe(rental.id, on_message, consumer_id="tab-1")
    ...
    sub.unsubscribe()

Delivery semantics
------------------
* At most one subscription per ``(consumer_id, rental_id)``; subscribing
  again replaces the previous callback.
* Callbacks may be plain functions or coroutine functions.
* A failing callback is logged and skipped; other subscribers still get
  the message.
* At-least-once: a consumer that also reads history may see a message
  twice and should dedupe by ``message.id``.
"""

from __future__ import annotations

import inspect
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field

from smssync.core import events
from smssync.core.models import Message

__all__ = ["FanoutChannel", "MessageCallback", "Subscription"]

logger = logging.getLogger(__name__)

MessageCallback = Callable[[Message], Awaitable[None] | None]


@dataclass
class Subscription:
    """Handle returned by :meth:`FanoutChannel.subscribe`.

    Attributes:
        rental_id: Rental the subscription listens to.
        consumer_id: Identity of the subscriber.
    """

    rental_id: str
    consumer_id: str
    callback: MessageCallback = field(repr=False)
    _channel: FanoutChannel | None = field(default=None, repr=False)

    @property
    def active(self) -> bool:
        return self._channel is not None

    def unsubscribe(self) -> None:
        """Stop receiving messages.  Safe to call more than once."""
        channel, self._channel = self._channel, None
        if channel is not None:
            channel._remove(self)


class FanoutChannel:
    """Routes published messages to the subscribers of their rental."""

    def __init__(self) -> None:
        self._subs: dict[str, dict[str, Subscription]] = {}

    def subscribe(
        self,
        rental_id: str,
        on_message: MessageCallback,
        consumer_id: str = "default",
    ) -> Subscription:
        """Register *on_message* for new messages of *rental_id*.

        An existing subscription of the same consumer to the same rental is
        torn down first.
        """
        existing = self._subs.get(rental_id, {}).get(consumer_id)
        if existing is not None:
            existing.unsubscribe()

        sub = Subscription(rental_id=rental_id, consumer_id=consumer_id, callback=on_message, _channel=self)
        self._subs.setdefault(rental_id, {})[consumer_id] = sub
        logger.debug("Consumer %s subscribed to rental %s.", consumer_id, rental_id)
        return sub

    def subscriber_count(self, rental_id: str) -> int:
        return len(self._subs.get(rental_id, {}))

    async def publish(self, rental_id: str, message: Message) -> int:
        """Deliver *message* to every subscriber of *rental_id*.

        Returns:
            Number of callbacks that completed without raising.
        """
        delivered = 0
        for sub in list(self._subs.get(rental_id, {}).values()):
            try:
                result = sub.callback(message)
                if inspect.isawaitable(result):
                    await result
            except Exception:  # noqa: BLE001
                logger.warning(
                    "Subscriber %s failed on message %s of rental %s.",
                    sub.consumer_id,
                    message.id,
                    rental_id,
                    exc_info=True,
                    extra={"event": events.MESSAGE_PUBLISH_ERROR},
                )
                continue
            delivered += 1
        return delivered

    def _remove(self, sub: Subscription) -> None:
        subs = self._subs.get(sub.rental_id)
        if subs is None or subs.get(sub.consumer_id) is not sub:
            return
        del subs[sub.consumer_id]
        if not subs:
            del self._subs[sub.rental_id]
        logger.debug("Consumer %s unsubscribed from rental %s.", sub.consumer_id, sub.rental_id)
