"""Unit tests for the live message fan-out.

Tests cover:
- Sync and async callbacks, per-rental routing.
- Replacement of a consumer's existing subscription.
- Idempotent unsubscribe.
- A failing subscriber not blocking the others.
"""

from __future__ import annotations

from smssync.core.models import Message, MessageSource
from smssync.notifiers.fanout import FanoutChannel


def _msg(rental_id: str = "r1", body: str = "Code 1234") -> Message:
    return Message(id=1, rental_id=rental_id, sender="WA", body=body, source=MessageSource.API)


class TestFanoutChannel:
    async def test_sync_and_async_callbacks(self) -> None:
        channel = FanoutChannel()
        got: list[str] = []

        async def async_cb(message: Message) -> None:
            got.append(f"async:{message.body}")

        channel.subscribe("r1", lambda m: got.append(f"sync:{m.body}"), consumer_id="a")
        channel.subscribe("r1", async_cb, consumer_id="b")

        assert await channel.publish("r1", _msg()) == 2
        assert sorted(got) == ["async:Code 1234", "sync:Code 1234"]

    async def test_routes_by_rental(self) -> None:
        channel = FanoutChannel()
        got: list[Message] = []
        channel.subscribe("r1", got.append)
        assert await channel.publish("r2", _msg("r2")) == 0
        assert got == []

    async def test_resubscribe_replaces(self) -> None:
        channel = FanoutChannel()
        first: list[Message] = []
        second: list[Message] = []
        old = channel.subscribe("r1", first.append, consumer_id="tab")
        channel.subscribe("r1", second.append, consumer_id="tab")

        await channel.publish("r1", _msg())
        assert first == []
        assert len(second) == 1
        assert old.active is False
        assert channel.subscriber_count("r1") == 1

    async def test_unsubscribe_is_idempotent(self) -> None:
        channel = FanoutChannel()
        got: list[Message] = []
        sub = channel.subscribe("r1", got.append)
        sub.unsubscribe()
        sub.unsubscribe()
        await channel.publish("r1", _msg())
        assert got == []
        assert channel.subscriber_count("r1") == 0

    async def test_stale_handle_does_not_remove_replacement(self) -> None:
        channel = FanoutChannel()
        old = channel.subscribe("r1", lambda m: None, consumer_id="tab")
        channel.subscribe("r1", lambda m: None, consumer_id="tab")
        old.unsubscribe()
        assert channel.subscriber_count("r1") == 1

    async def test_failing_subscriber_isolated(self) -> None:
        channel = FanoutChannel()
        got: list[Message] = []

        def broken(message: Message) -> None:
            raise RuntimeError("boom")

        channel.subscribe("r1", broken, consumer_id="broken")
        channel.subscribe("r1", got.append, consumer_id="ok")
        assert await channel.publish("r1", _msg()) == 1
        assert len(got) == 1
