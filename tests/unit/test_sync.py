"""Unit tests for the in-process sync bus."""

from __future__ import annotations

import logging

from flow_engine.engine.sync import LocalSyncBus, SyncMessage


def test_publish_skips_the_sender() -> None:
    bus = LocalSyncBus()
    received: dict[str, list[SyncMessage]] = {"a": [], "b": []}
    bus.subscribe("a", received["a"].append)
    bus.subscribe("b", received["b"].append)

    message = SyncMessage(workflow_id=1, enabled=True)
    bus.publish("a", message)

    assert received == {"a": [], "b": [message]}
    assert message.type == "statusChange"


def test_unsubscribed_handlers_are_not_called() -> None:
    bus = LocalSyncBus()
    received: list[SyncMessage] = []
    bus.subscribe("b", received.append)
    bus.unsubscribe("b")
    bus.unsubscribe("missing")

    bus.publish("a", SyncMessage(workflow_id=1, enabled=False))

    assert received == []


def test_failing_handler_does_not_stop_delivery(caplog) -> None:
    bus = LocalSyncBus()
    received: list[SyncMessage] = []

    def broken(message: SyncMessage) -> None:
        raise RuntimeError("handler failed")

    bus.subscribe("b", broken)
    bus.subscribe("c", received.append)

    with caplog.at_level(logging.ERROR, logger="flow_engine.engine.sync"):
        bus.publish("a", SyncMessage(workflow_id=2, enabled=True))

    assert len(received) == 1
    assert "Sync message handler failed" in caplog.text
