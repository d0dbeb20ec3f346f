from __future__ import annotations

import threading
from pathlib import Path
from typing import Any

import pytest

from layered_context.events import ChangeChannel, ChangeNotification, ContextEvent, EventBus, UpdateType
from layered_context.exceptions import StoreError
from layered_context.store import STORE_CATEGORY, STORE_IMPORTANCE, STORE_KEY, JsonlContextStore


@pytest.mark.unit
def test_event_bus_delivers_to_subscribers_of_the_event() -> None:
    bus = EventBus()
    loaded: list[dict[str, Any]] = []
    updated: list[dict[str, Any]] = []
    bus.subscribe(ContextEvent.CONTEXT_LOADED, loaded.append)
    bus.subscribe(ContextEvent.CONTEXT_UPDATED, updated.append)

    bus.publish(ContextEvent.CONTEXT_LOADED, {"n": 1})

    assert loaded == [{"n": 1}]
    assert updated == []


@pytest.mark.unit
def test_event_bus_isolates_failing_handlers() -> None:
    bus = EventBus()
    seen: list[dict[str, Any]] = []

    def broken(payload: dict[str, Any]) -> None:
        msg = "handler bug"
        raise ValueError(msg)

    bus.subscribe(ContextEvent.CONTEXT_ERROR, broken)
    bus.subscribe(ContextEvent.CONTEXT_ERROR, seen.append)

    bus.publish(ContextEvent.CONTEXT_ERROR, {"errors": []})

    assert seen == [{"errors": []}]


@pytest.mark.unit
def test_event_bus_unsubscribe() -> None:
    bus = EventBus()
    seen: list[dict[str, Any]] = []
    unsubscribe = bus.subscribe(ContextEvent.VARIABLE_RESOLVED, seen.append)

    unsubscribe()
    bus.publish(ContextEvent.VARIABLE_RESOLVED, {"name": "x"})

    assert seen == []


@pytest.mark.unit
def test_change_channel_delivers_on_worker_thread() -> None:
    channel = ChangeChannel()
    received: list[tuple[ChangeNotification, str]] = []
    channel.start(lambda n: received.append((n, threading.current_thread().name)))
    notification = ChangeNotification(update_type=UpdateType.FULL, affected_paths=(Path("/repo/VIBEX.md"),))

    channel.publish(notification)
    channel.join()
    channel.close()

    assert received == [(notification, "change-channel")]
    assert not channel.running


@pytest.mark.unit
def test_change_channel_survives_handler_errors() -> None:
    channel = ChangeChannel()
    handled: list[ChangeNotification] = []

    def handler(n: ChangeNotification) -> None:
        if not n.affected_paths:
            msg = "empty"
            raise ValueError(msg)
        handled.append(n)

    channel.start(handler)
    channel.publish(ChangeNotification())
    channel.publish(ChangeNotification(affected_paths=(Path("/a"),)))
    channel.join()
    channel.close()

    assert [n.affected_paths for n in handled] == [(Path("/a"),)]


@pytest.mark.unit
def test_change_channel_accepts_a_single_consumer() -> None:
    channel = ChangeChannel()
    channel.start(lambda n: None)
    try:
        with pytest.raises(RuntimeError):
            channel.start(lambda n: None)
    finally:
        channel.close()


@pytest.mark.unit
def test_jsonl_store_appends_records(tmp_path: Path) -> None:
    store = JsonlContextStore(tmp_path / "memory" / "context.jsonl")

    store.store(STORE_KEY, {"document": "a"}, category=STORE_CATEGORY, importance=STORE_IMPORTANCE)
    store.store(STORE_KEY, {"document": "b"}, category=STORE_CATEGORY, importance=STORE_IMPORTANCE)

    records = store.read_all()
    assert [r["value"]["document"] for r in records] == ["a", "b"]
    assert records[0]["key"] == "project_context"
    assert records[0]["category"] == "context"
    assert records[0]["importance"] == 90


@pytest.mark.unit
def test_jsonl_store_raises_store_error(tmp_path: Path) -> None:
    blocker = tmp_path / "not-a-dir"
    blocker.write_text("", encoding="utf-8")
    store = JsonlContextStore(blocker / "context.jsonl")

    with pytest.raises(StoreError):
        store.store(STORE_KEY, {}, category=STORE_CATEGORY, importance=STORE_IMPORTANCE)
