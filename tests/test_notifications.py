"""
tests/test_notifications.py — Change events and the push channel
=================================================================
"""

from __future__ import annotations

import asyncio
import json
import logging
from datetime import UTC, datetime
from unittest.mock import MagicMock

import pytest
from sqlalchemy.orm import Session

from congregate.engine.events import ChangeEvent, ChangeKind
from congregate.engine.notifications import CHANGE_CHANNEL, ChangeListener, notify_change


def run_async(coro):
    return asyncio.get_event_loop_policy().new_event_loop().run_until_complete(coro)


class TestChangeEventPayload:
    def test_payload_omits_unset_ids(self):
        at = datetime(2026, 3, 1, 12, 0, tzinfo=UTC)
        payload = ChangeEvent(
            ChangeKind.REACTION, group_id="g-1", message_id="m-1", occurred_at=at,
        ).to_payload()
        assert payload == {
            "type": "reaction_changed",
            "group_id": "g-1",
            "message_id": "m-1",
            "occurred_at": at.isoformat(),
        }

    def test_from_payload(self):
        event = ChangeEvent.from_payload({
            "type": "rsvp_changed",
            "event_id": "e-1",
            "user_id": "u-1",
            "occurred_at": "2026-03-01T12:00:00+00:00",
        })
        assert event.kind is ChangeKind.RSVP
        assert event.event_id == "e-1"
        assert event.user_id == "u-1"
        assert event.occurred_at == datetime(2026, 3, 1, 12, 0, tzinfo=UTC)

    def test_missing_type_rejected(self):
        with pytest.raises(ValueError):
            ChangeEvent.from_payload({"group_id": "g-1"})

    def test_unknown_type_rejected(self):
        with pytest.raises(ValueError):
            ChangeEvent.from_payload({"type": "weather_changed"})


class TestPublish:
    """In-process delivery to subscribers."""

    def test_every_subscriber_of_the_kind_receives(self):
        listener = ChangeListener()
        seen: list[tuple[str, ChangeEvent]] = []

        async def first(event):
            seen.append(("first", event))

        async def second(event):
            seen.append(("second", event))

        async def other(event):
            seen.append(("other", event))

        listener.subscribe(ChangeKind.PIN, first)
        listener.subscribe(ChangeKind.PIN, second)
        listener.subscribe(ChangeKind.RSVP, other)
        event = ChangeEvent(ChangeKind.PIN, group_id="g-1", message_id="m-1")
        run_async(listener.publish(event))
        assert [name for name, _ in seen] == ["first", "second"]

    def test_failing_subscriber_isolated(self, caplog):
        listener = ChangeListener()
        seen = []

        async def broken(event):
            raise RuntimeError("boom")

        async def fine(event):
            seen.append(event)

        listener.subscribe(ChangeKind.EVENT, broken)
        listener.subscribe(ChangeKind.EVENT, fine)
        with caplog.at_level(logging.ERROR, logger="congregate.engine.notifications"):
            run_async(listener.publish(ChangeEvent(ChangeKind.EVENT, event_id="e-1")))
        assert len(seen) == 1
        assert "Change subscriber failed" in caplog.text

    def test_unsubscribe(self):
        listener = ChangeListener()
        seen = []

        async def cb(event):
            seen.append(event)

        unsubscribe = listener.subscribe(ChangeKind.RECEIPT, cb)
        unsubscribe()
        unsubscribe()
        run_async(listener.publish(ChangeEvent(ChangeKind.RECEIPT)))
        assert seen == []


class TestDispatch:
    """Raw NOTIFY payloads → scheduled callbacks."""

    def test_valid_payload_reaches_subscriber(self):
        loop = asyncio.get_event_loop_policy().new_event_loop()
        listener = ChangeListener()
        seen = []

        async def cb(event):
            seen.append(event)

        listener.subscribe(ChangeKind.ANNOUNCEMENT, cb, loop)

        async def main():
            listener._dispatch(json.dumps({"type": "announcement_changed", "announcement_id": "a-1"}))
            for _ in range(10):
                if seen:
                    break
                await asyncio.sleep(0)

        loop.run_until_complete(main())
        loop.close()
        assert seen[0].announcement_id == "a-1"

    @pytest.mark.parametrize("raw", ["not json", "[]", '{"type": "nope"}', "{}"])
    def test_invalid_payload_logged(self, raw, caplog):
        listener = ChangeListener()
        with caplog.at_level(logging.WARNING, logger="congregate.engine.notifications"):
            listener._dispatch(raw)
        assert "Invalid change payload" in caplog.text

    def test_no_loop_logged(self, caplog):
        listener = ChangeListener()
        with caplog.at_level(logging.WARNING, logger="congregate.engine.notifications"):
            listener._dispatch(json.dumps({"type": "pin_changed"}))
        assert "no event loop available" in caplog.text


class TestListenerLifecycle:
    def test_start_without_engine(self):
        with pytest.raises(RuntimeError):
            ChangeListener().start()

    def test_fresh_listener_not_healthy(self):
        listener = ChangeListener()
        assert not listener.healthy
        assert not listener.failed
        listener.stop()


class TestNotifyChange:
    def test_noop_on_sqlite(self, db_engine):
        with Session(db_engine) as session:
            notify_change(session, ChangeEvent(ChangeKind.MESSAGE, group_id="g-1"))
            assert session.new == set()

    def test_pg_notify_issued_on_postgres(self):
        session = MagicMock()
        session.get_bind.return_value.dialect.name = "postgresql"
        notify_change(session, ChangeEvent(ChangeKind.PIN, group_id="g-1", message_id="m-1"))
        assert session.execute.call_count == 1
        params = session.execute.call_args.args[1]
        assert params["channel"] == CHANGE_CHANNEL
        payload = json.loads(params["payload"])
        assert payload["type"] == "pin_changed"
        assert payload["message_id"] == "m-1"
