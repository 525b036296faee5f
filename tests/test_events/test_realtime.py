"""Tests for the realtime reconciler."""

import asyncio
from datetime import time

import pytest

from clinic_booking.events.ledger import WriteOp
from clinic_booking.events.realtime import SubscriptionState
from clinic_booking.services.cache import appointments_key, settings_key
from clinic_booking.services.remote_store import APPOINTMENTS_TABLE, SETTINGS_TABLE

from tests.conftest import CLINIC, MONDAY, make_appt, make_row, remote_event, ts

SETTLE = 0.1


@pytest.fixture
def notices(reconciler):
    received = []
    reconciler.add_listener(received.append)
    return received


class TestEventHandling:
    @pytest.mark.asyncio
    async def test_other_clinic_events_dropped(self, reconciler, ledger, notices):
        assert not reconciler.handle(remote_event("INSERT", make_row(clinic_id="c2"), ts=ts(0)))

        await asyncio.sleep(SETTLE)
        assert reconciler.dropped == 1
        assert ledger.records == {}
        assert notices == []

    @pytest.mark.asyncio
    async def test_insert_without_clinic_is_dropped(self, reconciler):
        assert not reconciler.handle(remote_event("INSERT", {"id": "a1"}, ts=ts(0)))
        assert reconciler.dropped == 1

    @pytest.mark.asyncio
    async def test_delete_without_clinic_applies_by_id(self, reconciler, ledger):
        reconciler.handle(remote_event("INSERT", make_row(), ts=ts(0)))

        assert reconciler.handle(remote_event("DELETE", old={"id": "a1"}, ts=ts(1)))
        assert "a1" not in ledger.records

    @pytest.mark.asyncio
    async def test_burst_invalidates_and_notifies_once(self, reconciler, cache, notices):
        cache.set(appointments_key(CLINIC, MONDAY), [])
        for i, at in enumerate((time(9), time(10), time(11))):
            reconciler.handle(remote_event("INSERT", make_row(id=f"a{i}", at=at), ts=ts(i)))

        assert cache.get(appointments_key(CLINIC, MONDAY)) == []
        await asyncio.sleep(SETTLE)

        assert cache.get(appointments_key(CLINIC, MONDAY)) is None
        assert len(notices) == 1
        assert notices[0].table == APPOINTMENTS_TABLE
        assert notices[0].day == MONDAY
        assert notices[0].events == 3

    @pytest.mark.asyncio
    async def test_dates_debounce_independently(self, reconciler, notices):
        reconciler.handle(remote_event("INSERT", make_row(id="a1"), ts=ts(0)))
        reconciler.handle(remote_event("INSERT", make_row(id="a2", on=MONDAY.replace(day=20)), ts=ts(1)))

        await asyncio.sleep(SETTLE)
        assert sorted(n.day for n in notices) == [MONDAY, MONDAY.replace(day=20)]

    @pytest.mark.asyncio
    async def test_reschedule_touches_both_dates(self, reconciler, cache):
        other = MONDAY.replace(day=20)
        cache.set(appointments_key(CLINIC, MONDAY), [])
        cache.set(appointments_key(CLINIC, other), [])

        reconciler.handle(remote_event(
            "UPDATE", make_row(on=other), old=make_row(), ts=ts(1),
        ))
        await asyncio.sleep(SETTLE)

        assert cache.get(appointments_key(CLINIC, MONDAY)) is None
        assert cache.get(appointments_key(CLINIC, other)) is None

    @pytest.mark.asyncio
    async def test_invalidation_prunes_past_days(self, reconciler, ledger):
        sunday = MONDAY.replace(day=18)
        reconciler.handle(remote_event("INSERT", make_row(id="old", on=sunday), ts=ts(0)))
        reconciler.handle(remote_event("INSERT", make_row(id="new"), ts=ts(0)))
        assert set(ledger.records) == {"old", "new"}

        await asyncio.sleep(SETTLE)

        assert set(ledger.records) == {"new"}

    @pytest.mark.asyncio
    async def test_settings_event_updates_config(self, reconciler, cache, config_store, notices):
        cache.set(settings_key(CLINIC), "cfg")

        reconciler.handle(remote_event(
            "UPDATE",
            {"id": 1, "clinic_id": CLINIC, "slot_interval_minutes": 15},
            table=SETTINGS_TABLE,
        ))

        assert config_store.get(CLINIC).slot_interval_minutes == 15
        await asyncio.sleep(SETTLE)
        assert cache.get(settings_key(CLINIC)) is None
        assert notices[0].table == SETTINGS_TABLE

    @pytest.mark.asyncio
    async def test_invalid_settings_event_is_ignored(self, reconciler, config_store):
        assert not reconciler.handle(remote_event(
            "UPDATE",
            {"id": 1, "clinic_id": CLINIC, "slot_interval_minutes": 2},
            table=SETTINGS_TABLE,
        ))
        assert config_store.get(CLINIC).slot_interval_minutes == 30

    @pytest.mark.asyncio
    async def test_listener_error_does_not_break_others(self, reconciler, notices, caplog):
        def broken(notice):
            raise RuntimeError("boom")

        reconciler.add_listener(broken)
        reconciler.handle(remote_event("INSERT", make_row(), ts=ts(0)))
        await asyncio.sleep(SETTLE)

        assert len(notices) == 1
        assert "listener failed" in caplog.text

    @pytest.mark.asyncio
    async def test_remove_listener(self, reconciler):
        received = []
        remove = reconciler.add_listener(received.append)
        remove()

        reconciler.handle(remote_event("INSERT", make_row(), ts=ts(0)))
        await asyncio.sleep(SETTLE)
        assert received == []


class TestOptimisticPath:
    @pytest.mark.asyncio
    async def test_local_write_notifies_without_invalidating(self, reconciler, cache, notices):
        cache.set(appointments_key(CLINIC, MONDAY), [])

        reconciler.apply_local(WriteOp.CREATE, make_appt(id=""))
        await asyncio.sleep(SETTLE)

        assert cache.get(appointments_key(CLINIC, MONDAY)) == []
        assert len(notices) == 1

    @pytest.mark.asyncio
    async def test_confirm_then_echo(self, reconciler, ledger):
        pending = reconciler.apply_local(WriteOp.CREATE, make_appt(id=""))
        assert reconciler.confirm(pending, make_appt(id="srv-1", updated_at=ts(1)))

        assert not reconciler.handle(remote_event("INSERT", make_row(id="srv-1"), ts=ts(1)))
        assert [a.id for a in ledger.overlay(MONDAY, [])] == ["srv-1"]

    @pytest.mark.asyncio
    async def test_revert_goes_through_event_path(self, reconciler, ledger):
        pending = reconciler.apply_local(WriteOp.CREATE, make_appt(id=""))
        event = reconciler.revert(pending)

        assert event.entity_id == "local:1"
        assert ledger.overlay(MONDAY, []) == []


class TestSubscriptions:
    @pytest.mark.asyncio
    async def test_feed_events_are_applied(self, reconciler, remote, ledger):
        await reconciler.start()
        assert reconciler.subscriptions[APPOINTMENTS_TABLE].state is SubscriptionState.SUBSCRIBED
        assert reconciler.subscriptions[SETTINGS_TABLE].state is SubscriptionState.SUBSCRIBED

        remote.push(APPOINTMENTS_TABLE, remote_event("INSERT", make_row(), ts=ts(0)))
        await asyncio.sleep(SETTLE)
        assert "a1" in ledger.records

        await reconciler.stop()
        assert reconciler.subscriptions[APPOINTMENTS_TABLE].state is SubscriptionState.DISCONNECTED

    @pytest.mark.asyncio
    async def test_failed_subscribe_leaves_disconnected(self, reconciler, remote):
        from clinic_booking.exceptions import TransientStoreError

        remote.fail_with = TransientStoreError("offline")
        with pytest.raises(TransientStoreError):
            await reconciler.start([APPOINTMENTS_TABLE])

        assert reconciler.subscriptions[APPOINTMENTS_TABLE].state is SubscriptionState.DISCONNECTED
