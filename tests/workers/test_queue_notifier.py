"""
Tests for the queue notifier worker (scanner + dispatcher).

Tests focus on run-level behaviour:
- Fatal candidate fetch
- Per-entry skips and failures
- Single-notify invariant across repeated runs
- Send/flag-write ordering policy
"""
import asyncio
import json
import logging
from dataclasses import replace

import pytest
from unittest.mock import AsyncMock

from app.services.queue_notifications.exceptions import QueueFetchError
from app.services.queue_notifications.service import QueueStatus, ShopConfig
from queue_notifier import (
    DispatchOutcome,
    EntryOutcome,
    ScanResult,
    check_queue_and_notify,
    dispatch_notification,
    process_queue_entry,
    queue_notifier_task,
    run_queue_notifier_once,
)
from conftest import SHOP_ID, FakeQueueStore, make_barbers, make_entry


def _shop_store(entries, cut_times=(10, 20, 15), threshold=20):
    return FakeQueueStore(
        entries,
        barbers={SHOP_ID: make_barbers(*cut_times)},
        shop_configs={SHOP_ID: ShopConfig(shop_id=SHOP_ID, notify_threshold=threshold)},
    )


def _sent_to(messenger):
    return [call.args[0] for call in messenger.send_message.await_args_list]


def _slow_flag_write(store, delay):
    set_notified = store.set_notified

    async def slow_set_notified(entry_id):
        await asyncio.sleep(delay)
        return await set_notified(entry_id)

    store.set_notified = slow_set_notified


def _iteration_end_outcomes(caplog):
    events = [
        json.loads(r.getMessage()) for r in caplog.records
        if r.name == "app.utils.logging_helpers"
    ]
    return [e["outcome"] for e in events if e["event"] == "ITERATION_END"]


class TestCheckQueueAndNotify:
    """Tests for check_queue_and_notify function"""

    @pytest.mark.asyncio
    async def test_no_candidates(self, mock_store, mock_messenger):
        """Empty candidate set ends the run with nothing done"""
        result = await check_queue_and_notify(mock_store, mock_messenger)

        assert result == ScanResult()
        mock_store.get_barbers.assert_not_awaited()
        mock_messenger.send_message.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_fatal_fetch_sends_and_writes_nothing(self, mock_store, mock_messenger):
        """Candidate fetch error aborts the run"""
        mock_store.list_waiting = AsyncMock(side_effect=ConnectionError("db down"))

        with pytest.raises(QueueFetchError):
            await check_queue_and_notify(mock_store, mock_messenger)

        mock_messenger.send_message.assert_not_awaited()
        mock_store.set_notified.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_candidates_fetched_as_waiting_and_unnotified(self, mock_store, mock_messenger):
        await check_queue_and_notify(mock_store, mock_messenger)
        mock_store.list_waiting.assert_awaited_once_with(status=QueueStatus.WAITING, notified=False)

    @pytest.mark.asyncio
    async def test_shop_without_barbers_is_skipped_and_stays_candidate(self, mock_messenger):
        """Zero barbers: no send, flag unchanged, retried next run"""
        entry = make_entry("a")
        store = FakeQueueStore(
            [entry],
            barbers={},
            shop_configs={SHOP_ID: ShopConfig(shop_id=SHOP_ID, notify_threshold=20)},
        )

        first = await check_queue_and_notify(store, mock_messenger)
        second = await check_queue_and_notify(store, mock_messenger)

        assert first.skipped == 1
        assert second.candidates == 1
        assert second.skipped == 1
        assert store.entries["a"].notified is False
        assert store.set_notified_calls == []
        mock_messenger.send_message.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_missing_shop_config_is_skipped(self, mock_messenger):
        store = FakeQueueStore([make_entry("a")], barbers={SHOP_ID: make_barbers(10)})

        result = await check_queue_and_notify(store, mock_messenger)

        assert result.skipped == 1
        mock_messenger.send_message.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_missing_phone_is_skipped_before_context_fetch(self, mock_store, mock_messenger):
        mock_store.list_waiting = AsyncMock(return_value=[make_entry("a", phone_number=None)])

        result = await check_queue_and_notify(mock_store, mock_messenger)

        assert result.skipped == 1
        mock_store.get_barbers.assert_not_awaited()
        mock_messenger.send_message.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_specific_barber_only_head_notified(self, mock_messenger):
        """A and B wait for barber X: only A is texted"""
        a = make_entry("a", 0, requested_barber_id="x", phone_number="+1000")
        b = make_entry("b", 5, requested_barber_id="x", phone_number="+2000")
        store = _shop_store([a, b])

        result = await check_queue_and_notify(store, mock_messenger)

        assert result.notified == 1
        assert result.not_ready == 1
        assert _sent_to(mock_messenger) == ["+1000"]
        assert store.entries["a"].notified is True
        assert store.entries["b"].notified is False

    @pytest.mark.asyncio
    async def test_any_barber_threshold_across_runs(self, mock_messenger):
        """Positions 0-2 fit the 20 minute threshold; position 3 waits until the line moves"""
        entries = [make_entry(f"e{i}", i, phone_number=f"+100{i}") for i in range(4)]
        store = _shop_store(entries)

        first = await check_queue_and_notify(store, mock_messenger)
        assert first.notified == 3
        assert first.not_ready == 1
        assert _sent_to(mock_messenger) == ["+1000", "+1001", "+1002"]

        # Nothing changed: the notified entries are no longer candidates
        second = await check_queue_and_notify(store, mock_messenger)
        assert second.candidates == 1
        assert second.notified == 0
        assert mock_messenger.send_message.await_count == 3

        # Front customer is served, e3 moves to position 2
        store.entries["e0"] = replace(store.entries["e0"], status=QueueStatus.SERVED)
        third = await check_queue_and_notify(store, mock_messenger)
        assert third.notified == 1
        assert _sent_to(mock_messenger)[-1] == "+1003"

    @pytest.mark.asyncio
    async def test_single_notify_invariant_over_many_runs(self, mock_messenger):
        entries = [
            make_entry("a", 0, phone_number="+1"),
            make_entry("b", 1, requested_barber_id="x", phone_number="+2"),
            make_entry("c", 2, requested_barber_id="x", phone_number="+3"),
        ]
        store = _shop_store(entries, threshold=1000)

        for _ in range(5):
            await check_queue_and_notify(store, mock_messenger)

        sent = _sent_to(mock_messenger)
        assert sorted(sent) == ["+1", "+2"]
        assert store.set_notified_calls.count("a") == 1
        assert store.set_notified_calls.count("b") == 1
        assert "c" not in store.set_notified_calls

    @pytest.mark.asyncio
    async def test_entry_failure_does_not_stop_scan(self, mock_messenger):
        """A store error for one entry is logged and the next entry is processed"""
        broken = make_entry("broken", 0, shop_id="shop-broken")
        healthy = make_entry("ok", 1, phone_number="+1999")
        store = _shop_store([broken, healthy])
        real_get_barbers = store.get_barbers

        async def flaky_get_barbers(shop_id):
            if shop_id == "shop-broken":
                raise ConnectionError("connection reset")
            return await real_get_barbers(shop_id)

        store.get_barbers = flaky_get_barbers

        result = await check_queue_and_notify(store, mock_messenger)

        assert result.failed == 1
        assert result.notified == 1
        assert _sent_to(mock_messenger) == ["+1999"]

    @pytest.mark.asyncio
    async def test_entries_processed_in_fetch_order(self, mock_messenger):
        entries = [make_entry(f"e{i}", i, phone_number=f"+{i}") for i in range(3)]
        store = _shop_store(entries, threshold=1000)

        await check_queue_and_notify(store, mock_messenger)

        assert store.set_notified_calls == ["e0", "e1", "e2"]

    @pytest.mark.asyncio
    async def test_logs_identify_entries_by_id_not_name(self, mock_messenger, caplog):
        entries = [
            make_entry("a", 0, customer_name="Sam Ready"),
            make_entry("b", 1, requested_barber_id="x", customer_name="Alex Waiting"),
            make_entry("c", 2, requested_barber_id="x", customer_name="Jo Behind"),
        ]
        store = _shop_store(entries)

        with caplog.at_level(logging.DEBUG, logger="queue_notifier"):
            result = await check_queue_and_notify(store, mock_messenger)

        assert result.notified == 2
        assert result.not_ready == 1
        assert "Marked entry a as notified" in caplog.text
        assert "Entry c not yet ready" in caplog.text
        for name in ("Sam Ready", "Alex Waiting", "Jo Behind"):
            assert name not in caplog.text


class TestProcessQueueEntry:
    """Tests for process_queue_entry function"""

    @pytest.mark.asyncio
    async def test_specific_barber_queries_barber_line(self, mock_store, mock_messenger, three_barbers, shop_config):
        entry = make_entry("a", requested_barber_id="x")
        mock_store.get_barbers = AsyncMock(return_value=three_barbers)
        mock_store.get_shop_config = AsyncMock(return_value=shop_config)
        mock_store.list_waiting_by_shop = AsyncMock(return_value=[entry])

        outcome = await process_queue_entry(mock_store, mock_messenger, entry)

        assert outcome == EntryOutcome.NOTIFIED
        mock_store.list_waiting_by_shop.assert_awaited_once_with(
            SHOP_ID, requested_barber_id="x", status=QueueStatus.WAITING
        )

    @pytest.mark.asyncio
    async def test_any_barber_queries_whole_shop_line(self, mock_store, mock_messenger, three_barbers, shop_config):
        entry = make_entry("a")
        mock_store.get_barbers = AsyncMock(return_value=three_barbers)
        mock_store.get_shop_config = AsyncMock(return_value=shop_config)
        mock_store.list_waiting_by_shop = AsyncMock(return_value=[entry])

        await process_queue_entry(mock_store, mock_messenger, entry)

        mock_store.list_waiting_by_shop.assert_awaited_once_with(SHOP_ID, status=QueueStatus.WAITING)

    @pytest.mark.asyncio
    async def test_not_ready_entry_is_not_dispatched(self, mock_store, mock_messenger, shop_config):
        queue = [make_entry(str(i), i) for i in range(5)]
        mock_store.get_barbers = AsyncMock(return_value=make_barbers(30))
        mock_store.get_shop_config = AsyncMock(return_value=shop_config)
        mock_store.list_waiting_by_shop = AsyncMock(return_value=queue)

        outcome = await process_queue_entry(mock_store, mock_messenger, queue[4])

        assert outcome == EntryOutcome.NOT_READY
        mock_messenger.send_message.assert_not_awaited()
        mock_store.set_notified.assert_not_awaited()


class TestDispatchNotification:
    """Tests for dispatch_notification function"""

    @pytest.mark.asyncio
    async def test_send_then_mark(self, mock_store, mock_messenger):
        entry = make_entry("a", phone_number="+15551234567", customer_name="Sam")

        outcome = await dispatch_notification(mock_store, mock_messenger, entry)

        assert outcome == DispatchOutcome.SENT
        mock_messenger.send_message.assert_awaited_once_with(
            "+15551234567", "Hi Sam, you're up next! Please return to the barbershop."
        )
        mock_store.set_notified.assert_awaited_once_with("a")

    @pytest.mark.asyncio
    async def test_failed_send_is_not_marked(self, mock_store, mock_messenger):
        mock_messenger.send_message = AsyncMock(side_effect=RuntimeError("provider down"))

        outcome = await dispatch_notification(mock_store, mock_messenger, make_entry("a"))

        assert outcome == DispatchOutcome.SEND_FAILED
        mock_store.set_notified.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_failed_send_is_retried_next_run(self, mock_messenger):
        store = _shop_store([make_entry("a", phone_number="+1")])
        mock_messenger.send_message = AsyncMock(side_effect=[RuntimeError("provider down"), "SM1"])

        first = await check_queue_and_notify(store, mock_messenger)
        assert first.failed == 1
        assert store.entries["a"].notified is False

        second = await check_queue_and_notify(store, mock_messenger)
        assert second.notified == 1
        assert store.entries["a"].notified is True

    @pytest.mark.asyncio
    async def test_write_failure_after_send_is_logged(self, mock_store, mock_messenger, caplog):
        mock_store.set_notified = AsyncMock(side_effect=ConnectionError("db down"))

        with caplog.at_level(logging.ERROR, logger="queue_notifier"):
            outcome = await dispatch_notification(mock_store, mock_messenger, make_entry("a"))

        assert outcome == DispatchOutcome.MARK_FAILED
        mock_messenger.send_message.assert_awaited_once()
        mock_store.set_notified.assert_awaited_once()
        assert "NOTIFIED_FLAG_WRITE_FAILED" in caplog.text

    @pytest.mark.asyncio
    async def test_flag_already_set_by_another_run(self, mock_store, mock_messenger):
        mock_store.set_notified = AsyncMock(return_value=False)

        outcome = await dispatch_notification(mock_store, mock_messenger, make_entry("a"))

        assert outcome == DispatchOutcome.ALREADY_NOTIFIED


class TestRunQueueNotifierOnce:
    """Tests for run_queue_notifier_once function"""

    @pytest.mark.asyncio
    async def test_returns_scan_result(self, mock_messenger):
        store = _shop_store([make_entry("a")])

        result = await run_queue_notifier_once(store, mock_messenger)

        assert result.candidates == 1
        assert result.notified == 1
        assert result.processed == 1

    @pytest.mark.asyncio
    async def test_fatal_fetch_propagates(self, mock_store, mock_messenger):
        mock_store.list_waiting = AsyncMock(side_effect=ConnectionError("db down"))

        with pytest.raises(QueueFetchError):
            await run_queue_notifier_once(mock_store, mock_messenger)

    @pytest.mark.asyncio
    async def test_exhausted_budget_defers_rest_and_logs_failed(self, mock_messenger, caplog):
        store = _shop_store(
            [make_entry("a", 0, phone_number="+1"), make_entry("b", 1, phone_number="+2")],
            threshold=1000,
        )
        _slow_flag_write(store, 0.1)

        with caplog.at_level(logging.INFO, logger="app.utils.logging_helpers"):
            result = await run_queue_notifier_once(store, mock_messenger, timeout=0.05)

        assert result.timed_out is True
        assert result.notified == 1
        assert result.deferred == 1
        assert store.entries["a"].notified is True
        assert store.entries["b"].notified is False
        assert _iteration_end_outcomes(caplog) == ["failed"]

    @pytest.mark.asyncio
    async def test_cancelled_scan_logs_failed(self, mock_store, mock_messenger, caplog):
        async def slow_fetch(**kwargs):
            await asyncio.sleep(10)
            return []

        mock_store.list_waiting = slow_fetch

        with caplog.at_level(logging.INFO, logger="app.utils.logging_helpers"):
            task = asyncio.create_task(run_queue_notifier_once(mock_store, mock_messenger))
            await asyncio.sleep(0.01)
            task.cancel()
            with pytest.raises(asyncio.CancelledError):
                await task

        assert _iteration_end_outcomes(caplog) == ["failed"]


class TestQueueNotifierTask:
    """Tests for the long-running loop"""

    @pytest.mark.asyncio
    async def test_runs_requested_iterations(self, mock_store, mock_messenger):
        await queue_notifier_task(mock_store, mock_messenger, interval_seconds=0, max_iterations=3)

        assert mock_store.list_waiting.await_count == 3

    @pytest.mark.asyncio
    async def test_fetch_failure_does_not_stop_loop(self, mock_store, mock_messenger):
        mock_store.list_waiting = AsyncMock(side_effect=[ConnectionError("db down"), []])

        await queue_notifier_task(mock_store, mock_messenger, interval_seconds=0, max_iterations=2)

        assert mock_store.list_waiting.await_count == 2
        mock_messenger.send_message.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_iteration_timeout_is_contained(self, mock_store, mock_messenger):
        async def slow_fetch(**kwargs):
            await asyncio.sleep(10)
            return []

        mock_store.list_waiting = slow_fetch

        await queue_notifier_task(
            mock_store, mock_messenger, interval_seconds=0, iteration_timeout=0.01, max_iterations=1
        )

        mock_messenger.send_message.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_started_dispatch_finishes_despite_short_budget(self, mock_messenger):
        """A send that outlives the budget still gets its flag write, so it is never repeated"""
        store = _shop_store([make_entry("a", phone_number="+1")])
        _slow_flag_write(store, 0.2)

        await queue_notifier_task(
            store, mock_messenger, interval_seconds=0, iteration_timeout=0.05, max_iterations=3
        )

        assert mock_messenger.send_message.await_count == 1
        assert store.entries["a"].notified is True
        assert store.set_notified_calls == ["a"]

    @pytest.mark.asyncio
    async def test_exhausted_budget_is_reported(self, mock_messenger, caplog):
        store = _shop_store(
            [make_entry("a", 0, phone_number="+1"), make_entry("b", 1, phone_number="+2")],
            threshold=1000,
        )
        _slow_flag_write(store, 0.1)

        with caplog.at_level(logging.ERROR, logger="queue_notifier"):
            await queue_notifier_task(
                store, mock_messenger, interval_seconds=0, iteration_timeout=0.05, max_iterations=2
            )

        assert "WORKER_TIMEOUT" in caplog.text
        assert _sent_to(mock_messenger) == ["+1", "+2"]
        assert store.entries["b"].notified is True
