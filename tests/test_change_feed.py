"""Tests for chorecore.core.change_feed — the award consumer loop."""

import asyncio

import pytest
from unittest.mock import AsyncMock, MagicMock

from chorecore.core.change_feed import ChangeFeedConsumer
from chorecore.core.reward_ledger import AwardOutcome, AwardResult
from chorecore.ports.store_port import DocumentNotFound, StoreUnavailable, TransactionConflict

TASK = "families/f1/tasks/t1"


@pytest.fixture
def seeded(store):
    store.set("families/f1", {
        "parentIds": ["p1"],
        "memberIds": ["p1", "c"],
        "counters": {"pendingTasks": 1, "completedTasks": 0, "totalPointsAwarded": 0},
    })
    store.set(TASK, {
        "assignedTo": "c", "assignedBy": "p1", "status": "in_progress", "rewardPoints": 5,
    })
    for change in store.pending_changes():
        store.mark_processed(change.seq)
    return store


class TestRunOnce:
    @pytest.mark.asyncio
    async def test_awards_and_notifies(self, seeded, trigger):
        notifier = AsyncMock()
        consumer = ChangeFeedConsumer(seeded, trigger, notifier=notifier, batch_size=10)
        seeded.update(TASK, {"status": "completed"})

        handled = await consumer.run_once()

        assert handled == 1
        assert seeded.get_data("families/f1/members/c")["points"] == 5
        notifier.send_message.assert_awaited_once()
        user_id, text = notifier.send_message.call_args.args
        assert user_id == "c"
        assert "5 points" in text

    @pytest.mark.asyncio
    async def test_award_changes_are_consumed_without_double_award(self, seeded, trigger):
        consumer = ChangeFeedConsumer(seeded, trigger, batch_size=10)
        seeded.update(TASK, {"status": "completed"})
        await consumer.run_once()
        # The award transaction's own writes come through next
        assert await consumer.run_once() == 4
        assert await consumer.run_once() == 0
        assert seeded.get_data("families/f1/members/c")["points"] == 5

    @pytest.mark.asyncio
    async def test_non_task_changes_are_marked(self, seeded, trigger):
        consumer = ChangeFeedConsumer(seeded, trigger, batch_size=10)
        seeded.set("users/c", {"timezone": "UTC"})
        assert await consumer.run_once() == 1
        assert seeded.pending_changes() == []

    @pytest.mark.asyncio
    async def test_conflict_leaves_change_pending(self, seeded):
        trigger = MagicMock()
        trigger.is_task_path.return_value = True
        trigger.handle.side_effect = TransactionConflict("busy")
        consumer = ChangeFeedConsumer(seeded, trigger, batch_size=10)
        seeded.update(TASK, {"status": "completed"})
        seeded.set("users/c", {"timezone": "UTC"})

        assert await consumer.run_once() == 0
        assert len(seeded.pending_changes()) == 2

    @pytest.mark.asyncio
    async def test_unavailable_store_leaves_change_pending(self, seeded):
        trigger = MagicMock()
        trigger.is_task_path.return_value = True
        trigger.handle.side_effect = StoreUnavailable("down")
        consumer = ChangeFeedConsumer(seeded, trigger, batch_size=10)
        seeded.update(TASK, {"status": "completed"})

        assert await consumer.run_once() == 0
        assert len(seeded.pending_changes()) == 1

    @pytest.mark.asyncio
    async def test_redelivery_after_failure_awards_once(self, seeded, trigger):
        consumer = ChangeFeedConsumer(seeded, trigger, batch_size=10)
        seeded.update(TASK, {"status": "completed"})
        real_handle = trigger.handle
        trigger.handle = MagicMock(side_effect=StoreUnavailable("down"))
        assert await consumer.run_once() == 0

        trigger.handle = real_handle
        assert await consumer.run_once() == 1
        assert seeded.get_data("families/f1/members/c")["points"] == 5

    @pytest.mark.asyncio
    async def test_missing_family_is_dropped(self, seeded):
        trigger = MagicMock()
        trigger.is_task_path.return_value = True
        trigger.handle.side_effect = DocumentNotFound("gone")
        consumer = ChangeFeedConsumer(seeded, trigger, batch_size=10)
        seeded.update(TASK, {"status": "completed"})

        assert await consumer.run_once() == 1
        assert seeded.pending_changes() == []

    @pytest.mark.asyncio
    async def test_malformed_change_does_not_block_feed(self, seeded):
        trigger = MagicMock()
        trigger.is_task_path.return_value = True
        trigger.handle.side_effect = [ValueError("bad rewardPoints"), None]
        consumer = ChangeFeedConsumer(seeded, trigger, batch_size=10)
        seeded.update(TASK, {"status": "completed"})
        seeded.set("families/f1/tasks/t2", {"assignedTo": "c", "assignedBy": "p1"})

        assert await consumer.run_once() == 2
        assert seeded.pending_changes() == []

    @pytest.mark.asyncio
    async def test_unusable_reward_points_are_skipped(self, seeded, trigger):
        consumer = ChangeFeedConsumer(seeded, trigger, batch_size=10)
        seeded.update(TASK, {"rewardPoints": "lots", "status": "completed"})

        assert await consumer.run_once() == 1
        assert seeded.pending_changes() == []
        assert seeded.get_data("families/f1/members/c") is None

    @pytest.mark.asyncio
    async def test_notifier_failure_does_not_block(self, seeded):
        trigger = MagicMock()
        trigger.is_task_path.return_value = True
        trigger.handle.return_value = AwardResult(AwardOutcome.AWARDED, TASK, "c", points=5)
        notifier = AsyncMock()
        notifier.send_message.side_effect = RuntimeError("telegram down")
        consumer = ChangeFeedConsumer(seeded, trigger, notifier=notifier, batch_size=10)
        seeded.update(TASK, {"status": "completed"})

        assert await consumer.run_once() == 1
        assert seeded.pending_changes() == []

    @pytest.mark.asyncio
    async def test_no_notification_without_award(self, seeded, trigger):
        notifier = AsyncMock()
        consumer = ChangeFeedConsumer(seeded, trigger, notifier=notifier, batch_size=10)
        seeded.update(TASK, {"title": "renamed"})
        await consumer.run_once()
        notifier.send_message.assert_not_awaited()


class TestRunForever:
    @pytest.mark.asyncio
    async def test_stop_ends_loop(self, seeded, trigger):
        consumer = ChangeFeedConsumer(seeded, trigger, poll_seconds=0.01)
        seeded.update(TASK, {"status": "completed"})

        task = asyncio.create_task(consumer.run_forever())
        for _ in range(100):
            await asyncio.sleep(0.01)
            if seeded.pending_changes() == []:
                break
        consumer.stop()
        await asyncio.wait_for(task, timeout=1)

        assert seeded.get_data("families/f1/members/c")["points"] == 5
