"""Tests for chorecore.core.reward_ledger — exactly-once point awards."""

import pytest

from chorecore.core.reward_ledger import (
    AUDIT_ACTION,
    AwardOutcome,
    RewardLedgerTrigger,
    WriteKind,
    award_condition,
)
from chorecore.ports.store_port import DocumentNotFound

TASK = "families/f1/tasks/t1"


def completed_task(**overrides):
    doc = {
        "assignedTo": "c",
        "assignedBy": "p1",
        "status": "completed",
        "rewardPoints": 5,
        "photoValidationStatus": "approved",
        "photoValidatedBy": "p1",
    }
    doc.update(overrides)
    return doc


@pytest.fixture
def seeded(store):
    store.set("families/f1", {
        "parentIds": ["p1"],
        "memberIds": ["p1", "c"],
        "counters": {"pendingTasks": 1, "completedTasks": 0, "totalPointsAwarded": 0},
    })
    store.set("families/f1/members/c", {"points": 0, "totalPointsEarned": 0, "tasksCompleted": 0})
    return store


class TestAwardCondition:
    def test_completed_without_photo(self):
        assert award_condition({"status": "completed"})

    def test_completed_with_pending_photo(self):
        assert not award_condition({"status": "completed", "photoValidationStatus": "pending"})

    def test_completed_with_approved_photo(self):
        assert award_condition({"status": "completed", "photoValidationStatus": "approved"})

    def test_explicit_requires_photo_without_status(self):
        assert not award_condition({"status": "completed", "requiresPhoto": True})

    def test_not_completed(self):
        assert not award_condition({"status": "in_progress"})
        assert not award_condition(None)

    def test_exposed_on_trigger(self):
        assert RewardLedgerTrigger.award_condition({"status": "completed"})


class TestPlan:
    def test_not_eligible_is_empty(self, trigger):
        before = completed_task(status="in_progress", photoValidationStatus="pending")
        after = completed_task(status="completed", photoValidationStatus="pending")
        assert not trigger.plan(TASK, before, after)

    def test_already_awarded_is_empty(self, trigger):
        assert not trigger.plan(TASK, None, completed_task(pointsAwarded=5))

    def test_deleted_task_is_empty(self, trigger):
        assert not trigger.plan(TASK, completed_task(), None)

    def test_non_task_path_is_empty(self, trigger):
        assert not trigger.plan("families/f1/members/c", None, completed_task())

    def test_award_writes(self, trigger):
        before = completed_task(photoValidationStatus="pending")
        writes = trigger.plan(TASK, before, completed_task())
        assert len(writes) == 4
        assert writes.paths() == [
            TASK,
            "families/f1/members/c",
            "families/f1",
            "auditLogs/award_f1_t1",
        ]
        task_write, member_write, family_write, audit_write = writes
        assert task_write.fields["pointsAwarded"] == 5
        assert member_write.kind is WriteKind.MERGE
        assert member_write.fields["points"].amount == 5
        assert member_write.fields["tasksCompleted"].amount == 1
        assert family_write.fields["counters.pendingTasks"].floor == 0
        assert family_write.fields["counters.totalPointsAwarded"].amount == 5
        assert audit_write.fields["action"] == AUDIT_ACTION
        assert audit_write.fields["approverId"] == "p1"

    @pytest.mark.parametrize("points", [-50, "lots", 1.5])
    def test_unusable_points_plan_nothing(self, trigger, points):
        assert not trigger.plan(TASK, None, completed_task(rewardPoints=points))

    def test_default_points_when_missing(self, trigger):
        task = completed_task()
        del task["rewardPoints"]
        writes = trigger.plan(TASK, None, task)
        assert writes.writes[0].fields["pointsAwarded"] == 10


class TestApply:
    def test_end_to_end_award(self, seeded, trigger):
        seeded.set(TASK, completed_task(status="created", photoValidationStatus="pending"))
        before = seeded.get_data(TASK)
        seeded.update(TASK, {"status": "completed", "photoValidationStatus": "approved",
                             "photoValidatedBy": "p1"})
        result = trigger.handle(TASK, before, seeded.get_data(TASK))

        assert result.outcome is AwardOutcome.AWARDED
        assert result.points == 5
        assert result.member_id == "c"
        assert result.balance == 5
        task = seeded.get_data(TASK)
        member = seeded.get_data("families/f1/members/c")
        family = seeded.get_data("families/f1")
        assert task["pointsAwarded"] == 5
        assert "pointsAwardedAt" in task
        assert member["points"] == 5
        assert member["totalPointsEarned"] == 5
        assert member["tasksCompleted"] == 1
        assert "lastTaskCompletedAt" in member
        assert family["counters"] == {
            "pendingTasks": 0, "completedTasks": 1, "totalPointsAwarded": 5,
        }
        audit = seeded.get_data("auditLogs/award_f1_t1")
        assert audit["memberId"] == "c"
        assert audit["pointsAwarded"] == 5

    def test_second_application_is_noop(self, seeded, trigger):
        seeded.set(TASK, completed_task())
        first = trigger.apply(TASK)
        second = trigger.apply(TASK)
        assert first.awarded
        assert second.outcome is AwardOutcome.ALREADY_AWARDED
        assert seeded.get_data(TASK)["pointsAwarded"] == 5
        assert seeded.get_data("families/f1/members/c")["points"] == 5
        assert seeded.get_data("families/f1")["counters"]["completedTasks"] == 1

    def test_duplicate_delivery_of_stale_change(self, seeded, trigger):
        seeded.set(TASK, completed_task())
        stale_after = seeded.get_data(TASK)
        trigger.handle(TASK, None, stale_after)
        # Same change delivered again: its after-state predates the award
        result = trigger.handle(TASK, None, stale_after)
        assert result.outcome is AwardOutcome.ALREADY_AWARDED
        assert seeded.get_data("families/f1/members/c")["points"] == 5

    def test_member_ledger_created_lazily(self, seeded, trigger):
        seeded.delete("families/f1/members/c")
        seeded.set(TASK, completed_task())
        trigger.apply(TASK)
        assert seeded.get_data("families/f1/members/c")["points"] == 5

    def test_two_tasks_same_member(self, seeded, trigger):
        seeded.set(TASK, completed_task())
        seeded.set("families/f1/tasks/t2", completed_task(rewardPoints=7))
        trigger.apply(TASK)
        assert trigger.apply("families/f1/tasks/t2").balance == 12
        member = seeded.get_data("families/f1/members/c")
        assert member["points"] == 12
        assert member["tasksCompleted"] == 2
        assert seeded.get_data("families/f1")["counters"]["totalPointsAwarded"] == 12

    def test_concurrent_award_for_same_member_is_serialized(self, seeded, trigger):
        seeded.set(TASK, completed_task())
        seeded.set("families/f1/tasks/t2", completed_task(rewardPoints=7))
        original = seeded.run_transaction
        interfered = []

        def racing_transaction(fn, max_attempts=None):
            def wrapped(txn):
                result = fn(txn)
                if not interfered:
                    # Another award commits between this one's reads and commit
                    interfered.append(True)
                    trigger.apply("families/f1/tasks/t2")
                return result

            return original(wrapped, max_attempts)

        seeded.run_transaction = racing_transaction
        trigger.apply(TASK)
        seeded.run_transaction = original

        member = seeded.get_data("families/f1/members/c")
        assert member["points"] == 12
        assert member["tasksCompleted"] == 2
        assert seeded.get_data(TASK)["pointsAwarded"] == 5
        assert seeded.get_data("families/f1/tasks/t2")["pointsAwarded"] == 7

    def test_concurrent_duplicate_awards_once(self, seeded, trigger):
        seeded.set(TASK, completed_task())
        original = seeded.run_transaction
        interfered = []

        def racing_transaction(fn, max_attempts=None):
            def wrapped(txn):
                result = fn(txn)
                if not interfered:
                    interfered.append(True)
                    trigger.apply(TASK)
                return result

            return original(wrapped, max_attempts)

        seeded.run_transaction = racing_transaction
        result = trigger.apply(TASK)
        seeded.run_transaction = original

        assert result.outcome is AwardOutcome.ALREADY_AWARDED
        assert seeded.get_data("families/f1/members/c")["points"] == 5
        assert seeded.get_data("families/f1")["counters"]["completedTasks"] == 1

    def test_pending_counter_never_negative(self, seeded, trigger):
        seeded.update("families/f1", {"counters.pendingTasks": 0})
        seeded.set(TASK, completed_task())
        trigger.apply(TASK)
        assert seeded.get_data("families/f1")["counters"]["pendingTasks"] == 0

    def test_rejection_after_award_keeps_points(self, seeded, trigger):
        seeded.set(TASK, completed_task())
        trigger.apply(TASK)
        awarded = seeded.get_data(TASK)
        seeded.update(TASK, {"status": "rejected"})
        result = trigger.handle(TASK, awarded, seeded.get_data(TASK))
        assert not result.awarded
        assert seeded.get_data("families/f1/members/c")["points"] == 5

    def test_non_parent_validator_refused(self, seeded, trigger):
        seeded.set(TASK, completed_task(photoValidatedBy="c"))
        result = trigger.apply(TASK)
        assert result.outcome is AwardOutcome.INVALID_VALIDATOR
        assert "pointsAwarded" not in seeded.get_data(TASK)
        assert seeded.get_data("families/f1/members/c")["points"] == 0

    def test_photo_free_task_needs_no_validator(self, seeded, trigger):
        seeded.set(TASK, completed_task(photoValidationStatus=None, photoValidatedBy=None))
        assert trigger.apply(TASK).awarded

    def test_missing_family_writes_nothing(self, store, trigger):
        store.set(TASK, completed_task())
        with pytest.raises(DocumentNotFound):
            trigger.apply(TASK)
        assert "pointsAwarded" not in store.get_data(TASK)
        assert store.get_data("families/f1/members/c") is None

    def test_not_yet_eligible(self, seeded, trigger):
        seeded.set(TASK, completed_task(photoValidationStatus="pending"))
        assert trigger.apply(TASK).outcome is AwardOutcome.NOT_ELIGIBLE

    @pytest.mark.parametrize("points", [-50, "lots"])
    def test_unusable_points_never_reach_ledger(self, seeded, trigger, points):
        seeded.set(TASK, completed_task(rewardPoints=points))
        assert trigger.handle(TASK, None, seeded.get_data(TASK)).outcome is AwardOutcome.INVALID_POINTS
        assert trigger.apply(TASK).outcome is AwardOutcome.INVALID_POINTS
        assert "pointsAwarded" not in seeded.get_data(TASK)
        assert seeded.get_data("families/f1/members/c")["points"] == 0
        assert seeded.get_data("families/f1")["counters"]["totalPointsAwarded"] == 0
