"""
ChoreCore — Reward Ledger Trigger.

Turns a committed task mutation that meets the award condition into one
atomic transaction:

    task.pointsAwarded               = rewardPoints
    member.points                   += rewardPoints
    member.totalPointsEarned        += rewardPoints
    member.tasksCompleted           += 1
    family.counters.completedTasks  += 1
    family.counters.pendingTasks     = max(0, pendingTasks - 1)
    family.counters.totalPointsAwarded += rewardPoints

plus an audit record. ``pointsAwarded`` doubles as the idempotency guard:
it is checked again inside the transaction, so duplicate or concurrent
deliveries of the same change award at most once. Conflicting concurrent
awards for the same member are serialized by the store's optimistic retry.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Any, Iterator, Mapping

from chorecore.core.policy import PathPattern
from chorecore.core.task_state import requires_photo
from chorecore.data.models import (
    MemberLedger,
    PhotoValidationStatus,
    TaskStatus,
    family_path,
    member_path,
    valid_reward_points,
)
from chorecore.data.store import SERVER_TIMESTAMP, Increment
from chorecore.ports.store_port import DocumentNotFound

if TYPE_CHECKING:
    from chorecore.data.store import Transaction
    from chorecore.ports.store_port import DocumentStorePort

logger = logging.getLogger(__name__)

TASK_PATTERN = PathPattern("families/{familyId}/tasks/{taskId}")

AUDIT_ACTION = "TASK_APPROVED_POINTS_AWARDED"


def award_condition(task: Mapping | None) -> bool:
    """completed, and either no photo review or an approved photo."""
    if not task:
        return False
    if task.get("status") != TaskStatus.COMPLETED.value:
        return False
    if not requires_photo(task):
        return True
    return task.get("photoValidationStatus") == PhotoValidationStatus.APPROVED.value


class WriteKind(Enum):
    UPDATE = "update"   # document must exist
    MERGE = "merge"     # create if missing, merge fields otherwise
    SET = "set"         # create or overwrite


@dataclass(frozen=True)
class Write:
    path: str
    fields: dict[str, Any]
    kind: WriteKind = WriteKind.UPDATE


@dataclass(frozen=True)
class WriteSet:
    """Writes of one award transaction; empty means no-op."""

    writes: tuple[Write, ...] = ()

    def __bool__(self) -> bool:
        return bool(self.writes)

    def __len__(self) -> int:
        return len(self.writes)

    def __iter__(self) -> Iterator[Write]:
        return iter(self.writes)

    def paths(self) -> list[str]:
        return [w.path for w in self.writes]


class AwardOutcome(Enum):
    AWARDED = "awarded"
    NOT_ELIGIBLE = "not_eligible"
    ALREADY_AWARDED = "already_awarded"
    INVALID_VALIDATOR = "invalid_validator"
    INVALID_POINTS = "invalid_points"


@dataclass
class AwardResult:
    outcome: AwardOutcome
    task_path: str
    member_id: str | None = None
    points: int = 0
    balance: int = 0
    writes: list[str] = field(default_factory=list)

    @property
    def awarded(self) -> bool:
        return self.outcome is AwardOutcome.AWARDED


class RewardLedgerTrigger:
    """Consumes task changes and applies point awards exactly once."""

    award_condition = staticmethod(award_condition)

    def __init__(self, store: DocumentStorePort, default_reward_points: int | None = None) -> None:
        if default_reward_points is None:
            from chorecore.config import settings

            default_reward_points = settings.DEFAULT_REWARD_POINTS
        self._store = store
        self._default_points = default_reward_points

    @staticmethod
    def is_task_path(path: str) -> bool:
        return TASK_PATTERN.match(path) is not None

    def reward_points(self, task: Mapping) -> int | None:
        """Points the task is worth, or None if its stored value cannot be awarded."""
        points = task.get("rewardPoints")
        if points is None:
            return self._default_points
        return points if valid_reward_points(points) else None

    # ------------------------------------------------------------------
    # Planning (pure)
    # ------------------------------------------------------------------

    def plan(self, task_path: str, before: Mapping | None, after: Mapping | None) -> WriteSet:
        """Write set for the change ``before -> after`` of ``task_path``.

        Empty when the path is not a task, the task was deleted, the
        award condition does not hold, points were already awarded, or
        ``rewardPoints`` is not a non-negative int.
        """
        params = TASK_PATTERN.match(task_path)
        if params is None or after is None:
            return WriteSet()
        if after.get("pointsAwarded") is not None:
            return WriteSet()
        if not award_condition(after):
            return WriteSet()
        points = self.reward_points(after)
        if points is None:
            return WriteSet()
        return self._writes_for(params["familyId"], params["taskId"], task_path, after, points)

    def _writes_for(
        self, family_id: str, task_id: str, task_path: str, task: Mapping, points: int,
    ) -> WriteSet:
        assignee = task.get("assignedTo", "")
        return WriteSet((
            Write(task_path, {
                "pointsAwarded": points,
                "pointsAwardedAt": SERVER_TIMESTAMP,
                "updatedAt": SERVER_TIMESTAMP,
            }),
            Write(member_path(family_id, assignee), {
                "points": Increment(points),
                "totalPointsEarned": Increment(points),
                "tasksCompleted": Increment(1),
                "lastTaskCompletedAt": SERVER_TIMESTAMP,
                "updatedAt": SERVER_TIMESTAMP,
            }, WriteKind.MERGE),
            Write(family_path(family_id), {
                "counters.completedTasks": Increment(1),
                "counters.pendingTasks": Increment(-1, floor=0),
                "counters.totalPointsAwarded": Increment(points),
                "updatedAt": SERVER_TIMESTAMP,
            }),
            # Keyed by task so a replayed award could never add a second entry
            Write(f"auditLogs/award_{family_id}_{task_id}", {
                "action": AUDIT_ACTION,
                "familyId": family_id,
                "taskId": task_id,
                "memberId": assignee,
                "approverId": task.get("photoValidatedBy"),
                "pointsAwarded": points,
                "timestamp": SERVER_TIMESTAMP,
            }, WriteKind.SET),
        ))

    # ------------------------------------------------------------------
    # Execution
    # ------------------------------------------------------------------

    def handle(self, task_path: str, before: Mapping | None, after: Mapping | None) -> AwardResult:
        """Process one committed change of a task document."""
        if not self.plan(task_path, before, after):
            if after is not None and after.get("pointsAwarded") is not None and award_condition(after):
                logger.info("Task %s already awarded; duplicate trigger ignored", task_path)
                return AwardResult(AwardOutcome.ALREADY_AWARDED, task_path, after.get("assignedTo"))
            if after is not None and award_condition(after) and self.reward_points(after) is None:
                logger.warning(
                    "Task %s has unusable rewardPoints %r; no points awarded",
                    task_path, after.get("rewardPoints"),
                )
                return AwardResult(AwardOutcome.INVALID_POINTS, task_path, after.get("assignedTo"))
            return AwardResult(AwardOutcome.NOT_ELIGIBLE, task_path)
        return self.apply(task_path)

    def apply(self, task_path: str) -> AwardResult:
        """Run the award transaction against the current stored task.

        Raises DocumentNotFound if the family is missing, TransactionConflict
        if retries are exhausted and StoreUnavailable if the store is down.
        In every failure case nothing is written.
        """
        params = TASK_PATTERN.match(task_path)
        if params is None:
            return AwardResult(AwardOutcome.NOT_ELIGIBLE, task_path)
        family_id, task_id = params["familyId"], params["taskId"]

        def _award(txn: Transaction) -> AwardResult:
            task = txn.get(task_path)
            if task is None:
                return AwardResult(AwardOutcome.NOT_ELIGIBLE, task_path)
            assignee = task.get("assignedTo")
            if task.get("pointsAwarded") is not None:
                return AwardResult(AwardOutcome.ALREADY_AWARDED, task_path, assignee)
            if not award_condition(task) or not assignee:
                return AwardResult(AwardOutcome.NOT_ELIGIBLE, task_path)

            family = txn.get(family_path(family_id))
            if family is None:
                raise DocumentNotFound(f"Family {family_id} not found for {task_path}")
            ledger = MemberLedger.from_doc(txn.get(member_path(family_id, assignee)))

            if requires_photo(task) and task.get("photoValidatedBy") not in (family.get("parentIds") or []):
                return AwardResult(AwardOutcome.INVALID_VALIDATOR, task_path, assignee)

            points = self.reward_points(task)
            if points is None:
                return AwardResult(AwardOutcome.INVALID_POINTS, task_path, assignee)

            writes = self._writes_for(family_id, task_id, task_path, task, points)
            for w in writes:
                if w.kind is WriteKind.UPDATE:
                    txn.update(w.path, w.fields)
                elif w.kind is WriteKind.MERGE:
                    txn.set(w.path, w.fields, merge=True)
                else:
                    txn.set(w.path, w.fields)
            return AwardResult(
                AwardOutcome.AWARDED, task_path, assignee,
                points=points, balance=ledger.points + points, writes=writes.paths(),
            )

        try:
            result = self._store.run_transaction(_award)
        except DocumentNotFound as exc:
            logger.error("Award for %s aborted: %s", task_path, exc)
            raise

        if result.outcome is AwardOutcome.AWARDED:
            logger.info(
                "Awarded %d points to %s for %s (balance %d)",
                result.points, result.member_id, task_path, result.balance,
            )
        elif result.outcome is AwardOutcome.ALREADY_AWARDED:
            logger.info("Task %s already awarded; duplicate trigger ignored", task_path)
        elif result.outcome is AwardOutcome.INVALID_VALIDATOR:
            logger.warning(
                "Task %s approved by a non-parent; no points awarded", task_path,
            )
        elif result.outcome is AwardOutcome.INVALID_POINTS:
            logger.warning("Task %s has unusable rewardPoints; no points awarded", task_path)
        return result
