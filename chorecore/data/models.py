"""
ChoreCore — Data Models.

Documents live in the store as plain JSON dicts keyed by slash paths
(``families/f1/tasks/t1``). The dataclasses below are typed views over a
few of them.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum


class Capability(Enum):
    """What a role is allowed to do inside its family."""

    VALIDATE_PHOTOS = "validate_photos"
    MANAGE_CONSENT = "manage_consent"


class Role(Enum):
    """Closed set of family roles. Each role carries its capability set."""

    PARENT = "parent"
    CHILD = "child"

    @property
    def capabilities(self) -> frozenset[Capability]:
        return _ROLE_CAPABILITIES[self]

    def can(self, capability: Capability) -> bool:
        return capability in self.capabilities

    @classmethod
    def parse(cls, value: object) -> Role | None:
        """Map a stored role string to a Role; unknown values map to None."""
        try:
            return cls(value)
        except ValueError:
            return None


_ROLE_CAPABILITIES: dict[Role, frozenset[Capability]] = {
    Role.PARENT: frozenset({Capability.VALIDATE_PHOTOS, Capability.MANAGE_CONSENT}),
    Role.CHILD: frozenset(),
}


class TaskStatus(Enum):
    CREATED = "created"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    REJECTED = "rejected"

    @property
    def is_terminal(self) -> bool:
        return self in (TaskStatus.COMPLETED, TaskStatus.REJECTED)


class PhotoValidationStatus(Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"


class ConsentStatus(Enum):
    NONE = "none"          # no record exists yet
    PENDING = "pending"
    APPROVED = "approved"
    DENIED = "denied"

    @property
    def is_terminal(self) -> bool:
        return self in (ConsentStatus.APPROVED, ConsentStatus.DENIED)


# Ledger fields owned by the reward trigger; no end user may write them.
LEDGER_FIELDS = frozenset({"points", "totalPointsEarned", "tasksCompleted"})

# Contact fields an under-13 user may never write, even on their own profile.
SENSITIVE_CONTACT_FIELDS = frozenset({
    "email", "phone", "phoneNumber", "address", "location",
})


# ---------------------------------------------------------------------------
# Document paths
# ---------------------------------------------------------------------------


def family_path(family_id: str) -> str:
    return f"families/{family_id}"


def member_path(family_id: str, user_id: str) -> str:
    return f"families/{family_id}/members/{user_id}"


def task_path(family_id: str, task_id: str) -> str:
    return f"families/{family_id}/tasks/{task_id}"


def user_path(user_id: str) -> str:
    return f"users/{user_id}"


def consent_key(parent_id: str, child_id: str) -> str:
    return f"{parent_id}_{child_id}"


def consent_path(parent_id: str, child_id: str) -> str:
    return f"parental_consent/{consent_key(parent_id, child_id)}"


# ---------------------------------------------------------------------------
# Typed document views
# ---------------------------------------------------------------------------


def valid_reward_points(value: object) -> bool:
    """A stored ``rewardPoints`` value the ledger can award: a non-negative int."""
    return isinstance(value, int) and not isinstance(value, bool) and value >= 0


@dataclass
class MemberLedger:
    """Per-user, per-family running totals. Written only by the reward trigger."""

    points: int = 0
    totalPointsEarned: int = 0
    tasksCompleted: int = 0

    @classmethod
    def from_doc(cls, doc: dict | None) -> MemberLedger:
        doc = doc or {}
        return cls(
            points=int(doc.get("points", 0)),
            totalPointsEarned=int(doc.get("totalPointsEarned", 0)),
            tasksCompleted=int(doc.get("tasksCompleted", 0)),
        )


@dataclass
class ParentalConsent:
    parentId: str
    childId: str
    status: ConsentStatus = ConsentStatus.PENDING

    def to_doc(self) -> dict:
        return {
            "parentId": self.parentId,
            "childData": {"userId": self.childId},
            "status": self.status.value,
        }
