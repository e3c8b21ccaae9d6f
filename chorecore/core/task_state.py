"""
ChoreCore — Task State Machine.

Legal task transitions and who may drive them:

    status:                created -> in_progress -> completed   (assignee)
                           created -> completed                  (assignee)
                           created | in_progress -> rejected     (validator)
    photoValidationStatus: (unset) -> pending                    (assignee)
                           pending -> approved | rejected        (validator)

``completed`` and ``rejected`` are terminal for ``status``. A completed
task may still have its photo reviewed; a rejected task is frozen.
A validator is a parent of the task's family and must record itself as
``photoValidatedBy`` when deciding a photo.
"""

from __future__ import annotations

from enum import Enum
from typing import TYPE_CHECKING, Mapping

from chorecore.core.errors import TransitionInvalid
from chorecore.data.models import Capability, PhotoValidationStatus, Role, TaskStatus

if TYPE_CHECKING:
    from chorecore.core.policy import Principal


class Actor(Enum):
    ASSIGNEE = "assignee"
    VALIDATOR = "validator"
    CREATOR = "creator"
    SYSTEM = "system"


_S = TaskStatus
_P = PhotoValidationStatus

STATUS_TRANSITIONS: dict[tuple[TaskStatus, TaskStatus], frozenset[Actor]] = {
    (_S.CREATED, _S.IN_PROGRESS): frozenset({Actor.ASSIGNEE}),
    (_S.IN_PROGRESS, _S.COMPLETED): frozenset({Actor.ASSIGNEE}),
    (_S.CREATED, _S.COMPLETED): frozenset({Actor.ASSIGNEE}),
    (_S.CREATED, _S.REJECTED): frozenset({Actor.VALIDATOR}),
    (_S.IN_PROGRESS, _S.REJECTED): frozenset({Actor.VALIDATOR}),
}

PHOTO_TRANSITIONS: dict[tuple[PhotoValidationStatus | None, PhotoValidationStatus], frozenset[Actor]] = {
    (None, _P.PENDING): frozenset({Actor.ASSIGNEE}),
    (_P.PENDING, _P.APPROVED): frozenset({Actor.VALIDATOR}),
    (_P.PENDING, _P.REJECTED): frozenset({Actor.VALIDATOR}),
}


def _status(value: object) -> TaskStatus:
    try:
        return TaskStatus(value if value is not None else TaskStatus.CREATED.value)
    except ValueError:
        raise TransitionInvalid("status", value, value, "unknown status") from None


def _photo(value: object) -> PhotoValidationStatus | None:
    if value is None:
        return None
    try:
        return PhotoValidationStatus(value)
    except ValueError:
        raise TransitionInvalid(
            "photoValidationStatus", value, value, "unknown photo status",
        ) from None


def requires_photo(task: Mapping) -> bool:
    """Explicit ``requiresPhoto`` wins; otherwise a photo status implies it."""
    if "requiresPhoto" in task:
        return bool(task["requiresPhoto"])
    return task.get("photoValidationStatus") is not None


class TaskStateMachine:
    """Validates task writes against the transition table."""

    @staticmethod
    def actors_for(
        principal: Principal,
        task: Mapping,
        family: Mapping | None,
        user: Mapping | None = None,
    ) -> frozenset[Actor]:
        """Roles ``principal`` plays for ``task``.

        ``user`` is the principal's profile; when it names a role, that
        role's capabilities decide whether a family parent may validate.
        """
        if principal.is_system:
            return frozenset({Actor.SYSTEM})
        uid = principal.uid
        if uid is None:
            return frozenset()
        actors = set()
        if task.get("assignedTo") == uid:
            actors.add(Actor.ASSIGNEE)
        if task.get("assignedBy") == uid:
            actors.add(Actor.CREATOR)
        if family is not None and uid in (family.get("parentIds") or []):
            role = Role.parse((user or {}).get("role", Role.PARENT.value))
            if role is not None and role.can(Capability.VALIDATE_PHOTOS):
                actors.add(Actor.VALIDATOR)
        return frozenset(actors)

    def validate_create(self, task: Mapping) -> None:
        status = _status(task.get("status"))
        if status is not TaskStatus.CREATED:
            raise TransitionInvalid("status", None, status.value, "tasks start as created")
        photo = _photo(task.get("photoValidationStatus"))
        if photo not in (None, PhotoValidationStatus.PENDING):
            raise TransitionInvalid(
                "photoValidationStatus", None, photo.value, "photo review starts as pending",
            )

    def validate(self, actors: frozenset[Actor], before: Mapping, after: Mapping) -> None:
        """Raise TransitionInvalid unless ``before -> after`` is legal for ``actors``."""
        if Actor.SYSTEM in actors:
            return

        old_status = _status(before.get("status"))
        new_status = _status(after.get("status"))
        old_photo = _photo(before.get("photoValidationStatus"))
        new_photo = _photo(after.get("photoValidationStatus"))

        if old_status is TaskStatus.REJECTED and (
            new_status is not old_status or new_photo is not old_photo
        ):
            raise TransitionInvalid("status", old_status.value, new_status.value, "task is rejected")

        if new_status is not old_status:
            if old_status.is_terminal:
                raise TransitionInvalid(
                    "status", old_status.value, new_status.value, "status is terminal",
                )
            allowed = STATUS_TRANSITIONS.get((old_status, new_status))
            if allowed is None:
                raise TransitionInvalid("status", old_status.value, new_status.value)
            if not allowed & actors:
                raise TransitionInvalid(
                    "status", old_status.value, new_status.value,
                    f"requires {', '.join(sorted(a.value for a in allowed))}",
                )

        if new_photo is not old_photo:
            self._validate_photo(actors, after, old_photo, new_photo)

    @staticmethod
    def _validate_photo(
        actors: frozenset[Actor],
        after: Mapping,
        old: PhotoValidationStatus | None,
        new: PhotoValidationStatus | None,
    ) -> None:
        old_value = old.value if old else None
        new_value = new.value if new else None
        if new is None:
            raise TransitionInvalid("photoValidationStatus", old_value, None, "cannot be cleared")
        if not requires_photo(after):
            raise TransitionInvalid(
                "photoValidationStatus", old_value, new_value, "task does not require a photo",
            )
        allowed = PHOTO_TRANSITIONS.get((old, new))
        if allowed is None:
            raise TransitionInvalid("photoValidationStatus", old_value, new_value)
        if not allowed & actors:
            raise TransitionInvalid(
                "photoValidationStatus", old_value, new_value,
                f"requires {', '.join(sorted(a.value for a in allowed))}",
            )
        if new in (PhotoValidationStatus.APPROVED, PhotoValidationStatus.REJECTED):
            if not after.get("photoValidatedBy"):
                raise TransitionInvalid(
                    "photoValidationStatus", old_value, new_value, "photoValidatedBy missing",
                )
