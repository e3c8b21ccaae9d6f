"""
ChoreCore — Composable access predicates.

A predicate is a callable ``(RequestContext) -> bool``. Predicates combine
with ``AllOf`` / ``AnyOf`` / ``Not`` (or ``&``, ``|``, ``~``) and field-diff
checks such as ``FieldWhitelist``. Leaf predicates read whatever documents
they need through the context's read-only ``reader`` and must never write.

A leaf that cannot find the document it needs answers False, so a missing
family or user always fails closed.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Callable, Iterable

from pydantic import BaseModel, ValidationError

from chorecore.data.models import (
    ConsentStatus,
    Role,
    TaskStatus,
    consent_key,
    family_path,
    user_path,
    valid_reward_points,
)

if TYPE_CHECKING:
    from chorecore.core.policy import RequestContext


class Predicate:
    """Base class for composable predicates."""

    name: str = "predicate"

    def __call__(self, ctx: RequestContext) -> bool:
        raise NotImplementedError

    def __and__(self, other: Predicate) -> Predicate:
        return AllOf(self, other)

    def __or__(self, other: Predicate) -> Predicate:
        return AnyOf(self, other)

    def __invert__(self) -> Predicate:
        return Not(self)

    def __repr__(self) -> str:
        return self.name


class AllOf(Predicate):
    def __init__(self, *predicates: Predicate) -> None:
        self.predicates = predicates
        self.name = "(" + " & ".join(p.name for p in predicates) + ")"

    def __call__(self, ctx: RequestContext) -> bool:
        return all(p(ctx) for p in self.predicates)


class AnyOf(Predicate):
    def __init__(self, *predicates: Predicate) -> None:
        self.predicates = predicates
        self.name = "(" + " | ".join(p.name for p in predicates) + ")"

    def __call__(self, ctx: RequestContext) -> bool:
        return any(p(ctx) for p in self.predicates)


class Not(Predicate):
    def __init__(self, predicate: Predicate) -> None:
        self.predicate = predicate
        self.name = f"~{predicate.name}"

    def __call__(self, ctx: RequestContext) -> bool:
        return not self.predicate(ctx)


class FieldWhitelist(Predicate):
    """Every key the write affects is in ``fields``."""

    def __init__(self, fields: Iterable[str]) -> None:
        self.fields = frozenset(fields)
        self.name = f"only({','.join(sorted(self.fields))})"

    def __call__(self, ctx: RequestContext) -> bool:
        return ctx.diff.affected_keys <= self.fields


class FieldsUnchanged(Predicate):
    """The write affects none of ``fields``."""

    def __init__(self, fields: Iterable[str]) -> None:
        self.fields = frozenset(fields)
        self.name = f"unchanged({','.join(sorted(self.fields))})"

    def __call__(self, ctx: RequestContext) -> bool:
        return ctx.diff.affected_keys.isdisjoint(self.fields)


class FieldsTouched(Predicate):
    """The write affects at least one of ``fields``."""

    def __init__(self, fields: Iterable[str]) -> None:
        self.fields = frozenset(fields)
        self.name = f"touches({','.join(sorted(self.fields))})"

    def __call__(self, ctx: RequestContext) -> bool:
        return not ctx.diff.affected_keys.isdisjoint(self.fields)


class FieldsAbsent(Predicate):
    """The incoming document carries none of ``fields``."""

    def __init__(self, fields: Iterable[str]) -> None:
        self.fields = frozenset(fields)
        self.name = f"absent({','.join(sorted(self.fields))})"

    def __call__(self, ctx: RequestContext) -> bool:
        incoming = ctx.incoming or {}
        return all(incoming.get(f) is None for f in self.fields)


class MatchesSchema(Predicate):
    """The incoming document validates against a pydantic model."""

    def __init__(self, model: type[BaseModel]) -> None:
        self.model = model
        self.name = f"schema({model.__name__})"

    def __call__(self, ctx: RequestContext) -> bool:
        if ctx.incoming is None:
            return False
        try:
            self.model.model_validate(ctx.incoming)
        except ValidationError:
            return False
        return True


class When(Predicate):
    """Leaf predicate wrapping a plain function."""

    def __init__(self, fn: Callable[[RequestContext], bool], name: str) -> None:
        self.fn = fn
        self.name = name

    def __call__(self, ctx: RequestContext) -> bool:
        return bool(self.fn(ctx))


def predicate(fn: Callable[[RequestContext], bool]) -> Predicate:
    """Decorator turning ``fn(ctx) -> bool`` into a named leaf predicate."""
    return When(fn, fn.__name__)


# ---------------------------------------------------------------------------
# Lookups
# ---------------------------------------------------------------------------


def _family(ctx: RequestContext) -> dict | None:
    family_id = ctx.params.get("familyId")
    if not family_id:
        return None
    if ctx.path == family_path(family_id):
        # Rules on the family document itself judge the stored version
        return ctx.existing
    return ctx.reader.get_data(family_path(family_id))


def _principal_user(ctx: RequestContext) -> dict | None:
    uid = ctx.principal.uid
    if uid is None:
        return None
    return ctx.reader.get_data(user_path(uid))


# ---------------------------------------------------------------------------
# Identity and membership
# ---------------------------------------------------------------------------


@predicate
def is_system(ctx: RequestContext) -> bool:
    return ctx.principal.is_system


@predicate
def is_family_member(ctx: RequestContext) -> bool:
    family = _family(ctx)
    uid = ctx.principal.uid
    return family is not None and uid is not None and uid in (family.get("memberIds") or [])


@predicate
def is_family_parent(ctx: RequestContext) -> bool:
    family = _family(ctx)
    uid = ctx.principal.uid
    if family is None or uid is None:
        return False
    if uid not in (family.get("parentIds") or []):
        return False
    # A user document that says otherwise wins over a stale parentIds entry
    user = _principal_user(ctx)
    if user is not None and "role" in user:
        role = Role.parse(user.get("role"))
        return role is Role.PARENT
    return True


def is_self(param: str) -> Predicate:
    """The path parameter ``param`` names the principal."""

    def _check(ctx: RequestContext) -> bool:
        uid = ctx.principal.uid
        return uid is not None and ctx.params.get(param) == uid

    return When(_check, f"is_self({param})")


def incoming_is_self(field: str) -> Predicate:
    """The incoming document's ``field`` equals the principal's uid."""

    def _check(ctx: RequestContext) -> bool:
        uid = ctx.principal.uid
        return uid is not None and (ctx.incoming or {}).get(field) == uid

    return When(_check, f"incoming_is_self({field})")


def sets_self_if_touched(field: str) -> Predicate:
    """If the write changes ``field``, its new value is the principal's uid."""

    def _check(ctx: RequestContext) -> bool:
        if field not in ctx.diff.affected_keys:
            return True
        uid = ctx.principal.uid
        return uid is not None and (ctx.incoming or {}).get(field) == uid

    return When(_check, f"sets_self_if_touched({field})")


@predicate
def shares_family_with_user(ctx: RequestContext) -> bool:
    """Principal and the user document at ``users/{userId}`` are in one family."""
    target = ctx.existing
    me = _principal_user(ctx)
    if target is None or me is None:
        return False
    family_id = target.get("familyId")
    if not family_id or family_id != me.get("familyId"):
        return False
    family = ctx.reader.get_data(family_path(family_id))
    members = (family or {}).get("memberIds") or []
    return ctx.principal.uid in members


@predicate
def is_under_13(ctx: RequestContext) -> bool:
    uid = ctx.principal.uid
    if uid is None:
        return False
    stored = _principal_user(ctx) or {}
    if stored.get("isUnder13"):
        return True
    # Creating one's own profile: judge the submitted flag as well
    if ctx.path == user_path(uid):
        return bool((ctx.incoming or {}).get("isUnder13"))
    return False


# ---------------------------------------------------------------------------
# Family
# ---------------------------------------------------------------------------


@predicate
def creates_own_family(ctx: RequestContext) -> bool:
    incoming = ctx.incoming or {}
    uid = ctx.principal.uid
    return (
        uid is not None
        and incoming.get("createdBy") == uid
        and uid in (incoming.get("parentIds") or [])
        and uid in (incoming.get("memberIds") or [])
    )


@predicate
def counters_start_at_zero(ctx: RequestContext) -> bool:
    counters = (ctx.incoming or {}).get("counters")
    if counters is None:
        return True
    return isinstance(counters, dict) and all(v == 0 for v in counters.values())


# ---------------------------------------------------------------------------
# Tasks
# ---------------------------------------------------------------------------


@predicate
def is_task_assignee(ctx: RequestContext) -> bool:
    uid = ctx.principal.uid
    return uid is not None and (ctx.existing or {}).get("assignedTo") == uid


@predicate
def is_task_creator(ctx: RequestContext) -> bool:
    uid = ctx.principal.uid
    return uid is not None and (ctx.existing or {}).get("assignedBy") == uid


@predicate
def assignee_is_member(ctx: RequestContext) -> bool:
    family = _family(ctx)
    assignee = (ctx.incoming or {}).get("assignedTo")
    return family is not None and assignee in (family.get("memberIds") or [])


@predicate
def reward_points_valid_if_touched(ctx: RequestContext) -> bool:
    """A write that sets ``rewardPoints`` sets a non-negative int (or clears it)."""
    if "rewardPoints" not in ctx.diff.affected_keys:
        return True
    value = (ctx.incoming or {}).get("rewardPoints")
    return value is None or valid_reward_points(value)


@predicate
def reassigns_within_family(ctx: RequestContext) -> bool:
    """A changed ``assignedTo`` names a family member, and only while the
    task is still open."""
    if "assignedTo" not in ctx.diff.affected_keys:
        return True
    status = (ctx.existing or {}).get("status", TaskStatus.CREATED.value)
    if TaskStatus(status).is_terminal:
        return False
    return assignee_is_member(ctx)


@predicate
def assigned_to_self(ctx: RequestContext) -> bool:
    uid = ctx.principal.uid
    return uid is not None and (ctx.incoming or {}).get("assignedTo") == uid


@predicate
def children_may_create_tasks(ctx: RequestContext) -> bool:
    family = _family(ctx) or {}
    return bool(family.get("allowChildTaskCreation", False))


@predicate
def points_already_awarded(ctx: RequestContext) -> bool:
    return (ctx.existing or {}).get("pointsAwarded") is not None


# ---------------------------------------------------------------------------
# Parental consent
# ---------------------------------------------------------------------------


@predicate
def is_consent_parent(ctx: RequestContext) -> bool:
    uid = ctx.principal.uid
    return uid is not None and (ctx.existing or {}).get("parentId") == uid


@predicate
def is_consent_child(ctx: RequestContext) -> bool:
    uid = ctx.principal.uid
    child = ((ctx.existing or {}).get("childData") or {}).get("userId")
    return uid is not None and child == uid


@predicate
def consent_key_matches(ctx: RequestContext) -> bool:
    """The document id is ``{parentId}_{childId}`` of the incoming record."""
    incoming = ctx.incoming or {}
    child = (incoming.get("childData") or {}).get("userId")
    parent = incoming.get("parentId")
    if not parent or not child:
        return False
    return ctx.params.get("consentId") == consent_key(parent, child)


@predicate
def consent_starts_pending(ctx: RequestContext) -> bool:
    return (ctx.incoming or {}).get("status") == ConsentStatus.PENDING.value


@predicate
def consent_transition_valid(ctx: RequestContext) -> bool:
    from chorecore.core.consent import consent_transition_allowed

    old = (ctx.existing or {}).get("status")
    new = (ctx.incoming or {}).get("status")
    if old == new:
        return True
    return consent_transition_allowed(old, new)


@predicate
def has_guardian_consent(ctx: RequestContext) -> bool:
    """Some parent of the principal's family approved consent for them."""
    from chorecore.core.consent import is_consent_approved

    uid = ctx.principal.uid
    me = _principal_user(ctx)
    if uid is None or me is None or not me.get("familyId"):
        return False
    family = ctx.reader.get_data(family_path(me["familyId"])) or {}
    return any(
        is_consent_approved(ctx.reader, parent_id, uid)
        for parent_id in family.get("parentIds") or []
    )
