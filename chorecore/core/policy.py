"""
ChoreCore — Access Policy Engine.

Pure allow/deny evaluation over (principal, operation, path, field diff,
store snapshot). Rules are data: a path pattern, the operations it covers,
a composable predicate and an effect. Evaluation order for the rules that
match a request:

1. any matching DENY rule whose condition holds -> denied
2. any matching REQUIRE_CONSENT rule whose condition holds -> consent required
3. any matching ALLOW rule whose condition holds -> allowed
4. otherwise denied (fail-closed)

The engine holds no mutable state and performs no writes, so one instance
can serve every request concurrently.
"""

from __future__ import annotations

import copy
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Iterable, Mapping

from chorecore.core import predicates as p
from chorecore.data.models import LEDGER_FIELDS, SENSITIVE_CONTACT_FIELDS
from chorecore.data.schemas import ConsentRecord, NewFamily, NewTask
from chorecore.data.store import apply_fields
from chorecore.ports.store_port import DocumentReader

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Request model
# ---------------------------------------------------------------------------


class Operation(Enum):
    GET = "get"
    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"

    @property
    def is_write(self) -> bool:
        return self is not Operation.GET


ALL_OPERATIONS = frozenset(Operation)
WRITE_OPERATIONS = frozenset({Operation.CREATE, Operation.UPDATE, Operation.DELETE})


@dataclass(frozen=True)
class Principal:
    """Who is asking. ``uid`` is None for unauthenticated requests."""

    uid: str | None
    is_system: bool = False

    @classmethod
    def user(cls, uid: str) -> Principal:
        return cls(uid=uid)

    @classmethod
    def anonymous(cls) -> Principal:
        return cls(uid=None)

    @classmethod
    def system(cls) -> Principal:
        return cls(uid=None, is_system=True)


SYSTEM = Principal.system()


@dataclass(frozen=True)
class FieldDiff:
    """Before/after pair of a document; ``affected_keys`` are the top-level
    keys whose values differ (added, removed or changed)."""

    before: Mapping[str, Any] | None
    after: Mapping[str, Any] | None

    @property
    def affected_keys(self) -> frozenset[str]:
        before = self.before or {}
        after = self.after or {}
        return frozenset(
            k for k in set(before) | set(after)
            if k not in before or k not in after or before[k] != after[k]
        )

    @classmethod
    def for_read(cls, existing: Mapping[str, Any] | None) -> FieldDiff:
        return cls(before=existing, after=existing)

    @classmethod
    def for_create(cls, incoming: Mapping[str, Any]) -> FieldDiff:
        return cls(before=None, after=incoming)

    @classmethod
    def for_update(
        cls, existing: Mapping[str, Any] | None, fields: Mapping[str, Any],
    ) -> FieldDiff:
        """Diff produced by applying dotted-path ``fields`` to ``existing``."""
        return cls(before=existing, after=apply_fields(dict(existing or {}), dict(fields)))

    @classmethod
    def for_delete(cls, existing: Mapping[str, Any] | None) -> FieldDiff:
        return cls(before=existing, after=None)


@dataclass(frozen=True)
class RequestContext:
    principal: Principal
    operation: Operation
    path: str
    params: Mapping[str, str]
    diff: FieldDiff
    reader: DocumentReader

    @property
    def existing(self) -> Mapping[str, Any] | None:
        return self.diff.before

    @property
    def incoming(self) -> Mapping[str, Any] | None:
        return self.diff.after


class DecisionCode(Enum):
    ALLOWED = "allowed"
    DENIED = "denied"
    CONSENT_REQUIRED = "consent_required"


@dataclass(frozen=True)
class Decision:
    code: DecisionCode
    reason: str = ""
    rule: str | None = None

    @property
    def allowed(self) -> bool:
        return self.code is DecisionCode.ALLOWED

    def __bool__(self) -> bool:
        return self.allowed

    @classmethod
    def allow(cls, rule: str) -> Decision:
        return cls(DecisionCode.ALLOWED, f"allowed by {rule}", rule)

    @classmethod
    def deny(cls, reason: str, rule: str | None = None) -> Decision:
        return cls(DecisionCode.DENIED, reason, rule)

    @classmethod
    def consent_required(cls, reason: str, rule: str | None = None) -> Decision:
        return cls(DecisionCode.CONSENT_REQUIRED, reason, rule)


# ---------------------------------------------------------------------------
# Rules
# ---------------------------------------------------------------------------


class PathPattern:
    """Slash-separated pattern. ``{name}`` captures one segment and
    ``{name=**}`` (last segment only) captures the remaining segments."""

    def __init__(self, pattern: str) -> None:
        self.pattern = pattern
        self._segments = pattern.strip("/").split("/")

    def match(self, path: str) -> dict[str, str] | None:
        parts = path.strip("/").split("/")
        params: dict[str, str] = {}
        for i, seg in enumerate(self._segments):
            if seg.startswith("{") and seg.endswith("=**}"):
                if i >= len(parts):
                    return None
                params[seg[1:-4]] = "/".join(parts[i:])
                return params
            if i >= len(parts):
                return None
            if seg.startswith("{") and seg.endswith("}"):
                if not parts[i]:
                    return None
                params[seg[1:-1]] = parts[i]
            elif seg != parts[i]:
                return None
        if len(parts) != len(self._segments):
            return None
        return params

    def __repr__(self) -> str:
        return f"PathPattern({self.pattern!r})"


class Effect(Enum):
    ALLOW = "allow"
    DENY = "deny"
    REQUIRE_CONSENT = "require_consent"


@dataclass(frozen=True)
class Rule:
    name: str
    pattern: PathPattern
    operations: frozenset[Operation]
    condition: p.Predicate
    effect: Effect = Effect.ALLOW
    description: str = field(default="", compare=False)


def rule(
    name: str,
    pattern: str,
    operations: Iterable[Operation],
    condition: p.Predicate,
    effect: Effect = Effect.ALLOW,
    description: str = "",
) -> Rule:
    return Rule(
        name=name,
        pattern=PathPattern(pattern),
        operations=frozenset(operations),
        condition=condition,
        effect=effect,
        description=description,
    )


# ---------------------------------------------------------------------------
# Engine
# ---------------------------------------------------------------------------


class AccessPolicyEngine:
    """Evaluates requests against an ordered rule set."""

    def __init__(self, rules: Iterable[Rule]) -> None:
        self._rules = tuple(rules)

    @property
    def rules(self) -> tuple[Rule, ...]:
        return self._rules

    def evaluate(
        self,
        principal: Principal,
        operation: Operation,
        path: str,
        diff: FieldDiff | None,
        snapshot: DocumentReader,
    ) -> Decision:
        """Decide whether ``principal`` may perform ``operation`` on ``path``.

        ``diff`` describes the document before and after the write; for
        reads it may be None, in which case the stored document is used.
        Denials are returned, never raised.
        """
        if diff is None:
            diff = FieldDiff.for_read(snapshot.get_data(path))
        # Predicates get private copies so nothing can leak back to the caller
        diff = FieldDiff(before=copy.deepcopy(diff.before), after=copy.deepcopy(diff.after))

        matched: list[tuple[Rule, RequestContext]] = []
        for r in self._rules:
            if operation not in r.operations:
                continue
            params = r.pattern.match(path)
            if params is None:
                continue
            ctx = RequestContext(
                principal=principal,
                operation=operation,
                path=path,
                params=params,
                diff=diff,
                reader=snapshot,
            )
            matched.append((r, ctx))

        if not matched:
            return Decision.deny(f"no rule covers {operation.value} on {path}")

        for effect in (Effect.DENY, Effect.REQUIRE_CONSENT, Effect.ALLOW):
            for r, ctx in matched:
                if r.effect is not effect or not self._holds(r, ctx):
                    continue
                logger.debug("%s %s %s: rule %s (%s)", principal.uid, operation.value, path, r.name, effect.value)
                if effect is Effect.DENY:
                    return Decision.deny(r.description or f"denied by {r.name}", r.name)
                if effect is Effect.REQUIRE_CONSENT:
                    return Decision.consent_required(
                        r.description or f"guardian consent required by {r.name}", r.name,
                    )
                return Decision.allow(r.name)

        return Decision.deny(f"no rule grants {operation.value} on {path}")

    @staticmethod
    def _holds(r: Rule, ctx: RequestContext) -> bool:
        try:
            return r.condition(ctx)
        except (KeyError, TypeError, ValueError, AttributeError) as exc:
            # A condition that cannot be evaluated never grants and always denies
            logger.debug("Rule %s raised %r on %s", r.name, exc, ctx.path)
            return r.effect is not Effect.ALLOW


# ---------------------------------------------------------------------------
# Default rule set
# ---------------------------------------------------------------------------

ASSIGNEE_TASK_FIELDS = frozenset({
    "status", "photoUrl", "photoPath", "photoUploadedAt",
    "photoValidationStatus", "completedAt", "startedAt", "updatedAt",
})

VALIDATOR_TASK_FIELDS = frozenset({
    "status", "photoValidationStatus", "photoValidatedBy",
    "validatedAt", "validationNotes", "updatedAt",
})

PROTECTED_USER_FIELDS = frozenset({"id", "role", "isUnder13"})

FAMILY_SYSTEM_FIELDS = frozenset({"counters", "createdBy"})


def build_default_rules(consent_gated_paths: Iterable[str] = ()) -> list[Rule]:
    """The family chore policy. ``consent_gated_paths`` add REQUIRE_CONSENT
    rules for under-13 writers on those path patterns."""
    rules = [
        rule("system", "{path=**}", ALL_OPERATIONS, p.is_system),

        # families/{familyId}
        rule("family.read", "families/{familyId}", {Operation.GET}, p.is_family_member),
        rule(
            "family.create", "families/{familyId}", {Operation.CREATE},
            p.AllOf(p.MatchesSchema(NewFamily), p.creates_own_family, p.counters_start_at_zero),
        ),
        rule(
            "family.update", "families/{familyId}", {Operation.UPDATE},
            p.is_family_parent & p.FieldsUnchanged(FAMILY_SYSTEM_FIELDS),
        ),

        # families/{familyId}/members/{memberId}: the member ledger
        rule(
            "member.read", "families/{familyId}/members/{memberId}", {Operation.GET},
            p.is_family_member,
        ),
        rule(
            "member.create", "families/{familyId}/members/{memberId}", {Operation.CREATE},
            p.is_family_parent,
        ),
        rule(
            "member.update", "families/{familyId}/members/{memberId}", {Operation.UPDATE},
            p.is_family_parent | (p.is_family_member & p.is_self("memberId")),
        ),
        rule(
            "member.ledger_fields", "families/{familyId}/members/{memberId}", WRITE_OPERATIONS,
            p.FieldsTouched(LEDGER_FIELDS) & ~p.is_system,
            effect=Effect.DENY,
            description="ledger fields are derived by the reward trigger and cannot be written directly",
        ),

        # families/{familyId}/tasks/{taskId}
        rule("task.read", "families/{familyId}/tasks/{taskId}", {Operation.GET}, p.is_family_member),
        rule(
            "task.create", "families/{familyId}/tasks/{taskId}", {Operation.CREATE},
            p.AllOf(
                p.is_family_member,
                p.MatchesSchema(NewTask),
                p.incoming_is_self("assignedBy"),
                p.assignee_is_member,
                p.FieldsAbsent({"pointsAwarded", "photoValidatedBy"}),
                p.is_family_parent | (p.children_may_create_tasks & p.assigned_to_self),
            ),
        ),
        rule(
            "task.update.creator", "families/{familyId}/tasks/{taskId}", {Operation.UPDATE},
            p.AllOf(
                p.is_task_creator,
                p.FieldsUnchanged({"assignedBy", "pointsAwarded", "photoValidatedBy"}),
                p.reward_points_valid_if_touched,
                p.reassigns_within_family,
            ),
        ),
        rule(
            "task.update.assignee", "families/{familyId}/tasks/{taskId}", {Operation.UPDATE},
            p.is_task_assignee & p.FieldWhitelist(ASSIGNEE_TASK_FIELDS),
        ),
        rule(
            "task.update.validator", "families/{familyId}/tasks/{taskId}", {Operation.UPDATE},
            p.AllOf(
                p.is_family_parent,
                p.FieldWhitelist(VALIDATOR_TASK_FIELDS),
                p.sets_self_if_touched("photoValidatedBy"),
            ),
        ),
        rule(
            "task.delete", "families/{familyId}/tasks/{taskId}", {Operation.DELETE},
            p.is_task_creator | p.is_family_parent,
        ),
        rule(
            "task.reward_points", "families/{familyId}/tasks/{taskId}", {Operation.UPDATE},
            p.FieldsTouched({"rewardPoints"}) & ~p.is_task_creator & ~p.is_system,
            effect=Effect.DENY,
            description="only the task creator may change rewardPoints",
        ),
        rule(
            "task.points_awarded", "families/{familyId}/tasks/{taskId}", WRITE_OPERATIONS,
            p.FieldsTouched({"pointsAwarded"}) & ~p.is_system,
            effect=Effect.DENY,
            description="pointsAwarded is set by the reward trigger only",
        ),
        rule(
            "task.points_awarded_immutable", "families/{familyId}/tasks/{taskId}",
            {Operation.UPDATE},
            p.points_already_awarded & p.FieldsTouched({"pointsAwarded"}),
            effect=Effect.DENY,
            description="pointsAwarded is immutable once set",
        ),

        # users/{userId}
        rule(
            "user.read", "users/{userId}", {Operation.GET},
            p.is_self("userId") | p.shares_family_with_user,
        ),
        rule("user.create", "users/{userId}", {Operation.CREATE}, p.is_self("userId")),
        rule(
            "user.update", "users/{userId}", {Operation.UPDATE},
            p.is_self("userId") & p.FieldsUnchanged(PROTECTED_USER_FIELDS),
        ),
        rule(
            "user.minor_contact_fields", "users/{userId}",
            {Operation.CREATE, Operation.UPDATE},
            p.is_under_13 & p.FieldsTouched(SENSITIVE_CONTACT_FIELDS) & ~p.is_system,
            effect=Effect.DENY,
            description="users under 13 cannot set contact fields",
        ),

        # parental_consent/{consentId}
        rule(
            "consent.read", "parental_consent/{consentId}", {Operation.GET},
            p.is_consent_parent | p.is_consent_child,
        ),
        rule(
            "consent.create", "parental_consent/{consentId}", {Operation.CREATE},
            p.AllOf(
                p.MatchesSchema(ConsentRecord),
                p.incoming_is_self("parentId"),
                p.consent_key_matches,
                p.consent_starts_pending,
            ),
        ),
        rule(
            "consent.update", "parental_consent/{consentId}", {Operation.UPDATE},
            p.AllOf(
                p.is_consent_parent,
                p.FieldsUnchanged({"parentId", "childData"}),
                p.MatchesSchema(ConsentRecord),
                p.consent_transition_valid,
            ),
        ),
    ]

    for pattern in consent_gated_paths:
        rules.append(rule(
            f"consent_gate:{pattern}", pattern, WRITE_OPERATIONS,
            p.is_under_13 & ~p.has_guardian_consent & ~p.is_system,
            effect=Effect.REQUIRE_CONSENT,
            description=f"writes to {pattern} by users under 13 need guardian consent",
        ))
    return rules


def default_engine(consent_gated_paths: Iterable[str] | None = None) -> AccessPolicyEngine:
    """Engine with the default rules; gated paths default to settings."""
    if consent_gated_paths is None:
        from chorecore.config import settings

        consent_gated_paths = settings.CONSENT_GATED_PATHS
    return AccessPolicyEngine(build_default_rules(consent_gated_paths))
