"""Errors raised by the guarded write path.

Denials are values inside the policy engine; these exceptions exist for
callers that need a rejected write to abort their control flow.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from chorecore.core.policy import Decision


class AccessError(Exception):
    """Base for deterministic authorization failures. Never retried."""


class PolicyDenied(AccessError):
    """The access policy denied the operation."""

    def __init__(self, decision: Decision) -> None:
        super().__init__(decision.reason)
        self.decision = decision


class ConsentRequired(AccessError):
    """The operation is blocked until a guardian approves consent for the child."""

    def __init__(self, child_id: str, reason: str = "") -> None:
        super().__init__(reason or f"Guardian consent required for {child_id}")
        self.child_id = child_id


class TransitionInvalid(ValueError):
    """A task or consent state change is not in the transition table."""

    def __init__(self, field: str, old: object, new: object, reason: str = "") -> None:
        message = f"{field}: {old!r} -> {new!r} is not allowed"
        if reason:
            message = f"{message} ({reason})"
        super().__init__(message)
        self.field = field
        self.old = old
        self.new = new
