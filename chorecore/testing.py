"""
ChoreCore — Rules emulator harness.

Lets tests act as a given principal against a real store and check that
the access rules accept or refuse each operation:

    emulator = RulesEmulator(DocumentStore(db_path=tmp))
    emulator.seed({"families/f1": {...}})
    alice = emulator.authenticated_context("alice")
    assert_succeeds(alice.get, "families/f1")
    assert_fails(emulator.unauthenticated_context().get, "families/f1")

``trigger_pending()`` drains the change feed through the reward ledger
trigger synchronously, standing in for the background consumer.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any, Callable, Mapping

from chorecore.core.errors import AccessError, TransitionInvalid
from chorecore.core.guarded_store import GuardedStore, PrincipalSession
from chorecore.core.policy import Principal
from chorecore.core.reward_ledger import AwardResult, RewardLedgerTrigger

if TYPE_CHECKING:
    from chorecore.core.policy import AccessPolicyEngine
    from chorecore.core.storage_policy import StorageAccessPolicy
    from chorecore.data.store import DocumentStore

logger = logging.getLogger(__name__)

# What a refused operation raises
REFUSALS = (AccessError, TransitionInvalid)


class RulesEmulator:
    """A guarded store plus principal contexts for rule tests."""

    def __init__(
        self,
        store: DocumentStore,
        engine: AccessPolicyEngine | None = None,
        storage_policy: StorageAccessPolicy | None = None,
        trigger: RewardLedgerTrigger | None = None,
    ) -> None:
        self.store = store
        self.guarded = GuardedStore(store, engine=engine, storage_policy=storage_policy)
        self.trigger = trigger or RewardLedgerTrigger(store)

    def authenticated_context(self, uid: str) -> PrincipalSession:
        return self.guarded.as_principal(Principal.user(uid))

    def unauthenticated_context(self) -> PrincipalSession:
        return self.guarded.as_principal(Principal.anonymous())

    def with_rules_disabled(self) -> PrincipalSession:
        """A session that bypasses the rules, for seeding and inspection."""
        return self.guarded.as_principal(Principal.system())

    def seed(self, documents: Mapping[str, dict]) -> None:
        admin = self.with_rules_disabled()
        for path, data in documents.items():
            admin.set(path, data)
        # Seeding is setup, not activity the ledger should react to
        self.discard_pending()

    def discard_pending(self) -> int:
        count = 0
        while True:
            batch = self.store.pending_changes()
            if not batch:
                return count
            for change in batch:
                self.store.mark_processed(change.seq)
                count += 1

    def trigger_pending(self) -> list[AwardResult]:
        """Run every pending task change through the reward ledger trigger."""
        results = []
        while True:
            batch = self.store.pending_changes()
            if not batch:
                break
            for change in batch:
                if self.trigger.is_task_path(change.path):
                    results.append(self.trigger.handle(change.path, change.before, change.after))
                self.store.mark_processed(change.seq)
        logger.debug("Emulator processed %d task change(s)", len(results))
        return results


def assert_succeeds(fn: Callable[..., Any], *args: Any, **kwargs: Any) -> Any:
    """Call ``fn`` and fail if the rules refused it. Returns its result."""
    try:
        return fn(*args, **kwargs)
    except REFUSALS as exc:
        raise AssertionError(f"Expected request to succeed, but it was refused: {exc}") from exc


def assert_fails(fn: Callable[..., Any], *args: Any, **kwargs: Any) -> Exception:
    """Call ``fn`` and fail unless the rules refused it. Returns the refusal."""
    try:
        fn(*args, **kwargs)
    except REFUSALS as exc:
        return exc
    raise AssertionError("Expected request to be refused, but it succeeded")
