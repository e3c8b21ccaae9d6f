"""
ChoreCore — Guarded write path.

Every end-user read or write goes through here:

    policy engine -> task state machine -> commit

Policy evaluation runs inside the same optimistic transaction as the write,
reading the documents it consults through that transaction. If a family's
membership changes between the decision and the commit, the commit
conflicts and the decision is made again on fresh data. A write that
changes a consent record's status also writes its coppa_audit_log entry in
that transaction.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any

from chorecore.core.consent import record_consent_audit
from chorecore.core.errors import ConsentRequired, PolicyDenied
from chorecore.core.policy import (
    AccessPolicyEngine,
    Decision,
    DecisionCode,
    FieldDiff,
    Operation,
    PathPattern,
    Principal,
    default_engine,
)
from chorecore.core.reward_ledger import TASK_PATTERN
from chorecore.core.storage_policy import StorageAccessPolicy
from chorecore.core.task_state import TaskStateMachine
from chorecore.data.models import family_path, user_path
from chorecore.data.store import apply_fields
from chorecore.ports.store_port import DocumentNotFound

if TYPE_CHECKING:
    from chorecore.data.store import Blob, DocumentStore, Transaction

logger = logging.getLogger(__name__)

CONSENT_PATTERN = PathPattern("parental_consent/{consentId}")


class _TransactionReader:
    """DocumentReader over an open transaction."""

    def __init__(self, txn: Transaction) -> None:
        self._txn = txn

    def get_data(self, path: str) -> dict | None:
        return self._txn.get(path)


class GuardedStore:
    """Document store front that enforces the access policy."""

    def __init__(
        self,
        store: DocumentStore,
        engine: AccessPolicyEngine | None = None,
        state_machine: TaskStateMachine | None = None,
        storage_policy: StorageAccessPolicy | None = None,
    ) -> None:
        self.store = store
        self.engine = engine or default_engine()
        self.state_machine = state_machine or TaskStateMachine()
        self.storage_policy = storage_policy or StorageAccessPolicy()

    def as_principal(self, principal: Principal) -> PrincipalSession:
        return PrincipalSession(self, principal)

    def enforce(self, principal: Principal, operation: Operation, path: str, decision: Decision) -> None:
        """Translate a non-allow decision into the matching exception."""
        if decision.allowed:
            return
        logger.warning(
            "%s denied for %s on %s: %s",
            operation.value, principal.uid, path, decision.reason,
        )
        if decision.code is DecisionCode.CONSENT_REQUIRED:
            raise ConsentRequired(principal.uid or "", decision.reason)
        raise PolicyDenied(decision)

    def check_transition(
        self, principal: Principal, path: str, diff: FieldDiff, reader: _TransactionReader,
    ) -> None:
        """Run the task state machine for writes to task documents."""
        params = TASK_PATTERN.match(path)
        if params is None or principal.is_system or diff.after is None:
            return
        if diff.before is None:
            self.state_machine.validate_create(diff.after)
            return
        family = reader.get_data(family_path(params["familyId"]))
        user = reader.get_data(user_path(principal.uid)) if principal.uid else None
        actors = self.state_machine.actors_for(principal, diff.before, family, user)
        self.state_machine.validate(actors, diff.before, diff.after)

    def audit_consent(self, txn: Transaction, path: str, diff: FieldDiff) -> None:
        """Log a consent status change in the same transaction as the write."""
        if CONSENT_PATTERN.match(path) is None or diff.after is None:
            return
        status = diff.after.get("status")
        if diff.before is not None and diff.before.get("status") == status:
            return
        child_id = (diff.after.get("childData") or {}).get("userId")
        record_consent_audit(txn, diff.after.get("parentId"), child_id, status)


class PrincipalSession:
    """Store operations performed as one principal."""

    def __init__(self, guarded: GuardedStore, principal: Principal) -> None:
        self._guarded = guarded
        self.principal = principal

    def get(self, path: str) -> dict | None:
        def _read(txn: Transaction) -> dict | None:
            reader = _TransactionReader(txn)
            existing = txn.get(path)
            decision = self._guarded.engine.evaluate(
                self.principal, Operation.GET, path, FieldDiff.for_read(existing), reader,
            )
            self._guarded.enforce(self.principal, Operation.GET, path, decision)
            return existing

        return self._guarded.store.run_transaction(_read)

    def set(self, path: str, data: dict[str, Any]) -> None:
        """Create or replace the document at ``path``."""

        def _write(txn: Transaction) -> None:
            existing = txn.get(path)
            operation = Operation.CREATE if existing is None else Operation.UPDATE
            diff = FieldDiff(before=existing, after=apply_fields({}, data))
            self._authorize(txn, operation, path, diff)
            txn.set(path, dict(diff.after or {}))

        self._guarded.store.run_transaction(_write)

    def update(self, path: str, fields: dict[str, Any]) -> None:
        """Apply dotted-path ``fields`` to an existing document."""

        def _write(txn: Transaction) -> None:
            existing = txn.get(path)
            if existing is None:
                # Reveal nothing about paths the principal could not read
                decision = self._guarded.engine.evaluate(
                    self.principal, Operation.GET, path, FieldDiff.for_read(None),
                    _TransactionReader(txn),
                )
                self._guarded.enforce(self.principal, Operation.UPDATE, path, decision)
                raise DocumentNotFound(f"No document at {path}")
            diff = FieldDiff.for_update(existing, fields)
            self._authorize(txn, Operation.UPDATE, path, diff)
            txn.set(path, dict(diff.after or {}))

        self._guarded.store.run_transaction(_write)

    def delete(self, path: str) -> None:
        def _write(txn: Transaction) -> None:
            existing = txn.get(path)
            self._authorize(txn, Operation.DELETE, path, FieldDiff.for_delete(existing))
            txn.delete(path)

        self._guarded.store.run_transaction(_write)

    def _authorize(self, txn: Transaction, operation: Operation, path: str, diff: FieldDiff) -> None:
        reader = _TransactionReader(txn)
        decision = self._guarded.engine.evaluate(self.principal, operation, path, diff, reader)
        self._guarded.enforce(self.principal, operation, path, decision)
        self._guarded.check_transition(self.principal, path, diff, reader)
        self._guarded.audit_consent(txn, path, diff)

    # ------------------------------------------------------------------
    # Blobs
    # ------------------------------------------------------------------

    def upload(self, path: str, data: bytes, content_type: str) -> Blob:
        store = self._guarded.store
        decision = self._guarded.storage_policy.evaluate(
            self.principal, Operation.CREATE, path, store,
            content_type=content_type, size=len(data),
        )
        self._guarded.enforce(self.principal, Operation.CREATE, path, decision)
        return store.put_blob(path, data, content_type, uploaded_by=self.principal.uid)

    def download(self, path: str) -> Blob | None:
        store = self._guarded.store
        decision = self._guarded.storage_policy.evaluate(
            self.principal, Operation.GET, path, store,
        )
        self._guarded.enforce(self.principal, Operation.GET, path, decision)
        return store.get_blob(path)

    def delete_blob(self, path: str) -> bool:
        store = self._guarded.store
        decision = self._guarded.storage_policy.evaluate(
            self.principal, Operation.DELETE, path, store,
        )
        self._guarded.enforce(self.principal, Operation.DELETE, path, decision)
        return store.delete_blob(path)
