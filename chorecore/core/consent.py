"""
ChoreCore — Consent Gate.

Lifecycle of guardian consent records for children under 13:

    none -> pending -> approved | denied   (approved and denied are terminal)

Only the parent named in the record (``parentId``) may create it or move
it to a terminal state. Each transition writes a ``coppa_audit_log`` entry
in the same transaction as the record change.

``check_status`` is the read-only view consumed by the policy engine and by
product code that gates child-data operations.
"""

from __future__ import annotations

import logging
import uuid
from typing import TYPE_CHECKING

from pydantic import ValidationError

from chorecore.core.errors import ConsentRequired, PolicyDenied, TransitionInvalid
from chorecore.data.models import (
    Capability,
    ConsentStatus,
    ParentalConsent,
    Role,
    consent_path,
    user_path,
)
from chorecore.data.schemas import ConsentRecord
from chorecore.data.store import SERVER_TIMESTAMP

if TYPE_CHECKING:
    from chorecore.core.policy import Principal
    from chorecore.data.store import Transaction
    from chorecore.ports.store_port import DocumentReader, DocumentStorePort, TransactionPort

logger = logging.getLogger(__name__)

CONSENT_TRANSITIONS: dict[ConsentStatus, frozenset[ConsentStatus]] = {
    ConsentStatus.NONE: frozenset({ConsentStatus.PENDING}),
    ConsentStatus.PENDING: frozenset({ConsentStatus.APPROVED, ConsentStatus.DENIED}),
    ConsentStatus.APPROVED: frozenset(),
    ConsentStatus.DENIED: frozenset(),
}


def _parse_status(value: object) -> ConsentStatus | None:
    if value is None:
        return ConsentStatus.NONE
    try:
        return ConsentStatus(value)
    except ValueError:
        return None


def consent_transition_allowed(old: object, new: object) -> bool:
    """True if a record may move from status ``old`` to ``new``.

    ``None`` for ``old`` means the record does not exist yet.
    """
    old_status = _parse_status(old)
    new_status = _parse_status(new)
    if old_status is None or new_status is None or new_status is ConsentStatus.NONE:
        return False
    return new_status in CONSENT_TRANSITIONS[old_status]


def consent_status(reader: DocumentReader, parent_id: str, child_id: str) -> ConsentStatus:
    doc = reader.get_data(consent_path(parent_id, child_id))
    if doc is None:
        return ConsentStatus.NONE
    try:
        record = ConsentRecord.model_validate(doc)
    except ValidationError:
        logger.warning("Malformed consent record %s_%s treated as pending", parent_id, child_id)
        return ConsentStatus.PENDING
    return ConsentStatus(record.status)


def is_consent_approved(reader: DocumentReader, parent_id: str, child_id: str) -> bool:
    return consent_status(reader, parent_id, child_id) is ConsentStatus.APPROVED


def record_consent_audit(
    txn: TransactionPort, parent_id: str, child_id: str, status: str,
) -> None:
    """Write the coppa_audit_log entry for a consent transition inside ``txn``."""
    txn.set(f"coppa_audit_log/{uuid.uuid4().hex}", {
        "eventType": f"consent_{status}",
        "data": {"parentId": parent_id, "childId": child_id},
        "timestamp": SERVER_TIMESTAMP,
    })


class ConsentGate:
    """Creates and transitions consent records; answers status queries."""

    def __init__(self, store: DocumentStorePort) -> None:
        self._store = store

    # ------------------------------------------------------------------
    # Read side
    # ------------------------------------------------------------------

    def check_status(self, parent_id: str, child_id: str) -> ConsentStatus:
        return consent_status(self._store, parent_id, child_id)

    def is_approved(self, parent_id: str, child_id: str) -> bool:
        return self.check_status(parent_id, child_id) is ConsentStatus.APPROVED

    def require_approved(self, parent_id: str, child_id: str) -> None:
        """Raise ConsentRequired unless consent is approved."""
        status = self.check_status(parent_id, child_id)
        if status is not ConsentStatus.APPROVED:
            raise ConsentRequired(
                child_id, f"Consent for {child_id} from {parent_id} is {status.value}",
            )

    # ------------------------------------------------------------------
    # Transitions
    # ------------------------------------------------------------------

    def request(self, principal: Principal, parent_id: str, child_id: str) -> ParentalConsent:
        """Create the pending record. Only ``parent_id`` may do this."""
        return self._transition(principal, parent_id, child_id, ConsentStatus.PENDING)

    def approve(self, principal: Principal, parent_id: str, child_id: str) -> ParentalConsent:
        return self._transition(principal, parent_id, child_id, ConsentStatus.APPROVED)

    def deny(self, principal: Principal, parent_id: str, child_id: str) -> ParentalConsent:
        return self._transition(principal, parent_id, child_id, ConsentStatus.DENIED)

    def _transition(
        self,
        principal: Principal,
        parent_id: str,
        child_id: str,
        target: ConsentStatus,
    ) -> ParentalConsent:
        from chorecore.core.policy import Decision

        if principal.is_system or principal.uid != parent_id:
            raise PolicyDenied(Decision.deny(
                f"only {parent_id} may change consent for {child_id}", "consent.guard",
            ))
        role = Role.parse((self._store.get_data(user_path(parent_id)) or {}).get("role"))
        if role is not None and not role.can(Capability.MANAGE_CONSENT):
            raise PolicyDenied(Decision.deny(
                f"{parent_id} is not allowed to manage consent", "consent.guard",
            ))

        path = consent_path(parent_id, child_id)

        def _apply(txn: Transaction) -> ParentalConsent:
            current_doc = txn.get(path)
            old = None if current_doc is None else current_doc.get("status")
            if not consent_transition_allowed(old, target.value):
                raise TransitionInvalid("status", old, target.value)

            consent = ParentalConsent(parentId=parent_id, childId=child_id, status=target)
            if current_doc is None:
                txn.set(path, {**consent.to_doc(), "createdAt": SERVER_TIMESTAMP})
            else:
                txn.update(path, {"status": target.value, "decidedAt": SERVER_TIMESTAMP})
            record_consent_audit(txn, parent_id, child_id, target.value)
            return consent

        consent = self._store.run_transaction(_apply)
        logger.info(
            "Consent %s for child %s by parent %s", target.value, child_id, parent_id,
        )
        return consent
