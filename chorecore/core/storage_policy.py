"""
ChoreCore — Storage Access Policy.

Coarse rules for task photo blobs under
``families/{familyId}/tasks/{taskId}/{fileName}``. The blob store can only
check family membership, not task assignment; the task document rules
decide whether a blob reference is accepted into the task.
"""

from __future__ import annotations

from typing import Iterable

from chorecore.core.policy import Decision, Operation, PathPattern, Principal
from chorecore.data.models import family_path
from chorecore.ports.store_port import DocumentReader

TASK_PHOTO_PATTERN = PathPattern("families/{familyId}/tasks/{taskId}/{fileName}")


class StorageAccessPolicy:
    """Decides blob reads, uploads and deletes."""

    def __init__(
        self,
        max_upload_bytes: int | None = None,
        allowed_content_types: Iterable[str] | None = None,
    ) -> None:
        from chorecore.config import settings

        self._max_upload_bytes = (
            max_upload_bytes if max_upload_bytes is not None else settings.MAX_UPLOAD_BYTES
        )
        self._allowed_types = frozenset(
            t.lower() for t in (
                allowed_content_types
                if allowed_content_types is not None
                else settings.ALLOWED_UPLOAD_CONTENT_TYPES
            )
        )

    def evaluate(
        self,
        principal: Principal,
        operation: Operation,
        path: str,
        snapshot: DocumentReader,
        content_type: str | None = None,
        size: int | None = None,
    ) -> Decision:
        params = TASK_PHOTO_PATTERN.match(path)
        if params is None:
            return Decision.deny(f"no storage rule covers {path}")
        if principal.is_system:
            return Decision.allow("storage.system")
        if principal.uid is None:
            return Decision.deny("sign-in required", "storage.auth")

        family = snapshot.get_data(family_path(params["familyId"]))
        if family is None or principal.uid not in (family.get("memberIds") or []):
            return Decision.deny(
                f"{principal.uid} is not a member of family {params['familyId']}",
                "storage.member",
            )

        if operation is Operation.GET:
            return Decision.allow("storage.read")

        if operation is Operation.DELETE:
            if principal.uid in (family.get("parentIds") or []):
                return Decision.allow("storage.delete")
            return Decision.deny("only parents may delete task photos", "storage.delete")

        if (content_type or "").lower() not in self._allowed_types:
            return Decision.deny(f"content type {content_type!r} not allowed", "storage.type")
        if size is None or size > self._max_upload_bytes:
            return Decision.deny(
                f"upload of {size} bytes exceeds {self._max_upload_bytes}", "storage.size",
            )
        return Decision.allow("storage.upload")
