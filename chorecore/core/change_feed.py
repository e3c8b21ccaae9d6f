"""
ChoreCore — Change-feed consumer.

Drains the store's transactional outbox in commit order and hands task
changes to the reward ledger trigger. A change is marked processed only
after its handler returned, so a crash or a store failure leaves it to be
delivered again; the trigger's idempotency guard makes redelivery safe.
"""

from __future__ import annotations

import asyncio
import logging
from typing import TYPE_CHECKING

from chorecore.ports.store_port import DocumentNotFound, StoreUnavailable, TransactionConflict

if TYPE_CHECKING:
    from chorecore.core.reward_ledger import AwardResult, RewardLedgerTrigger
    from chorecore.ports.notification_port import NotificationPort
    from chorecore.ports.store_port import DocumentStorePort

logger = logging.getLogger(__name__)


class ChangeFeedConsumer:
    """Polls pending changes and applies awards."""

    def __init__(
        self,
        store: DocumentStorePort,
        trigger: RewardLedgerTrigger,
        notifier: NotificationPort | None = None,
        batch_size: int | None = None,
        poll_seconds: float | None = None,
    ) -> None:
        from chorecore.config import settings

        self._store = store
        self._trigger = trigger
        self._notifier = notifier
        self._batch_size = batch_size or settings.CHANGE_FEED_BATCH_SIZE
        self._poll_seconds = (
            poll_seconds if poll_seconds is not None else settings.CHANGE_FEED_POLL_SECONDS
        )
        self._stopping = asyncio.Event()

    async def run_once(self) -> int:
        """Process one batch. Returns the number of changes marked processed.

        The batch stops at the first change whose handling hit a conflict
        or an unavailable store; that change and the ones after it stay
        pending. A change whose data can never be handled is logged and
        dropped so it cannot block the changes behind it.
        """
        processed = 0
        for change in self._store.pending_changes(self._batch_size):
            result = None
            if self._trigger.is_task_path(change.path):
                try:
                    result = self._trigger.handle(change.path, change.before, change.after)
                except (StoreUnavailable, TransactionConflict) as exc:
                    logger.error(
                        "Change %d on %s left pending: %s", change.seq, change.path, exc,
                    )
                    break
                except (DocumentNotFound, ValueError, TypeError) as exc:
                    # Missing family or malformed task data; retrying cannot succeed
                    logger.error("Change %d on %s dropped: %s", change.seq, change.path, exc)
            self._store.mark_processed(change.seq)
            processed += 1
            if result is not None and result.awarded:
                await self._notify(result)
        if processed:
            logger.debug("Processed %d change(s)", processed)
        return processed

    async def _notify(self, result: AwardResult) -> None:
        if self._notifier is None or not result.member_id:
            return
        try:
            await self._notifier.send_message(
                result.member_id,
                f"You earned {result.points} points for completing a task!",
            )
        except Exception as exc:
            logger.error("Failed to notify %s of award: %s", result.member_id, exc)

    async def run_forever(self) -> None:
        """Poll until ``stop()`` is called."""
        logger.info("Change-feed consumer started (poll every %.1fs)", self._poll_seconds)
        self._stopping.clear()
        while not self._stopping.is_set():
            try:
                handled = await self.run_once()
            except StoreUnavailable as exc:
                logger.error("Change feed unavailable: %s", exc)
                handled = 0
            if handled:
                continue
            try:
                await asyncio.wait_for(self._stopping.wait(), timeout=self._poll_seconds)
            except asyncio.TimeoutError:
                pass
        logger.info("Change-feed consumer stopped")

    def stop(self) -> None:
        self._stopping.set()
