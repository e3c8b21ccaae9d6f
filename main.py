"""
ChoreCore — Entry Point.

Single entry point: `python main.py` runs the change-feed consumer that
applies reward ledger awards, with optional Telegram award notifications.
"""

import asyncio
import logging

from chorecore.config import settings

logging.basicConfig(
    level=getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO),
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
)

from chorecore.core.change_feed import ChangeFeedConsumer
from chorecore.core.reward_ledger import RewardLedgerTrigger
from chorecore.data.store import DocumentStore

logger = logging.getLogger(__name__)


def build_consumer() -> ChangeFeedConsumer:
    store = DocumentStore()
    notifier = None
    if settings.TELEGRAM_BOT_TOKEN:
        from telegram import Bot

        from chorecore.adapters.telegram_notifier import TelegramNotifier

        notifier = TelegramNotifier(Bot(settings.TELEGRAM_BOT_TOKEN))
    else:
        logger.info("TELEGRAM_BOT_TOKEN not set; award notifications disabled")
    return ChangeFeedConsumer(store, RewardLedgerTrigger(store), notifier=notifier)


def main() -> None:
    consumer = build_consumer()
    try:
        asyncio.run(consumer.run_forever())
    except KeyboardInterrupt:
        logger.info("Interrupted; shutting down")


if __name__ == "__main__":
    main()
