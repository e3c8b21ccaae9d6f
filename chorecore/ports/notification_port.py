"""Notification port: how core modules tell family members about awards.

The change-feed consumer depends on this protocol, never on a specific
messaging provider.
"""

from __future__ import annotations

from typing import Protocol


class NotificationPort(Protocol):
    """Delivers a short text message to a ChoreCore user."""

    async def send_message(self, user_id: str, text: str) -> None: ...
