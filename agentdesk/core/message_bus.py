"""Lightweight in-memory bus carrying agent-to-agent messages."""
from __future__ import annotations

import asyncio
import logging
from typing import Dict

from .models import A2AMessage

logger = logging.getLogger(__name__)


class A2AMessageBus:
    """Async message hub with one FIFO mailbox per agent id.

    Messages addressed to one recipient keep their send order, which is what
    preserves per-child ordering of parent notifications.
    """

    def __init__(self) -> None:
        self._mailboxes: Dict[str, asyncio.Queue[A2AMessage]] = {}
        self._lock = asyncio.Lock()

    async def register(self, agent_id: str) -> asyncio.Queue[A2AMessage]:
        """Ensure a mailbox exists for the agent and return it."""
        async with self._lock:
            return self._mailboxes.setdefault(agent_id, asyncio.Queue())

    async def unregister(self, agent_id: str) -> None:
        """Remove the mailbox to stop further deliveries."""
        async with self._lock:
            self._mailboxes.pop(agent_id, None)

    def post(self, message: A2AMessage) -> bool:
        """Deliver without waiting; returns False when nobody listens."""
        queue = self._mailboxes.get(message.recipient_id) if message.recipient_id else None
        if queue is None:
            logger.debug(
                "Dropping %s message from %s: no mailbox for %s",
                message.kind,
                message.sender_id,
                message.recipient_id,
            )
            return False
        queue.put_nowait(message)
        return True
