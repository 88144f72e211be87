"""Notification sinks and the escalator that fans alerts out to them."""
from __future__ import annotations

import logging
from enum import Enum
from typing import Any, Dict, Iterable, List, Optional, Protocol

import httpx

from agentdesk.core.models import AgentError, ApprovalLevel, NotificationPriority

logger = logging.getLogger(__name__)


class NotificationChannel(str, Enum):
    DASHBOARD = "dashboard"
    SLACK = "slack"
    EMAIL = "email"
    SMS = "sms"


# Higher urgency reaches more immediate channels.
PRIORITY_CHANNELS: Dict[NotificationPriority, List[NotificationChannel]] = {
    NotificationPriority.LOW: [NotificationChannel.DASHBOARD],
    NotificationPriority.MEDIUM: [NotificationChannel.SLACK],
    NotificationPriority.HIGH: [NotificationChannel.SLACK, NotificationChannel.EMAIL],
    NotificationPriority.URGENT: [NotificationChannel.SMS, NotificationChannel.SLACK],
}

_ERROR_PRIORITIES: Dict[str, NotificationPriority] = {
    "ILLEGAL_STATE": NotificationPriority.URGENT,
    "CONFIGURATION_ERROR": NotificationPriority.URGENT,
    "TIMEOUT": NotificationPriority.HIGH,
    "TRANSIENT_FAILURE": NotificationPriority.HIGH,
    "EXECUTION_ERROR": NotificationPriority.HIGH,
    "WORKFLOW_TIMEOUT": NotificationPriority.HIGH,
    "VALIDATION_FAILURE": NotificationPriority.LOW,
    "AGENT_DISABLED": NotificationPriority.LOW,
    "CANCELLED": NotificationPriority.LOW,
}


def priority_for_error(error: AgentError, approval_level: ApprovalLevel = ApprovalLevel.LOW) -> NotificationPriority:
    """Compute the escalation priority of a terminal failure.

    Failures of agents that act at HIGH approval or above are bumped one
    notch, since their side effects needed a human in the first place.
    """
    priority = _ERROR_PRIORITIES.get(error.code, NotificationPriority.MEDIUM)
    if approval_level >= ApprovalLevel.HIGH and priority < NotificationPriority.URGENT:
        priority = NotificationPriority(priority + 1)
    return priority


class Notifier(Protocol):
    """External sink accepting priority-tagged messages."""

    async def send(
        self,
        priority: NotificationPriority,
        channel: NotificationChannel,
        title: str,
        message: str,
    ) -> None:
        ...


class LoggingNotifier:
    """Sink that writes alerts to the application log."""

    _LEVELS = {
        NotificationPriority.LOW: logging.INFO,
        NotificationPriority.MEDIUM: logging.INFO,
        NotificationPriority.HIGH: logging.WARNING,
        NotificationPriority.URGENT: logging.ERROR,
    }

    async def send(
        self,
        priority: NotificationPriority,
        channel: NotificationChannel,
        title: str,
        message: str,
    ) -> None:
        logger.log(self._LEVELS[priority], "[%s/%s] %s: %s", priority.name, channel.value, title, message)


class WebhookNotifier:
    """Sink posting alerts as JSON to an HTTP webhook."""

    def __init__(self, url: str, *, client: Optional[httpx.AsyncClient] = None, timeout: float = 5.0) -> None:
        self.url = url
        self._client = client
        self._timeout = timeout

    async def send(
        self,
        priority: NotificationPriority,
        channel: NotificationChannel,
        title: str,
        message: str,
    ) -> None:
        body = {
            "priority": priority.name.lower(),
            "channel": channel.value,
            "title": title,
            "message": message,
        }
        if self._client is not None:
            response = await self._client.post(self.url, json=body, timeout=self._timeout)
            response.raise_for_status()
            return
        async with httpx.AsyncClient(timeout=self._timeout) as client:
            response = await client.post(self.url, json=body)
            response.raise_for_status()


class Escalator:
    """Fans an alert out to the channels of its priority.

    Sink failures are logged and swallowed here; escalation never turns into a
    task failure.
    """

    def __init__(
        self,
        notifier: Notifier,
        *,
        channels: Optional[Dict[NotificationPriority, List[NotificationChannel]]] = None,
    ) -> None:
        self._notifier = notifier
        self._channels = channels or PRIORITY_CHANNELS

    def channels_for(self, priority: NotificationPriority) -> Iterable[NotificationChannel]:
        return self._channels.get(priority, [NotificationChannel.DASHBOARD])

    async def escalate(self, priority: NotificationPriority, title: str, message: str) -> int:
        """Send to every mapped channel; returns the number of successful sends."""
        delivered = 0
        for channel in self.channels_for(priority):
            try:
                await self._notifier.send(priority, channel, title, message)
            except Exception:  # noqa: BLE001
                logger.exception("Notification via %s failed: %s", channel.value, title)
            else:
                delivered += 1
        return delivered

    async def notify_agent_error(
        self,
        agent_id: str,
        error: AgentError,
        priority: NotificationPriority,
        context: Optional[Dict[str, Any]] = None,
    ) -> int:
        lines = [f"code={error.code}", f"message={error.message}"]
        if context:
            lines.extend(f"{key}={value}" for key, value in sorted(context.items()))
        return await self.escalate(priority, f"Agent failure: {agent_id}", "\n".join(lines))

    async def notify_approval_request(self, approval_id: str, title: str, description: str) -> int:
        return await self.escalate(
            NotificationPriority.MEDIUM,
            f"Approval requested: {title}",
            f"{description}\napproval_id={approval_id}",
        )
