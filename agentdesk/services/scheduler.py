"""Interval scheduler invoking agents that declare a schedule."""
from __future__ import annotations

import asyncio
import logging
import re
from typing import Dict, Optional

from agentdesk.agents.base import Agent
from agentdesk.core.errors import ConfigurationError
from agentdesk.core.models import AgentContext, AgentState

logger = logging.getLogger(__name__)

_INTERVAL = re.compile(r"^(?:every\s+)?(\d+(?:\.\d+)?)\s*(s|sec|m|min|h|hr)?$", re.IGNORECASE)
_UNITS = {"s": 1, "sec": 1, "m": 60, "min": 60, "h": 3600, "hr": 3600}
_ALIASES = {"@minutely": 60.0, "@hourly": 3600.0, "@daily": 86400.0}


def parse_interval(expression: str) -> float:
    """Seconds between runs for ``"30s"``, ``"every 5m"``, ``"@hourly"`` and friends."""
    text = expression.strip().lower()
    if text in _ALIASES:
        return _ALIASES[text]
    match = _INTERVAL.match(text)
    if match is None:
        raise ConfigurationError(f"Unsupported schedule expression: {expression!r}")
    seconds = float(match.group(1)) * _UNITS[(match.group(2) or "s").lower()]
    if seconds <= 0:
        raise ConfigurationError(f"Schedule interval must be positive: {expression!r}")
    return seconds


class IntervalScheduler:
    """Runs each scheduled agent on its own fixed interval.

    The agent's lifecycle is untouched: a tick only submits a context, and
    ticks finding the agent not live are skipped.
    """

    def __init__(self) -> None:
        self._jobs: Dict[str, asyncio.Task[None]] = {}
        self._intervals: Dict[str, float] = {}
        self._stop_event = asyncio.Event()

    @property
    def jobs(self) -> Dict[str, float]:
        return dict(self._intervals)

    def add(self, agent: Agent, interval: Optional[float] = None) -> float:
        if interval is None:
            if not agent.config.schedule:
                raise ConfigurationError(f"Agent {agent.agent_id} declares no schedule")
            interval = parse_interval(agent.config.schedule)
        if agent.agent_id in self._jobs:
            raise ConfigurationError(f"Agent {agent.agent_id} is already scheduled")
        self._intervals[agent.agent_id] = interval
        self._jobs[agent.agent_id] = asyncio.create_task(self._tick(agent, interval))
        logger.info("Scheduled agent %s every %.1fs", agent.agent_id, interval)
        return interval

    async def remove(self, agent_id: str) -> None:
        task = self._jobs.pop(agent_id, None)
        self._intervals.pop(agent_id, None)
        if task is not None:
            task.cancel()
            await asyncio.gather(task, return_exceptions=True)

    async def stop(self) -> None:
        self._stop_event.set()
        for agent_id in list(self._jobs):
            await self.remove(agent_id)

    async def _tick(self, agent: Agent, interval: float) -> None:
        while not self._stop_event.is_set():
            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=interval)
                return
            except asyncio.TimeoutError:
                pass
            if agent.state is AgentState.TERMINATED:
                logger.info("Scheduled agent %s terminated, dropping its job", agent.agent_id)
                self._jobs.pop(agent.agent_id, None)
                self._intervals.pop(agent.agent_id, None)
                return
            if agent.state not in (AgentState.READY, AgentState.RUNNING):
                continue
            result = await agent.submit(AgentContext(data={"trigger": "schedule"}, caller_id="scheduler"))
            if not result.success:
                logger.warning("Scheduled run of %s failed: %s", agent.agent_id, result.error.message)
