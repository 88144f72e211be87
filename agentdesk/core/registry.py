"""Process-scoped catalogue of live agents."""
from __future__ import annotations

import asyncio
import logging
import re
from dataclasses import dataclass, field
from datetime import datetime
from typing import TYPE_CHECKING, Dict, FrozenSet, Iterable, List, Optional, Tuple

from .errors import ConfigurationError, DuplicateIdError, IllegalStateError
from .models import AgentRole, AgentState, utcnow

if TYPE_CHECKING:
    from agentdesk.agents.base import Agent

logger = logging.getLogger(__name__)

_LIVE_STATES = {AgentState.READY, AgentState.RUNNING}
# Agents register at the end of initialize, before they turn READY.
_REGISTRABLE_STATES = _LIVE_STATES | {AgentState.INITIALIZING}


def natural_key(agent_id: str) -> Tuple[Tuple[int, object], ...]:
    """Sort key ordering embedded numbers numerically (``agent-2`` < ``agent-10``)."""
    return tuple(
        (0, int(part)) if part.isdigit() else (1, part)
        for part in re.split(r"(\d+)", agent_id)
        if part
    )


def least_loaded(agents: Iterable[Agent]) -> Optional[Agent]:
    """Pick the agent with fewest in-flight tasks, then the lowest id."""
    return min(agents, key=lambda agent: (agent.in_flight, natural_key(agent.agent_id)), default=None)


@dataclass(slots=True)
class RegistryEntry:
    """Registration record of one agent."""

    agent: Agent
    role: AgentRole
    parent_id: Optional[str] = None
    tags: FrozenSet[str] = frozenset()
    registered_at: datetime = field(default_factory=utcnow)
    execution_count: int = 0
    success_count: int = 0
    failure_count: int = 0

    @property
    def agent_id(self) -> str:
        return self.agent.agent_id

    @property
    def live(self) -> bool:
        return self.agent.state in _LIVE_STATES


class AgentRegistry:
    """Observes agent lifecycles; never drives them.

    Agents register themselves once ``initialize`` succeeded and unregister
    during ``cleanup``. Mutations are serialized by one lock and contain no
    suspension point, so lookups never see a half-applied change.
    """

    def __init__(self) -> None:
        self._entries: Dict[str, RegistryEntry] = {}
        self._defaults: Dict[str, str] = {}
        self._lock = asyncio.Lock()
        self._open = False

    @property
    def is_open(self) -> bool:
        return self._open

    async def open(self) -> None:
        async with self._lock:
            self._open = True
        logger.info("Agent registry opened")

    async def close(self) -> None:
        async with self._lock:
            if self._entries:
                logger.warning("Closing registry with %d agents still registered", len(self._entries))
            self._entries.clear()
            self._defaults.clear()
            self._open = False
        logger.info("Agent registry closed")

    async def register(
        self,
        agent: Agent,
        *,
        role: AgentRole = AgentRole.MAIN,
        parent_id: Optional[str] = None,
        tags: Iterable[str] = (),
    ) -> RegistryEntry:
        """Add a ready agent; raises ``DuplicateIdError`` on id collision."""
        async with self._lock:
            if not self._open:
                raise IllegalStateError("Agent registry is not open")
            if agent.state not in _REGISTRABLE_STATES:
                raise IllegalStateError(
                    f"Agent {agent.agent_id} cannot register in state {agent.state.name}"
                )
            if agent.agent_id in self._entries:
                raise DuplicateIdError(f"Agent id already registered: {agent.agent_id}")
            if parent_id is not None and parent_id not in self._entries:
                raise ConfigurationError(
                    f"Parent {parent_id} of {agent.agent_id} is not registered"
                )
            entry = RegistryEntry(
                agent=agent,
                role=role,
                parent_id=parent_id,
                tags=frozenset(tag.strip().lower() for tag in tags if tag.strip()),
            )
            self._entries[agent.agent_id] = entry
        logger.info(
            "Registered %s agent %s (parent=%s, tags=%s)",
            role.value,
            agent.agent_id,
            parent_id,
            sorted(entry.tags),
        )
        return entry

    async def unregister(self, agent_id: str) -> List[str]:
        """Remove an agent and, transitively, its children.

        Idempotent: unknown ids are a no-op. Returns the removed ids,
        children before parents.
        """
        async with self._lock:
            removed = self._collect_subtree(agent_id)
            for removed_id in removed:
                del self._entries[removed_id]
            if removed:
                self._defaults = {
                    category: target
                    for category, target in self._defaults.items()
                    if target not in removed
                }
        if removed:
            logger.info("Unregistered %s", ", ".join(removed))
        return removed

    def _collect_subtree(self, agent_id: str) -> List[str]:
        if agent_id not in self._entries:
            return []
        ordered: List[str] = []
        for child_id in [e.agent_id for e in self._entries.values() if e.parent_id == agent_id]:
            ordered.extend(self._collect_subtree(child_id))
        ordered.append(agent_id)
        return ordered

    def find_by_id(self, agent_id: str) -> Optional[Agent]:
        entry = self._entries.get(agent_id)
        if entry is None or not entry.live:
            return None
        return entry.agent

    def find_by_tag(self, tag: str) -> List[Agent]:
        return [entry.agent for entry in self.find(tag=tag)]

    def find(
        self,
        *,
        role: Optional[AgentRole] = None,
        tag: Optional[str] = None,
        parent_id: Optional[str] = None,
    ) -> List[RegistryEntry]:
        wanted_tag = tag.strip().lower() if tag else None
        results = []
        for entry in self._entries.values():
            if not entry.live:
                continue
            if role is not None and entry.role is not role:
                continue
            if wanted_tag is not None and wanted_tag not in entry.tags:
                continue
            if parent_id is not None and entry.parent_id != parent_id:
                continue
            results.append(entry)
        return results

    def get_entry(self, agent_id: str) -> Optional[RegistryEntry]:
        return self._entries.get(agent_id)

    def children_of(self, agent_id: str) -> List[Agent]:
        return [entry.agent for entry in self.find(parent_id=agent_id)]

    def entries(self) -> List[RegistryEntry]:
        return list(self._entries.values())

    def designate_default(self, category: str, agent_id: str) -> None:
        """Mark the agent handling a category when no tag matches."""
        if agent_id not in self._entries:
            raise ConfigurationError(f"Cannot designate unregistered agent {agent_id}")
        self._defaults[category] = agent_id

    def default_for(self, category: str) -> Optional[Agent]:
        agent_id = self._defaults.get(category)
        return self.find_by_id(agent_id) if agent_id else None

    def record_execution(self, agent_id: str, success: bool) -> None:
        entry = self._entries.get(agent_id)
        if entry is None:
            return
        entry.execution_count += 1
        if success:
            entry.success_count += 1
        else:
            entry.failure_count += 1

    def __contains__(self, agent_id: object) -> bool:
        return agent_id in self._entries

    def __len__(self) -> int:
        return len(self._entries)
