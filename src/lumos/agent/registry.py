import json
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional

logger = logging.getLogger(__name__)


@dataclass
class AgentDescriptor:
    """A named LLM persona: instructions plus model defaults."""

    id: str
    name: str
    instructions: str = ""
    model: Optional[str] = None
    temperature: Optional[float] = None
    description: str = ""
    avatar: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)


class AgentRegistry:
    """Known agents, addressable by id or by name."""

    def __init__(self, agents: List[AgentDescriptor] | None = None) -> None:
        self._agents: Dict[str, AgentDescriptor] = {}
        for agent in agents or []:
            self.register(agent)

    def register(self, agent: AgentDescriptor) -> None:
        if agent.id in self._agents:
            logger.info("Replacing agent definition %s", agent.id)
        self._agents[agent.id] = agent

    def unregister(self, agent_id: str) -> bool:
        return self._agents.pop(agent_id, None) is not None

    def get(self, key: str) -> AgentDescriptor | None:
        agent = self._agents.get(key)
        if agent is not None:
            return agent
        for candidate in self._agents.values():
            if candidate.name == key:
                return candidate
        return None

    def list(self) -> List[AgentDescriptor]:
        return list(self._agents.values())

    def __contains__(self, key: object) -> bool:
        return isinstance(key, str) and self.get(key) is not None

    def __len__(self) -> int:
        return len(self._agents)

    @classmethod
    def from_file(cls, path: Path) -> "AgentRegistry":
        """Load agents from a JSON list of objects with at least ``id`` and ``name``.

        Entries that are not objects or lack an id are skipped with a warning.
        """
        with open(path, encoding="utf-8") as f:
            raw = json.load(f)
        if not isinstance(raw, list):
            raise ValueError(f"{path}: expected a JSON list of agents")

        registry = cls()
        for entry in raw:
            if not isinstance(entry, dict) or not entry.get("id"):
                logger.warning("Skipping invalid agent entry in %s: %r", path, entry)
                continue
            registry.register(
                AgentDescriptor(
                    id=str(entry["id"]),
                    name=str(entry.get("name") or entry["id"]),
                    instructions=entry.get("instructions", ""),
                    model=entry.get("model"),
                    temperature=entry.get("temperature"),
                    description=entry.get("description", ""),
                    avatar=entry.get("avatar"),
                    metadata=entry.get("metadata") or {},
                )
            )
        logger.info("Loaded %d agents from %s", len(registry), path)
        return registry
