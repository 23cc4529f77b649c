import sys
from pathlib import Path
from typing import Any, Dict, List

import pytest

_root = Path(__file__).resolve().parents[1]
_src = _root / "src"
if _src.exists() and str(_src) not in sys.path:
    sys.path.insert(0, str(_src))

from lumos.agent.gateway import GenerateRequest, GenerateResult  # noqa: E402
from lumos.agent.registry import AgentDescriptor, AgentRegistry  # noqa: E402
from lumos.services.session_manager import SessionManager  # noqa: E402
from lumos.services.storage import InMemoryStorage  # noqa: E402


class FakeGateway:
    """In-process GenerationGateway that records calls and replays canned text."""

    def __init__(
        self,
        text: str = "",
        deltas: List[str] | None = None,
        agents: List[AgentDescriptor] | None = None,
        running: bool = True,
    ) -> None:
        self.text = text
        self.deltas = deltas or []
        self.registry = AgentRegistry(agents)
        self.running = running
        self.generate_error: Exception | None = None
        self.get_agent_error: Exception | None = None
        self.calls: List[Dict[str, Any]] = []

    async def is_running(self) -> bool:
        return self.running

    async def get_agent(self, name: str) -> AgentDescriptor | None:
        if self.get_agent_error is not None:
            raise self.get_agent_error
        return self.registry.get(name)

    async def generate(self, agent_id: str, request: GenerateRequest) -> GenerateResult:
        self.calls.append({"agent_id": agent_id, "request": request})
        if self.generate_error is not None:
            raise self.generate_error
        return GenerateResult(text=self.text)

    async def stream_generate(self, agent_id, request, cancel_event=None):
        self.calls.append({"agent_id": agent_id, "request": request, "stream": True})
        for delta in self.deltas:
            if cancel_event is not None and cancel_event.is_set():
                break
            yield delta


@pytest.fixture
def storage() -> InMemoryStorage:
    return InMemoryStorage()


@pytest.fixture
def manager(storage: InMemoryStorage) -> SessionManager:
    return SessionManager(storage)


@pytest.fixture
def gateway() -> FakeGateway:
    return FakeGateway()
