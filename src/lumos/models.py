from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Literal, Optional

MessageRole = Literal["user", "assistant", "system"]


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class Message:
    """One conversation turn; agent_id/agent_name only on attributed assistant turns."""

    id: str
    role: MessageRole
    content: str
    created_at: datetime
    agent_id: Optional[str] = None
    agent_name: Optional[str] = None
    agent_avatar: Optional[str] = None
    images: List[str] = field(default_factory=list)
    generating: bool = False
    error: Optional[str] = None


@dataclass
class AgentContext:
    """Per-agent overrides inside one session."""

    system_prompt: Optional[str] = None
    model_settings: Optional[Dict[str, Any]] = None


@dataclass
class Session:
    """Per-session conversation state (agents, contexts, messages)."""

    id: str
    title: str
    default_agent_id: str
    agent_ids: List[str]
    created_at: datetime
    updated_at: datetime
    messages: List[Message] = field(default_factory=list)
    agent_contexts: Dict[str, AgentContext] = field(default_factory=dict)
    pinned: bool = False
    tags: List[str] = field(default_factory=list)

    def context_for(self, agent_id: str) -> AgentContext:
        """Return the context entry for agent_id, creating it on first use.

        Entries may exist for agents that are not (yet) in agent_ids.
        """
        ctx = self.agent_contexts.get(agent_id)
        if ctx is None:
            ctx = AgentContext()
            self.agent_contexts[agent_id] = ctx
        return ctx

    def find_message(self, message_id: str) -> Optional[Message]:
        for msg in self.messages:
            if msg.id == message_id:
                return msg
        return None

    def touch(self) -> None:
        self.updated_at = max(utc_now(), self.created_at)


@dataclass
class SessionSummary:
    """Lightweight listing view of a session."""

    id: str
    title: str
    default_agent_id: str
    message_count: int
    created_at: datetime
    updated_at: datetime
    last_message_preview: Optional[str] = None
    pinned: bool = False


@dataclass
class AnalysisOptions:
    include_summary: bool = True
    include_key_points: bool = True
    include_next_steps: bool = True
    include_related_topics: bool = True
    max_messages: int = 50


@dataclass
class SessionAnalysis:
    summary: str = ""
    key_points: List[str] = field(default_factory=list)
    next_steps: List[str] = field(default_factory=list)
    related_topics: List[str] = field(default_factory=list)
    message_count: int = 0
    agent_contribution: Dict[str, int] = field(default_factory=dict)
    sentiment_score: Optional[float] = None
    complexity: Optional[float] = None


@dataclass
class AgentContribution:
    agent_id: str
    agent_name: str
    message_count: int


@dataclass
class CollaborationReport:
    total_agents: int
    active_agents: int
    contributions: List[AgentContribution]
    collaboration_score: float


def _dt_to_str(value: datetime) -> str:
    return value.isoformat()


def _str_to_dt(value: Any) -> datetime:
    if isinstance(value, datetime):
        return value
    if isinstance(value, (int, float)):
        # epoch milliseconds, as written by older desktop builds
        return datetime.fromtimestamp(value / 1000, tz=timezone.utc)
    return datetime.fromisoformat(str(value))


def message_to_dict(msg: Message) -> Dict[str, Any]:
    data = asdict(msg)
    data["created_at"] = _dt_to_str(msg.created_at)
    return data


def message_from_dict(data: Dict[str, Any]) -> Message:
    return Message(
        id=str(data["id"]),
        role=data["role"],
        content=data.get("content", ""),
        created_at=_str_to_dt(data["created_at"]),
        agent_id=data.get("agent_id"),
        agent_name=data.get("agent_name"),
        agent_avatar=data.get("agent_avatar"),
        images=list(data.get("images") or []),
        generating=bool(data.get("generating", False)),
        error=data.get("error"),
    )


def session_to_dict(session: Session) -> Dict[str, Any]:
    """Serialize a Session to a JSON-serializable dict."""
    return {
        "id": session.id,
        "title": session.title,
        "default_agent_id": session.default_agent_id,
        "agent_ids": list(session.agent_ids),
        "agent_contexts": {
            agent_id: asdict(ctx) for agent_id, ctx in session.agent_contexts.items()
        },
        "messages": [message_to_dict(m) for m in session.messages],
        "created_at": _dt_to_str(session.created_at),
        "updated_at": _dt_to_str(session.updated_at),
        "pinned": session.pinned,
        "tags": list(session.tags),
    }


def session_from_dict(data: Dict[str, Any]) -> Session:
    """Build a Session from a dict (e.g. from Redis)."""
    contexts = {
        agent_id: AgentContext(
            system_prompt=(ctx or {}).get("system_prompt"),
            model_settings=(ctx or {}).get("model_settings"),
        )
        for agent_id, ctx in (data.get("agent_contexts") or {}).items()
    }
    return Session(
        id=str(data["id"]),
        title=data.get("title", ""),
        default_agent_id=data["default_agent_id"],
        agent_ids=list(data["agent_ids"]),
        created_at=_str_to_dt(data["created_at"]),
        updated_at=_str_to_dt(data["updated_at"]),
        messages=[message_from_dict(m) for m in data.get("messages", [])],
        agent_contexts=contexts,
        pinned=bool(data.get("pinned", False)),
        tags=list(data.get("tags") or []),
    )
