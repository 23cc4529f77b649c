"""Process-local usage metrics: session counts, message counts and reply latency."""

import copy
import logging
import math
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Dict, List, Optional

from ..models import Message, utc_now

logger = logging.getLogger(__name__)

MAX_DETAILED_SESSIONS = 20
RECENT_ACTIVITY_WINDOW = timedelta(days=7)
CHARS_PER_TOKEN = 4


@dataclass
class SessionUsage:
    """Per-session counters. ``total_tokens`` is a length-based estimate."""

    session_id: str
    created_at: datetime
    last_accessed: datetime
    message_count: int = 0
    user_message_count: int = 0
    assistant_message_count: int = 0
    total_tokens: int = 0
    average_response_time_ms: float = 0.0
    response_times_ms: List[float] = field(default_factory=list)


@dataclass
class SessionStats:
    sessions_created: int
    total_sessions: int
    recently_active_sessions: int
    total_messages: int
    user_messages: int
    assistant_messages: int
    messages_per_session: float
    last_updated: datetime


class SessionMetrics:
    """Tracks session usage as the manager reports it.

    Detailed entries are kept for the ``max_detailed`` most recently accessed
    sessions only; the global counters cover every session.
    """

    def __init__(self, max_detailed: int = MAX_DETAILED_SESSIONS) -> None:
        self._max_detailed = max_detailed
        self._usage: Dict[str, SessionUsage] = {}
        self.sessions_created = 0
        self.total_sessions = 0
        self.total_messages = 0
        self.user_messages = 0
        self.assistant_messages = 0
        self.last_updated = utc_now()

    def _entry(self, session_id: str) -> SessionUsage:
        # dict order doubles as access order, least recent first
        usage = self._usage.pop(session_id, None)
        if usage is None:
            now = utc_now()
            usage = SessionUsage(session_id=session_id, created_at=now, last_accessed=now)
        else:
            usage.last_accessed = utc_now()
        self._usage[session_id] = usage
        return usage

    def _prune(self) -> None:
        while len(self._usage) > self._max_detailed:
            del self._usage[next(iter(self._usage))]
        self.last_updated = utc_now()

    def track_session_created(self, session_id: str) -> None:
        self.sessions_created += 1
        self.total_sessions += 1
        self._usage.pop(session_id, None)
        self._entry(session_id)
        self._prune()
        logger.debug("Tracked new session %s", session_id)

    def track_session_accessed(self, session_id: str) -> None:
        self._entry(session_id)
        self._prune()

    def track_message_added(
        self, session_id: str, message: Message, response_time_ms: float | None = None
    ) -> None:
        """Count a message. Only assistant messages record response_time_ms."""
        if session_id not in self._usage:
            self.track_session_created(session_id)
        usage = self._entry(session_id)
        usage.message_count += 1
        usage.total_tokens += math.ceil(len(message.content or "") / CHARS_PER_TOKEN)

        if message.role == "user":
            usage.user_message_count += 1
            self.user_messages += 1
        elif message.role == "assistant":
            usage.assistant_message_count += 1
            self.assistant_messages += 1
            if response_time_ms:
                usage.response_times_ms.append(response_time_ms)
                usage.average_response_time_ms = sum(usage.response_times_ms) / len(
                    usage.response_times_ms
                )

        self.total_messages += 1
        self._prune()

    def track_session_deleted(self, session_id: str) -> None:
        self._usage.pop(session_id, None)
        self.total_sessions = max(0, self.total_sessions - 1)
        self._prune()
        logger.debug("Tracked deleted session %s", session_id)

    def get_session_stats(self) -> SessionStats:
        cutoff = utc_now() - RECENT_ACTIVITY_WINDOW
        recent = sum(1 for u in self._usage.values() if u.last_accessed > cutoff)
        per_session = self.total_messages / self.total_sessions if self.total_sessions > 0 else 0.0
        return SessionStats(
            sessions_created=self.sessions_created,
            total_sessions=self.total_sessions,
            recently_active_sessions=recent,
            total_messages=self.total_messages,
            user_messages=self.user_messages,
            assistant_messages=self.assistant_messages,
            messages_per_session=round(per_session, 1),
            last_updated=self.last_updated,
        )

    def get_session_metrics(self, session_id: str) -> Optional[SessionUsage]:
        usage = self._usage.get(session_id)
        return copy.deepcopy(usage) if usage is not None else None
