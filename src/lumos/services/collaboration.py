from typing import Dict, List

from ..models import AgentContribution, CollaborationReport, Session


def analyze_agent_collaboration(session: Session) -> CollaborationReport:
    """Score how evenly assistant messages are spread over the agents that spoke.

    The score is ``100 * (1 - variance / total_messages ** 2)`` clamped to
    [0, 100], where variance is the population variance of the per-agent
    message counts. Fewer than two active agents always scores 0.
    """
    counts: Dict[str, AgentContribution] = {}
    for msg in session.messages:
        if msg.role != "assistant" or not msg.agent_id:
            continue
        entry = counts.get(msg.agent_id)
        if entry is None:
            entry = AgentContribution(
                agent_id=msg.agent_id,
                agent_name=msg.agent_name or msg.agent_id,
                message_count=0,
            )
            counts[msg.agent_id] = entry
        elif msg.agent_name:
            entry.agent_name = msg.agent_name
        entry.message_count += 1

    # sorted() is stable: ties keep first-seen order
    contributions: List[AgentContribution] = sorted(
        counts.values(), key=lambda c: c.message_count, reverse=True
    )

    total_agents = len(session.agent_ids)
    active_agents = len(contributions)
    if active_agents <= 1:
        return CollaborationReport(
            total_agents=total_agents,
            active_agents=active_agents,
            contributions=contributions,
            collaboration_score=0,
        )

    total_messages = sum(c.message_count for c in contributions)
    ideal = total_messages / active_agents
    variance = sum((c.message_count - ideal) ** 2 for c in contributions) / active_agents
    max_variance = total_messages**2
    score = max(0.0, min(100.0, 100 * (1 - variance / max_variance)))

    return CollaborationReport(
        total_agents=total_agents,
        active_agents=active_agents,
        contributions=contributions,
        collaboration_score=score,
    )
