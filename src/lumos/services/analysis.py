import asyncio
import logging
from typing import Dict, List, Optional

from ..agent.gateway import GenerateRequest, GenerateResult, GenerationGateway
from ..errors import GatewayError, GatewayUnavailableError
from ..models import AnalysisOptions, Message, Session, SessionAnalysis
from ..settings import get_settings
from .analysis_parser import parse_analysis_text

logger = logging.getLogger(__name__)

EMPTY_SESSION_SUMMARY = "会话尚未开始"
NO_SUMMARY = "无法生成摘要"

_ROLE_LABELS = {"user": "用户", "system": "系统"}
_ASSISTANT_LABEL = "助手"


def count_agent_contribution(messages: List[Message]) -> Dict[str, int]:
    """Assistant messages per agent_id over the whole transcript."""
    contribution: Dict[str, int] = {}
    for msg in messages:
        if msg.agent_id and msg.role == "assistant":
            contribution[msg.agent_id] = contribution.get(msg.agent_id, 0) + 1
    return contribution


def build_analysis_prompt(messages: List[Message], options: AnalysisOptions) -> str:
    """Instruction + role-prefixed transcript + JSON reply format."""
    prompt = "请分析以下对话内容"
    if options.include_summary:
        prompt += "，并提供一个简短摘要"
    if options.include_key_points:
        prompt += "，列出3-5个关键要点"
    if options.include_next_steps:
        prompt += "，提出2-3个可能的后续步骤或问题"
    if options.include_related_topics:
        prompt += "，建议2-3个相关话题"
    prompt += ":\n\n"

    for msg in messages:
        if msg.role == "assistant":
            label = msg.agent_name or _ASSISTANT_LABEL
        else:
            label = _ROLE_LABELS.get(msg.role, _ROLE_LABELS["system"])
        prompt += f"{label}: {msg.content}\n"

    prompt += "\n请以JSON格式返回结果，包含以下字段：summary, keyPoints, nextSteps, relatedTopics"
    return prompt


class SessionAnalyzer:
    """Derives summaries and suggestions from a session transcript.

    Analysis is best effort: gateway failures, cancellation through
    ``cancel_event`` and unparsable output all produce a partially filled
    ``SessionAnalysis`` rather than an exception. The session passed in is
    never modified.
    """

    def __init__(
        self,
        gateway: GenerationGateway,
        analyst_agent_name: str | None = None,
        system_prompt: str | None = None,
    ) -> None:
        settings = get_settings()
        self._gateway = gateway
        self._analyst = analyst_agent_name or settings.analyst_agent_name
        self._system_prompt = system_prompt or settings.analysis_system_prompt

    async def _resolve_agent(self, session: Session) -> str:
        try:
            analyst = await self._gateway.get_agent(self._analyst)
        except Exception as e:
            logger.debug("Analyst agent lookup failed: %s", e)
            return session.default_agent_id
        if analyst:
            return self._analyst
        return session.default_agent_id

    async def _generate(
        self,
        agent_id: str,
        request: GenerateRequest,
        cancel_event: asyncio.Event | None,
    ) -> Optional[GenerateResult]:
        if cancel_event is None:
            return await self._gateway.generate(agent_id, request)

        generate_task = asyncio.ensure_future(self._gateway.generate(agent_id, request))
        cancel_task = asyncio.ensure_future(cancel_event.wait())
        try:
            done, _ = await asyncio.wait(
                {generate_task, cancel_task}, return_when=asyncio.FIRST_COMPLETED
            )
        finally:
            for task in (generate_task, cancel_task):
                if not task.done():
                    task.cancel()
        if generate_task in done:
            return generate_task.result()
        logger.info("Session analysis cancelled before the model answered")
        return None

    async def analyze_session(
        self,
        session: Session,
        options: AnalysisOptions | None = None,
        cancel_event: asyncio.Event | None = None,
    ) -> SessionAnalysis:
        opts = options or AnalysisOptions(max_messages=get_settings().analysis_max_messages)
        analysis = SessionAnalysis(
            message_count=len(session.messages),
            agent_contribution=count_agent_contribution(session.messages),
        )

        window = [m for m in session.messages if m.role != "system"][-opts.max_messages :]
        if not window:
            return analysis

        try:
            prompt = build_analysis_prompt(window, opts)
            if not await self._gateway.is_running():
                raise GatewayUnavailableError("generation gateway is not running")

            agent_id = await self._resolve_agent(session)
            logger.info(
                "Analyzing session %s with agent %s (%d messages)",
                session.id,
                agent_id,
                len(window),
            )
            result = await self._generate(
                agent_id,
                GenerateRequest(
                    messages=[
                        {"role": "system", "content": self._system_prompt},
                        {"role": "user", "content": prompt},
                    ]
                ),
                cancel_event,
            )
            if result is None or not result.text:
                return analysis

            parsed = parse_analysis_text(result.text)
            if parsed.summary:
                analysis.summary = parsed.summary
            if parsed.key_points is not None:
                analysis.key_points = parsed.key_points
            if parsed.next_steps is not None:
                analysis.next_steps = parsed.next_steps
            if parsed.related_topics is not None:
                analysis.related_topics = parsed.related_topics
            if parsed.sentiment_score is not None:
                analysis.sentiment_score = parsed.sentiment_score
            if parsed.complexity is not None:
                analysis.complexity = parsed.complexity
        except GatewayError as e:
            logger.warning("Session analysis skipped for %s: %s", session.id, e)
        except Exception:
            logger.exception("Session analysis failed for %s", session.id)
        return analysis

    async def quick_session_summary(self, session: Session) -> str:
        if not session.messages:
            return EMPTY_SESSION_SUMMARY
        options = AnalysisOptions(
            include_summary=True,
            include_key_points=False,
            include_next_steps=False,
            include_related_topics=False,
            max_messages=get_settings().quick_summary_max_messages,
        )
        result = await self.analyze_session(session, options)
        return result.summary or NO_SUMMARY
