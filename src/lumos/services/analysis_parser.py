import json
import logging
import re
from dataclasses import dataclass, field
from typing import Any, List, Optional

logger = logging.getLogger(__name__)

_JSON_OBJECT = re.compile(r"\{.*\}", re.DOTALL)

_SUMMARY = re.compile(r"摘要[:：]\s*(.+)$", re.MULTILINE)
_KEY_POINTS = re.compile(r"关键要点[:：]?\s*(.*?)(?=后续步骤|相关话题|\Z)", re.DOTALL | re.IGNORECASE)
_NEXT_STEPS = re.compile(r"后续步骤[:：]?\s*(.*?)(?=相关话题|\Z)", re.DOTALL | re.IGNORECASE)
_RELATED_TOPICS = re.compile(r"相关话题[:：]?\s*(.*?)\Z", re.DOTALL | re.IGNORECASE)
_BULLET = re.compile(r"[-•*]\s*(.+)$", re.MULTILINE)


@dataclass
class PartialAnalysis:
    """Fields recovered from model output; None / empty means "not found"."""

    summary: Optional[str] = None
    key_points: Optional[List[str]] = None
    next_steps: Optional[List[str]] = None
    related_topics: Optional[List[str]] = None
    sentiment_score: Optional[float] = None
    complexity: Optional[float] = None
    from_json: bool = False


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def parse_json_analysis(text: str) -> PartialAnalysis | None:
    """Parse the first ``{...}`` span of text. None if absent or not a JSON object."""
    match = _JSON_OBJECT.search(text)
    if not match:
        return None
    try:
        parsed = json.loads(match.group(0))
    except json.JSONDecodeError as e:
        logger.debug("Analysis output is not valid JSON: %s", e)
        return None
    if not isinstance(parsed, dict):
        return None

    result = PartialAnalysis(from_json=True)
    summary = parsed.get("summary")
    if summary:
        result.summary = str(summary)
    for key, attr in (
        ("keyPoints", "key_points"),
        ("nextSteps", "next_steps"),
        ("relatedTopics", "related_topics"),
    ):
        value = parsed.get(key, parsed.get(attr))
        if isinstance(value, list):
            setattr(result, attr, value)
    for key, attr in (("sentimentScore", "sentiment_score"), ("complexity", "complexity")):
        value = parsed.get(key, parsed.get(attr))
        if _is_number(value):
            setattr(result, attr, value)
    return result


def _bullets(section: str) -> List[str]:
    return [item.strip() for item in _BULLET.findall(section)]


def parse_heuristic_analysis(text: str) -> PartialAnalysis:
    """Pull sections out of free-form text keyed on the Chinese section headers."""
    result = PartialAnalysis()

    summary = _SUMMARY.search(text)
    if summary:
        result.summary = summary.group(1).strip()

    for pattern, attr in (
        (_KEY_POINTS, "key_points"),
        (_NEXT_STEPS, "next_steps"),
        (_RELATED_TOPICS, "related_topics"),
    ):
        section = pattern.search(text)
        if section:
            items = _bullets(section.group(1))
            if items:
                setattr(result, attr, items)
    return result


def parse_analysis_text(text: str) -> PartialAnalysis:
    """JSON first, headers-and-bullets heuristics when there is no usable JSON."""
    parsed = parse_json_analysis(text)
    if parsed is not None:
        return parsed
    return parse_heuristic_analysis(text)
