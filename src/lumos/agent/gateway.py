import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Dict, List, Optional, Protocol

import openai
from openai import AsyncOpenAI

from ..errors import GatewayError, GatewayUnavailableError
from ..settings import get_settings
from .registry import AgentDescriptor, AgentRegistry

logger = logging.getLogger(__name__)

_CONNECTION_ERRORS = (openai.APIConnectionError, openai.APITimeoutError)


def _gateway_error(e: openai.APIError) -> GatewayError:
    if isinstance(e, _CONNECTION_ERRORS):
        return GatewayUnavailableError(str(e))
    return GatewayError(str(e))


@dataclass
class GenerateRequest:
    """Chat-style request: ``messages`` are ``{"role", "content"}`` dicts."""

    messages: List[Dict[str, str]]
    options: Dict[str, Any] = field(default_factory=dict)


@dataclass
class GenerateResult:
    text: str
    metadata: Dict[str, Any] = field(default_factory=dict)


class GenerationGateway(Protocol):
    """What the session layer needs from an LLM backend."""

    async def is_running(self) -> bool: ...

    async def get_agent(self, name: str) -> AgentDescriptor | None: ...

    async def generate(self, agent_id: str, request: GenerateRequest) -> GenerateResult: ...

    def stream_generate(
        self,
        agent_id: str,
        request: GenerateRequest,
        cancel_event: asyncio.Event | None = None,
    ) -> AsyncIterator[str]: ...


class OpenAIGateway:
    """Runs registered agents against an OpenAI-compatible chat completions API."""

    def __init__(
        self,
        registry: AgentRegistry,
        client: AsyncOpenAI | None = None,
    ) -> None:
        settings = get_settings()
        self._registry = registry
        self._client = client or AsyncOpenAI(
            api_key=settings.openai_api_key or "not-needed",
            base_url=settings.openai_base_url,
            timeout=settings.request_timeout_seconds,
        )

    @property
    def registry(self) -> AgentRegistry:
        return self._registry

    async def is_running(self) -> bool:
        """Return True if the backend answers a model listing."""
        try:
            await self._client.models.list()
            return True
        except openai.APIError as e:
            logger.warning("Generation backend not reachable: %s", e)
            return False

    async def get_agent(self, name: str) -> AgentDescriptor | None:
        return self._registry.get(name)

    def _build_call(self, agent_id: str, request: GenerateRequest) -> Dict[str, Any]:
        if not request.messages:
            raise ValueError("messages must not be empty")
        settings = get_settings()
        agent = self._registry.get(agent_id)
        if agent is None:
            logger.debug("Agent %s is not registered; using default model settings", agent_id)

        messages: List[Dict[str, str]] = []
        if agent is not None and agent.instructions:
            messages.append({"role": "system", "content": agent.instructions})
        messages.extend(
            {"role": m["role"], "content": m["content"]} for m in request.messages
        )

        temperature: Optional[float] = request.options.get("temperature")
        if temperature is None and agent is not None:
            temperature = agent.temperature
        if temperature is None:
            temperature = settings.temperature

        call: Dict[str, Any] = {
            "model": request.options.get("model")
            or (agent.model if agent is not None else None)
            or settings.model,
            "messages": messages,
            "temperature": temperature,
        }
        if request.options.get("max_tokens"):
            call["max_tokens"] = request.options["max_tokens"]
        return call

    async def generate(self, agent_id: str, request: GenerateRequest) -> GenerateResult:
        call = self._build_call(agent_id, request)
        logger.info("generate agent=%s model=%s", agent_id, call["model"])
        try:
            response = await self._client.chat.completions.create(**call)
        except openai.APIError as e:
            raise _gateway_error(e) from e

        text = ""
        if response.choices:
            text = response.choices[0].message.content or ""
        usage = getattr(response, "usage", None)
        metadata: Dict[str, Any] = {"model": getattr(response, "model", call["model"])}
        if usage is not None:
            metadata["total_tokens"] = getattr(usage, "total_tokens", None)
        return GenerateResult(text=text, metadata=metadata)

    async def stream_generate(
        self,
        agent_id: str,
        request: GenerateRequest,
        cancel_event: asyncio.Event | None = None,
    ) -> AsyncIterator[str]:
        """Yield text deltas; stops early once cancel_event is set.

        The underlying HTTP stream is closed however the loop ends.
        """
        call = self._build_call(agent_id, request)
        logger.info("stream_generate agent=%s model=%s", agent_id, call["model"])
        try:
            stream = await self._client.chat.completions.create(stream=True, **call)
        except openai.APIError as e:
            raise _gateway_error(e) from e

        try:
            async for chunk in stream:
                if cancel_event is not None and cancel_event.is_set():
                    logger.info("stream_generate agent=%s cancelled", agent_id)
                    break
                if chunk.choices and len(chunk.choices) > 0:
                    delta = chunk.choices[0].delta
                    if delta.content:
                        yield delta.content
        except openai.APIError as e:
            logger.warning("stream_generate agent=%s failed mid-stream: %s", agent_id, e)
            raise _gateway_error(e) from e
        finally:
            await stream.close()
