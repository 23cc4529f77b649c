"""Agent package: agent definitions and the generation gateway that runs them.

The session layer only depends on the ``GenerationGateway`` protocol;
``OpenAIGateway`` is the production implementation.
"""

from .gateway import GenerateRequest, GenerateResult, GenerationGateway, OpenAIGateway
from .registry import AgentDescriptor, AgentRegistry

__all__ = [
    "AgentDescriptor",
    "AgentRegistry",
    "GenerateRequest",
    "GenerateResult",
    "GenerationGateway",
    "OpenAIGateway",
]
