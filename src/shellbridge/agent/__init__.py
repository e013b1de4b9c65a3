from shellbridge.agent.loop import AgentLoop, AgentPhase, AgentResult
from shellbridge.agent.provider import CompletionProvider, OpenAICompletionProvider

__all__ = [
    "AgentLoop",
    "AgentPhase",
    "AgentResult",
    "CompletionProvider",
    "OpenAICompletionProvider",
]
