"""Agent invoker implementations."""

from ralph_hybrid.orchestrator.backend.base import AgentBackend, InvokeRequest, InvokeResult
from ralph_hybrid.orchestrator.backend.cli_backend import BackendRunError, CliAgentBackend

__all__ = [
    "AgentBackend",
    "BackendRunError",
    "CliAgentBackend",
    "InvokeRequest",
    "InvokeResult",
]
