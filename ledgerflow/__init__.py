"""ledgerflow: durable workflow runs and bounded reconciliation agents."""

from .agents.runner import AgentRunner
from .contracts import EngineEvent
from .dispatch import EventDispatcher
from .persistence import get_repository
from .transports import get_transport
from .worker import EventWorker
from .workflows.runner import WorkflowRunner
from .workflows.triggers import TriggerRouter

__version__ = "0.1.0"
__all__ = [
    "AgentRunner",
    "EngineEvent",
    "EventDispatcher",
    "EventWorker",
    "TriggerRouter",
    "WorkflowRunner",
    "get_repository",
    "get_transport",
]
