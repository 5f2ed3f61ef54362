"""journeyflow: Queue-driven journey automation for CRM leads."""

from .config import JourneyflowConfig, load_config
from .contracts import (
    Journey,
    JourneyEdge,
    JourneyNode,
    JourneyRun,
    JourneyRunStep,
    JourneyStepError,
    JourneyTrigger,
    TriggerJob,
)
from .engine import JourneyEngine
from .execute import JourneyWorker, StepDispatcher
from .graph import JourneyGraph, validate_graph
from .launcher import RunLauncher
from .matching import matches
from .monitor import CompletionMonitor
from .persistence import get_repository
from .scheduler import TimeTriggerPoller
from .transports import get_transport

__version__ = "0.1.0"
__all__ = [
    "CompletionMonitor",
    "Journey",
    "JourneyEdge",
    "JourneyEngine",
    "JourneyGraph",
    "JourneyNode",
    "JourneyRun",
    "JourneyRunStep",
    "JourneyStepError",
    "JourneyTrigger",
    "JourneyWorker",
    "JourneyflowConfig",
    "RunLauncher",
    "StepDispatcher",
    "TimeTriggerPoller",
    "TriggerJob",
    "get_repository",
    "get_transport",
    "load_config",
    "matches",
    "validate_graph",
]
