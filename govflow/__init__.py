"""Govflow: SSE-driven execution tracking for data governance workflows."""

from .config import GovflowConfig, load_config
from .contracts import ExecutionStatus, StepStatus, TaskId, parse_message
from .models import StepDefinition, WorkflowExecution, WorkflowStep
from .persistence import get_repository
from .reducer import ExecutionReducer
from .store import ExecutionStore
from .subscriptions import Subscription, SubscriptionRegistry, WorkflowEvent
from .tracker import StartWorkflowOptions, WorkflowTracker
from .transports import ConnectionState, get_event_source

__version__ = "0.1.0"
__all__ = [
    "ConnectionState",
    "ExecutionReducer",
    "ExecutionStatus",
    "ExecutionStore",
    "GovflowConfig",
    "StartWorkflowOptions",
    "StepDefinition",
    "StepStatus",
    "Subscription",
    "SubscriptionRegistry",
    "TaskId",
    "WorkflowEvent",
    "WorkflowExecution",
    "WorkflowStep",
    "WorkflowTracker",
    "get_event_source",
    "get_repository",
    "load_config",
    "parse_message",
]
