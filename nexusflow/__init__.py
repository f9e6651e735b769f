"""nexusflow: asynchronous, multi-tenant workflow execution."""

from .access import Caller, Role
from .config import NexusflowConfig, load_config
from .engine import EngineResult, WorkflowEngine
from .graph import WorkflowGraph
from .persistence import ExecutionStatus, get_store
from .queue import get_queue_backend
from .queue.manager import QueueManager
from .service import WorkflowService
from .status import StatusPublisher
from .tools import ToolRegistry
from .worker import Worker

__version__ = "0.1.0"
__all__ = [
    "Caller",
    "EngineResult",
    "ExecutionStatus",
    "NexusflowConfig",
    "QueueManager",
    "Role",
    "StatusPublisher",
    "ToolRegistry",
    "Worker",
    "WorkflowEngine",
    "WorkflowGraph",
    "WorkflowService",
    "get_queue_backend",
    "get_store",
    "load_config",
]
