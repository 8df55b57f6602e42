# World package - ledger, transactions, sandbox and stores
from .models import Agent, AgentStatus, AgentType, RuntimeEvent, RuntimeEventType, Transaction, TransactionState
from .ids import DeterministicIdGenerator
from .actions import (
    Action, ActionType, action_from_dict,
    UpdateConnectionState, UpdateAgentBalance, UpdateAgentStatus,
    AddConnection, TickRuntime, SetIdCounter,
    UpdateConnectionHash, RemoveConnection, UpdateConnectionAmount,
    AddRuntimeEvent, AddAgent, RemoveAgent,
    UpdateAgentCode, UpdateAgentPosition, StartRuntime, StopRuntime,
    ResetRuntime, LoadState,
)
from .ledger import Ledger
from .state_store import AgentStateStore
from .services import JobStatus, ServiceJob, ServiceJobQueue
from .executor import AgentContext, ExecutionResult, SandboxExecutor, get_executor
from .event_log import (
    EventLog, EventRecorder, LogEvent,
    export_event_log, import_event_log, load_event_log, save_event_log,
)
from .errors import (
    CanvasError, CapabilityError, TransactionValidationError, IllegalTransitionError,
    InsufficientFundsError, EntityNotFoundError, DuplicateIdError, QueueFullError,
    SchedulerActiveError, ReplayActiveError, RecorderError,
    LogImportError, MalformedLogError, UnsupportedLogVersionError,
    SnapshotImportError, MalformedSnapshotError, UnsupportedSnapshotVersionError,
)

__all__ = [
    "Agent", "AgentStatus", "AgentType", "RuntimeEvent", "RuntimeEventType",
    "Transaction", "TransactionState",
    "DeterministicIdGenerator",
    "Action", "ActionType", "action_from_dict",
    "UpdateConnectionState", "UpdateAgentBalance", "UpdateAgentStatus",
    "AddConnection", "TickRuntime", "SetIdCounter",
    "UpdateConnectionHash", "RemoveConnection", "UpdateConnectionAmount",
    "AddRuntimeEvent", "AddAgent", "RemoveAgent",
    "UpdateAgentCode", "UpdateAgentPosition", "StartRuntime", "StopRuntime",
    "ResetRuntime", "LoadState",
    "Ledger",
    "AgentStateStore",
    "JobStatus", "ServiceJob", "ServiceJobQueue",
    "AgentContext", "ExecutionResult", "SandboxExecutor", "get_executor",
    "EventLog", "EventRecorder", "LogEvent",
    "export_event_log", "import_event_log", "load_event_log", "save_event_log",
    "CanvasError", "CapabilityError", "TransactionValidationError", "IllegalTransitionError",
    "InsufficientFundsError", "EntityNotFoundError", "DuplicateIdError", "QueueFullError",
    "SchedulerActiveError", "ReplayActiveError", "RecorderError",
    "LogImportError", "MalformedLogError", "UnsupportedLogVersionError",
    "SnapshotImportError", "MalformedSnapshotError", "UnsupportedSnapshotVersionError",
]
