"""Automated response: playbooks, executors, approval gates and the orchestrator."""

from warden.response.approval import (
    ApprovalGateway,
    ApprovalRequest,
    ApprovalRequestError,
    InMemoryApprovalGateway,
    WebhookApprovalGateway,
)
from warden.response.executor import (
    ActionExecutor,
    ActionResult,
    ExecutorRegistry,
    LogOnlyExecutor,
    NoExecutorRegisteredError,
    WebhookActionExecutor,
)
from warden.response.orchestrator import (
    INTERRUPTED,
    IRREVERSIBLE,
    OrchestratorConfig,
    ResponseOrchestrator,
)
from warden.response.playbook import (
    EMPTY_PLAYBOOK,
    Playbook,
    PlaybookDocument,
    PlaybookRegistry,
)
from warden.response.replay import ReplayError, rebuild_case
from warden.response.state_machine import (
    ALLOWED_TRANSITIONS,
    can_transition,
    check_transition,
)
from warden.response.types import (
    SYSTEM_ACTOR,
    TERMINAL_STATES,
    ActionOutcome,
    ActionStep,
    ActionType,
    ApprovalDecision,
    CaseState,
    FailurePolicy,
    OnTimeout,
    PendingApproval,
    ResponseCase,
    StepResult,
    TimeoutPolicy,
    case_id_for,
)

__all__ = [
    # Types
    "ActionOutcome",
    "ActionStep",
    "ActionType",
    "ApprovalDecision",
    "CaseState",
    "FailurePolicy",
    "OnTimeout",
    "PendingApproval",
    "ResponseCase",
    "StepResult",
    "TimeoutPolicy",
    "SYSTEM_ACTOR",
    "TERMINAL_STATES",
    "case_id_for",
    # Playbooks
    "EMPTY_PLAYBOOK",
    "Playbook",
    "PlaybookDocument",
    "PlaybookRegistry",
    # Executors
    "ActionExecutor",
    "ActionResult",
    "ExecutorRegistry",
    "LogOnlyExecutor",
    "NoExecutorRegisteredError",
    "WebhookActionExecutor",
    # Approvals
    "ApprovalGateway",
    "ApprovalRequest",
    "ApprovalRequestError",
    "InMemoryApprovalGateway",
    "WebhookApprovalGateway",
    # State machine
    "ALLOWED_TRANSITIONS",
    "can_transition",
    "check_transition",
    # Orchestrator
    "INTERRUPTED",
    "IRREVERSIBLE",
    "OrchestratorConfig",
    "ResponseOrchestrator",
    # Replay
    "ReplayError",
    "rebuild_case",
]
