"""Core exceptions for threat assessment and response."""

from uuid import UUID

from warden.utils.exceptions import WardenError


class AnalyzerUnavailableError(WardenError):
    """Raised when an analyzer cannot produce a signal.

    Never escapes the aggregator: the failure is converted into a
    low-severity ``analyzer_unavailable`` risk factor.

    Attributes:
        analyzer: Name of the analyzer that failed
        reason: Why the analyzer was unavailable (error text or "timeout")
    """

    def __init__(self, analyzer: str, reason: str):
        super().__init__(f"Analyzer {analyzer} unavailable: {reason}")
        self.analyzer = analyzer
        self.reason = reason

    def __str__(self) -> str:
        return f"AnalyzerUnavailableError: {self.args[0]}"


class ExecutorFailureError(WardenError):
    """Raised when an action executor fails to apply an action.

    Retried a bounded number of times by the orchestrator and then recorded
    as a FAILED action outcome.

    Attributes:
        action_type: The action that failed (e.g. "block_ip")
        detail: Executor-supplied failure detail
    """

    def __init__(self, action_type: str, detail: str):
        super().__init__(f"Action {action_type} failed: {detail}")
        self.action_type = action_type
        self.detail = detail

    def __str__(self) -> str:
        return f"ExecutorFailureError: {self.args[0]}"


class AuditWriteError(WardenError):
    """Raised by an audit sink when a record could not be durably stored.

    Attributes:
        case_id: Case the record belongs to
        step_id: Step component of the idempotency key
        attempt: Attempt component of the idempotency key
    """

    def __init__(self, message: str, case_id: UUID, step_id: str, attempt: int):
        super().__init__(message)
        self.case_id = case_id
        self.step_id = step_id
        self.attempt = attempt

    def __str__(self) -> str:
        return (
            f"AuditWriteError: {self.args[0]} "
            f"(case={self.case_id}, step={self.step_id}, attempt={self.attempt})"
        )


class ApprovalTimeoutError(WardenError):
    """Raised when an approval gate receives no decision in time.

    Attributes:
        case_id: Case waiting on the approval
        step_id: The gated step
        timeout_seconds: How long the gate waited
    """

    def __init__(self, case_id: UUID, step_id: str, timeout_seconds: float):
        super().__init__(
            f"No approval decision for step {step_id} within {timeout_seconds}s"
        )
        self.case_id = case_id
        self.step_id = step_id
        self.timeout_seconds = timeout_seconds

    def __str__(self) -> str:
        return f"ApprovalTimeoutError: {self.args[0]} (case={self.case_id})"


class CaseNotFoundError(WardenError):
    """Raised when a response case does not exist.

    Attributes:
        case_id: The identifier of the case that was not found
    """

    def __init__(self, case_id: UUID | str):
        super().__init__(f"Response case not found: {case_id}")
        self.case_id = case_id

    def __str__(self) -> str:
        return f"CaseNotFoundError: {self.args[0]}"


class InvalidTransitionError(WardenError):
    """Raised when a case state transition is not allowed.

    Attributes:
        case_id: The case being transitioned
        from_state: Current state value
        to_state: Requested state value
    """

    def __init__(self, case_id: UUID, from_state: str, to_state: str):
        super().__init__(f"Cannot transition case {case_id} from {from_state} to {to_state}")
        self.case_id = case_id
        self.from_state = from_state
        self.to_state = to_state

    def __str__(self) -> str:
        return f"InvalidTransitionError: {self.args[0]}"


class UnknownApprovalHandleError(WardenError):
    """Raised when a decision is submitted for a handle nobody is waiting on.

    Attributes:
        handle: The approval handle
    """

    def __init__(self, handle: str):
        super().__init__(f"No pending approval for handle: {handle}")
        self.handle = handle

    def __str__(self) -> str:
        return f"UnknownApprovalHandleError: {self.args[0]}"


class ServiceUnavailableError(WardenError):
    """Raised when events are submitted to a service that is shutting down."""

    def __init__(self, message: str = "Threat response service is not accepting events"):
        super().__init__(message)
