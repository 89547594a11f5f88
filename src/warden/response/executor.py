"""Action executors and the registry that dispatches to them.

Executors apply containment actions to the outside world (identity
provider, firewall, EDR, paging). The orchestrator only knows the
``ActionExecutor`` contract; the registry picks the executor by action type.
"""

import time
from collections.abc import Iterable, Mapping
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Protocol, runtime_checkable

import httpx

from warden.core.exceptions import ExecutorFailureError
from warden.core.logging import get_logger, log_external_call
from warden.detection.types import Event
from warden.observability.tracing import inject_trace_context
from warden.response.types import ActionType

if TYPE_CHECKING:
    from warden.response.types import ResponseCase

logger = get_logger(__name__)


@dataclass(frozen=True)
class ActionResult:
    """What an executor reports back for one call."""

    success: bool
    detail: str = ""


@runtime_checkable
class ActionExecutor(Protocol):
    """Interface all action executors must implement.

    Raising from ``execute`` or ``rollback`` counts as a failed attempt, the
    same as returning ``ActionResult(success=False)``.
    """

    async def execute(
        self,
        action_type: ActionType,
        event: Event,
        case: "ResponseCase",
        *,
        parameters: Mapping[str, Any] | None = None,
    ) -> ActionResult:
        """Apply an action for a case."""
        ...

    async def rollback(
        self,
        action_type: ActionType,
        event: Event,
        case: "ResponseCase",
        *,
        parameters: Mapping[str, Any] | None = None,
    ) -> ActionResult:
        """Apply a compensating action (``action_type`` is the rollback type)."""
        ...


class NoExecutorRegisteredError(ExecutorFailureError):
    """Raised when no executor handles an action type. Never retried."""

    def __init__(self, action_type: ActionType):
        super().__init__(action_type.value, "no executor registered")


class ExecutorRegistry:
    """Dispatches actions to executors by action type.

    Usage:
        registry = ExecutorRegistry()
        registry.register(identity_executor, [ActionType.LOCK_ACCOUNT, ActionType.UNLOCK_ACCOUNT])
        registry.set_default(LogOnlyExecutor())
    """

    def __init__(self) -> None:
        self._executors: dict[ActionType, ActionExecutor] = {}
        self._default: ActionExecutor | None = None

    def register(self, executor: ActionExecutor, action_types: Iterable[ActionType]) -> None:
        """Register an executor for action types, replacing earlier registrations."""
        for action_type in action_types:
            self._executors[action_type] = executor
            logger.debug(
                "executor_registered",
                action_type=action_type.value,
                executor=type(executor).__name__,
            )

    def set_default(self, executor: ActionExecutor | None) -> None:
        """Executor used for action types without a registration."""
        self._default = executor

    def get(self, action_type: ActionType) -> ActionExecutor | None:
        """Get the executor for an action type."""
        return self._executors.get(action_type, self._default)

    def has(self, action_type: ActionType) -> bool:
        return self.get(action_type) is not None

    def executors(self) -> list[ActionExecutor]:
        """Distinct registered executors, default last."""
        seen: list[ActionExecutor] = []
        for executor in [*self._executors.values(), self._default]:
            if executor is not None and all(executor is not s for s in seen):
                seen.append(executor)
        return seen

    async def execute(
        self,
        action_type: ActionType,
        event: Event,
        case: "ResponseCase",
        *,
        parameters: Mapping[str, Any] | None = None,
        rollback: bool = False,
    ) -> ActionResult:
        """Run one attempt of an action.

        Raises:
            NoExecutorRegisteredError: If nothing handles the action type.
            ExecutorFailureError: If the executor reports failure or raises.
        """
        executor = self.get(action_type)
        if executor is None:
            raise NoExecutorRegisteredError(action_type)

        call = executor.rollback if rollback else executor.execute
        try:
            result = await call(action_type, event, case, parameters=parameters or {})
        except ExecutorFailureError:
            raise
        except Exception as e:
            raise ExecutorFailureError(action_type.value, f"{type(e).__name__}: {e}") from e

        if not result.success:
            raise ExecutorFailureError(action_type.value, result.detail or "executor reported failure")
        return result


class LogOnlyExecutor:
    """Records the intended action in the log without side effects.

    Used as the NOTIFY default and in dry-run deployments.
    """

    async def execute(
        self,
        action_type: ActionType,
        event: Event,
        case: "ResponseCase",
        *,
        parameters: Mapping[str, Any] | None = None,
    ) -> ActionResult:
        logger.info(
            "action_logged",
            action_type=action_type.value,
            case_id=str(case.case_id),
            subject=event.subject_identity,
            source_address=event.source_address,
            parameters=dict(parameters or {}),
        )
        return ActionResult(success=True, detail="logged")

    async def rollback(
        self,
        action_type: ActionType,
        event: Event,
        case: "ResponseCase",
        *,
        parameters: Mapping[str, Any] | None = None,
    ) -> ActionResult:
        return await self.execute(action_type, event, case, parameters=parameters)


class WebhookActionExecutor:
    """Posts actions to an HTTP endpoint.

    The request body carries the action, case and event. Any 2xx response is
    success; other statuses and transport errors are failures.
    """

    def __init__(
        self,
        url: str,
        *,
        headers: Mapping[str, str] | None = None,
        timeout_seconds: float = 10.0,
        client: httpx.AsyncClient | None = None,
    ):
        self.url = url
        self._headers = dict(headers or {})
        self._timeout = timeout_seconds
        self._client = client
        self._owns_client = client is None

    async def __aenter__(self) -> "WebhookActionExecutor":
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self._timeout)
        return self

    async def __aexit__(self, *args: object) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None

    async def execute(
        self,
        action_type: ActionType,
        event: Event,
        case: "ResponseCase",
        *,
        parameters: Mapping[str, Any] | None = None,
    ) -> ActionResult:
        return await self._post(action_type, event, case, parameters, rollback=False)

    async def rollback(
        self,
        action_type: ActionType,
        event: Event,
        case: "ResponseCase",
        *,
        parameters: Mapping[str, Any] | None = None,
    ) -> ActionResult:
        return await self._post(action_type, event, case, parameters, rollback=True)

    async def _post(
        self,
        action_type: ActionType,
        event: Event,
        case: "ResponseCase",
        parameters: Mapping[str, Any] | None,
        rollback: bool,
    ) -> ActionResult:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self._timeout)
            self._owns_client = True

        body = {
            "action_type": action_type.value,
            "rollback": rollback,
            "case_id": str(case.case_id),
            "assessment_id": str(case.assessment.assessment_id),
            "threat_level": case.assessment.threat_level.value,
            "event": event.to_dict(),
            "parameters": dict(parameters or {}),
        }
        operation = "rollback" if rollback else "execute"
        start = time.perf_counter()
        try:
            response = await self._client.post(
                self.url, json=body, headers=inject_trace_context(dict(self._headers))
            )
        except httpx.HTTPError as e:
            log_external_call(
                logger, "action_webhook", operation, (time.perf_counter() - start) * 1000, False,
                action_type=action_type.value, error=str(e),
            )
            raise ExecutorFailureError(action_type.value, f"transport error: {e}") from e

        log_external_call(
            logger, "action_webhook", operation, (time.perf_counter() - start) * 1000,
            response.is_success, action_type=action_type.value, status_code=response.status_code,
        )
        if response.is_success:
            return ActionResult(success=True, detail=f"HTTP {response.status_code}")
        return ActionResult(
            success=False,
            detail=f"HTTP {response.status_code}: {response.text[:200]}",
        )
