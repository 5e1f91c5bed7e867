"""
Saga orchestration for multi-step money movements.

Each step pairs a forward action with an optional compensating action. When a
step fails, the steps that already completed are compensated in reverse order
and the failure is raised to the caller as SagaFailedError.
"""
import uuid
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional

import structlog

logger = structlog.get_logger(__name__)

ForwardAction = Callable[[Dict[str, Any]], Awaitable[Any]]
CompensatingAction = Callable[[Dict[str, Any], Any], Awaitable[None]]


class SagaState(Enum):
    """Saga execution states."""

    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    COMPENSATING = "compensating"
    COMPENSATED = "compensated"
    FAILED = "failed"


class StepStatus(Enum):
    """Step execution status."""

    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"
    COMPENSATED = "compensated"
    COMPENSATION_FAILED = "compensation_failed"


class SagaFailedError(Exception):
    """
    Raised when a saga step fails.

    Attributes:
        saga_name: Name of the saga
        failed_step: Step whose forward action raised
        cause: The exception raised by that step
        uncompensated: Completed steps whose compensation also failed
    """

    def __init__(
        self,
        saga_name: str,
        failed_step: str,
        cause: BaseException,
        uncompensated: List[str],
    ):
        super().__init__(f"Saga {saga_name} failed at step {failed_step}: {cause}")
        self.saga_name = saga_name
        self.failed_step = failed_step
        self.cause = cause
        self.uncompensated = uncompensated


class SagaStep:
    """A single forward action and its compensating action."""

    def __init__(
        self,
        name: str,
        forward_action: ForwardAction,
        compensating_action: Optional[CompensatingAction] = None,
    ):
        """
        Initialize saga step.

        Args:
            name: Step name
            forward_action: Async function receiving the shared context
            compensating_action: Async function receiving the context and the
                forward result
        """
        self.name = name
        self.forward_action = forward_action
        self.compensating_action = compensating_action
        self.status = StepStatus.PENDING
        self.result: Optional[Any] = None
        self.error: Optional[str] = None

    async def execute(self, context: Dict[str, Any]) -> Any:
        """Run the forward action and record its result."""
        logger.info("saga_step_executing", step=self.name)
        try:
            self.result = await self.forward_action(context)
        except Exception as e:
            self.status = StepStatus.FAILED
            self.error = str(e)
            logger.error("saga_step_failed", step=self.name, error=str(e))
            raise
        self.status = StepStatus.COMPLETED
        logger.info("saga_step_completed", step=self.name)
        return self.result

    async def compensate(self, context: Dict[str, Any]) -> None:
        """
        Run the compensating action for a completed step.

        Compensation errors are recorded on the step instead of raised so the
        remaining steps still get compensated.
        """
        if self.status != StepStatus.COMPLETED:
            return
        if self.compensating_action is None:
            logger.info("saga_step_no_compensation", step=self.name)
            return

        logger.info("saga_step_compensating", step=self.name)
        try:
            await self.compensating_action(context, self.result)
        except Exception as e:
            self.status = StepStatus.COMPENSATION_FAILED
            self.error = str(e)
            logger.error("saga_step_compensation_failed", step=self.name, error=str(e))
            return
        self.status = StepStatus.COMPENSATED
        logger.info("saga_step_compensated", step=self.name)


class Saga:
    """Ordered list of steps executed with compensation on failure."""

    def __init__(self, name: str, saga_id: Optional[str] = None):
        self.saga_id = saga_id or str(uuid.uuid4())
        self.name = name
        self.steps: List[SagaStep] = []
        self.state = SagaState.PENDING
        self.context: Dict[str, Any] = {}

    def add_step(
        self,
        name: str,
        forward_action: ForwardAction,
        compensating_action: Optional[CompensatingAction] = None,
    ) -> "Saga":
        """
        Add a step to the saga.

        Returns:
            Saga: Self for method chaining
        """
        self.steps.append(SagaStep(name, forward_action, compensating_action))
        return self

    async def execute(self) -> Dict[str, Any]:
        """
        Execute all steps in order.

        Returns:
            Dict[str, Any]: The shared context, holding each step's result
                under "<step>_result"

        Raises:
            SagaFailedError: If a step fails, after compensation has run
        """
        log = logger.bind(saga_id=self.saga_id, saga=self.name)
        log.info("saga_execution_started")
        self.state = SagaState.IN_PROGRESS
        completed: List[SagaStep] = []

        for step in self.steps:
            try:
                result = await step.execute(self.context)
            except Exception as e:
                log.error("saga_execution_failed", step=step.name, error=str(e))
                self.state = SagaState.COMPENSATING
                uncompensated = await self._compensate(completed)
                self.state = SagaState.FAILED if uncompensated else SagaState.COMPENSATED
                raise SagaFailedError(self.name, step.name, e, uncompensated) from e
            completed.append(step)
            self.context[f"{step.name}_result"] = result

        self.state = SagaState.COMPLETED
        log.info("saga_completed", steps_completed=len(completed))
        return self.context

    async def _compensate(self, completed_steps: List[SagaStep]) -> List[str]:
        """Compensate completed steps newest first; return the ones that failed."""
        for step in reversed(completed_steps):
            await step.compensate(self.context)
        return [
            step.name
            for step in completed_steps
            if step.status == StepStatus.COMPENSATION_FAILED
        ]
