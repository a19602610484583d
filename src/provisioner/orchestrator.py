"""Transactional step runner with compensating-action rollback.

State machine:

    PENDING -> RUNNING(i) -> SUCCEEDED
                          -> ROLLING_BACK -> ROLLED_BACK
                                          -> ROLLBACK_INCOMPLETE

Each step returns a StepResult. When a successful result names a
compensation, it is pushed onto the context's rollback stack before the next
step starts. The first failed result (or any exception raised by a step,
which is converted to a failed result) unwinds the stack. After a clean run
the stack is cleared and the optional verifier runs; its findings are
warnings and never undo completed work.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from .errors import ExternalAPIFailure, InputValidationError, UserAbort
from .rollback import ProvisioningContext
from .verification import PartialSuccess

logger = logging.getLogger(__name__)


class RunState(str, Enum):
    """Orchestrator run states."""

    PENDING = "pending"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    ROLLING_BACK = "rolling_back"
    ROLLED_BACK = "rolled_back"
    ROLLBACK_INCOMPLETE = "rollback_incomplete"


@dataclass(frozen=True)
class Compensation:
    """How to undo what a step created."""

    description: str
    action: Callable[[], None]
    resource: str | None = None


@dataclass(frozen=True)
class StepResult:
    """Typed result every step returns."""

    ok: bool
    message: str = ""
    resource_id: str | None = None
    compensation: Compensation | None = None
    aborted: bool = False
    # Rejected input rather than a provider problem
    validation: bool = False

    @classmethod
    def success(
        cls,
        message: str = "",
        *,
        resource_id: str | None = None,
        compensation: Compensation | None = None,
    ) -> StepResult:
        return cls(ok=True, message=message, resource_id=resource_id, compensation=compensation)

    @classmethod
    def failure(
        cls, message: str, *, aborted: bool = False, validation: bool = False
    ) -> StepResult:
        return cls(ok=False, message=message, aborted=aborted, validation=validation)


@dataclass(frozen=True)
class Step:
    """One named unit of work."""

    name: str
    run: Callable[[ProvisioningContext], StepResult]


Verifier = Callable[[ProvisioningContext], list[PartialSuccess]]


@dataclass
class RunReport:
    """Final outcome of a run."""

    state: RunState
    completed_steps: list[str] = field(default_factory=list)
    failed_step: str | None = None
    error: str | None = None
    aborted: bool = False
    validation: bool = False
    compensated: list[str] = field(default_factory=list)
    uncompensated: list[str] = field(default_factory=list)
    warnings: list[PartialSuccess] = field(default_factory=list)
    outputs: dict[str, Any] = field(default_factory=dict)

    @property
    def succeeded(self) -> bool:
        return self.state == RunState.SUCCEEDED

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for logging."""
        return {
            "state": self.state.value,
            "completed_steps": len(self.completed_steps),
            "failed_step": self.failed_step,
            "aborted": self.aborted,
            "validation": self.validation,
            "compensated": len(self.compensated),
            "uncompensated": len(self.uncompensated),
            "warnings": len(self.warnings),
        }


class Orchestrator:
    """Runs steps in order against a caller-owned ProvisioningContext."""

    def __init__(self, steps: list[Step], *, verifier: Verifier | None = None) -> None:
        self._steps = steps
        self._verifier = verifier
        self.state = RunState.PENDING

    def run(self, context: ProvisioningContext) -> RunReport:
        """Execute every step; roll back on the first failure.

        Raises:
            ValueError: If the context's rollback stack is not empty.
        """
        if not context.rollback.is_empty:
            raise ValueError("Rollback stack must be empty at run start")

        report = RunReport(state=RunState.RUNNING)
        self.state = RunState.RUNNING

        for index, step in enumerate(self._steps):
            context.step_index = index
            logger.info(
                "Running step",
                extra={"step": step.name, "step_index": index, "total_steps": len(self._steps)},
            )

            result = self._execute(step, context)

            if not result.ok:
                report.failed_step = step.name
                report.error = result.message
                report.aborted = result.aborted
                report.validation = result.validation
                logger.error(
                    "Step failed",
                    extra={"step": step.name, "step_index": index, "error": result.message},
                )
                return self._roll_back(context, report)

            if result.compensation is not None:
                context.rollback.push(
                    result.compensation.description,
                    result.compensation.action,
                    resource=result.compensation.resource,
                )
            report.completed_steps.append(step.name)

        context.rollback.clear()
        context.step_index = None
        self.state = RunState.SUCCEEDED
        report.state = RunState.SUCCEEDED

        if self._verifier is not None:
            report.warnings = self._verify(self._verifier, context)

        report.outputs = dict(context.values)
        logger.info("Run succeeded", extra=report.to_dict())
        return report

    def _execute(self, step: Step, context: ProvisioningContext) -> StepResult:
        """Run a step, turning any exception into a failed StepResult."""
        try:
            return step.run(context)
        except UserAbort as e:
            return StepResult.failure(str(e), aborted=True)
        except InputValidationError as e:
            return StepResult.failure(str(e), validation=True)
        except ExternalAPIFailure as e:
            return StepResult.failure(f"external API failure: {e}")
        except Exception as e:
            logger.exception("Unexpected error in step", extra={"step": step.name})
            return StepResult.failure(f"unexpected error: {type(e).__name__}: {e}")

    def _roll_back(self, context: ProvisioningContext, report: RunReport) -> RunReport:
        self.state = RunState.ROLLING_BACK
        report.state = RunState.ROLLING_BACK
        logger.warning("Rolling back", extra={"pending": len(context.rollback)})

        rollback = context.rollback.unwind()
        context.step_index = None

        report.compensated = rollback.compensated
        report.uncompensated = rollback.uncompensated
        report.state = RunState.ROLLED_BACK if rollback.complete else RunState.ROLLBACK_INCOMPLETE
        self.state = report.state
        report.outputs = dict(context.values)

        logger.error("Run failed", extra=report.to_dict())
        return report

    def _verify(self, verifier: Verifier, context: ProvisioningContext) -> list[PartialSuccess]:
        try:
            warnings = verifier(context)
        except ExternalAPIFailure as e:
            warnings = [PartialSuccess(check="verification", message=f"could not verify: {e}")]

        for warning in warnings:
            logger.warning(
                "Verification warning",
                extra={"check": warning.check, "detail": warning.message},
            )
        return warnings
