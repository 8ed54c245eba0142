# Overview: Ordered multi-system operations with per-step compensation.

"""
Saga runner for operations that span Stripe and the local database.

WHY: There is no distributed transaction between Stripe and our database.
Each step that touches an external system registers the action that undoes
it. When a later step fails, completed steps are compensated in reverse
order. Every compensation outcome is logged on its own line
(compensation.ok / compensation.failed) so a failed rollback always leaves
a trace that can be reconciled by hand.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Callable

log = logging.getLogger(__name__)


@dataclass
class SagaStep:
    name: str
    action: Callable[[], Any]
    compensate: Callable[[], Any] | None = None


@dataclass
class CompensationFailure:
    step: str
    error: str


class SagaError(Exception):
    """
    A saga step failed.

    failed_step: name of the step that raised
    cause: the original exception
    compensation_failures: compensations that themselves failed; when
        non-empty the two systems may disagree and need manual reconciliation
    """

    def __init__(self, saga: str, failed_step: str, cause: BaseException,
                 compensation_failures: list[CompensationFailure]):
        self.saga = saga
        self.failed_step = failed_step
        self.cause = cause
        self.compensation_failures = compensation_failures
        super().__init__(f"{saga}: step '{failed_step}' failed: {cause}")

    @property
    def needs_reconciliation(self) -> bool:
        return bool(self.compensation_failures)


@dataclass
class Saga:
    name: str
    context: dict = field(default_factory=dict)
    steps: list[SagaStep] = field(default_factory=list)

    def step(self, name: str, action: Callable[[], Any],
             compensate: Callable[[], Any] | None = None) -> "Saga":
        self.steps.append(SagaStep(name=name, action=action, compensate=compensate))
        return self

    def run(self) -> dict[str, Any]:
        """
        Run every step in order and return {step_name: result}.

        Raises SagaError after compensating completed steps.
        """
        results: dict[str, Any] = {}
        completed: list[SagaStep] = []

        for step in self.steps:
            try:
                results[step.name] = step.action()
            except Exception as exc:
                log.error(
                    "saga.step_failed saga=%s step=%s context=%s error=%s",
                    self.name, step.name, self.context, exc,
                )
                failures = self._compensate(completed)
                raise SagaError(self.name, step.name, exc, failures) from exc
            completed.append(step)

        return results

    def _compensate(self, completed: list[SagaStep]) -> list[CompensationFailure]:
        failures: list[CompensationFailure] = []
        for step in reversed(completed):
            if step.compensate is None:
                continue
            try:
                step.compensate()
            except Exception as exc:
                log.critical(
                    "compensation.failed saga=%s step=%s context=%s error=%s "
                    "- manual reconciliation required",
                    self.name, step.name, self.context, exc,
                )
                failures.append(CompensationFailure(step=step.name, error=str(exc)))
            else:
                log.warning(
                    "compensation.ok saga=%s step=%s context=%s",
                    self.name, step.name, self.context,
                )
        return failures
