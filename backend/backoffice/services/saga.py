# Overview: Generic saga runner; ordered steps with explicit compensation.

"""
Saga runner

Cross-table operations here cannot share one database transaction: the
detail counters, the cash balance and the ledgers are each committed on their
own. A Saga makes the "rollback by reversing writes" discipline explicit:

    saga = Saga("consignment_sale", entity_type="consignment_detail", entity_id=7)
    saga.step("insert_sale", insert_sale, delete_sale)
    saga.step("update_detail", apply_counters, restore_counters)
    saga.step("post_cash", credit_cash, reverse_credit)
    ctx = saga.run()

RULES:
1. Steps run in order. Each action commits its own unit of work and returns a
   value stored in ctx[step_name].
2. When an action raises, the session is rolled back and the compensations of
   the steps that already completed run in reverse order. The original error
   is then re-raised unchanged.
3. A failing compensation is never swallowed: it is logged at CRITICAL,
   recorded as a ReconciliationIssue, and CompensationFailure is raised
   (chained to the original error). Remaining compensations still run.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Callable, Optional

from flask import current_app
from sqlalchemy import inspect as sa_inspect

from ..errors import CompensationFailure
from ..extensions import db
from .reconciliation_service import record_issue

Action = Callable[[dict], Any]
Compensation = Callable[[dict], None]


@dataclass
class SagaStep:
    name: str
    action: Action
    compensation: Optional[Compensation] = None


class Saga:
    def __init__(
        self,
        name: str,
        *,
        entity_type: str | None = None,
        entity_id: int | None = None,
        actor_id: int | None = None,
    ):
        self.name = name
        self.entity_type = entity_type
        self.entity_id = entity_id
        self.actor_id = actor_id
        self.steps: list[SagaStep] = []
        self.context: dict = {}

    def step(self, name: str, action: Action, compensation: Compensation | None = None) -> "Saga":
        self.steps.append(SagaStep(name, action, compensation))
        return self

    def run(self) -> dict:
        completed: list[SagaStep] = []
        for step in self.steps:
            try:
                self.context[step.name] = step.action(self.context)
            except Exception as exc:
                db.session.rollback()
                self._compensate(completed, failed_step=step.name, cause=exc)
                raise
            completed.append(step)
        return self.context

    def _compensate(self, completed: list[SagaStep], *, failed_step: str, cause: Exception) -> None:
        if not completed:
            return

        logger = current_app.logger
        logger.warning(
            "Saga %s failed at step %s (%s: %s); compensating %d step(s) for %s %s",
            self.name, failed_step, type(cause).__name__, cause,
            len(completed), self.entity_type, self.entity_id,
        )

        failures = []
        for step in reversed(completed):
            if step.compensation is None:
                continue
            try:
                step.compensation(self.context)
                logger.warning("Saga %s compensated step %s", self.name, step.name)
            except Exception as undo_exc:
                db.session.rollback()
                logger.critical(
                    "COMPENSATION FAILED saga=%s step=%s failed_step=%s %s=%s: %s",
                    self.name, step.name, failed_step,
                    self.entity_type, self.entity_id, undo_exc,
                )
                record_issue(
                    operation=self.name,
                    failed_step=f"compensate:{step.name}",
                    error=f"{type(undo_exc).__name__}: {undo_exc} (after {failed_step} failed: {cause})",
                    entity_type=self.entity_type,
                    entity_id=self.entity_id,
                    snapshot=_jsonable(self.context),
                    actor_id=self.actor_id,
                )
                failures.append(step.name)

        if failures:
            raise CompensationFailure(
                f"Saga '{self.name}' failed at step '{failed_step}' ({cause}) and could not "
                f"undo step(s): {', '.join(failures)}. Ledgers need manual reconciliation.",
                saga=self.name,
                failed_step=failed_step,
                compensation_steps=failures,
                entity_type=self.entity_type,
                entity_id=self.entity_id,
            ) from cause


def _jsonable(context: dict) -> dict:
    """JSON view of a saga context for the issue snapshot; never touches the DB."""
    out = {}
    for key, value in context.items():
        state = sa_inspect(value, raiseerr=False)
        if state is not None and hasattr(state, "identity"):
            identity = state.identity
            out[key] = {"type": type(value).__name__, "id": identity[0] if identity else None}
        elif isinstance(value, dict):
            out[key] = {k: _scalar(v) for k, v in value.items()}
        else:
            out[key] = _scalar(value)
    return out


def _scalar(value):
    if isinstance(value, (int, str, bool, type(None))):
        return value
    return str(value)
