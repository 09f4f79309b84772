# Overview: Best-effort steps that run after a core write has committed.

"""
A sale is durable once its transaction row commits. Stock decrements,
credit charges, day totals and invoice rendering follow as separate steps;
each one commits on its own and a failure is logged, recorded as a
side_effect.failed ledger event and returned to the caller as a warning.
The core write is never rolled back by a failing step.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Callable

from flask import current_app

from ..extensions import db
from .ledger_service import append_ledger_event


@dataclass
class StepResult:
    step: str
    ok: bool
    value: Any = None
    error: str | None = None
    context: dict = field(default_factory=dict)

    def to_warning(self) -> dict:
        warning = {"step": self.step, "error": self.error}
        warning.update(self.context)
        return warning


def run_step(
    step: str,
    func: Callable[[], Any],
    *,
    store_id: int | None = None,
    transaction_id: int | None = None,
    context: dict | None = None,
) -> StepResult:
    context = dict(context or {})
    try:
        value = func()
        db.session.commit()
        return StepResult(step=step, ok=True, value=value, context=context)
    except Exception as exc:
        db.session.rollback()
        current_app.logger.warning(
            "Side effect %s failed (store_id=%s, transaction_id=%s): %s",
            step,
            store_id,
            transaction_id,
            exc,
        )
        _record_failure(step, exc, store_id=store_id, transaction_id=transaction_id, context=context)
        return StepResult(step=step, ok=False, error=str(exc), context=context)


def _record_failure(step: str, exc: Exception, *, store_id, transaction_id, context: dict) -> None:
    try:
        append_ledger_event(
            event_type="side_effect.failed",
            event_category="side_effects",
            entity_type="transaction" if transaction_id else "step",
            entity_id=transaction_id,
            store_id=store_id,
            transaction_id=transaction_id,
            note=f"{step} failed",
            payload={"step": step, "error": str(exc), **context},
        )
        db.session.commit()
    except Exception:
        db.session.rollback()
        current_app.logger.exception("Failed to record side effect failure for %s", step)
