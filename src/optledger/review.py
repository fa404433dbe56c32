"""Review workflow: dedupe, decide, apply, record.

This is the single place where the detector, transition engine and session
recorder run together for one operator decision.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

from optledger.context import LedgerContext
from optledger.decisions import DecisionOutcome, TransitionPlan, plan_transitions
from optledger.detector import DetectionReport
from optledger.logging import log_op
from optledger.sessions import Session

logger = logging.getLogger(__name__)


@dataclass
class ReviewResult:
    plan: TransitionPlan
    outcome: DecisionOutcome | None = None
    session: Session | None = None
    detection: DetectionReport | None = None

    @property
    def changed(self) -> bool:
        return bool(self.outcome and self.outcome.applied)


def run_review(ctx: LedgerContext, decision: str, *, comment: str | None = None, dedupe: bool = True) -> ReviewResult:
    """Apply one decision and record its session.

    The decision text is parsed, and its ids are resolved against the state
    dedupe is about to produce, before anything touches the store. A
    decision that resolves to no transitions is a no-op: nothing is written
    and no session is recorded.
    """
    engine = ctx.engine()
    parsed = engine.parse(decision, comment=comment)
    detection = None
    if dedupe:
        detector = ctx.detector()
        preview = detector.migrate(ctx.store, dry_run=True)
        plan_transitions(parsed, detector.project(ctx.store.load_all(), preview))
        detection = detector.migrate(ctx.store)
    plan = engine.plan(parsed)
    result = ReviewResult(plan=plan, detection=detection)
    if plan.is_noop:
        return result

    recorder = ctx.recorder()
    session_id = recorder.new_session_id()
    with log_op(logger, "review", "Review session complete", session_id=session_id) as fields:
        result.outcome = engine.apply(plan, session_id)
        if result.outcome.applied:
            result.session = recorder.record(result.outcome)
        fields["issue_ids"] = [m.issue.id for m in result.outcome.applied]
        fields["args_data"] = {"operation_type": plan.decision.operation_type}
    return result
