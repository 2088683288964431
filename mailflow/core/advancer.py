import asyncio
import json
import logging
from dataclasses import asdict, dataclass
from datetime import timedelta

from mailflow.config import Settings
from mailflow.core.clock import to_iso, utcnow
from mailflow.core.errors import MailflowError
from mailflow.core.executors import (
    Completed,
    Failed,
    StepContext,
    WaitUntil,
    build_executors,
)
from mailflow.core.models import StepState
from mailflow.core.resolver import advance_from
from mailflow.core.steps import load_step
from mailflow.db import repository
from mailflow.delivery.base import EmailDelivery

logger = logging.getLogger(__name__)


@dataclass
class AdvanceResult:
    processed: int = 0
    succeeded: int = 0
    failed: int = 0

    def as_dict(self) -> dict:
        return asdict(self)


class Advancer:
    """Stateless poller pass over due execution steps.

    Every call to ``advance`` reads what is due from the database, claims
    each row before running it, and writes the outcome back. Nothing is kept
    in memory between calls, so overlapping calls (cron plus a manual
    trigger, a retried timeout) are safe.
    """

    def __init__(
        self,
        session_factory,
        delivery: EmailDelivery,
        settings: Settings,
        clock=utcnow,
    ):
        self.session_factory = session_factory
        self.settings = settings
        self.executors = build_executors(delivery, settings)
        self.clock = clock

    async def start(self, interval: float | None = None, limit: int | None = None):
        interval = interval or self.settings.poll_interval
        limit = limit or self.settings.batch_limit
        logger.info(
            "Poller started (interval: %ss, batch limit: %s)", interval, limit
        )
        while True:
            try:
                await asyncio.to_thread(self.advance, limit)
            except Exception as e:
                logger.error("Poller tick error: %s", e)
            await asyncio.sleep(interval)

    def advance(self, limit: int | None = None) -> AdvanceResult:
        """Process up to ``limit`` due rows.

        Rows created while the pass runs (the successor of a completed step)
        are picked up by a further round, so a chain of immediate steps does
        not wait one poll interval per step. A pass stops when the limit is
        reached or a round claims nothing.
        """
        limit = limit or self.settings.batch_limit
        result = AdvanceResult()

        db = self.session_factory()
        try:
            self.release_stale_claims(db)

            while result.processed < limit:
                due = repository.find_due_steps(
                    db, to_iso(self.clock()), limit - result.processed
                )
                # Claims commit and expire loaded rows, so keep plain values.
                candidates = [(row.id, row.status) for row in due]
                claimed = 0

                for row_id, observed_status in candidates:
                    try:
                        outcome = self._process(db, row_id, observed_status)
                    except Exception as e:
                        logger.exception("Error processing execution step %s", row_id)
                        db.rollback()
                        if self._fail_claimed(db, row_id, f"Internal error: {e}"):
                            claimed += 1
                            result.processed += 1
                            result.failed += 1
                        continue

                    if outcome is None:
                        continue
                    claimed += 1
                    result.processed += 1
                    if isinstance(outcome, Failed):
                        result.failed += 1
                    else:
                        result.succeeded += 1

                if claimed == 0:
                    break
        finally:
            db.close()

        if result.processed:
            logger.info(
                "Advance pass: %d processed, %d succeeded, %d failed",
                result.processed,
                result.succeeded,
                result.failed,
            )
        return result

    def release_stale_claims(self, db) -> int:
        """Fail rows whose claimer died mid-step.

        The side effect may already have happened, so they are not re-run.
        """
        now = self.clock()
        cutoff = to_iso(now - timedelta(seconds=self.settings.claim_timeout))
        released = 0
        for row in repository.find_stale_claims(db, cutoff):
            if self._fail_claimed(db, row.id, "claim expired"):
                logger.warning(
                    "Execution step %s was claimed at %s and never finished",
                    row.id,
                    row.claimed_at,
                )
                released += 1
        return released

    def _process(self, db, row_id: str, observed_status: str):
        now = self.clock()
        stamp = to_iso(now)

        if not repository.claim_step(db, row_id, observed_status, stamp):
            logger.debug("Execution step %s already claimed elsewhere", row_id)
            return None

        row = repository.get_execution_step(db, row_id)
        execution = repository.get_execution(db, row.execution_id)
        workflow = repository.get_workflow(db, execution.workflow_id)

        step_row = repository.get_step(db, row.step_id)
        if step_row is None:
            outcome, step = Failed(f"Step '{row.step_id}' not found"), None
        else:
            try:
                step = load_step(step_row)
            except MailflowError as e:
                outcome, step = Failed(str(e)), None
            else:
                ctx = StepContext(
                    db=db,
                    step=step,
                    execution=execution,
                    execution_step=row,
                    tenant_id=workflow.tenant_id,
                    now=now,
                )
                outcome = self.executors[step.kind].run(ctx)

        stamp = to_iso(self.clock())
        if isinstance(outcome, Completed):
            written = repository.transition_step(
                db,
                row.id,
                StepState.IN_PROGRESS,
                status=StepState.COMPLETED,
                executed_at=stamp,
                result=json.dumps(outcome.result),
            )
            if written:
                advance_from(db, execution, step, outcome.result, row.id, stamp)
        elif isinstance(outcome, WaitUntil):
            values = {"status": StepState.WAITING}
            if row.scheduled_at is None:
                values["scheduled_at"] = to_iso(outcome.timestamp)
            written = repository.transition_step(
                db, row.id, StepState.IN_PROGRESS, **values
            )
            if written:
                logger.info(
                    "Execution %s: step %s waiting until %s",
                    execution.id,
                    row.step_id,
                    values.get("scheduled_at", row.scheduled_at),
                )
        else:
            written = repository.transition_step(
                db,
                row.id,
                StepState.IN_PROGRESS,
                status=StepState.FAILED,
                executed_at=stamp,
                result=json.dumps({"error": outcome.reason}),
            )
            if written:
                repository.update_execution(
                    db, execution.id, error=f"Step {row.step_id}: {outcome.reason}"
                )
                logger.warning(
                    "Execution %s: step %s failed: %s",
                    execution.id,
                    row.step_id,
                    outcome.reason,
                )

        if not written:
            # The claim expired while the step ran and the row was failed by
            # another pass; that pass owns it now.
            db.rollback()
            logger.warning(
                "Execution step %s lost its claim before its outcome was stored",
                row_id,
            )
            return None

        db.commit()
        return outcome

    def _fail_claimed(self, db, row_id: str, reason: str) -> bool:
        failed = repository.transition_step(
            db,
            row_id,
            StepState.IN_PROGRESS,
            status=StepState.FAILED,
            executed_at=to_iso(self.clock()),
            result=json.dumps({"error": reason}),
        )
        db.commit()
        return failed
