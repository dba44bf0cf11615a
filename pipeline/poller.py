"""
One poll cycle: fetch -> attention filter -> change detection -> route.

Critical leads run through the workflow one at a time; the rest are scored
in batches. Failures are isolated per lead and per batch. Snoozed actions
whose window has elapsed are put back in front of the operator first.
"""

import asyncio
import time
from typing import Any, Callable, Dict, Optional, Set

from loguru import logger

from db import repository
from db.models import ActionStatus
from pipeline.analysis import deliver_proposal
from pipeline.attention import BATCH_SIZE, chunk, needs_attention, split_critical


class Poller:
    def __init__(
        self,
        crm,
        workflow,
        batch_scorer,
        change_detector,
        notifier,
        session_factory,
        clock: Callable[[], float] = time.time,
        batch_size: int = BATCH_SIZE,
    ):
        self.crm = crm
        self.workflow = workflow
        self.batch_scorer = batch_scorer
        self.change_detector = change_detector
        self.notifier = notifier
        self.session_factory = session_factory
        self.clock = clock
        self.batch_size = batch_size
        self.stop_event = asyncio.Event()
        self._in_flight: Set[int] = set()
        self.last_report: Optional[Dict[str, Any]] = None

    def stop(self) -> None:
        self.stop_event.set()

    async def poll_once(self) -> Dict[str, Any]:
        report: Dict[str, Any] = {
            "fetched": 0,
            "needs_attention": 0,
            "changed": 0,
            "critical": 0,
            "normal": 0,
            "workflows_completed": 0,
            "workflow_errors": 0,
            "batches": 0,
            "scored": 0,
            "actions_created": 0,
            "resurfaced": 0,
            "stopped": False,
        }
        self.last_report = report

        report["resurfaced"] = await self.resurface_snoozed()

        leads = await self.crm.list_leads()
        now = self.clock()
        report["fetched"] = len(leads)

        attention = [lead for lead in leads if needs_attention(lead, now)]
        report["needs_attention"] = len(attention)

        changed = await self.change_detector.filter_changed(attention)
        report["changed"] = len(changed)
        if not changed:
            logger.info("No changes detected, skipping analysis")
            return report

        critical, normal = split_critical(changed, now)
        report["critical"] = len(critical)
        report["normal"] = len(normal)
        logger.info(f"{len(critical)} critical leads (workflow), {len(normal)} normal leads (batch)")

        for lead in critical:
            if self.stop_event.is_set():
                report["stopped"] = True
                return report
            await self._run_workflow(lead["id"], report)

        for number, batch in enumerate(chunk(normal, self.batch_size), start=1):
            if self.stop_event.is_set():
                report["stopped"] = True
                return report
            logger.info(f"Batch {number}: scoring {len(batch)} leads")
            try:
                outcome = await self.batch_scorer.score_batch(batch)
            except Exception as e:
                logger.error(f"Batch {number} failed: {e}")
                continue
            report["batches"] += 1
            report["scored"] += outcome["scored"]
            report["actions_created"] += outcome["actions"]

        logger.info(f"Poll cycle complete: {report}")
        return report

    async def _run_workflow(self, lead_id: int, report: Dict[str, Any]) -> None:
        if lead_id in self._in_flight:
            logger.warning(f"Workflow already running for lead {lead_id}, skipping")
            return

        self._in_flight.add(lead_id)
        try:
            await self.workflow.process(lead_id)
            report["workflows_completed"] += 1
        except Exception as e:
            logger.error(f"Workflow error for lead {lead_id}: {e}")
            report["workflow_errors"] += 1
        finally:
            self._in_flight.discard(lead_id)

    async def resurface_snoozed(self) -> int:
        """Move due snoozed actions back to pending and re-send their proposals."""
        async with self.session_factory() as session:
            due = await repository.due_snoozed_actions(session)

        count = 0
        for action in due:
            async with self.session_factory() as session:
                moved = await repository.transition_action(
                    session, action.id, ActionStatus.PENDING,
                    from_status=ActionStatus.SNOOZED, snoozed_until=None,
                )
                await session.commit()
                if not moved:
                    continue

                try:
                    lead = await self.crm.get_lead_detail(action.lead_id)
                except Exception as e:
                    logger.error(f"Lead {action.lead_id}: could not reload for snoozed action {action.id}: {e}")
                    lead = {"id": action.lead_id, "name": (action.action_data or {}).get("lead_name")}

                action.status = ActionStatus.PENDING.value
                await deliver_proposal(self.notifier, session, action, lead)
                await session.commit()
            count += 1
            logger.info(f"Snoozed action {action.id} is back for review")
        return count
