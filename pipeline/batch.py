import time
from typing import Any, Callable, Dict, List, Optional

from loguru import logger

from db import repository
from pipeline.analysis import action_from_recommendation, deliver_proposal

SECONDS_PER_DAY = 86400


def default_result(lead: Dict[str, Any]) -> Dict[str, Any]:
    return {
        "lead_id": lead.get("id"),
        "risk_score": 0,
        "risk_level": "LOW",
        "priority": "LOW",
        "action_needed": False,
        "reasoning": "Batch analysis failed",
    }


def batch_recommendation(result: Dict[str, Any], now: float) -> Optional[Dict[str, Any]]:
    """Batch replies name the action type only; fill in an executable payload."""
    recommended = result.get("recommended_action")
    if not recommended:
        return None
    if isinstance(recommended, dict):
        return recommended

    reasoning = result.get("reasoning") or ""
    parameters: Dict[str, Any] = {}
    if recommended == "create_task":
        parameters = {
            "text": result.get("task_text") or "Contact the client",
            "complete_till": int(now) + SECONDS_PER_DAY,
        }
    elif recommended == "update_status":
        for key in ("new_status_id", "status_name"):
            if result.get(key):
                parameters[key] = result[key]
    elif recommended == "add_note":
        parameters = {"text": reasoning}

    return {"action_type": recommended, "description": reasoning, "parameters": parameters}


class BatchScorer:
    """Scores normal leads in batches and turns results into pending actions."""

    def __init__(self, llm, notifier, session_factory, clock: Callable[[], float] = time.time):
        self.llm = llm
        self.notifier = notifier
        self.session_factory = session_factory
        self.clock = clock

    async def score_batch(self, batch: List[Dict[str, Any]]) -> Dict[str, int]:
        """
        Score one batch. A scorer failure degrades every lead in the batch to
        the default low-risk result; it never propagates.
        """
        now = self.clock()
        try:
            results = await self.llm.analyze_batch(batch, now=now)
        except Exception as e:
            logger.error(f"Batch analysis failed for {len(batch)} leads, using defaults: {e}")
            results = [default_result(lead) for lead in batch]

        scored = actions = 0
        for i, lead in enumerate(batch):
            result = results[i] if i < len(results) else None
            if not isinstance(result, dict):
                logger.warning(f"Lead {lead.get('id')}: invalid batch result, skipping")
                continue

            try:
                created = await self._apply_result(lead, result, now)
            except Exception as e:
                logger.error(f"Lead {lead.get('id')}: failed to store batch result: {e}")
                continue
            scored += 1
            actions += int(created)

        return {"scored": scored, "actions": actions}

    async def _apply_result(self, lead: Dict[str, Any], result: Dict[str, Any], now: float) -> bool:
        lead_id = lead["id"]
        risk_score = int(result.get("risk_score") or 0)
        risk_level = result.get("risk_level") or "LOW"
        priority = result.get("priority") or "LOW"
        logger.info(f"Lead {lead_id}: {risk_level} ({risk_score}), priority {priority}, action_needed={bool(result.get('action_needed'))}")

        async with self.session_factory() as session:
            await repository.record_lead_score(session, lead_id, risk_score, risk_level, priority)
            await session.commit()

            if not result.get("action_needed"):
                return False
            recommended = batch_recommendation(result, now)
            planned = action_from_recommendation(recommended, lead) if recommended else None
            if planned is None:
                logger.info(f"Lead {lead_id}: no executable recommendation in batch result")
                return False

            action = await repository.create_pending_action(
                session,
                lead_id,
                planned["action_type"],
                planned["action_data"],
                risk_score=risk_score,
                priority=priority,
                reasoning=result.get("reasoning"),
            )
            await session.commit()

            ref = await deliver_proposal(self.notifier, session, action, lead)
            await session.commit()
            logger.info(f"Lead {lead_id}: pending action {action.id} created (message {ref})")
            return True
