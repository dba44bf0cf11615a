from typing import Any, Dict, Optional

from loguru import logger

from db import repository
from db.models import ActionType
from errors import ConfigurationMissingError


def action_from_recommendation(recommended: Dict[str, Any], lead: Dict[str, Any]) -> Optional[Dict[str, Any]]:
    """
    Map a scorer recommendation to (action_type, action_data).

    Returns None when the recommendation cannot be executed, e.g. a status
    change without a target status.
    """
    action_type = recommended.get("action_type")
    params = dict(recommended.get("parameters") or {})
    params["lead_name"] = lead.get("name")

    if action_type == ActionType.CREATE_TASK.value:
        params.setdefault("text", recommended.get("description") or "Contact the client")
        params.setdefault("task_type_id", 1)
        if "complete_till" not in params:
            return None
    elif action_type == ActionType.UPDATE_STATUS.value:
        if not (params.get("new_status_id") or params.get("status_name")):
            return None
    elif action_type == ActionType.ADD_NOTE.value:
        params.setdefault("text", recommended.get("description") or "")
    elif action_type != ActionType.WAIT.value:
        return None

    return {"action_type": action_type, "action_data": params}


async def deliver_proposal(notifier, session, action, lead: Dict[str, Any]) -> Optional[str]:
    """Send the approval request and remember where it was posted."""
    try:
        channel = notifier.manager_channel
    except ConfigurationMissingError:
        logger.warning(f"No operator channel configured, action {action.id} stays pending without a message")
        return None

    ref = await notifier.send_proposal(channel, action, lead)
    if ref:
        await repository.set_notification_ref(session, action.id, ref)
    return ref


async def analyze_single_lead(lead_id: int, crm, llm, notifier, session_factory) -> Dict[str, Any]:
    """
    Deep analysis of one lead: memory and score history in, score, thoughts,
    memory updates and (optionally) a pending action out.
    """
    lead = await crm.get_lead_detail(lead_id)

    async with session_factory() as session:
        memories = await repository.memories_for_lead(session, lead_id)
        history = await repository.recent_lead_scores(session, lead_id, limit=3)

    result = await llm.analyze_lead(
        lead,
        memory=[m.value for m in memories],
        history=[{"risk_level": s.risk_level, "priority": s.priority} for s in history],
    )
    logger.info(f"Lead {lead_id} analyzed: {result['risk_level']} ({result['risk_score']}), priority {result['priority']}")

    action_id = None
    async with session_factory() as session:
        await repository.record_lead_score(session, lead_id, result["risk_score"], result["risk_level"], result["priority"])
        for thought in result.get("thoughts", []):
            await repository.record_thought(session, lead_id, thought["thought"], thought.get("action"))
        for key, insight in result.get("memories", {}).items():
            await repository.upsert_memory(session, f"lead_{lead_id}_{key}", insight)

        recommended = result.get("recommended_action")
        planned = action_from_recommendation(recommended, lead) if result.get("action_needed") and recommended else None
        if planned:
            action = await repository.create_pending_action(
                session,
                lead_id,
                planned["action_type"],
                planned["action_data"],
                risk_score=result["risk_score"],
                priority=result["priority"],
                reasoning=result.get("reasoning"),
            )
            action_id = action.id
            await session.commit()
            await deliver_proposal(notifier, session, action, lead)
        await session.commit()

    return {
        "lead_id": lead_id,
        "risk_score": result["risk_score"],
        "risk_level": result["risk_level"],
        "priority": result["priority"],
        "action_needed": result.get("action_needed", False),
        "reasoning": result.get("reasoning"),
        "pending_action_id": action_id,
    }


async def lead_history(session_factory, lead_id: int) -> Dict[str, Any]:
    """Recent scores, thoughts and actions for one lead."""
    async with session_factory() as session:
        scores = await repository.recent_lead_scores(session, lead_id, limit=5)
        thoughts = await repository.recent_thoughts(session, lead_id, limit=3)
        actions = await repository.list_actions_for_lead(session, lead_id)

    return {
        "lead_id": lead_id,
        "scores": [
            {"score": s.score, "risk_level": s.risk_level, "priority": s.priority,
             "calculated_at": s.calculated_at.isoformat() if s.calculated_at else None}
            for s in scores
        ],
        "thoughts": [{"thought": t.thought, "action": t.action} for t in thoughts],
        "actions": [
            {"id": a.id, "action_type": a.action_type, "status": a.status, "risk_score": a.risk_score}
            for a in actions
        ],
    }
