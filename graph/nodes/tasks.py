from graph.state import CriticalLeadState
from loguru import logger

FOLLOW_UP_TEXT = "Contact the client (created automatically)"
FOLLOW_UP_DELAY = 86400


async def check_tasks(state: CriticalLeadState, ctx) -> CriticalLeadState:
    """Look for any incomplete task on the lead."""
    tasks = await ctx.crm.list_tasks(state["lead_id"])
    active = [t for t in tasks if not t.get("is_completed")]

    state["has_tasks"] = len(active) > 0
    logger.info(f"Lead {state['lead_id']} has {len(active)} active tasks")
    return state


async def create_task(state: CriticalLeadState, ctx) -> CriticalLeadState:
    """Create a generic follow-up task due in 24 hours."""
    lead_id = state["lead_id"]

    try:
        await ctx.crm.create_task(lead_id, {
            "text": FOLLOW_UP_TEXT,
            "complete_till": int(ctx.clock()) + FOLLOW_UP_DELAY,
            "task_type_id": 1,
        })
        state["task_created"] = True
        logger.info(f"Follow-up task created for lead {lead_id}")

    except Exception as e:
        error_msg = f"Task creation failed: {str(e)}"
        logger.error(f"Lead {lead_id}: {error_msg}")
        state.setdefault("errors", []).append(error_msg)
        state["task_created"] = False

    return state
