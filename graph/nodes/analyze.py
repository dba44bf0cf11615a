from graph.state import CriticalLeadState
from loguru import logger

SECONDS_PER_DAY = 86400


def risk_band(days_since_update: float) -> int:
    if days_since_update > 7:
        return 80
    if days_since_update > 3:
        return 50
    return 20


def risk_level_for(score: int) -> str:
    if score > 70:
        return "CRITICAL"
    if score > 40:
        return "HIGH"
    return "MEDIUM"


async def analyze_risk(state: CriticalLeadState, ctx) -> CriticalLeadState:
    """Fetch the lead and band its risk by days since the last update."""
    lead_id = state["lead_id"]
    logger.info(f"Analyzing risk for lead {lead_id}")

    lead = await ctx.crm.get_lead_detail(lead_id)

    updated_at = lead.get("updated_at")
    days = (ctx.clock() - updated_at) / SECONDS_PER_DAY if updated_at else 0
    score = risk_band(days)

    state["lead_name"] = lead.get("name") or f"Lead #{lead_id}"
    state["price"] = lead.get("price") or 0
    state["risk_score"] = score
    state["risk_level"] = risk_level_for(score)
    state["action_needed"] = score > 40

    logger.info(f"Lead {lead_id} risk: {state['risk_level']} ({score}) after {days:.1f} days")
    return state
