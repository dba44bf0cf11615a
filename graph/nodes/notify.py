from graph.state import CriticalLeadState
from errors import ConfigurationMissingError
from loguru import logger

MAX_ATTEMPTS = 3


def render_status(state: CriticalLeadState) -> str:
    emoji = "🔴" if state.get("risk_level") == "CRITICAL" else "🟠"
    lines = [
        f"{emoji} *Automatic lead handling*",
        "",
        f"*{state.get('lead_name')}* (#{state['lead_id']})",
        f"• Risk: {state.get('risk_level')} ({state.get('risk_score')})",
        f"• Tasks: {'yes' if state.get('has_tasks') else 'none'}",
    ]
    if state.get("task_created"):
        lines.append("• New follow-up task created")
    if state.get("attempts"):
        lines.append(f"Retry {state['attempts']}/{MAX_ATTEMPTS}")
    return "\n".join(lines)


async def notify_manager(state: CriticalLeadState, ctx) -> CriticalLeadState:
    """Send the run status to the operator channel."""
    try:
        channel = ctx.notifier.manager_channel
    except ConfigurationMissingError:
        logger.warning(f"No operator channel configured, skipping notification for lead {state['lead_id']}")
        state["manager_notified"] = False
        return state

    ref = await ctx.notifier.send_message(channel, render_status(state))
    state["manager_notified"] = ref is not None
    if ref is None:
        state.setdefault("errors", []).append("Operator notification failed")
    return state
