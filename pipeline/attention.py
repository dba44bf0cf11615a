"""
Attention filter and critical/normal routing for polled leads.

Pure functions over the lead dict returned by the CRM client; the only side
effect is diagnostic logging.
"""

import time
from typing import Any, Dict, Iterator, List, Optional, Tuple

from loguru import logger

SECONDS_PER_DAY = 86400
BATCH_SIZE = 10

VIP_BUDGET = 500000
IMPORTANT_BUDGET = 100000
MEDIUM_BUDGET = 50000
STALE_DAYS = 3
STUCK_DAYS = 7


def staleness_days(lead: Dict[str, Any], now: Optional[float] = None) -> float:
    """Fractional days since the lead was last updated; 0 when unknown."""
    now = now if now is not None else time.time()
    updated_at = lead.get("updated_at")
    if not updated_at:
        return 0.0
    return (now - updated_at) / SECONDS_PER_DAY


def has_active_task(lead: Dict[str, Any]) -> bool:
    return any(not task.get("is_completed") for task in lead.get("tasks") or [])


def needs_attention(lead: Dict[str, Any], now: Optional[float] = None) -> bool:
    """Short-circuit rule check; the first matching rule is logged by name."""
    days = staleness_days(lead, now)
    budget = lead.get("price") or 0
    active = has_active_task(lead)

    rules = (
        ("no_tasks_and_stale", lambda: not active and days > STALE_DAYS),
        ("stuck", lambda: days > STUCK_DAYS),
        ("vip_budget", lambda: budget >= VIP_BUDGET),
        ("important_budget", lambda: budget >= IMPORTANT_BUDGET),
        ("medium_budget_no_tasks", lambda: budget >= MEDIUM_BUDGET and not active),
    )
    for name, check in rules:
        if check():
            logger.debug(f"Lead {lead.get('id')} needs attention: {name} ({days:.1f}d, budget {budget}, tasks {active})")
            return True
    return False


def is_critical(lead: Dict[str, Any], now: Optional[float] = None) -> bool:
    return (lead.get("price") or 0) >= VIP_BUDGET or staleness_days(lead, now) > STUCK_DAYS


def split_critical(leads: List[Dict[str, Any]], now: Optional[float] = None) -> Tuple[List[Dict[str, Any]], List[Dict[str, Any]]]:
    """Partition leads into (critical, normal), keeping input order."""
    critical, normal = [], []
    for lead in leads:
        (critical if is_critical(lead, now) else normal).append(lead)
    return critical, normal


def chunk(items: List[Any], size: int = BATCH_SIZE) -> Iterator[List[Any]]:
    for i in range(0, len(items), size):
        yield items[i:i + size]
