from typing import TypedDict, Optional, List

class CriticalLeadState(TypedDict, total=False):
    """State shape for the critical lead workflow."""
    lead_id: int
    lead_name: str
    price: float                     # lead budget, used for the run's priority
    risk_score: int                  # 20 | 50 | 80
    risk_level: str                  # "MEDIUM" | "HIGH" | "CRITICAL"
    priority: Optional[str]
    has_tasks: bool                  # any incomplete task on the lead
    task_created: bool
    manager_notified: bool
    attempts: int                    # completed retry rounds, 0..3
    action_needed: bool
    path: List[str]                  # visited node names, in order
    errors: List[str]


def initial_state(lead_id: int) -> CriticalLeadState:
    return {
        "lead_id": lead_id,
        "lead_name": "",
        "price": 0,
        "risk_score": 0,
        "risk_level": "LOW",
        "priority": None,
        "has_tasks": False,
        "task_created": False,
        "manager_notified": False,
        "attempts": 0,
        "action_needed": False,
        "path": [],
        "errors": [],
    }
