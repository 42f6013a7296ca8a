"""Pure role-routing rules for the dispatcher.

No persistence here: the dispatcher supplies the current load and these
functions decide which role a task should go to.
"""

from __future__ import annotations

from typing import Optional

from src.core.models import HIGH_TIER_ROLES, LOW_TIER_ROLES, AgentRole

FAST_TRACK_THRESHOLD = 20
ESCALATE_THRESHOLD = 80
BACKPRESSURE_LOAD_THRESHOLD = 5

FAST_TRACK_ROLE = AgentRole.JUNIOR_DEV
ESCALATION_ROLE = AgentRole.ARCHITECT

# One step down the design ladder when a high-tier role is saturated.
DOWNGRADE: dict[AgentRole, AgentRole] = {
    AgentRole.ARCHITECT: AgentRole.TEAM_LEAD,
    AgentRole.TEAM_LEAD: AgentRole.SENIOR_DEV,
}


def route_by_complexity(
    role: AgentRole,
    complexity: Optional[int],
    fast_track_threshold: int = FAST_TRACK_THRESHOLD,
    escalate_threshold: int = ESCALATE_THRESHOLD,
) -> tuple[AgentRole, str]:
    """Return (effective role, reason) for a task's role and complexity.

    A missing complexity score counts as 50, which never moves the task.
    """
    score = 50 if complexity is None else complexity
    if role in HIGH_TIER_ROLES and score < fast_track_threshold:
        return FAST_TRACK_ROLE, f"fast-track: complexity {score} < {fast_track_threshold}"
    if role in LOW_TIER_ROLES and score > escalate_threshold:
        return ESCALATION_ROLE, f"escalate: complexity {score} > {escalate_threshold}"
    return role, "direct"


def apply_backpressure(
    role: AgentRole,
    current_load: int,
    load_threshold: int = BACKPRESSURE_LOAD_THRESHOLD,
) -> Optional[AgentRole]:
    """The downgraded role when ``role`` is high tier and overloaded, else None."""
    if role in HIGH_TIER_ROLES and current_load > load_threshold:
        return DOWNGRADE[role]
    return None


def resolve_effective_role(
    role: AgentRole,
    complexity: Optional[int],
    current_load: int = 0,
    fast_track_threshold: int = FAST_TRACK_THRESHOLD,
    escalate_threshold: int = ESCALATE_THRESHOLD,
    load_threshold: int = BACKPRESSURE_LOAD_THRESHOLD,
) -> AgentRole:
    """Complexity routing followed by backpressure, as one pure function.

    ``current_load`` is the IN_PROGRESS count of the complexity-routed role.
    """
    routed, _ = route_by_complexity(role, complexity, fast_track_threshold, escalate_threshold)
    return apply_backpressure(routed, current_load, load_threshold) or routed
