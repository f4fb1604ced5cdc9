"""Risk Scoring Engine for role-assignment changes.

Scoring is a pure function of a ChangeEvent and three reference-data lookups
(approved baseline, privileged-role weights, approved administrators). Each
heuristic contributes independently; the total decides the risk level and
whether the change requires approval.

Heuristics:
    1. No approved baseline assignment for (principal, role, scope)   +40
    2. Active privileged role with weight w > 0                         +w
    3. Event outside business hours in the business timezone           +15
    4. Subscription or management-group scope                          +20
    5. Caller is not an active approved administrator                  +25
    6. Failed operation                                                +10
"""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, Dict, Iterable, List, Optional, Set
from zoneinfo import ZoneInfo

from .azure import role_definition_guid
from .schemas import (
    APPROVAL_THRESHOLD,
    ApprovedAdministrator,
    BaselineAssignment,
    ChangeEvent,
    PrivilegedRole,
    RiskAssessment,
    RiskLevel,
)

logger = logging.getLogger(__name__)

BASELINE_MISS_POINTS = 40
OFF_HOURS_POINTS = 15
BROAD_SCOPE_POINTS = 20
UNKNOWN_ADMIN_POINTS = 25
FAILED_OPERATION_POINTS = 10

BUSINESS_START_HOUR = 9
BUSINESS_END_HOUR = 18

BaselineLookup = Callable[[Optional[str], Optional[str], Optional[str]], bool]
RoleWeightLookup = Callable[[Optional[str]], int]
AdminLookup = Callable[[Optional[str]], bool]


class ReferenceData(ABC):
    """Read-only reference lookups consulted by the scorer."""

    @abstractmethod
    def is_baseline_match(
        self,
        principal_id: Optional[str],
        role_definition_id: Optional[str],
        scope: Optional[str],
    ) -> bool:
        """True if an approved baseline row matches all three values."""

    @abstractmethod
    def privileged_role_weight(self, role_definition_id: Optional[str]) -> int:
        """Weight of an active privileged role, 0 when not privileged."""

    @abstractmethod
    def is_approved_administrator(self, caller: Optional[str]) -> bool:
        """True if caller is an active approved administrator."""


def baseline_key(
    principal_id: Optional[str], role_definition_id: Optional[str], scope: Optional[str]
) -> Optional[str]:
    """Case-insensitive match key for a baseline triple; None if any part is missing."""
    if not principal_id or not role_definition_id or not scope:
        return None
    return "|".join(part.strip().lower() for part in (principal_id, role_definition_id, scope))


@dataclass
class StaticReferenceData(ReferenceData):
    """In-memory reference data, for offline scoring and seeding."""
    baseline: Set[str] = field(default_factory=set)
    role_weights: Dict[str, int] = field(default_factory=dict)
    administrators: Set[str] = field(default_factory=set)

    @classmethod
    def from_records(
        cls,
        baseline: Iterable[BaselineAssignment] = (),
        roles: Iterable[PrivilegedRole] = (),
        administrators: Iterable[ApprovedAdministrator] = (),
    ) -> "StaticReferenceData":
        keys = set()
        for assignment in baseline:
            key = baseline_key(assignment.principal_id, assignment.role_definition_id, assignment.scope)
            if assignment.is_approved and key:
                keys.add(key)
        weights = {
            role_definition_guid(role.role_definition_id): role.risk_weight
            for role in roles
            if role.is_active
        }
        admins = {admin.email.strip().lower() for admin in administrators if admin.is_active}
        return cls(baseline=keys, role_weights=weights, administrators=admins)

    def is_baseline_match(self, principal_id, role_definition_id, scope) -> bool:
        key = baseline_key(principal_id, role_definition_id, scope)
        return key is not None and key in self.baseline

    def privileged_role_weight(self, role_definition_id) -> int:
        guid = role_definition_guid(role_definition_id)
        return self.role_weights.get(guid, 0) if guid else 0

    def is_approved_administrator(self, caller) -> bool:
        return bool(caller) and caller.strip().lower() in self.administrators


def is_outside_business_hours(event_time: datetime, tz: ZoneInfo) -> bool:
    """Weekend, or before 09:00 / from 18:00 local time."""
    local = event_time.astimezone(tz)
    if local.weekday() >= 5:
        return True
    return local.hour < BUSINESS_START_HOUR or local.hour >= BUSINESS_END_HOUR


def is_broad_scope(scope: Optional[str]) -> bool:
    """Subscription without resource group, or any management-group scope."""
    if not scope:
        return False
    lowered = scope.lower()
    if "/subscriptions/" in lowered and "/resourcegroups/" not in lowered:
        return True
    return "/managementgroups/" in lowered


def score_event(
    event: ChangeEvent,
    baseline_lookup: BaselineLookup,
    role_weight_lookup: RoleWeightLookup,
    admin_lookup: AdminLookup,
    business_tz: str = "UTC",
) -> RiskAssessment:
    """Score one event.

    Each lookup is called exactly once. The off-hours check depends only on
    event.event_time, never on the wall clock, and is not evaluated for
    events whose time was substituted during normalization.

    Args:
        event: Canonical change event
        baseline_lookup: (principal_id, role_definition_id, scope) -> approved match
        role_weight_lookup: role_definition_id -> weight (0 if not privileged)
        admin_lookup: caller -> is active approved administrator
        business_tz: IANA timezone used for the business-hours check

    Returns:
        RiskAssessment for the event
    """
    score = 0
    reasons: List[str] = []
    is_escalation = False
    is_suspicious = False

    # 1: baseline. Missing fields are an unknown, and unknown is risky.
    is_baseline_match = bool(baseline_lookup(event.principal_id, event.role_definition_id, event.scope))
    if not is_baseline_match:
        score += BASELINE_MISS_POINTS
        reasons.append("Role assignment not found in approved baseline")
        is_suspicious = True

    # 2: privileged role
    weight = int(role_weight_lookup(event.role_definition_id) or 0)
    if weight > 0:
        score += weight
        reasons.append(f"Assignment of privileged role (weight: {weight})")
        is_escalation = True

    # 3: business hours
    if not event.event_time_degraded and is_outside_business_hours(event.event_time, ZoneInfo(business_tz)):
        score += OFF_HOURS_POINTS
        reasons.append("Assignment occurred outside business hours")

    # 4: broad scope
    if is_broad_scope(event.scope):
        score += BROAD_SCOPE_POINTS
        reasons.append("Assignment at broad scope (subscription or management group level)")

    # 5: unknown administrator
    is_known_admin = bool(admin_lookup(event.caller))
    if event.caller and not is_known_admin:
        score += UNKNOWN_ADMIN_POINTS
        reasons.append("Assignment performed by non-approved administrator")
        is_suspicious = True

    # 6: failed operation
    if (event.status or "").lower() == "failed":
        score += FAILED_OPERATION_POINTS
        reasons.append("Failed role assignment attempt detected")

    return RiskAssessment(
        event_id=event.event_id,
        risk_score=score,
        risk_level=RiskLevel.from_score(score),
        reasons=reasons,
        is_baseline_match=is_baseline_match,
        is_escalation=is_escalation,
        is_suspicious=is_suspicious,
        requires_approval=score >= APPROVAL_THRESHOLD,
    )


class RiskScoringEngine:
    """Binds score_event to a ReferenceData source and a business timezone."""

    def __init__(self, reference: ReferenceData, business_timezone: str = "UTC"):
        """Initialize the engine.

        Args:
            reference: Baseline, privileged-role and administrator lookups
            business_timezone: IANA timezone for the business-hours heuristic
        """
        # Fail at construction rather than on the first event
        ZoneInfo(business_timezone)
        self.reference = reference
        self.business_timezone = business_timezone

    def score(self, event: ChangeEvent) -> RiskAssessment:
        assessment = score_event(
            event,
            self.reference.is_baseline_match,
            self.reference.privileged_role_weight,
            self.reference.is_approved_administrator,
            business_tz=self.business_timezone,
        )
        logger.info(f"Risk calculated for {event.event_id} - "
                    f"Score: {assessment.risk_score}, Level: {assessment.risk_level.value}")
        return assessment
