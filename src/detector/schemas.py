"""Canonical record types for the IAM change detection pipeline.

This module defines the Pydantic models that flow between the normalizer,
the context resolver, the scoring engine and the persistence gateway, plus
the per-unit outcome records used to report what a run did with each row
and event. Field names are snake_case in Python and camelCase on the wire.
"""

import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

PENDING_STATUS = "Pending"
APPROVAL_THRESHOLD = 60


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class _CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class RiskLevel(str, Enum):
    """Ordinal risk categories derived from a risk score."""
    LOW = "Low"
    MEDIUM = "Medium"
    HIGH = "High"
    CRITICAL = "Critical"

    @classmethod
    def from_score(cls, score: int) -> "RiskLevel":
        if score >= 80:
            return cls.CRITICAL
        if score >= 60:
            return cls.HIGH
        if score >= 40:
            return cls.MEDIUM
        return cls.LOW


class ChangeEvent(_CamelModel):
    """One detected role-assignment mutation.

    Every identity and role field is optional: it is populated either from the
    log row's embedded properties or later by enrichment, and absence is a
    normal state the scorer handles.
    """
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)

    event_id: str = Field(..., description="Stable dedup key for the event")
    event_time: datetime = Field(..., description="Source-reported time, UTC")
    event_time_degraded: bool = Field(
        default=False,
        description="True when event_time was substituted because the source value was unusable",
    )

    operation_name: Optional[str] = None
    caller: Optional[str] = None
    caller_ip_address: Optional[str] = None
    status: Optional[str] = None
    status_code: Optional[str] = None

    principal_id: Optional[str] = None
    principal_name: Optional[str] = None
    principal_type: Optional[str] = None
    role_definition_id: Optional[str] = None
    role_name: Optional[str] = None
    scope: Optional[str] = None
    resource_id: Optional[str] = None
    resource_name: Optional[str] = None

    raw_payload: Optional[str] = Field(default=None, description="Original properties blob")

    @field_validator("event_time", mode="before")
    @classmethod
    def parse_event_time(cls, v: Any) -> Any:
        """Accept ISO strings and coerce everything to aware UTC."""
        if isinstance(v, str):
            v = datetime.fromisoformat(v.replace("Z", "+00:00"))
        if isinstance(v, datetime):
            if v.tzinfo is None:
                return v.replace(tzinfo=timezone.utc)
            return v.astimezone(timezone.utc)
        return v


class RiskAssessment(_CamelModel):
    """One scoring outcome for a ChangeEvent. Stored append-only."""
    assessment_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    event_id: str
    risk_score: int = Field(..., ge=0, description="Sum of triggered heuristic points")
    risk_level: RiskLevel
    reasons: List[str] = Field(default_factory=list)
    is_baseline_match: bool = False
    is_escalation: bool = False
    is_suspicious: bool = False
    requires_approval: bool = False
    status: str = PENDING_STATUS
    detected_date: datetime = Field(default_factory=utcnow)

    @property
    def reason(self) -> str:
        """Reasons joined for display."""
        return "; ".join(self.reasons)


class BaselineAssignment(_CamelModel):
    """An approved role assignment observed by the snapshot job."""
    assignment_id: str
    principal_id: Optional[str] = None
    principal_name: Optional[str] = None
    principal_type: Optional[str] = None
    role_definition_id: Optional[str] = None
    role_name: Optional[str] = None
    scope: Optional[str] = None
    assigned_date: Optional[datetime] = None
    last_verified: Optional[datetime] = None
    is_approved: bool = True


class PrivilegedRole(_CamelModel):
    """Reference row: risk contribution of a sensitive role definition."""
    role_definition_id: str
    role_name: Optional[str] = None
    risk_weight: int = Field(..., ge=0)
    is_active: bool = True


class ApprovedAdministrator(_CamelModel):
    """Reference row: a caller identity allowed to change role assignments."""
    email: str
    display_name: Optional[str] = None
    is_active: bool = True


class TabularResult(BaseModel):
    """Columns + rows shape returned by the log query service."""
    columns: List[str] = Field(default_factory=list)
    rows: List[List[Any]] = Field(default_factory=list)

    @classmethod
    def from_response(cls, payload: Dict[str, Any]) -> "TabularResult":
        """Build from a Log Analytics query response, using its first table."""
        tables = payload.get("tables") or []
        if not tables:
            return cls()
        table = tables[0] or {}
        columns = [
            str(col.get("name", "")) if isinstance(col, dict) else str(col)
            for col in table.get("columns") or []
        ]
        rows = [list(row) for row in table.get("rows") or [] if isinstance(row, list)]
        return cls(columns=columns, rows=rows)


class NormalizedRow(BaseModel):
    """Outcome of normalizing one row: an event or the reason it was skipped."""
    row_index: int
    event: Optional[ChangeEvent] = None
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.event is not None


class EnrichmentOutcome(BaseModel):
    """Outcome of resolving context for one event. Never carries an exception."""
    event: ChangeEvent
    enriched: bool = False
    error: Optional[str] = None


class UnitStatus(str, Enum):
    """What a detection run did with one row/event."""
    PROCESSED = "processed"
    RECOVERED = "recovered"
    DUPLICATE = "duplicate"
    SKIPPED = "skipped"
    FAILED = "failed"


class UnitOutcome(BaseModel):
    """Result of one unit of work (store + score + store)."""
    status: UnitStatus
    event_id: Optional[str] = None
    row_index: Optional[int] = None
    assessment: Optional[RiskAssessment] = None
    enriched: bool = False
    error: Optional[str] = None


class RunSummary(BaseModel):
    """Result of one detection run."""
    run_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    status: str = Field(default="completed", description="completed, failed or misconfigured")
    started_at: datetime = Field(default_factory=utcnow)
    total_rows: int = Field(default=0, ge=0)
    processed: int = Field(default=0, ge=0)
    recovered: int = Field(default=0, ge=0)
    duplicates: int = Field(default=0, ge=0)
    skipped: int = Field(default=0, ge=0)
    failed: int = Field(default=0, ge=0)
    enriched: int = Field(default=0, ge=0)
    high_risk_events: int = Field(default=0, ge=0)
    processing_time_seconds: float = Field(default=0.0, ge=0.0)
    errors: List[str] = Field(default_factory=list)
    outcomes: List[UnitOutcome] = Field(default_factory=list)

    def record(self, outcome: UnitOutcome) -> None:
        self.outcomes.append(outcome)
        if outcome.status == UnitStatus.PROCESSED:
            self.processed += 1
        elif outcome.status == UnitStatus.RECOVERED:
            self.recovered += 1
        elif outcome.status == UnitStatus.DUPLICATE:
            self.duplicates += 1
        elif outcome.status == UnitStatus.SKIPPED:
            self.skipped += 1
        else:
            self.failed += 1
        if outcome.enriched:
            self.enriched += 1
        if outcome.assessment is not None and outcome.assessment.requires_approval:
            self.high_risk_events += 1
        if outcome.error:
            label = outcome.event_id or f"row {outcome.row_index}"
            self.errors.append(f"{label}: {outcome.error}")


class SnapshotResult(BaseModel):
    """Result of one baseline snapshot run."""
    status: str = Field(default="completed", description="completed, skipped, failed or misconfigured")
    subscription_id: Optional[str] = None
    observed: int = Field(default=0, ge=0)
    new_assignments: int = Field(default=0, ge=0)
    verified: int = Field(default=0, ge=0)
    auto_approve_new: bool = True
    processing_time_seconds: float = Field(default=0.0, ge=0.0)
    error: Optional[str] = None


class AssessmentRecord(_CamelModel):
    """Flat row served by the read-only assessments endpoint."""
    assessment_id: str
    event_id: str
    risk_score: int
    risk_level: str
    reason: Optional[str] = None
    is_escalation: bool = False
    is_suspicious: bool = False
    requires_approval: bool = False
    detected_date: Optional[datetime] = None
    status: Optional[str] = None
    event_time: Optional[datetime] = None
    caller: Optional[str] = None
    principal_name: Optional[str] = None
    role_name: Optional[str] = None
    resource_name: Optional[str] = None
    operation_name: Optional[str] = None
