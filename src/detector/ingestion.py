"""Activity-log ingestion for role-assignment changes.

This module handles querying the audit log for role-assignment operations,
decoding the tabular result, and normalizing each row into a ChangeEvent
ready for enrichment and scoring.
"""

import json
import logging
import re
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional, Sequence

import httpx

from .azure import AzureRestClient, scope_from_assignment_id
from .exceptions import AuthenticationError, RowParseError, SourceQueryError
from .schemas import ChangeEvent, NormalizedRow, TabularResult, utcnow

logger = logging.getLogger(__name__)

# Deterministic namespace for event ids synthesized from row content
EVENT_ID_NAMESPACE = uuid.UUID("6f1c1e0a-3b8e-4d55-9a43-0d6c3f6f2b11")

_FRACTION_RE = re.compile(r"(\.\d{6})\d+")

_STATUS_ALIASES = {"failure": "Failed"}


@dataclass(frozen=True)
class ActivityLogQuery:
    """KQL for administrative role-assignment activity in a look-back window.

    EventId is projected from CorrelationId and combined with the resource id
    during normalization (see compose_event_id). Only terminal statuses are
    kept so that the Start/Success pair of one operation does not share an id.
    """
    lookback_minutes: int = 30

    def render(self) -> str:
        return f"""
AzureActivity
| where TimeGenerated > ago({self.lookback_minutes}m)
| where CategoryValue == 'Administrative'
| where OperationNameValue has 'Microsoft.Authorization/roleAssignments'
| where ActivityStatusValue in~ ('Success', 'Succeeded', 'Failed', 'Failure')
| project
    EventId = CorrelationId,
    EventTime = TimeGenerated,
    OperationName = OperationNameValue,
    Caller,
    CallerIpAddress,
    Status = ActivityStatusValue,
    StatusCode = ActivitySubstatusValue,
    SubscriptionId,
    ResourceGroup,
    ResourceId = _ResourceId,
    Properties
| order by EventTime desc
""".strip()


def fetch_activity_rows(
    client: AzureRestClient,
    workspace_id: str,
    query: ActivityLogQuery,
    timeout: Optional[float] = None,
) -> TabularResult:
    """Run the activity query and return its first table.

    Raises:
        SourceQueryError: If the query call fails or returns an unreadable body.
    """
    logger.info(f"Querying Log Analytics workspace {workspace_id} "
                f"(last {query.lookback_minutes} minutes)")
    try:
        payload = client.query_workspace(workspace_id, query.render(), timeout=timeout)
    except httpx.HTTPStatusError as e:
        raise SourceQueryError(
            f"Log query failed with HTTP {e.response.status_code}: {e.response.text[:500]}"
        ) from e
    except (httpx.HTTPError, AuthenticationError, ValueError) as e:
        raise SourceQueryError(f"Log query failed: {e}") from e

    if not isinstance(payload, dict):
        raise SourceQueryError("Log query returned a non-object body")

    result = TabularResult.from_response(payload)
    logger.info(f"Log query returned {len(result.rows)} rows")
    return result


def parse_timestamp(value: Any) -> datetime:
    """Parse an ISO-8601 timestamp into aware UTC.

    Accepts a trailing Z, explicit offsets, and up to 7 fractional digits.
    Naive values are taken as UTC.

    Raises:
        ValueError: If the value is empty or not a timestamp.
    """
    if isinstance(value, datetime):
        parsed = value
    else:
        if value is None or not str(value).strip():
            raise ValueError("timestamp is empty")
        text = str(value).strip().replace("Z", "+00:00").replace("z", "+00:00")
        text = _FRACTION_RE.sub(r"\1", text)
        parsed = datetime.fromisoformat(text)
    if parsed.tzinfo is None:
        return parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def _get_ci(obj: Dict[str, Any], key: str) -> Any:
    """Case-insensitive dict lookup."""
    if key in obj:
        return obj[key]
    lowered = key.lower()
    for k, v in obj.items():
        if isinstance(k, str) and k.lower() == lowered:
            return v
    return None


def _as_object(value: Any) -> Optional[Dict[str, Any]]:
    """Return value as a dict, decoding JSON strings; None for anything else."""
    if isinstance(value, dict):
        return value
    if isinstance(value, str) and value.strip().startswith("{"):
        try:
            decoded = json.loads(value)
        except json.JSONDecodeError:
            return None
        return decoded if isinstance(decoded, dict) else None
    return None


def _as_text(value: Any) -> Optional[str]:
    if isinstance(value, str) and value.strip():
        return value.strip()
    return None


@dataclass(frozen=True)
class ChangeRequestDetails:
    """Identity/role fields carried by the activity record's request body."""
    principal_id: Optional[str] = None
    principal_type: Optional[str] = None
    role_definition_id: Optional[str] = None
    scope: Optional[str] = None


def decode_change_request(properties: Any) -> ChangeRequestDetails:
    """Extract change-request details from a Properties blob.

    Tolerates a missing blob, malformed JSON, a request body given as an object
    or as a JSON string, and any key casing. Whatever cannot be found is None.
    """
    props = _as_object(properties)
    if props is None:
        return ChangeRequestDetails()

    body = _as_object(_get_ci(props, "requestbody"))
    if body is None:
        return ChangeRequestDetails()

    inner = _as_object(_get_ci(body, "properties"))
    if inner is None:
        return ChangeRequestDetails()

    return ChangeRequestDetails(
        principal_id=_as_text(_get_ci(inner, "principalId")),
        principal_type=_as_text(_get_ci(inner, "principalType")),
        role_definition_id=_as_text(_get_ci(inner, "roleDefinitionId")),
        scope=_as_text(_get_ci(inner, "scope")),
    )


def synthesize_event_id(columns: Sequence[str], row: Sequence[Any]) -> str:
    """Deterministic id for a row without a source id (same row, same id)."""
    canonical = json.dumps(
        {str(name).lower(): row[i] if i < len(row) else None for i, name in enumerate(columns)},
        sort_keys=True,
        default=str,
    )
    return str(uuid.uuid5(EVENT_ID_NAMESPACE, canonical))


def compose_event_id(correlation_id: str, resource_id: Optional[str]) -> str:
    """Event id for one operation on one assignment.

    A single correlation (an ARM deployment, a bulk grant) can touch several
    role assignments, so the correlation id alone is not unique per change.
    ARM resource ids are case-insensitive and are lower-cased here.
    """
    if not resource_id:
        return correlation_id
    return f"{correlation_id}|{resource_id.strip().lower()}"


class RowNormalizer:
    """Turns a columns + rows query result into ChangeEvents."""

    def __init__(
        self,
        allow_time_fallback: bool = False,
        clock: Callable[[], datetime] = utcnow,
    ):
        """Initialize the normalizer.

        Args:
            allow_time_fallback: Keep rows with an unusable EventTime, stamping
                them with the current time and marking them degraded.
            clock: Source of "now" for the fallback.
        """
        self.allow_time_fallback = allow_time_fallback
        self.clock = clock

    def normalize(self, result: TabularResult) -> List[NormalizedRow]:
        """Normalize every row, isolating failures to the row that caused them."""
        index = {name.lower(): i for i, name in enumerate(result.columns)}
        outcomes = []
        for row_index, row in enumerate(result.rows):
            try:
                event = self.normalize_row(index, result.columns, row, row_index)
                outcomes.append(NormalizedRow(row_index=row_index, event=event))
            except RowParseError as e:
                logger.warning(f"Skipping row {row_index}: {e}")
                outcomes.append(NormalizedRow(row_index=row_index, error=str(e)))
            except Exception as e:
                logger.warning(f"Skipping row {row_index}: unexpected {type(e).__name__}: {e}")
                outcomes.append(NormalizedRow(row_index=row_index, error=f"{type(e).__name__}: {e}"))

        parsed = sum(1 for o in outcomes if o.ok)
        logger.info(f"Normalized {parsed} of {len(outcomes)} rows")
        return outcomes

    def normalize_row(
        self,
        index: Dict[str, int],
        columns: Sequence[str],
        row: Sequence[Any],
        row_index: int = -1,
    ) -> ChangeEvent:
        """Normalize one positional row.

        Raises:
            RowParseError: If the row has no usable EventTime and fallback is off.
        """
        def column(name: str) -> Optional[str]:
            i = index.get(name.lower())
            if i is None or i >= len(row) or row[i] is None:
                return None
            value = row[i]
            if isinstance(value, (dict, list)):
                return json.dumps(value)
            text = str(value)
            return text if text.strip() else None

        resource_id = column("ResourceId")
        correlation_id = column("EventId")
        if correlation_id:
            event_id = compose_event_id(correlation_id, resource_id)
        else:
            event_id = synthesize_event_id(columns, row)

        degraded = False
        raw_time = column("EventTime")
        try:
            event_time = parse_timestamp(raw_time)
        except ValueError as e:
            if not self.allow_time_fallback:
                raise RowParseError(f"unusable EventTime {raw_time!r}: {e}", row_index) from e
            event_time = self.clock()
            degraded = True
            logger.warning(f"Row {row_index} (event {event_id}) has unusable EventTime "
                           f"{raw_time!r}; using current time, off-hours check disabled")

        properties = column("Properties")
        details = decode_change_request(properties)
        status = column("Status")
        if status is not None:
            status = _STATUS_ALIASES.get(status.lower(), status)

        return ChangeEvent(
            event_id=event_id,
            event_time=event_time,
            event_time_degraded=degraded,
            operation_name=column("OperationName"),
            caller=column("Caller"),
            caller_ip_address=column("CallerIpAddress"),
            status=status,
            status_code=column("StatusCode"),
            principal_id=details.principal_id,
            principal_type=details.principal_type,
            role_definition_id=details.role_definition_id,
            scope=details.scope or scope_from_assignment_id(resource_id),
            resource_id=resource_id,
            raw_payload=properties,
        )
