"""Persistence gateway backed by DynamoDB.

Six tables, each named `{prefix}{Name}`:

    IAMEvents                 event_id (PK). Written once per event.
    RiskAssessments           assessment_id (PK), GSIs by event_id and by detected_date.
    BaselineRoleAssignments   assignment_id (PK), GSI by match_key.
    PrivilegedRoles           role_definition_id (PK, lower-case GUID).
    ApprovedAdministrators    email (PK, lower-case).
    RunLocks                  lock_name (PK).

The event insert is conditional on the key being absent, so concurrent and
repeated inserts of the same event leave exactly one row. Assessments are
append-only.
"""

import logging
import threading
from abc import ABC, abstractmethod
from contextlib import contextmanager
from decimal import Decimal
from typing import Any, Callable, Dict, Iterable, Iterator, List, Optional

import boto3
from botocore.exceptions import BotoCoreError, ClientError

from .azure import role_definition_guid
from .config import StoreSettings, parse_store_connection
from .exceptions import PersistenceError
from .schemas import (
    ApprovedAdministrator,
    AssessmentRecord,
    BaselineAssignment,
    ChangeEvent,
    PrivilegedRole,
    RiskAssessment,
    utcnow,
)
from .scoring import ReferenceData, baseline_key

logger = logging.getLogger(__name__)

EVENTS_TABLE = "IAMEvents"
ASSESSMENTS_TABLE = "RiskAssessments"
BASELINE_TABLE = "BaselineRoleAssignments"
PRIVILEGED_ROLES_TABLE = "PrivilegedRoles"
ADMINISTRATORS_TABLE = "ApprovedAdministrators"
LOCKS_TABLE = "RunLocks"

ASSESSMENTS_BY_EVENT_INDEX = "by-event-id"
ASSESSMENTS_BY_DATE_INDEX = "by-detected-date"
BASELINE_BY_MATCH_KEY_INDEX = "by-match-key"

# Constant partition for the date index so a single query returns newest first
ASSESSMENT_PARTITION = "ASSESSMENT"

_BATCH_GET_LIMIT = 100
_CONDITION_FAILED = "ConditionalCheckFailedException"


class EventStore(ABC):
    """Write side of the persistence gateway."""

    @abstractmethod
    def store_event(self, event: ChangeEvent) -> bool:
        """Insert the event if its id is new. Returns True if inserted."""

    @abstractmethod
    def has_assessment(self, event_id: str) -> bool:
        """True if at least one assessment references event_id."""

    @abstractmethod
    def store_assessment(self, assessment: RiskAssessment) -> RiskAssessment:
        """Append an assessment and return it as stored."""

    @abstractmethod
    def recent_assessments(self, limit: int = 100) -> List[AssessmentRecord]:
        """Most recent assessments first, joined with event display fields."""

    @abstractmethod
    def upsert_baseline_assignment(self, assignment: BaselineAssignment, auto_approve: bool = True) -> bool:
        """Record an observed assignment. Returns True if the row is new."""

    @abstractmethod
    def acquire_lock(self, name: str, owner: str, ttl_seconds: int) -> bool:
        """Take a named run lock unless another owner holds an unexpired one."""

    @abstractmethod
    def release_lock(self, name: str, owner: str) -> None:
        """Release a lock held by owner."""


@contextmanager
def _persistence(operation: str) -> Iterator[None]:
    try:
        yield
    except (ClientError, BotoCoreError) as e:
        raise PersistenceError(f"{operation} failed: {e}") from e


def _is_condition_failure(error: ClientError) -> bool:
    return error.response.get("Error", {}).get("Code") == _CONDITION_FAILED


def _to_item(data: Dict[str, Any]) -> Dict[str, Any]:
    """Drop None values; DynamoDB index keys cannot be NULL."""
    return {k: v for k, v in data.items() if v is not None}


def _from_item(item: Dict[str, Any]) -> Dict[str, Any]:
    """Convert DynamoDB Decimals back to ints."""
    return {k: int(v) if isinstance(v, Decimal) else v for k, v in item.items()}


class DynamoDBStore(EventStore, ReferenceData):
    """EventStore and ReferenceData over boto3 DynamoDB table resources.

    boto3 sessions and resources are not thread-safe, so each thread that uses
    the store gets its own resource (and Table objects) from resource_factory.
    """

    def __init__(self, resource_factory: Callable[[], Any], table_prefix: str = ""):
        """Initialize the store.

        Args:
            resource_factory: Zero-argument callable returning a new boto3
                DynamoDB service resource (or a test double)
            table_prefix: Prefix applied to every table name
        """
        self.resource_factory = resource_factory
        self.table_prefix = table_prefix
        self._local = threading.local()

    @classmethod
    def from_settings(cls, settings: StoreSettings) -> "DynamoDBStore":
        def resource_factory() -> Any:
            session = boto3.Session(profile_name=settings.profile) if settings.profile else boto3.Session()
            return session.resource(
                "dynamodb",
                region_name=settings.region,
                endpoint_url=settings.endpoint_url,
            )

        return cls(resource_factory, table_prefix=settings.table_prefix)

    @classmethod
    def from_connection_string(cls, connection_string: str) -> "DynamoDBStore":
        return cls.from_settings(parse_store_connection(connection_string))

    def table_name(self, name: str) -> str:
        return f"{self.table_prefix}{name}"

    @property
    def resource(self) -> Any:
        """The calling thread's DynamoDB resource."""
        resource = getattr(self._local, "resource", None)
        if resource is None:
            resource = self.resource_factory()
            self._local.resource = resource
            self._local.tables = {}
            logger.debug(f"Created DynamoDB resource for thread {threading.current_thread().name}")
        return resource

    def _table(self, name: str) -> Any:
        resource = self.resource
        tables: Dict[str, Any] = self._local.tables
        if name not in tables:
            tables[name] = resource.Table(self.table_name(name))
        return tables[name]

    # Events and assessments

    def store_event(self, event: ChangeEvent) -> bool:
        item = _to_item(event.model_dump(mode="json"))
        item["stored_at"] = utcnow().isoformat()
        try:
            self._table(EVENTS_TABLE).put_item(
                Item=item,
                ConditionExpression="attribute_not_exists(event_id)",
            )
        except ClientError as e:
            if _is_condition_failure(e):
                logger.info(f"Event {event.event_id} already stored")
                return False
            raise PersistenceError(f"store_event {event.event_id} failed: {e}") from e
        except BotoCoreError as e:
            raise PersistenceError(f"store_event {event.event_id} failed: {e}") from e
        logger.debug(f"Stored event {event.event_id}")
        return True

    def has_assessment(self, event_id: str) -> bool:
        with _persistence(f"has_assessment {event_id}"):
            response = self._table(ASSESSMENTS_TABLE).query(
                IndexName=ASSESSMENTS_BY_EVENT_INDEX,
                KeyConditionExpression="event_id = :event_id",
                ExpressionAttributeValues={":event_id": event_id},
                Limit=1,
            )
        return bool(response.get("Items"))

    def store_assessment(self, assessment: RiskAssessment) -> RiskAssessment:
        item = _to_item(assessment.model_dump(mode="json"))
        item["reason"] = assessment.reason
        item["gsi_pk"] = ASSESSMENT_PARTITION
        with _persistence(f"store_assessment {assessment.assessment_id}"):
            self._table(ASSESSMENTS_TABLE).put_item(Item=item)
        logger.debug(f"Stored assessment {assessment.assessment_id} for event {assessment.event_id}")
        return assessment

    def recent_assessments(self, limit: int = 100) -> List[AssessmentRecord]:
        with _persistence("recent_assessments"):
            response = self._table(ASSESSMENTS_TABLE).query(
                IndexName=ASSESSMENTS_BY_DATE_INDEX,
                KeyConditionExpression="gsi_pk = :pk",
                ExpressionAttributeValues={":pk": ASSESSMENT_PARTITION},
                ScanIndexForward=False,
                Limit=limit,
            )
            items = [_from_item(item) for item in response.get("Items", [])]
            events = self._get_events({item["event_id"] for item in items})

        records = []
        for item in items:
            event = events.get(item["event_id"], {})
            records.append(AssessmentRecord(
                assessment_id=item["assessment_id"],
                event_id=item["event_id"],
                risk_score=item.get("risk_score", 0),
                risk_level=item.get("risk_level", ""),
                reason=item.get("reason"),
                is_escalation=item.get("is_escalation", False),
                is_suspicious=item.get("is_suspicious", False),
                requires_approval=item.get("requires_approval", False),
                detected_date=item.get("detected_date"),
                status=item.get("status"),
                event_time=event.get("event_time"),
                caller=event.get("caller"),
                principal_name=event.get("principal_name"),
                role_name=event.get("role_name"),
                resource_name=event.get("resource_name"),
                operation_name=event.get("operation_name"),
            ))
        return records

    def _get_events(self, event_ids: Iterable[str]) -> Dict[str, Dict[str, Any]]:
        ids = sorted(event_ids)
        table_name = self.table_name(EVENTS_TABLE)
        found: Dict[str, Dict[str, Any]] = {}
        for start in range(0, len(ids), _BATCH_GET_LIMIT):
            request: Optional[Dict[str, Any]] = {
                table_name: {"Keys": [{"event_id": i} for i in ids[start:start + _BATCH_GET_LIMIT]]}
            }
            while request:
                response = self.resource.batch_get_item(RequestItems=request)
                for item in response.get("Responses", {}).get(table_name, []):
                    found[item["event_id"]] = item
                request = response.get("UnprocessedKeys") or None
        return found

    # Baseline

    def upsert_baseline_assignment(self, assignment: BaselineAssignment, auto_approve: bool = True) -> bool:
        now = utcnow().isoformat()
        write_once = {
            "principal_id": assignment.principal_id,
            "principal_type": assignment.principal_type,
            "role_definition_id": assignment.role_definition_id,
            "scope": assignment.scope,
            "assigned_date": assignment.assigned_date.isoformat() if assignment.assigned_date else None,
            "match_key": baseline_key(assignment.principal_id, assignment.role_definition_id, assignment.scope),
        }
        refreshed = {
            "principal_name": assignment.principal_name,
            "role_name": assignment.role_name,
        }

        clauses = ["last_verified = :last_verified", "is_approved = if_not_exists(is_approved, :is_approved)"]
        values: Dict[str, Any] = {":last_verified": now, ":is_approved": auto_approve}
        for field_name, value in write_once.items():
            if value is not None:
                clauses.append(f"{field_name} = if_not_exists({field_name}, :{field_name})")
                values[f":{field_name}"] = value
        for field_name, value in refreshed.items():
            if value is not None:
                clauses.append(f"{field_name} = :{field_name}")
                values[f":{field_name}"] = value

        with _persistence(f"upsert_baseline_assignment {assignment.assignment_id}"):
            response = self._table(BASELINE_TABLE).update_item(
                Key={"assignment_id": assignment.assignment_id},
                UpdateExpression="SET " + ", ".join(clauses),
                ExpressionAttributeValues=values,
                ReturnValues="UPDATED_OLD",
            )
        # An existing row always had last_verified set
        return "last_verified" not in response.get("Attributes", {})

    # Run locks

    def acquire_lock(self, name: str, owner: str, ttl_seconds: int) -> bool:
        now = int(utcnow().timestamp())
        try:
            self._table(LOCKS_TABLE).put_item(
                Item={
                    "lock_name": name,
                    "owner": owner,
                    "acquired_at": now,
                    "expires_at": now + ttl_seconds,
                },
                ConditionExpression="attribute_not_exists(lock_name) OR expires_at < :now",
                ExpressionAttributeValues={":now": now},
            )
        except ClientError as e:
            if _is_condition_failure(e):
                logger.info(f"Lock {name} is held by another run")
                return False
            raise PersistenceError(f"acquire_lock {name} failed: {e}") from e
        except BotoCoreError as e:
            raise PersistenceError(f"acquire_lock {name} failed: {e}") from e
        return True

    def release_lock(self, name: str, owner: str) -> None:
        try:
            self._table(LOCKS_TABLE).delete_item(
                Key={"lock_name": name},
                ConditionExpression="#owner = :owner",
                ExpressionAttributeNames={"#owner": "owner"},
                ExpressionAttributeValues={":owner": owner},
            )
        except ClientError as e:
            if _is_condition_failure(e):
                logger.warning(f"Lock {name} was no longer held by {owner}")
                return
            raise PersistenceError(f"release_lock {name} failed: {e}") from e
        except BotoCoreError as e:
            raise PersistenceError(f"release_lock {name} failed: {e}") from e

    # Reference data

    def is_baseline_match(self, principal_id, role_definition_id, scope) -> bool:
        key = baseline_key(principal_id, role_definition_id, scope)
        if key is None:
            return False
        with _persistence("is_baseline_match"):
            response = self._table(BASELINE_TABLE).query(
                IndexName=BASELINE_BY_MATCH_KEY_INDEX,
                KeyConditionExpression="match_key = :match_key",
                FilterExpression="is_approved = :approved",
                ExpressionAttributeValues={":match_key": key, ":approved": True},
            )
        return bool(response.get("Items"))

    def privileged_role_weight(self, role_definition_id) -> int:
        guid = role_definition_guid(role_definition_id)
        if not guid:
            return 0
        with _persistence("privileged_role_weight"):
            response = self._table(PRIVILEGED_ROLES_TABLE).get_item(Key={"role_definition_id": guid})
        item = response.get("Item")
        if not item or not item.get("is_active", True):
            return 0
        return int(item.get("risk_weight", 0))

    def is_approved_administrator(self, caller) -> bool:
        if not caller:
            return False
        with _persistence("is_approved_administrator"):
            response = self._table(ADMINISTRATORS_TABLE).get_item(Key={"email": caller.strip().lower()})
        item = response.get("Item")
        return bool(item) and bool(item.get("is_active", True))

    # Provisioning

    def create_tables(self) -> List[str]:
        """Create any missing tables. Returns the names that were created."""
        created = []
        for name, definition in _table_definitions().items():
            table_name = self.table_name(name)
            try:
                table = self.resource.create_table(
                    TableName=table_name,
                    BillingMode="PAY_PER_REQUEST",
                    **definition,
                )
            except ClientError as e:
                if e.response.get("Error", {}).get("Code") == "ResourceInUseException":
                    logger.info(f"Table {table_name} already exists")
                    continue
                raise PersistenceError(f"create_table {table_name} failed: {e}") from e
            table.wait_until_exists()
            logger.info(f"Created table {table_name}")
            created.append(table_name)
        return created

    def seed_reference_data(
        self,
        roles: Iterable[PrivilegedRole],
        administrators: Iterable[ApprovedAdministrator],
    ) -> Dict[str, int]:
        """Load privileged roles and approved administrators (overwriting by key)."""
        counts = {"privileged_roles": 0, "approved_administrators": 0}
        with _persistence("seed_reference_data"):
            with self._table(PRIVILEGED_ROLES_TABLE).batch_writer() as batch:
                for role in roles:
                    item = _to_item(role.model_dump(mode="json"))
                    item["role_definition_id"] = role_definition_guid(role.role_definition_id)
                    batch.put_item(Item=item)
                    counts["privileged_roles"] += 1
            with self._table(ADMINISTRATORS_TABLE).batch_writer() as batch:
                for admin in administrators:
                    item = _to_item(admin.model_dump(mode="json"))
                    item["email"] = admin.email.strip().lower()
                    batch.put_item(Item=item)
                    counts["approved_administrators"] += 1
        logger.info(f"Seeded {counts['privileged_roles']} privileged roles and "
                    f"{counts['approved_administrators']} approved administrators")
        return counts


def _hash_key(attribute: str) -> Dict[str, Any]:
    return {
        "KeySchema": [{"AttributeName": attribute, "KeyType": "HASH"}],
        "AttributeDefinitions": [{"AttributeName": attribute, "AttributeType": "S"}],
    }


def _table_definitions() -> Dict[str, Dict[str, Any]]:
    assessments = _hash_key("assessment_id")
    assessments["AttributeDefinitions"] += [
        {"AttributeName": "event_id", "AttributeType": "S"},
        {"AttributeName": "gsi_pk", "AttributeType": "S"},
        {"AttributeName": "detected_date", "AttributeType": "S"},
    ]
    assessments["GlobalSecondaryIndexes"] = [
        {
            "IndexName": ASSESSMENTS_BY_EVENT_INDEX,
            "KeySchema": [{"AttributeName": "event_id", "KeyType": "HASH"}],
            "Projection": {"ProjectionType": "KEYS_ONLY"},
        },
        {
            "IndexName": ASSESSMENTS_BY_DATE_INDEX,
            "KeySchema": [
                {"AttributeName": "gsi_pk", "KeyType": "HASH"},
                {"AttributeName": "detected_date", "KeyType": "RANGE"},
            ],
            "Projection": {"ProjectionType": "ALL"},
        },
    ]

    baseline = _hash_key("assignment_id")
    baseline["AttributeDefinitions"].append({"AttributeName": "match_key", "AttributeType": "S"})
    baseline["GlobalSecondaryIndexes"] = [{
        "IndexName": BASELINE_BY_MATCH_KEY_INDEX,
        "KeySchema": [{"AttributeName": "match_key", "KeyType": "HASH"}],
        "Projection": {"ProjectionType": "ALL"},
    }]

    return {
        EVENTS_TABLE: _hash_key("event_id"),
        ASSESSMENTS_TABLE: assessments,
        BASELINE_TABLE: baseline,
        PRIVILEGED_ROLES_TABLE: _hash_key("role_definition_id"),
        ADMINISTRATORS_TABLE: _hash_key("email"),
        LOCKS_TABLE: _hash_key("lock_name"),
    }
