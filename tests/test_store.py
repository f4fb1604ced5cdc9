"""Tests for the DynamoDB persistence gateway."""

import threading
from datetime import datetime, timezone
from decimal import Decimal
from unittest.mock import MagicMock, patch

import pytest
from botocore.exceptions import ClientError, EndpointConnectionError

from detector.config import StoreSettings
from detector.exceptions import PersistenceError
from detector.schemas import (
    ApprovedAdministrator,
    BaselineAssignment,
    ChangeEvent,
    PrivilegedRole,
    RiskAssessment,
    RiskLevel,
)
from detector.store import (
    ASSESSMENTS_BY_DATE_INDEX,
    ASSESSMENTS_BY_EVENT_INDEX,
    BASELINE_BY_MATCH_KEY_INDEX,
    DynamoDBStore,
)

OWNER_GUID = "8e3af657-a8ff-443c-a75c-2fe8c4bcb635"


def client_error(code: str, operation: str = "PutItem") -> ClientError:
    return ClientError({"Error": {"Code": code, "Message": code}}, operation)


def make_event(event_id="e1", **overrides):
    fields = dict(
        event_id=event_id,
        event_time=datetime(2024, 1, 9, 10, 0, tzinfo=timezone.utc),
        caller="someone@contoso.com",
        principal_id="p-1",
    )
    fields.update(overrides)
    return ChangeEvent(**fields)


class TestDynamoDBStore:

    def setup_method(self):
        self.resource = MagicMock()
        self.tables = {}

        def table(name):
            return self.tables.setdefault(name, MagicMock(name=name))

        self.resource.Table.side_effect = table
        self.store = DynamoDBStore(lambda: self.resource, table_prefix="test-")

    def test_table_names_are_prefixed(self):
        self.store.store_event(make_event())
        assert "test-IAMEvents" in self.tables

    def test_store_event_conditional_insert(self):
        assert self.store.store_event(make_event()) is True

        kwargs = self.tables["test-IAMEvents"].put_item.call_args.kwargs
        assert kwargs["ConditionExpression"] == "attribute_not_exists(event_id)"
        item = kwargs["Item"]
        assert item["event_id"] == "e1"
        assert item["event_time"].startswith("2024-01-09T10:00:00")
        assert "stored_at" in item
        # None values are not written
        assert "scope" not in item

    def test_store_event_already_present(self):
        self.store.store_event(make_event())
        self.tables["test-IAMEvents"].put_item.side_effect = client_error("ConditionalCheckFailedException")
        assert self.store.store_event(make_event()) is False

    def test_store_event_other_error_wrapped(self):
        self.store.store_event(make_event())
        self.tables["test-IAMEvents"].put_item.side_effect = client_error("ProvisionedThroughputExceededException")
        with pytest.raises(PersistenceError):
            self.store.store_event(make_event())

    def test_store_event_connection_error_wrapped(self):
        self.store.store_event(make_event())
        self.tables["test-IAMEvents"].put_item.side_effect = EndpointConnectionError(endpoint_url="http://x")
        with pytest.raises(PersistenceError):
            self.store.store_event(make_event())

    def test_store_assessment(self):
        assessment = RiskAssessment(
            event_id="e1", risk_score=65, risk_level=RiskLevel.HIGH, reasons=["a", "b"], requires_approval=True
        )
        stored = self.store.store_assessment(assessment)

        assert stored is assessment
        table = self.tables["test-RiskAssessments"]
        kwargs = table.put_item.call_args.kwargs
        assert "ConditionExpression" not in kwargs
        item = kwargs["Item"]
        assert item["assessment_id"] == assessment.assessment_id
        assert item["risk_level"] == "High"
        assert item["reason"] == "a; b"
        assert item["status"] == "Pending"
        assert item["gsi_pk"] == "ASSESSMENT"

    def test_has_assessment(self):
        table = MagicMock()
        self.tables["test-RiskAssessments"] = table
        table.query.return_value = {"Items": [{"assessment_id": "a1"}]}

        assert self.store.has_assessment("e1") is True
        kwargs = table.query.call_args.kwargs
        assert kwargs["IndexName"] == ASSESSMENTS_BY_EVENT_INDEX
        assert kwargs["ExpressionAttributeValues"] == {":event_id": "e1"}

        table.query.return_value = {"Items": []}
        assert self.store.has_assessment("e2") is False

    def test_recent_assessments_joins_events(self):
        table = MagicMock()
        self.tables["test-RiskAssessments"] = table
        table.query.return_value = {"Items": [
            {"assessment_id": "a2", "event_id": "e2", "risk_score": Decimal("130"), "risk_level": "Critical",
             "reason": "x; y", "requires_approval": True, "detected_date": "2024-01-09T11:00:00+00:00",
             "status": "Pending"},
            {"assessment_id": "a1", "event_id": "e1", "risk_score": Decimal("0"), "risk_level": "Low",
             "detected_date": "2024-01-09T10:00:00+00:00", "status": "Pending"},
        ]}
        self.resource.batch_get_item.return_value = {
            "Responses": {"test-IAMEvents": [
                {"event_id": "e2", "caller": "stranger@contoso.com", "role_name": "Owner",
                 "event_time": "2024-01-07T11:00:00+00:00"},
            ]},
        }

        records = self.store.recent_assessments(limit=10)

        kwargs = table.query.call_args.kwargs
        assert kwargs["IndexName"] == ASSESSMENTS_BY_DATE_INDEX
        assert kwargs["ScanIndexForward"] is False
        assert kwargs["Limit"] == 10
        assert [r.assessment_id for r in records] == ["a2", "a1"]
        assert records[0].risk_score == 130
        assert records[0].caller == "stranger@contoso.com"
        assert records[0].role_name == "Owner"
        assert records[1].caller is None

    def test_recent_assessments_retries_unprocessed_keys(self):
        table = MagicMock()
        self.tables["test-RiskAssessments"] = table
        table.query.return_value = {"Items": [
            {"assessment_id": "a1", "event_id": "e1", "risk_score": 0, "risk_level": "Low"},
        ]}
        unprocessed = {"test-IAMEvents": {"Keys": [{"event_id": "e1"}]}}
        self.resource.batch_get_item.side_effect = [
            {"Responses": {"test-IAMEvents": []}, "UnprocessedKeys": unprocessed},
            {"Responses": {"test-IAMEvents": [{"event_id": "e1", "caller": "c"}]}, "UnprocessedKeys": {}},
        ]

        records = self.store.recent_assessments()

        assert records[0].caller == "c"
        assert self.resource.batch_get_item.call_count == 2

    def test_recent_assessments_empty(self):
        table = MagicMock()
        self.tables["test-RiskAssessments"] = table
        table.query.return_value = {"Items": []}
        assert self.store.recent_assessments() == []
        self.resource.batch_get_item.assert_not_called()

    def test_recent_assessments_error_wrapped(self):
        table = MagicMock()
        self.tables["test-RiskAssessments"] = table
        table.query.side_effect = client_error("ResourceNotFoundException", "Query")
        with pytest.raises(PersistenceError):
            self.store.recent_assessments()


class TestBaselineUpsert:

    def setup_method(self):
        self.table = MagicMock()
        self.resource = MagicMock()
        self.resource.Table.return_value = self.table
        self.store = DynamoDBStore(lambda: self.resource)
        self.assignment = BaselineAssignment(
            assignment_id="ra-1",
            principal_id="P-1",
            principal_name="User: P-1...",
            principal_type="User",
            role_definition_id=OWNER_GUID,
            role_name="Owner",
            scope="/subscriptions/sub-1",
        )

    def test_new_row(self):
        self.table.update_item.return_value = {}
        assert self.store.upsert_baseline_assignment(self.assignment, auto_approve=True) is True

        kwargs = self.table.update_item.call_args.kwargs
        assert kwargs["Key"] == {"assignment_id": "ra-1"}
        assert kwargs["ReturnValues"] == "UPDATED_OLD"
        expression = kwargs["UpdateExpression"]
        assert expression.startswith("SET last_verified = :last_verified")
        assert "is_approved = if_not_exists(is_approved, :is_approved)" in expression
        assert "principal_id = if_not_exists(principal_id, :principal_id)" in expression
        assert "role_name = :role_name" in expression
        values = kwargs["ExpressionAttributeValues"]
        assert values[":is_approved"] is True
        assert values[":match_key"] == f"p-1|{OWNER_GUID}|/subscriptions/sub-1"
        # Missing assigned_date is not written
        assert ":assigned_date" not in values

    def test_existing_row(self):
        self.table.update_item.return_value = {"Attributes": {"last_verified": "2024-01-01T00:00:00+00:00"}}
        assert self.store.upsert_baseline_assignment(self.assignment) is False

    def test_auto_approve_off(self):
        self.table.update_item.return_value = {}
        self.store.upsert_baseline_assignment(self.assignment, auto_approve=False)
        assert self.table.update_item.call_args.kwargs["ExpressionAttributeValues"][":is_approved"] is False

    def test_error_wrapped(self):
        self.table.update_item.side_effect = client_error("ValidationException", "UpdateItem")
        with pytest.raises(PersistenceError):
            self.store.upsert_baseline_assignment(self.assignment)


class TestLocks:

    def setup_method(self):
        self.table = MagicMock()
        resource = MagicMock()
        resource.Table.return_value = self.table
        self.store = DynamoDBStore(lambda: resource)

    def test_acquire(self):
        assert self.store.acquire_lock("baseline-snapshot", "owner-1", 60) is True
        kwargs = self.table.put_item.call_args.kwargs
        item = kwargs["Item"]
        assert item["lock_name"] == "baseline-snapshot"
        assert item["owner"] == "owner-1"
        assert item["expires_at"] - item["acquired_at"] == 60
        assert "attribute_not_exists(lock_name)" in kwargs["ConditionExpression"]

    def test_acquire_held(self):
        self.table.put_item.side_effect = client_error("ConditionalCheckFailedException")
        assert self.store.acquire_lock("baseline-snapshot", "owner-2", 60) is False

    def test_release(self):
        self.store.release_lock("baseline-snapshot", "owner-1")
        kwargs = self.table.delete_item.call_args.kwargs
        assert kwargs["Key"] == {"lock_name": "baseline-snapshot"}
        assert kwargs["ExpressionAttributeValues"] == {":owner": "owner-1"}

    def test_release_not_owner_is_quiet(self):
        self.table.delete_item.side_effect = client_error("ConditionalCheckFailedException", "DeleteItem")
        self.store.release_lock("baseline-snapshot", "owner-1")

    def test_release_error_wrapped(self):
        self.table.delete_item.side_effect = client_error("InternalServerError", "DeleteItem")
        with pytest.raises(PersistenceError):
            self.store.release_lock("baseline-snapshot", "owner-1")


class TestReferenceLookups:

    def setup_method(self):
        self.table = MagicMock()
        resource = MagicMock()
        resource.Table.return_value = self.table
        self.store = DynamoDBStore(lambda: resource)

    def test_baseline_match(self):
        self.table.query.return_value = {"Items": [{"assignment_id": "ra-1"}]}
        assert self.store.is_baseline_match("P-1", OWNER_GUID, "/Subscriptions/Sub-1") is True
        kwargs = self.table.query.call_args.kwargs
        assert kwargs["IndexName"] == BASELINE_BY_MATCH_KEY_INDEX
        assert kwargs["ExpressionAttributeValues"] == {
            ":match_key": f"p-1|{OWNER_GUID}|/subscriptions/sub-1",
            ":approved": True,
        }

    def test_baseline_match_with_missing_part_skips_query(self):
        assert self.store.is_baseline_match(None, OWNER_GUID, "/subscriptions/sub-1") is False
        self.table.query.assert_not_called()

    def test_privileged_role_weight(self):
        self.table.get_item.return_value = {"Item": {"role_definition_id": OWNER_GUID, "risk_weight": Decimal("30"),
                                                     "is_active": True}}
        path = f"/subscriptions/s/providers/Microsoft.Authorization/roleDefinitions/{OWNER_GUID.upper()}"
        assert self.store.privileged_role_weight(path) == 30
        self.table.get_item.assert_called_once_with(Key={"role_definition_id": OWNER_GUID})

    def test_inactive_role(self):
        self.table.get_item.return_value = {"Item": {"risk_weight": Decimal("30"), "is_active": False}}
        assert self.store.privileged_role_weight(OWNER_GUID) == 0

    def test_unknown_role(self):
        self.table.get_item.return_value = {}
        assert self.store.privileged_role_weight(OWNER_GUID) == 0
        assert self.store.privileged_role_weight(None) == 0

    def test_approved_administrator(self):
        self.table.get_item.return_value = {"Item": {"email": "admin@contoso.com", "is_active": True}}
        assert self.store.is_approved_administrator(" Admin@Contoso.com ") is True
        self.table.get_item.assert_called_once_with(Key={"email": "admin@contoso.com"})

    def test_inactive_administrator(self):
        self.table.get_item.return_value = {"Item": {"email": "admin@contoso.com", "is_active": False}}
        assert self.store.is_approved_administrator("admin@contoso.com") is False

    def test_lookup_error_wrapped(self):
        self.table.get_item.side_effect = client_error("AccessDeniedException", "GetItem")
        with pytest.raises(PersistenceError):
            self.store.is_approved_administrator("admin@contoso.com")


class TestProvisioning:

    def setup_method(self):
        self.resource = MagicMock()
        self.store = DynamoDBStore(lambda: self.resource, table_prefix="dev-")

    def test_create_tables(self):
        created = self.store.create_tables()

        assert created == [
            "dev-IAMEvents",
            "dev-RiskAssessments",
            "dev-BaselineRoleAssignments",
            "dev-PrivilegedRoles",
            "dev-ApprovedAdministrators",
            "dev-RunLocks",
        ]
        calls = {c.kwargs["TableName"]: c.kwargs for c in self.resource.create_table.call_args_list}
        assert all(kw["BillingMode"] == "PAY_PER_REQUEST" for kw in calls.values())
        index_names = [i["IndexName"] for i in calls["dev-RiskAssessments"]["GlobalSecondaryIndexes"]]
        assert index_names == [ASSESSMENTS_BY_EVENT_INDEX, ASSESSMENTS_BY_DATE_INDEX]

    def test_create_tables_skips_existing(self):
        self.resource.create_table.side_effect = [client_error("ResourceInUseException", "CreateTable")] + [
            MagicMock() for _ in range(5)
        ]
        created = self.store.create_tables()
        assert "dev-IAMEvents" not in created
        assert len(created) == 5

    def test_seed_reference_data(self):
        roles_table = MagicMock()
        admins_table = MagicMock()
        self.resource.Table.side_effect = lambda name: {
            "dev-PrivilegedRoles": roles_table,
            "dev-ApprovedAdministrators": admins_table,
        }[name]

        counts = self.store.seed_reference_data(
            [PrivilegedRole(role_definition_id=f"/roleDefinitions/{OWNER_GUID.upper()}", risk_weight=30)],
            [ApprovedAdministrator(email="Admin@Contoso.com")],
        )

        assert counts == {"privileged_roles": 1, "approved_administrators": 1}
        role_batch = roles_table.batch_writer.return_value.__enter__.return_value
        assert role_batch.put_item.call_args.kwargs["Item"]["role_definition_id"] == OWNER_GUID
        admin_batch = admins_table.batch_writer.return_value.__enter__.return_value
        assert admin_batch.put_item.call_args.kwargs["Item"]["email"] == "admin@contoso.com"


@patch("detector.store.boto3.Session")
def test_from_settings_builds_resource(mock_session):
    settings = StoreSettings(region="eu-west-1", table_prefix="p-", endpoint_url="http://localhost:8000",
                             profile="local")
    store = DynamoDBStore.from_settings(settings)
    mock_session.assert_not_called()

    assert store.resource is mock_session.return_value.resource.return_value
    mock_session.assert_called_once_with(profile_name="local")
    mock_session.return_value.resource.assert_called_once_with(
        "dynamodb", region_name="eu-west-1", endpoint_url="http://localhost:8000"
    )
    assert store.table_prefix == "p-"


@patch("detector.store.boto3.Session")
def test_from_connection_string(mock_session):
    store = DynamoDBStore.from_connection_string("dynamodb://us-east-1/iamdetect-")
    store.store_event(make_event())
    mock_session.assert_called_once_with()
    assert store.table_name("IAMEvents") == "iamdetect-IAMEvents"


def test_each_thread_gets_its_own_resource():
    factory = MagicMock(side_effect=lambda: MagicMock())
    store = DynamoDBStore(factory)
    seen = {}

    def worker(name):
        store.store_event(make_event(event_id=name))
        store.has_assessment(name)
        seen[name] = store.resource

    threads = [threading.Thread(target=worker, args=(f"e{i}",)) for i in range(3)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert factory.call_count == 3
    assert len({id(resource) for resource in seen.values()}) == 3
    for resource in seen.values():
        assert resource.Table.call_count == 2

    main_resource = store.resource
    assert store.resource is main_resource
    assert factory.call_count == 4
