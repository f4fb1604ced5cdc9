"""Tests for activity-log querying and row normalization."""

import json
from datetime import datetime, timezone
from unittest.mock import Mock

import httpx
import pytest

from detector.exceptions import AuthenticationError, RowParseError, SourceQueryError
from detector.ingestion import (
    ActivityLogQuery,
    RowNormalizer,
    compose_event_id,
    decode_change_request,
    fetch_activity_rows,
    parse_timestamp,
    synthesize_event_id,
)
from detector.schemas import TabularResult

COLUMNS = [
    "EventId",
    "EventTime",
    "OperationName",
    "Caller",
    "CallerIpAddress",
    "Status",
    "StatusCode",
    "ResourceId",
    "Properties",
]

ASSIGNMENT_ID = (
    "/subscriptions/sub-1/providers/Microsoft.Authorization/roleAssignments/ra-1"
)
OWNER_ID = "/subscriptions/sub-1/providers/Microsoft.Authorization/roleDefinitions/8e3af657-a8ff-443c-a75c-2fe8c4bcb635"


def make_properties(request_body=None, as_string=True):
    body = request_body if request_body is not None else {
        "Properties": {
            "PrincipalId": "11111111-2222-3333-4444-555555555555",
            "PrincipalType": "User",
            "RoleDefinitionId": OWNER_ID,
            "Scope": "/subscriptions/sub-1",
        }
    }
    return json.dumps({"requestbody": json.dumps(body) if as_string else body})


def make_row(event_id="corr-1", event_time="2024-01-07T10:00:00.1234567Z", status="Succeeded", properties=None,
             resource_id=ASSIGNMENT_ID):
    return [
        event_id,
        event_time,
        "Microsoft.Authorization/roleAssignments/write",
        "someone@contoso.com",
        "10.0.0.1",
        status,
        "Created",
        resource_id,
        properties if properties is not None else make_properties(),
    ]


class TestParseTimestamp:

    def test_seven_fraction_digits_and_z(self):
        parsed = parse_timestamp("2024-01-07T10:00:00.1234567Z")
        assert parsed == datetime(2024, 1, 7, 10, 0, 0, 123456, tzinfo=timezone.utc)

    def test_offset_converted_to_utc(self):
        assert parse_timestamp("2024-01-07T12:00:00+02:00").hour == 10

    def test_naive_taken_as_utc(self):
        assert parse_timestamp("2024-01-07T10:00:00").tzinfo == timezone.utc

    @pytest.mark.parametrize("value", ["", None, "not-a-date", "   "])
    def test_invalid(self, value):
        with pytest.raises(ValueError):
            parse_timestamp(value)


class TestDecodeChangeRequest:

    def test_request_body_as_json_string(self):
        details = decode_change_request(make_properties())
        assert details.principal_id == "11111111-2222-3333-4444-555555555555"
        assert details.principal_type == "User"
        assert details.role_definition_id == OWNER_ID
        assert details.scope == "/subscriptions/sub-1"

    def test_request_body_as_object(self):
        details = decode_change_request(make_properties(as_string=False))
        assert details.principal_type == "User"

    def test_keys_matched_case_insensitively(self):
        props = json.dumps({"RequestBody": {"properties": {"principalId": "p1", "roleDefinitionId": "r1"}}})
        details = decode_change_request(props)
        assert details.principal_id == "p1"
        assert details.role_definition_id == "r1"

    @pytest.mark.parametrize("properties", [
        None,
        "",
        "{not json",
        json.dumps({"other": 1}),
        json.dumps({"requestbody": "{broken"}),
        json.dumps({"requestbody": {"Properties": "nope"}}),
    ])
    def test_malformed_blobs_yield_empty_details(self, properties):
        details = decode_change_request(properties)
        assert details.principal_id is None
        assert details.scope is None

    def test_non_string_values_ignored(self):
        props = json.dumps({"requestbody": {"Properties": {"PrincipalId": 42, "Scope": ""}}})
        details = decode_change_request(props)
        assert details.principal_id is None
        assert details.scope is None


class TestRowNormalizer:

    def setup_method(self):
        self.normalizer = RowNormalizer()

    def test_normalizes_full_row(self):
        outcomes = self.normalizer.normalize(TabularResult(columns=COLUMNS, rows=[make_row()]))

        assert len(outcomes) == 1
        event = outcomes[0].event
        assert event.event_id == f"corr-1|{ASSIGNMENT_ID.lower()}"
        assert event.event_time.tzinfo == timezone.utc
        assert event.operation_name == "Microsoft.Authorization/roleAssignments/write"
        assert event.caller == "someone@contoso.com"
        assert event.caller_ip_address == "10.0.0.1"
        assert event.status_code == "Created"
        assert event.principal_id == "11111111-2222-3333-4444-555555555555"
        assert event.role_definition_id == OWNER_ID
        assert event.scope == "/subscriptions/sub-1"
        assert event.resource_id == ASSIGNMENT_ID
        assert event.raw_payload == make_properties()
        assert not event.event_time_degraded

    def test_columns_matched_by_name_in_any_order(self):
        columns = list(reversed(COLUMNS))
        row = list(reversed(make_row()))
        event = self.normalizer.normalize(TabularResult(columns=columns, rows=[row]))[0].event
        assert event.event_id == f"corr-1|{ASSIGNMENT_ID.lower()}"
        assert event.caller == "someone@contoso.com"

    def test_scope_derived_from_resource_id_when_missing(self):
        row = make_row(properties=json.dumps({"requestbody": "{}"}))
        event = self.normalizer.normalize(TabularResult(columns=COLUMNS, rows=[row]))[0].event
        assert event.scope == "/subscriptions/sub-1"
        assert event.principal_id is None

    def test_failure_status_canonicalised(self):
        event = self.normalizer.normalize(TabularResult(columns=COLUMNS, rows=[make_row(status="Failure")]))[0].event
        assert event.status == "Failed"

    def test_missing_columns_are_none(self):
        result = TabularResult(columns=["EventId", "EventTime"], rows=[["e1", "2024-01-07T10:00:00Z"]])
        event = self.normalizer.normalize(result)[0].event
        assert event.caller is None
        assert event.scope is None
        assert event.raw_payload is None

    def test_bad_row_is_isolated(self):
        rows = [make_row("a"), make_row("b", event_time="garbage"), make_row("c")]
        outcomes = self.normalizer.normalize(TabularResult(columns=COLUMNS, rows=rows))

        assert [o.ok for o in outcomes] == [True, False, True]
        assert outcomes[1].row_index == 1
        assert "EventTime" in outcomes[1].error

    def test_row_without_time_raises_when_fallback_off(self):
        index = {name.lower(): i for i, name in enumerate(COLUMNS)}
        with pytest.raises(RowParseError) as exc_info:
            self.normalizer.normalize_row(index, COLUMNS, make_row(event_time=None), row_index=3)
        assert exc_info.value.row_index == 3

    def test_time_fallback_marks_event_degraded(self):
        now = datetime(2024, 3, 1, 12, 0, tzinfo=timezone.utc)
        normalizer = RowNormalizer(allow_time_fallback=True, clock=lambda: now)
        event = normalizer.normalize(TabularResult(columns=COLUMNS, rows=[make_row(event_time="")]))[0].event
        assert event.event_time == now
        assert event.event_time_degraded is True

    def test_missing_event_id_is_deterministic(self):
        rows = [make_row(event_id=None), make_row(event_id=None)]
        outcomes = self.normalizer.normalize(TabularResult(columns=COLUMNS, rows=rows))
        assert outcomes[0].event.event_id == outcomes[1].event.event_id
        assert outcomes[0].event.event_id == synthesize_event_id(COLUMNS, rows[0])

    def test_synthesized_ids_differ_by_content(self):
        assert synthesize_event_id(COLUMNS, make_row(event_id=None)) != synthesize_event_id(
            COLUMNS, make_row(event_id=None, status="Failed")
        )

    def test_assignments_sharing_a_correlation_get_distinct_ids(self):
        rows = [
            make_row(resource_id=ASSIGNMENT_ID.replace("ra-1", "assign-A")),
            make_row(resource_id=ASSIGNMENT_ID.replace("ra-1", "assign-B")),
        ]
        outcomes = self.normalizer.normalize(TabularResult(columns=COLUMNS, rows=rows))

        ids = [o.event.event_id for o in outcomes]
        assert ids[0] != ids[1]
        assert all(i.startswith("corr-1|") for i in ids)

    def test_event_id_ignores_resource_id_casing(self):
        upper = make_row(resource_id=ASSIGNMENT_ID.upper())
        lower = make_row(resource_id=ASSIGNMENT_ID.lower())
        outcomes = self.normalizer.normalize(TabularResult(columns=COLUMNS, rows=[upper, lower]))
        assert outcomes[0].event.event_id == outcomes[1].event.event_id

    def test_event_id_without_resource_id_is_correlation_id(self):
        event = self.normalizer.normalize(TabularResult(columns=COLUMNS, rows=[make_row(resource_id=None)]))[0].event
        assert event.event_id == "corr-1"

    def test_compose_event_id(self):
        assert compose_event_id("c1", " /Subscriptions/S/RA/x ") == "c1|/subscriptions/s/ra/x"
        assert compose_event_id("c1", None) == "c1"

    def test_empty_result(self):
        assert self.normalizer.normalize(TabularResult()) == []


class TestFetchActivityRows:

    def test_query_renders_window_and_filters(self):
        kql = ActivityLogQuery(lookback_minutes=45).render()
        assert "ago(45m)" in kql
        assert "Microsoft.Authorization/roleAssignments" in kql
        assert "EventId = CorrelationId" in kql

    def test_returns_first_table(self):
        client = Mock()
        client.query_workspace.return_value = {
            "tables": [{"columns": [{"name": "EventId"}], "rows": [["e1"]]}]
        }
        result = fetch_activity_rows(client, "ws-1", ActivityLogQuery(30), timeout=5)

        assert result.rows == [["e1"]]
        args, kwargs = client.query_workspace.call_args
        assert args[0] == "ws-1"
        assert kwargs["timeout"] == 5

    def test_empty_response_is_empty_result(self):
        client = Mock()
        client.query_workspace.return_value = {"tables": []}
        assert fetch_activity_rows(client, "ws-1", ActivityLogQuery()).rows == []

    def test_http_status_error_wrapped(self):
        request = httpx.Request("POST", "https://api.loganalytics.io/v1/workspaces/ws-1/query")
        response = httpx.Response(401, text="unauthorized", request=request)
        client = Mock()
        client.query_workspace.side_effect = httpx.HTTPStatusError("401", request=request, response=response)

        with pytest.raises(SourceQueryError, match="HTTP 401"):
            fetch_activity_rows(client, "ws-1", ActivityLogQuery())

    def test_transport_error_wrapped(self):
        client = Mock()
        client.query_workspace.side_effect = httpx.ConnectError("refused")
        with pytest.raises(SourceQueryError):
            fetch_activity_rows(client, "ws-1", ActivityLogQuery())

    def test_authentication_error_wrapped(self):
        client = Mock()
        client.query_workspace.side_effect = AuthenticationError("Could not obtain a token")
        with pytest.raises(SourceQueryError, match="token"):
            fetch_activity_rows(client, "ws-1", ActivityLogQuery())

    def test_non_object_body(self):
        client = Mock()
        client.query_workspace.return_value = ["not", "a", "dict"]
        with pytest.raises(SourceQueryError):
            fetch_activity_rows(client, "ws-1", ActivityLogQuery())
