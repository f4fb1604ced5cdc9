"""Baseline snapshot Lambda: records every current role assignment of a subscription.

Each observed assignment is upserted into the baseline table. Rows seen for
the first time take their approval state from the `baseline.auto_approve_new`
policy; rows already present keep theirs and only get `last_verified` bumped.
A named run lock keeps two snapshot runs from overlapping.
"""

import logging
import time
import uuid
from typing import Any, Dict, Iterator, Optional

import httpx

from detector.azure import AzureRestClient
from detector.config import Config, load_config, require_snapshot_settings, setup_logging
from detector.exceptions import AuthenticationError, ConfigurationError, PersistenceError, SnapshotError
from detector.ingestion import parse_timestamp
from detector.schemas import BaselineAssignment, SnapshotResult
from detector.store import DynamoDBStore, EventStore
from enrichment.resolver import assignment_context

logger = logging.getLogger(__name__)

SNAPSHOT_LOCK = "baseline-snapshot"


def to_baseline_assignment(resource: Dict[str, Any]) -> BaselineAssignment:
    """Map a role-assignment resource body to a baseline row."""
    context = assignment_context(resource)
    created = (resource.get("properties") or {}).get("createdOn")
    try:
        assigned_date = parse_timestamp(created) if created else None
    except ValueError:
        assigned_date = None
    return BaselineAssignment(
        assignment_id=resource.get("name") or resource["id"],
        principal_id=context["principal_id"],
        principal_name=context["principal_name"],
        principal_type=context["principal_type"],
        role_definition_id=context["role_definition_id"],
        role_name=context["role_name"],
        scope=context["scope"],
        assigned_date=assigned_date,
    )


class BaselineSnapshotBuilder:
    """Snapshots a subscription's role assignments into the baseline table."""

    def __init__(self, client: AzureRestClient, store: EventStore, config: Config):
        self.client = client
        self.store = store
        self.config = config

    def list_assignments(self, subscription_id: str) -> Iterator[Dict[str, Any]]:
        path = f"/subscriptions/{subscription_id}/providers/Microsoft.Authorization/roleAssignments"
        return self.client.iter_collection(path, self.config.azure.role_assignments_api_version)

    def run(self, subscription_id: str) -> SnapshotResult:
        """Take one snapshot.

        Returns:
            SnapshotResult; status "skipped" when another run holds the lock.

        Raises:
            SnapshotError: If enumeration or a baseline write fails.
        """
        started = time.monotonic()
        policy = self.config.baseline
        result = SnapshotResult(subscription_id=subscription_id, auto_approve_new=policy.auto_approve_new)

        owner = str(uuid.uuid4())
        if not self.store.acquire_lock(SNAPSHOT_LOCK, owner, policy.lock_ttl_seconds):
            logger.warning(f"Baseline snapshot already running for {subscription_id}; skipping")
            result.status = "skipped"
            return result

        logger.info(f"Baseline snapshot for {subscription_id} "
                    f"(new assignments auto-approved: {policy.auto_approve_new})")
        try:
            for resource in self.list_assignments(subscription_id):
                assignment = to_baseline_assignment(resource)
                is_new = self.store.upsert_baseline_assignment(assignment, auto_approve=policy.auto_approve_new)
                result.observed += 1
                if is_new:
                    result.new_assignments += 1
                    logger.info(f"New baseline assignment {assignment.assignment_id}: "
                                f"{assignment.role_name} for {assignment.principal_name} on {assignment.scope}")
                else:
                    result.verified += 1
        except (httpx.HTTPError, AuthenticationError, PersistenceError, KeyError, ValueError) as e:
            logger.error(f"Baseline snapshot for {subscription_id} failed after "
                         f"{result.observed} assignments: {e}")
            raise SnapshotError(f"Baseline snapshot failed: {e}") from e
        finally:
            self._release(owner)

        result.processing_time_seconds = time.monotonic() - started
        logger.info(f"Baseline snapshot complete: {result.observed} observed, "
                    f"{result.new_assignments} new, {result.verified} verified")
        return result

    def _release(self, owner: str) -> None:
        # An unreleased lock expires after lock_ttl_seconds
        try:
            self.store.release_lock(SNAPSHOT_LOCK, owner)
        except PersistenceError as e:
            logger.error(f"Could not release {SNAPSHOT_LOCK} lock: {e}")


def lambda_handler(event: Optional[Dict[str, Any]], context: Any) -> Dict[str, Any]:
    """Scheduled entry point for the baseline snapshot.

    An optional `subscription_id` in the event overrides the configured one.
    """
    config = load_config()
    setup_logging(config.logging)

    subscription_id = (event or {}).get("subscription_id") or config.azure.subscription_id
    if subscription_id:
        config.azure.subscription_id = subscription_id

    try:
        require_snapshot_settings(config)
        client = AzureRestClient.from_config(config)
    except ConfigurationError as e:
        logger.error(f"Baseline snapshot not started: {e}")
        result = SnapshotResult(status="misconfigured", subscription_id=subscription_id, error=str(e))
        return result.model_dump(mode="json")

    store = DynamoDBStore.from_connection_string(config.store.connection_string)
    try:
        result = BaselineSnapshotBuilder(client, store, config).run(subscription_id)
    finally:
        client.close()
    return result.model_dump(mode="json")
