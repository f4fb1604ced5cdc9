"""Context resolution for role-assignment events.

For a role-assignment write, the activity row usually carries only a resource
id. The resolver reads the role-assignment record from Resource Manager and
fills in principal, role and scope details, plus display labels derived from
them. Resolution is best effort: any failure leaves the event as it was.
"""

import logging
import uuid
from typing import Any, Dict, Optional

import httpx

from detector.azure import (
    AzureRestClient,
    is_role_assignment_id,
    last_segment,
    role_definition_guid,
)
from detector.exceptions import AuthenticationError, EnrichmentError
from detector.schemas import ChangeEvent, EnrichmentOutcome

logger = logging.getLogger(__name__)

UNKNOWN_ROLE = "Unknown Role"

# Built-in role definitions, keyed by their fixed GUIDs
BUILTIN_ROLE_NAMES: Dict[str, str] = {
    "8e3af657-a8ff-443c-a75c-2fe8c4bcb635": "Owner",
    "b24988ac-6180-42a0-ab88-20f7382dd24c": "Contributor",
    "acdd72a7-3385-48ef-bd42-f606fba81ae7": "Reader",
    "18d7d88d-d35e-4fb5-a5c3-7773c20a72d9": "User Access Administrator",
    "f58310d9-a9f6-439a-9e8d-f62e7b41a168": "Role Based Access Control Administrator",
    "00482a5a-887f-4fb3-b363-3b7fe8e74483": "Key Vault Administrator",
    "b86a8fe4-44ce-4948-aee5-eccb2c155cd7": "Key Vault Secrets Officer",
    "b7e6dc6d-f1e8-4753-8033-0f276bb0955b": "Storage Blob Data Owner",
    "9980e02c-c2be-4d73-94e8-173b1dc7cf3c": "Virtual Machine Contributor",
    "4d97b98b-1d4f-4787-a291-c67834d212e7": "Network Contributor",
    "fb1c8493-542b-48eb-b624-b4c8fea62acd": "Security Admin",
    "39bc4728-0917-49c7-9d2c-d95423bc2eb4": "Security Reader",
}


def resolve_role_name(role_definition_id: Optional[str]) -> str:
    """Display name for a role definition id.

    Built-in GUIDs map to their names, any other GUID to a "Custom Role (xxxxxxxx)"
    label, and an id that does not end in a GUID to "Unknown Role".
    """
    guid = role_definition_guid(role_definition_id)
    if not guid:
        return UNKNOWN_ROLE
    try:
        uuid.UUID(guid)
    except ValueError:
        return UNKNOWN_ROLE
    return BUILTIN_ROLE_NAMES.get(guid, f"Custom Role ({guid[:8]})")


def placeholder_principal_name(principal_type: Optional[str], principal_id: Optional[str]) -> Optional[str]:
    """`"User: 1a2b3c4d..."` style label; not a directory lookup."""
    if not principal_id:
        return None
    return f"{principal_type or 'Unknown'}: {principal_id[:8]}..."


def is_write_operation(operation_name: Optional[str]) -> bool:
    return bool(operation_name) and operation_name.strip().lower().endswith("/write")


def assignment_context(resource: Dict[str, Any]) -> Dict[str, Optional[str]]:
    """Context fields derived from a role-assignment resource body."""
    props = resource.get("properties") or {}
    principal_id = props.get("principalId")
    principal_type = props.get("principalType")
    role_definition_id = props.get("roleDefinitionId")
    scope = props.get("scope")
    return {
        "principal_id": principal_id,
        "principal_type": principal_type,
        "role_definition_id": role_definition_id,
        "role_name": resolve_role_name(role_definition_id) if role_definition_id else None,
        "scope": scope,
        "resource_name": last_segment(scope),
        "principal_name": placeholder_principal_name(principal_type, principal_id),
    }


class ContextResolver:
    """Fills role-assignment context into write events."""

    def __init__(self, client: AzureRestClient, api_version: str = "2022-04-01"):
        self.client = client
        self.api_version = api_version

    def applies_to(self, event: ChangeEvent) -> bool:
        return is_write_operation(event.operation_name) and is_role_assignment_id(event.resource_id)

    def fetch_context(self, resource_id: str) -> Dict[str, Optional[str]]:
        """Read the role assignment and derive its context fields.

        Raises:
            EnrichmentError: If the lookup fails or returns an unusable body.
        """
        try:
            resource = self.client.get_resource(resource_id, self.api_version)
        except httpx.HTTPStatusError as e:
            raise EnrichmentError(
                f"role assignment lookup returned HTTP {e.response.status_code}"
            ) from e
        except (httpx.HTTPError, AuthenticationError, ValueError) as e:
            raise EnrichmentError(f"role assignment lookup failed: {e}") from e
        if not isinstance(resource, dict):
            raise EnrichmentError("role assignment lookup returned a non-object body")
        return assignment_context(resource)

    def enrich(self, event: ChangeEvent) -> EnrichmentOutcome:
        """Return the event with resolved context applied.

        Non-write operations pass through unchanged. Resolved values replace
        the event's own only where they are not None. Failures are logged and
        reported on the outcome; they never propagate.
        """
        if not self.applies_to(event):
            return EnrichmentOutcome(event=event)

        try:
            context = self.fetch_context(event.resource_id)
        except EnrichmentError as e:
            logger.warning(f"Enrichment failed for event {event.event_id}: {e}")
            return EnrichmentOutcome(event=event, error=str(e))
        except Exception as e:
            logger.warning(f"Enrichment failed for event {event.event_id}: "
                           f"unexpected {type(e).__name__}: {e}")
            return EnrichmentOutcome(event=event, error=f"{type(e).__name__}: {e}")

        updates = {k: v for k, v in context.items() if v is not None}
        enriched = event.model_copy(update=updates)
        if enriched.role_name is None:
            enriched = enriched.model_copy(update={"role_name": resolve_role_name(enriched.role_definition_id)})
        logger.info(f"Enriched event {event.event_id}: {enriched.role_name} on {enriched.resource_name}")
        return EnrichmentOutcome(event=enriched, enriched=True)
