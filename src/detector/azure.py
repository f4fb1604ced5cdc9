"""Azure REST transport and resource-id helpers.

The detector talks to two Azure surfaces: the Log Analytics query API (for
activity-log rows) and Azure Resource Manager (for role-assignment records).
Both go through one AzureRestClient, built once per run and passed to every
component that needs it.
"""

import logging
from typing import Any, Callable, Dict, Iterator, Optional

import httpx
from azure.core.credentials import TokenCredential
from azure.core.exceptions import ClientAuthenticationError
from azure.identity import ClientSecretCredential, DefaultAzureCredential

from .config import Config
from .exceptions import AuthenticationError

logger = logging.getLogger(__name__)

ROLE_ASSIGNMENT_SEGMENT = "/providers/microsoft.authorization/roleassignments/"

TokenProvider = Callable[[str], str]


def last_segment(resource_path: Optional[str]) -> Optional[str]:
    """Return the final non-empty path segment, or None."""
    if not resource_path:
        return None
    parts = [p for p in resource_path.strip().split("/") if p]
    return parts[-1] if parts else None


def role_definition_guid(role_definition_id: Optional[str]) -> Optional[str]:
    """Reduce a role definition id (full path or bare GUID) to its lower-case GUID."""
    guid = last_segment(role_definition_id)
    return guid.lower() if guid else None


def is_role_assignment_id(resource_id: Optional[str]) -> bool:
    return bool(resource_id) and ROLE_ASSIGNMENT_SEGMENT in resource_id.lower()


def scope_from_assignment_id(resource_id: Optional[str]) -> Optional[str]:
    """Strip the role-assignment suffix from a role-assignment resource id.

    `/subscriptions/abc/resourceGroups/rg/providers/Microsoft.Authorization/roleAssignments/x`
    becomes `/subscriptions/abc/resourceGroups/rg`. Assignments made at the root
    scope yield "/".
    """
    if not is_role_assignment_id(resource_id):
        return None
    idx = resource_id.lower().rfind(ROLE_ASSIGNMENT_SEGMENT)
    return resource_id[:idx] or "/"


class StaticTokenProvider:
    """Serves a pre-issued bearer token for every audience."""

    def __init__(self, token: str):
        self._token = token

    def __call__(self, audience: str) -> str:
        return self._token


class CredentialTokenProvider:
    """Bearer tokens from an azure-identity credential.

    The credential caches each scope's token and refreshes it before expiry.
    """

    def __init__(self, credential: TokenCredential):
        self.credential = credential

    def __call__(self, audience: str) -> str:
        scope = f"{audience.rstrip('/')}/.default"
        try:
            return self.credential.get_token(scope).token
        except ClientAuthenticationError as e:
            raise AuthenticationError(f"Could not obtain a token for {scope}: {e.message}") from e


def build_credential(config: Config) -> TokenCredential:
    """Service-principal credential when a client secret is configured, else the default chain.

    The default chain covers environment credentials, workload and managed
    identity, and a developer's Azure CLI login.
    """
    azure = config.azure
    if azure.tenant_id and azure.client_id and azure.client_secret:
        logger.info(f"Using client secret credential for client {azure.client_id}")
        return ClientSecretCredential(
            azure.tenant_id,
            azure.client_id,
            azure.client_secret,
            authority=azure.authority_host,
        )
    logger.info("Using DefaultAzureCredential")
    return DefaultAzureCredential(authority=azure.authority_host)


def build_token_provider(config: Config) -> TokenProvider:
    """A static token if one is configured, otherwise an azure-identity credential."""
    if config.azure.access_token:
        return StaticTokenProvider(config.azure.access_token)
    return CredentialTokenProvider(build_credential(config))


class AzureRestClient:
    """Thin client over the Log Analytics query API and Azure Resource Manager."""

    def __init__(
        self,
        token_provider: TokenProvider,
        timeout: float = 30.0,
        arm_endpoint: str = "https://management.azure.com",
        log_analytics_endpoint: str = "https://api.loganalytics.io",
        transport: Optional[httpx.BaseTransport] = None,
    ):
        """Initialize the client.

        Args:
            token_provider: Callable returning a bearer token for an audience URL
            timeout: Per-request timeout in seconds
            arm_endpoint: Azure Resource Manager base URL
            log_analytics_endpoint: Log Analytics API base URL
            transport: Optional httpx transport (used by tests)
        """
        self.token_provider = token_provider
        self.arm_endpoint = arm_endpoint.rstrip("/")
        self.log_analytics_endpoint = log_analytics_endpoint.rstrip("/")
        self._http = httpx.Client(timeout=httpx.Timeout(timeout), transport=transport)

    @classmethod
    def from_config(cls, config: Config, timeout: Optional[float] = None) -> "AzureRestClient":
        return cls(
            token_provider=build_token_provider(config),
            timeout=timeout or config.enrichment.timeout_seconds,
            arm_endpoint=config.azure.arm_endpoint,
            log_analytics_endpoint=config.azure.log_analytics_endpoint,
        )

    def _headers(self, audience: str) -> Dict[str, str]:
        return {"Authorization": f"Bearer {self.token_provider(audience)}"}

    def query_workspace(
        self, workspace_id: str, query: str, timeout: Optional[float] = None
    ) -> Dict[str, Any]:
        """Run a KQL query against a workspace and return the decoded response.

        Raises:
            httpx.HTTPError: On transport errors or non-2xx responses.
        """
        url = f"{self.log_analytics_endpoint}/v1/workspaces/{workspace_id}/query"
        kwargs: Dict[str, Any] = {}
        if timeout is not None:
            kwargs["timeout"] = timeout
        response = self._http.post(
            url,
            json={"query": query},
            headers=self._headers(self.log_analytics_endpoint),
            **kwargs,
        )
        response.raise_for_status()
        return response.json()

    def get_resource(self, resource_id: str, api_version: str) -> Dict[str, Any]:
        """GET one ARM resource by id."""
        url = f"{self.arm_endpoint}/{resource_id.lstrip('/')}"
        response = self._http.get(
            url,
            params={"api-version": api_version},
            headers=self._headers(self.arm_endpoint),
        )
        response.raise_for_status()
        return response.json()

    def iter_collection(self, path: str, api_version: str) -> Iterator[Dict[str, Any]]:
        """Lazily yield items of an ARM list operation, following nextLink pages."""
        url: Optional[str] = f"{self.arm_endpoint}/{path.lstrip('/')}"
        params: Optional[Dict[str, str]] = {"api-version": api_version}
        page = 0
        while url:
            response = self._http.get(url, params=params, headers=self._headers(self.arm_endpoint))
            response.raise_for_status()
            body = response.json()
            page += 1
            items = body.get("value") or []
            logger.debug(f"Fetched page {page} with {len(items)} items from {path}")
            yield from items
            # nextLink already carries api-version and skip token
            url = body.get("nextLink")
            params = None

    def close(self) -> None:
        self._http.close()

    def __enter__(self) -> "AzureRestClient":
        return self

    def __exit__(self, *exc_info: Any) -> None:
        self.close()
