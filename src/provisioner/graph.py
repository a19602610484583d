"""Microsoft Graph access for Entra ID application registrations.

Requests go through an azure-core pipeline with a bearer-token policy for
the Graph ``.default`` scope, so any azure-identity credential works. SDK
exceptions are translated into ExternalAPIFailure at this boundary.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from typing import Any, Protocol
from urllib.parse import quote

from azure.core import PipelineClient
from azure.core.credentials import TokenCredential
from azure.core.exceptions import AzureError, ClientAuthenticationError, HttpResponseError
from azure.core.pipeline.policies import (
    BearerTokenCredentialPolicy,
    ContentDecodePolicy,
    HeadersPolicy,
    RetryPolicy,
    UserAgentPolicy,
)
from azure.core.rest import HttpRequest

from .errors import ExternalAPIFailure

logger = logging.getLogger(__name__)

GRAPH_ENDPOINT = "https://graph.microsoft.com/v1.0"
GRAPH_SCOPE = "https://graph.microsoft.com/.default"
# Well-known appId of the Microsoft Graph resource
GRAPH_APP_ID = "00000003-0000-0000-c000-000000000000"

PROVIDER = "entra"
USER_AGENT = "netbird-provisioner"


@dataclass(frozen=True)
class AppRegistration:
    """Identifiers of a created application registration."""

    app_id: str
    object_id: str
    display_name: str


class IdentityProvider(Protocol):
    """Identity provider operations the identity workflow consumes."""

    def tenant_id(self) -> str: ...

    def find_app_by_name(self, display_name: str) -> dict[str, Any] | None: ...

    def create_app(self, display_name: str, audience: str) -> AppRegistration: ...

    def update_app(self, object_id: str, patch: dict[str, Any]) -> None: ...

    def get_app(self, app_id: str) -> dict[str, Any] | None: ...

    def delete_app(self, object_id: str) -> None: ...

    def add_password(self, object_id: str, display_name: str, valid_for: timedelta) -> str: ...

    def create_service_principal(self, app_id: str) -> str: ...

    def get_service_principal(self, app_id: str) -> dict[str, Any] | None: ...

    def delete_service_principal(self, sp_id: str) -> None: ...

    def grant_admin_consent(
        self, sp_id: str, *, scopes: list[str], app_role_ids: list[str]
    ) -> None: ...


class GraphClient:
    """IdentityProvider over Microsoft Graph v1.0."""

    def __init__(
        self,
        credential: TokenCredential,
        *,
        endpoint: str = GRAPH_ENDPOINT,
        pipeline_client: PipelineClient | None = None,
    ) -> None:
        self._endpoint = endpoint.rstrip("/")
        self._client = pipeline_client or PipelineClient(
            base_url=self._endpoint,
            policies=[
                HeadersPolicy({"Accept": "application/json"}),
                UserAgentPolicy(base_user_agent=USER_AGENT),
                RetryPolicy(),
                BearerTokenCredentialPolicy(credential, GRAPH_SCOPE),
                ContentDecodePolicy(),
            ],
        )
        self._graph_sp_id: str | None = None

    def _request(
        self,
        method: str,
        path: str,
        *,
        body: dict[str, Any] | None = None,
        missing_ok: bool = False,
    ) -> dict[str, Any] | None:
        """Send one Graph request.

        Returns:
            Decoded JSON body, ``{}`` for empty responses, or None for a 404
            when ``missing_ok`` is set.

        Raises:
            ExternalAPIFailure: On authentication, HTTP or transport errors.
        """
        operation = f"{method} {path.split('?')[0]}"
        request = HttpRequest(method, f"{self._endpoint}{path}", json=body)
        try:
            response = self._client.send_request(request)
            if missing_ok and response.status_code == 404:
                return None
            response.raise_for_status()
        except ClientAuthenticationError as e:
            raise ExternalAPIFailure(
                f"Graph authentication failed (run 'az login'): {e.message}",
                provider=PROVIDER,
                operation=operation,
            ) from e
        except HttpResponseError as e:
            raise ExternalAPIFailure(
                f"Graph request failed with HTTP {e.status_code}: {e.message}",
                provider=PROVIDER,
                operation=operation,
            ) from e
        except AzureError as e:
            raise ExternalAPIFailure(
                f"Graph request failed: {e}", provider=PROVIDER, operation=operation
            ) from e

        if response.status_code == 204 or not response.content:
            return {}
        try:
            payload = response.json()
        except ValueError as e:
            raise ExternalAPIFailure(
                "Graph returned a non-JSON body", provider=PROVIDER, operation=operation
            ) from e
        if not isinstance(payload, dict):
            raise ExternalAPIFailure(
                "Graph returned a non-object body", provider=PROVIDER, operation=operation
            )
        return payload

    def tenant_id(self) -> str:
        payload = self._request("GET", "/organization?$select=id") or {}
        organizations = payload.get("value") or []
        if not organizations:
            raise ExternalAPIFailure(
                "No organization visible to the signed-in account",
                provider=PROVIDER,
                operation="GET /organization",
            )
        return str(organizations[0]["id"])

    def find_app_by_name(self, display_name: str) -> dict[str, Any] | None:
        """Return the first application with this display name, or None."""
        escaped = display_name.replace("'", "''")
        query = quote(f"displayName eq '{escaped}'")
        payload = self._request(
            "GET", f"/applications?$filter={query}&$select=id,appId,displayName"
        ) or {}
        matches = payload.get("value") or []
        return matches[0] if matches else None

    def create_app(self, display_name: str, audience: str) -> AppRegistration:
        payload = self._request(
            "POST",
            "/applications",
            body={"displayName": display_name, "signInAudience": audience},
        ) or {}
        try:
            app = AppRegistration(
                app_id=payload["appId"], object_id=payload["id"], display_name=display_name
            )
        except KeyError as e:
            raise ExternalAPIFailure(
                f"Application response missing {e}",
                provider=PROVIDER,
                operation="POST /applications",
            ) from e
        logger.info(
            "Created application registration",
            extra={"display_name": display_name, "app_id": app.app_id},
        )
        return app

    def update_app(self, object_id: str, patch: dict[str, Any]) -> None:
        self._request("PATCH", f"/applications/{object_id}", body=patch)
        logger.debug("Updated application", extra={"object_id": object_id, "fields": sorted(patch)})

    def get_app(self, app_id: str) -> dict[str, Any] | None:
        return self._request("GET", f"/applications(appId='{app_id}')", missing_ok=True)

    def delete_app(self, object_id: str) -> None:
        self._request("DELETE", f"/applications/{object_id}", missing_ok=True)
        logger.info("Deleted application", extra={"object_id": object_id})

    def add_password(self, object_id: str, display_name: str, valid_for: timedelta) -> str:
        """Create a client secret and return its value (shown only once by Graph)."""
        end = datetime.now(UTC) + valid_for
        payload = self._request(
            "POST",
            f"/applications/{object_id}/addPassword",
            body={
                "passwordCredential": {
                    "displayName": display_name,
                    "endDateTime": end.strftime("%Y-%m-%dT%H:%M:%SZ"),
                }
            },
        ) or {}
        secret = payload.get("secretText")
        if not secret:
            raise ExternalAPIFailure(
                "addPassword returned no secret",
                provider=PROVIDER,
                operation="POST /applications/addPassword",
            )
        logger.info(
            "Created client secret",
            extra={"object_id": object_id, "expires": end.date().isoformat()},
        )
        return str(secret)

    def create_service_principal(self, app_id: str) -> str:
        payload = self._request("POST", "/servicePrincipals", body={"appId": app_id}) or {}
        sp_id = payload.get("id")
        if not sp_id:
            raise ExternalAPIFailure(
                "Service principal response missing id",
                provider=PROVIDER,
                operation="POST /servicePrincipals",
            )
        logger.info("Created service principal", extra={"app_id": app_id, "sp_id": sp_id})
        return str(sp_id)

    def get_service_principal(self, app_id: str) -> dict[str, Any] | None:
        return self._request("GET", f"/servicePrincipals(appId='{app_id}')", missing_ok=True)

    def delete_service_principal(self, sp_id: str) -> None:
        self._request("DELETE", f"/servicePrincipals/{sp_id}", missing_ok=True)
        logger.info("Deleted service principal", extra={"sp_id": sp_id})

    def _graph_service_principal_id(self) -> str:
        if self._graph_sp_id is None:
            graph_sp = self.get_service_principal(GRAPH_APP_ID)
            if not graph_sp or not graph_sp.get("id"):
                raise ExternalAPIFailure(
                    "Microsoft Graph service principal not found in tenant",
                    provider=PROVIDER,
                    operation="GET /servicePrincipals",
                )
            self._graph_sp_id = str(graph_sp["id"])
        return self._graph_sp_id

    def grant_admin_consent(
        self, sp_id: str, *, scopes: list[str], app_role_ids: list[str]
    ) -> None:
        """Grant tenant-wide consent for delegated scopes and application roles.

        Needs an administrator role in the tenant.
        """
        resource_id = self._graph_service_principal_id()
        if scopes:
            self._request(
                "POST",
                "/oauth2PermissionGrants",
                body={
                    "clientId": sp_id,
                    "consentType": "AllPrincipals",
                    "resourceId": resource_id,
                    "scope": " ".join(scopes),
                },
            )
        for role_id in app_role_ids:
            self._request(
                "POST",
                f"/servicePrincipals/{sp_id}/appRoleAssignments",
                body={"principalId": sp_id, "resourceId": resource_id, "appRoleId": role_id},
            )
        logger.info(
            "Granted admin consent",
            extra={"sp_id": sp_id, "scopes": len(scopes), "app_roles": len(app_role_ids)},
        )
