"""Entra ID application registrations for a NetBird deployment.

Two registrations per project:
- ``NetBird <project>``: the dashboard SPA users sign in with
- ``NetBird Management <project>``: a confidential client the management
  service uses to read users and groups from the directory

Every creation step hands the orchestrator a compensation that deletes what
it created. Admin consent is best effort: it needs a tenant administrator,
so a failure is recorded and reported as a warning.
"""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Any

from .credentials import AppCredentialStore, Credential
from .errors import ExternalAPIFailure, InputValidationError
from .graph import GRAPH_APP_ID, IdentityProvider
from .orchestrator import Compensation, Orchestrator, Step, StepResult
from .rollback import ProvisioningContext
from .security import log_security_audit_event, register_secret
from .verification import PartialSuccess, verify_management_app, verify_spa_app

logger = logging.getLogger(__name__)

SIGN_IN_AUDIENCE = "AzureADMyOrg"
SECRET_DISPLAY_NAME = "NetBird Management Secret"
SECRET_VALIDITY = timedelta(days=730)

PUBLIC_CLIENT_REDIRECT_URIS = [
    "https://login.microsoftonline.com/common/oauth2/nativeclient",
    "http://localhost:53000",
]

# Delegated Microsoft Graph scopes (name -> permission id)
DELEGATED_SCOPES: dict[str, str] = {
    "User.Read": "e1fe6dd8-ba31-4d61-89e7-88639da4683d",
    "User.Read.All": "a154be20-db9c-4678-8ab7-66f6cc099a59",
    "offline_access": "7427e0e9-2fba-42fe-b0c0-848c9e6a8182",
    "openid": "37f7f235-527c-4136-accd-4a02d197296e",
    "profile": "14dad69e-099b-42c9-810b-d002981feec1",
    "email": "64a6cdd6-aab1-4aaf-94b8-3cc8405e90d0",
}

# Microsoft Graph application roles (name -> app role id)
APPLICATION_ROLES: dict[str, str] = {
    "User.Read.All": "df021288-bdef-4463-88db-98f22de89214",
    "Directory.Read.All": "7ab1d382-f21e-4acd-a863-ba3e13f7da61",
}

# Keys written into ProvisioningContext.values
TENANT_ID = "tenant_id"
SPA_APP_ID = "spa_app_id"
SPA_OBJECT_ID = "spa_object_id"
SPA_SP_ID = "spa_sp_id"
MGMT_APP_ID = "mgmt_app_id"
MGMT_OBJECT_ID = "mgmt_object_id"
MGMT_SP_ID = "mgmt_sp_id"
MGMT_SECRET = "mgmt_secret"
CREDENTIAL_BACKEND = "credential_backend"
CONSENT_WARNINGS = "consent_warnings"


def spa_redirect_uris(domain: str) -> list[str]:
    return [f"https://{domain}/auth", f"https://{domain}/silent-auth"]


def delegated_permissions() -> list[dict[str, Any]]:
    return [
        {
            "resourceAppId": GRAPH_APP_ID,
            "resourceAccess": [
                {"id": scope_id, "type": "Scope"} for scope_id in DELEGATED_SCOPES.values()
            ],
        }
    ]


def application_permissions() -> list[dict[str, Any]]:
    return [
        {
            "resourceAppId": GRAPH_APP_ID,
            "resourceAccess": [
                {"id": role_id, "type": "Role"} for role_id in APPLICATION_ROLES.values()
            ],
        }
    ]


def api_scope(scope_id: str) -> dict[str, Any]:
    return {
        "oauth2PermissionScopes": [
            {
                "id": scope_id,
                "adminConsentDescription": "NetBird API access",
                "adminConsentDisplayName": "api",
                "isEnabled": True,
                "type": "User",
                "userConsentDescription": "Access NetBird API",
                "userConsentDisplayName": "api",
                "value": "api",
            }
        ]
    }


@dataclass
class IdentitySetup:
    """Builds the ordered identity steps for one project."""

    idp: IdentityProvider
    store: AppCredentialStore
    project: str
    domain: str
    scope_id: str = field(default_factory=lambda: str(uuid.uuid4()))

    @property
    def spa_name(self) -> str:
        return f"NetBird {self.project}"

    @property
    def mgmt_name(self) -> str:
        return f"NetBird Management {self.project}"

    def steps(self) -> list[Step]:
        return [
            Step("authenticate", self.authenticate),
            Step("create SPA application", self.create_spa_app),
            Step("configure SPA redirect URIs and tokens", self.configure_spa_app),
            Step("attach SPA permissions", self.attach_spa_permissions),
            Step("create SPA service principal", self.create_spa_service_principal),
            Step("grant SPA admin consent", self.grant_spa_consent),
            Step("create management application", self.create_mgmt_app),
            Step("add management client secret", self.add_mgmt_secret),
            Step("attach management permissions", self.attach_mgmt_permissions),
            Step("create management service principal", self.create_mgmt_service_principal),
            Step("grant management admin consent", self.grant_mgmt_consent),
            Step("store management credential", self.store_mgmt_credential),
        ]

    def orchestrator(self) -> Orchestrator:
        return Orchestrator(self.steps(), verifier=self.verify)

    # -- SPA ------------------------------------------------------------------

    def authenticate(self, ctx: ProvisioningContext) -> StepResult:
        tenant_id = self.idp.tenant_id()
        ctx.values[TENANT_ID] = tenant_id
        return StepResult.success(f"tenant {tenant_id}")

    def _ensure_name_free(self, display_name: str) -> None:
        existing = self.idp.find_app_by_name(display_name)
        if existing is not None:
            raise InputValidationError(
                f"Application {display_name} already exists (appId {existing.get('appId')}); "
                "delete it or use another project name"
            )

    def create_spa_app(self, ctx: ProvisioningContext) -> StepResult:
        self._ensure_name_free(self.spa_name)
        app = self.idp.create_app(self.spa_name, SIGN_IN_AUDIENCE)
        ctx.values[SPA_APP_ID] = app.app_id
        ctx.values[SPA_OBJECT_ID] = app.object_id
        return StepResult.success(
            f"created {self.spa_name}",
            resource_id=app.app_id,
            compensation=Compensation(
                description=f"delete application {self.spa_name} ({app.app_id})",
                action=lambda: self.idp.delete_app(app.object_id),
                resource=app.app_id,
            ),
        )

    def configure_spa_app(self, ctx: ProvisioningContext) -> StepResult:
        app_id = ctx.require(SPA_APP_ID)
        self.idp.update_app(
            ctx.require(SPA_OBJECT_ID),
            {
                "identifierUris": [f"api://{app_id}"],
                "isFallbackPublicClient": True,
                "web": {
                    "implicitGrantSettings": {
                        "enableIdTokenIssuance": True,
                        "enableAccessTokenIssuance": True,
                    }
                },
                "spa": {"redirectUris": spa_redirect_uris(self.domain)},
                "publicClient": {"redirectUris": PUBLIC_CLIENT_REDIRECT_URIS},
            },
        )
        return StepResult.success("redirect URIs configured")

    def attach_spa_permissions(self, ctx: ProvisioningContext) -> StepResult:
        object_id = ctx.require(SPA_OBJECT_ID)
        self.idp.update_app(object_id, {"requiredResourceAccess": delegated_permissions()})
        self.idp.update_app(object_id, {"api": api_scope(self.scope_id)})
        return StepResult.success(f"{len(DELEGATED_SCOPES)} delegated scopes and api scope")

    def create_spa_service_principal(self, ctx: ProvisioningContext) -> StepResult:
        sp_id = self.idp.create_service_principal(ctx.require(SPA_APP_ID))
        ctx.values[SPA_SP_ID] = sp_id
        return StepResult.success(
            "service principal created",
            resource_id=sp_id,
            compensation=Compensation(
                description=f"delete service principal of {self.spa_name} ({sp_id})",
                action=lambda: self.idp.delete_service_principal(sp_id),
                resource=sp_id,
            ),
        )

    def grant_spa_consent(self, ctx: ProvisioningContext) -> StepResult:
        return self._grant_consent(
            ctx, ctx.require(SPA_SP_ID), self.spa_name, scopes=list(DELEGATED_SCOPES), roles=[]
        )

    # -- Management -----------------------------------------------------------

    def create_mgmt_app(self, ctx: ProvisioningContext) -> StepResult:
        self._ensure_name_free(self.mgmt_name)
        app = self.idp.create_app(self.mgmt_name, SIGN_IN_AUDIENCE)
        ctx.values[MGMT_APP_ID] = app.app_id
        ctx.values[MGMT_OBJECT_ID] = app.object_id
        return StepResult.success(
            f"created {self.mgmt_name}",
            resource_id=app.app_id,
            compensation=Compensation(
                description=f"delete application {self.mgmt_name} ({app.app_id})",
                action=lambda: self.idp.delete_app(app.object_id),
                resource=app.app_id,
            ),
        )

    def add_mgmt_secret(self, ctx: ProvisioningContext) -> StepResult:
        secret = self.idp.add_password(
            ctx.require(MGMT_OBJECT_ID), SECRET_DISPLAY_NAME, SECRET_VALIDITY
        )
        register_secret(secret)
        ctx.values[MGMT_SECRET] = secret
        return StepResult.success("client secret created")

    def attach_mgmt_permissions(self, ctx: ProvisioningContext) -> StepResult:
        self.idp.update_app(
            ctx.require(MGMT_OBJECT_ID), {"requiredResourceAccess": application_permissions()}
        )
        return StepResult.success(f"{len(APPLICATION_ROLES)} application roles")

    def create_mgmt_service_principal(self, ctx: ProvisioningContext) -> StepResult:
        sp_id = self.idp.create_service_principal(ctx.require(MGMT_APP_ID))
        ctx.values[MGMT_SP_ID] = sp_id
        return StepResult.success(
            "service principal created",
            resource_id=sp_id,
            compensation=Compensation(
                description=f"delete service principal of {self.mgmt_name} ({sp_id})",
                action=lambda: self.idp.delete_service_principal(sp_id),
                resource=sp_id,
            ),
        )

    def grant_mgmt_consent(self, ctx: ProvisioningContext) -> StepResult:
        return self._grant_consent(
            ctx,
            ctx.require(MGMT_SP_ID),
            self.mgmt_name,
            scopes=[],
            roles=list(APPLICATION_ROLES.values()),
        )

    def store_mgmt_credential(self, ctx: ProvisioningContext) -> StepResult:
        stored = self.store.save(
            self.project,
            Credential(
                principal_id=ctx.require(MGMT_APP_ID),
                object_id=ctx.require(MGMT_OBJECT_ID),
                secret=ctx.require(MGMT_SECRET),
            ),
        )
        assert stored.backend_kind is not None
        ctx.values[CREDENTIAL_BACKEND] = stored.backend_kind.value
        return StepResult.success(f"credential stored ({stored.backend_kind.value})")

    # -- Shared ---------------------------------------------------------------

    def _grant_consent(
        self,
        ctx: ProvisioningContext,
        sp_id: str,
        app_name: str,
        *,
        scopes: list[str],
        roles: list[str],
    ) -> StepResult:
        try:
            self.idp.grant_admin_consent(sp_id, scopes=scopes, app_role_ids=roles)
        except ExternalAPIFailure as e:
            message = f"admin consent for {app_name} not granted: {e}"
            logger.warning(
                "Admin consent failed; grant it in the Entra portal",
                extra={"app": app_name, "error": str(e)},
            )
            ctx.values.setdefault(CONSENT_WARNINGS, []).append(message)
            log_security_audit_event(
                "admin_consent", self.project, target_resource=app_name, result="failure"
            )
            return StepResult.success(message)

        log_security_audit_event(
            "admin_consent", self.project, target_resource=app_name, result="success"
        )
        return StepResult.success("admin consent granted")

    def verify(self, ctx: ProvisioningContext) -> list[PartialSuccess]:
        """Re-fetch both registrations and check their post-conditions."""
        warnings = [
            PartialSuccess("admin_consent", message)
            for message in ctx.values.get(CONSENT_WARNINGS, [])
        ]
        warnings.extend(
            verify_spa_app(self.idp, ctx.require(SPA_APP_ID), spa_redirect_uris(self.domain))
        )
        warnings.extend(verify_management_app(self.idp, ctx.require(MGMT_APP_ID)))
        return warnings
