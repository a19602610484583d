"""Post-provisioning verification.

After a successful identity run every created object is fetched again and
checked against its expected post-conditions. Findings are PartialSuccess
warnings: the run still counts as successful and nothing is rolled back.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from .graph import IdentityProvider

logger = logging.getLogger(__name__)

MIN_SPA_PERMISSIONS = 6


@dataclass(frozen=True)
class PartialSuccess:
    """A post-condition that did not hold after an otherwise successful run."""

    check: str
    message: str


def count_permissions(app: dict[str, Any]) -> int:
    """Number of individual permissions across all requiredResourceAccess entries."""
    return sum(
        len(entry.get("resourceAccess") or [])
        for entry in app.get("requiredResourceAccess") or []
    )


def verify_spa_app(
    idp: IdentityProvider,
    app_id: str,
    redirect_uris: list[str],
    *,
    min_permissions: int = MIN_SPA_PERMISSIONS,
) -> list[PartialSuccess]:
    """Check the dashboard (SPA) registration and its service principal."""
    app = idp.get_app(app_id)
    if app is None:
        return [PartialSuccess("spa_app_exists", f"SPA application {app_id} not found")]

    warnings: list[PartialSuccess] = []
    registered = set((app.get("spa") or {}).get("redirectUris") or [])
    for uri in redirect_uris:
        if uri not in registered:
            warnings.append(
                PartialSuccess("spa_redirect_uri", f"redirect URI {uri} missing from SPA app")
            )

    permissions = count_permissions(app)
    if permissions < min_permissions:
        warnings.append(
            PartialSuccess(
                "spa_permissions",
                f"SPA app has {permissions} permissions, expected at least {min_permissions}",
            )
        )

    if idp.get_service_principal(app_id) is None:
        warnings.append(
            PartialSuccess("spa_service_principal", f"no service principal for {app_id}")
        )
    return warnings


def verify_management_app(idp: IdentityProvider, app_id: str) -> list[PartialSuccess]:
    """Check the management registration and its service principal."""
    if idp.get_app(app_id) is None:
        return [PartialSuccess("mgmt_app_exists", f"management application {app_id} not found")]
    if idp.get_service_principal(app_id) is None:
        return [PartialSuccess("mgmt_service_principal", f"no service principal for {app_id}")]
    return []
