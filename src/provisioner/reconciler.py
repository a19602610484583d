"""Idempotent reconciliation of named Hetzner resources.

For each resource kind:
1. Fetch the observed resource by name (never cached)
2. Absent -> create it
3. Present and canonically equal -> no-op
4. Present and different -> kind-specific policy, operator decides

Kind policies:
- Firewall: drift is shown as a diff; on approval every existing rule is
  deleted and every desired rule added. An interruption between the two
  halves leaves the firewall with a partial rule set; the next run sees that
  as drift.
- Server: matched by name only. An existing server is reused only with the
  operator's consent; declining is terminal. Servers are never deleted or
  recreated.
- SSH key: fingerprints must match exactly. A mismatch is a hard failure and
  nothing is changed.

Only the named resource is ever touched.
"""

from __future__ import annotations

import dataclasses
import logging
from dataclasses import dataclass
from enum import Enum
from typing import assert_never

from .consent import ConsentGate, ConsentKind, ConsentRequest
from .diff import attributes_equal, render_diff
from .errors import ExternalAPIFailure, IncompleteCreate, InputValidationError
from .hcloud import CloudProvider
from .keys import fingerprint_md5, same_key
from .models import (
    DesiredResourceSpec,
    FirewallAttributes,
    ObservedResource,
    ResourceKind,
    ServerAttributes,
    SshKeyAttributes,
    canonical_rules,
)

logger = logging.getLogger(__name__)

EXTERNAL_API_FAILURE = "external API failure"


class OutcomeStatus(str, Enum):
    """Result of one reconcile call."""

    NO_OP = "no_op"
    CREATED = "created"
    UPDATED_WITH_CONSENT = "updated_with_consent"
    KEPT_DESPITE_DRIFT = "kept_despite_drift"
    HARD_FAILURE = "hard_failure"


@dataclass(frozen=True)
class ReconciliationOutcome:
    """What reconcile did to one named resource."""

    status: OutcomeStatus
    kind: ResourceKind
    name: str
    resource_id: str | None = None
    reason: str | None = None
    detail: str | None = None
    ipv4: str | None = None
    # Input or key conflict rather than a provider problem
    validation: bool = False
    # Created by this call but left incomplete
    left_behind: bool = False

    @property
    def ok(self) -> bool:
        return self.status != OutcomeStatus.HARD_FAILURE

    @property
    def changed(self) -> bool:
        return self.status in (OutcomeStatus.CREATED, OutcomeStatus.UPDATED_WITH_CONSENT)

    def to_dict(self) -> dict[str, str | None]:
        """Convert to dictionary for logging."""
        return {
            "status": self.status.value,
            "kind": self.kind.value,
            "resource": self.name,
            "resource_id": self.resource_id,
            "reason": self.reason,
        }


class Reconciler:
    """Converges one named resource at a time toward its desired spec."""

    def __init__(self, provider: CloudProvider, consent: ConsentGate) -> None:
        self._provider = provider
        self._consent = consent

    def reconcile(self, name: str, desired: DesiredResourceSpec) -> ReconciliationOutcome:
        """Ensure the resource ``name`` matches ``desired``.

        Provider failures never escape as exceptions; they come back as a
        HARD_FAILURE outcome with reason "external API failure".
        """
        if desired.name != name:
            return self._failure(
                desired, f"desired spec is for {desired.name!r}, not {name!r}", validation=True
            )

        logger.info(
            "Reconciling resource",
            extra={"kind": desired.kind.value, "resource": name},
        )

        try:
            observed = self._provider.describe(desired.kind, name)
            outcome = self._dispatch(desired, observed)
        except ExternalAPIFailure as e:
            logger.error(
                "Provider call failed during reconciliation",
                extra={
                    "kind": desired.kind.value,
                    "resource": name,
                    "operation": e.operation,
                    "error": str(e),
                },
            )
            return self._failure(desired, EXTERNAL_API_FAILURE, detail=str(e))

        log = logger.info if outcome.ok else logger.error
        log("Reconciliation finished", extra=outcome.to_dict())
        return outcome

    def _dispatch(
        self, desired: DesiredResourceSpec, observed: ObservedResource | None
    ) -> ReconciliationOutcome:
        match desired.attributes:
            case FirewallAttributes() as attrs:
                return self._reconcile_firewall(desired, attrs, observed)
            case ServerAttributes() as attrs:
                return self._reconcile_server(desired, attrs, observed)
            case SshKeyAttributes() as attrs:
                return self._reconcile_ssh_key(desired, attrs, observed)
            case _:
                assert_never(desired.attributes)

    def _failure(
        self,
        desired: DesiredResourceSpec,
        reason: str,
        *,
        detail: str | None = None,
        validation: bool = False,
    ) -> ReconciliationOutcome:
        return ReconciliationOutcome(
            status=OutcomeStatus.HARD_FAILURE,
            kind=desired.kind,
            name=desired.name,
            reason=reason,
            detail=detail,
            validation=validation,
        )

    def _created(self, desired: DesiredResourceSpec) -> ReconciliationOutcome:
        """Create the resource; once the create call succeeded it is always reported."""
        try:
            resource_id = self._provider.create(desired)
        except IncompleteCreate as e:
            logger.error(
                "Resource created but left incomplete",
                extra={"kind": desired.kind.value, "resource": desired.name, "error": str(e)},
            )
            return dataclasses.replace(
                self._failure(desired, EXTERNAL_API_FAILURE, detail=str(e)), left_behind=True
            )

        return ReconciliationOutcome(
            status=OutcomeStatus.CREATED,
            kind=desired.kind,
            name=desired.name,
            resource_id=resource_id,
            detail=None if resource_id else "created but not yet visible",
        )

    # -------------------------------------------------------------------------
    # Firewall
    # -------------------------------------------------------------------------

    def _reconcile_firewall(
        self,
        desired: DesiredResourceSpec,
        attrs: FirewallAttributes,
        observed: ObservedResource | None,
    ) -> ReconciliationOutcome:
        if observed is None:
            return self._created(desired)

        current_rules = observed.attributes.get("rules") or []
        current = {"rules": canonical_rules(current_rules)}
        wanted = {"rules": canonical_rules(attrs.rules)}

        if attributes_equal(current, wanted):
            return ReconciliationOutcome(
                status=OutcomeStatus.NO_OP,
                kind=desired.kind,
                name=desired.name,
                resource_id=observed.id,
            )

        diff = render_diff(f"firewall/{desired.name}", current, wanted)
        request = self._consent.request(
            ConsentRequest(
                kind=ConsentKind.APPLY_DRIFT,
                resource=desired.name,
                prompt=(
                    f"Firewall {desired.name} differs from the desired rules. "
                    "Replace all rules with the desired set?"
                ),
                diff=diff,
            )
        )
        if not request.approved:
            logger.warning(
                "Firewall drift kept by operator decision",
                extra={"resource": desired.name, **diff.to_dict()},
            )
            return ReconciliationOutcome(
                status=OutcomeStatus.KEPT_DESPITE_DRIFT,
                kind=desired.kind,
                name=desired.name,
                resource_id=observed.id,
            )

        for rule in current_rules:
            self._provider.delete_rule(desired.name, rule)
        for rule in attrs.rules:
            self._provider.add_rule(desired.name, rule)

        return ReconciliationOutcome(
            status=OutcomeStatus.UPDATED_WITH_CONSENT,
            kind=desired.kind,
            name=desired.name,
            resource_id=observed.id,
        )

    # -------------------------------------------------------------------------
    # Server
    # -------------------------------------------------------------------------

    def _reconcile_server(
        self,
        desired: DesiredResourceSpec,
        attrs: ServerAttributes,
        observed: ObservedResource | None,
    ) -> ReconciliationOutcome:
        if observed is None:
            outcome = self._created(desired)
            if not outcome.ok:
                return outcome
            try:
                fresh = self._provider.describe(desired.kind, desired.name)
            except ExternalAPIFailure as e:
                logger.warning(
                    "New server could not be described",
                    extra={"resource": desired.name, "error": str(e)},
                )
                return dataclasses.replace(outcome, detail=f"address unknown: {e}")
            ipv4 = fresh.attributes.get("ipv4") if fresh else None
            return dataclasses.replace(outcome, ipv4=ipv4)

        ipv4 = observed.attributes.get("ipv4")
        request = self._consent.request(
            ConsentRequest(
                kind=ConsentKind.REUSE_EXISTING,
                resource=desired.name,
                prompt=(
                    f"Server {desired.name} already exists "
                    f"(id {observed.id}, IP {ipv4 or 'unknown'}). Reuse it?"
                ),
                default=True,
            )
        )
        if not request.approved:
            return self._failure(
                desired,
                f"server {desired.name} already exists; choose a different name",
            )

        current = {
            "server_type": observed.attributes.get("server_type"),
            "location": observed.attributes.get("location"),
        }
        wanted = {"server_type": attrs.server_type, "location": attrs.location}
        status = OutcomeStatus.NO_OP
        if not attributes_equal(current, wanted):
            logger.warning(
                "Reused server differs from the desired type or location",
                extra={"resource": desired.name, "current": current, "desired": wanted},
            )
            status = OutcomeStatus.KEPT_DESPITE_DRIFT

        return ReconciliationOutcome(
            status=status,
            kind=desired.kind,
            name=desired.name,
            resource_id=observed.id,
            ipv4=ipv4,
        )

    # -------------------------------------------------------------------------
    # SSH key
    # -------------------------------------------------------------------------

    def _reconcile_ssh_key(
        self,
        desired: DesiredResourceSpec,
        attrs: SshKeyAttributes,
        observed: ObservedResource | None,
    ) -> ReconciliationOutcome:
        try:
            wanted_fingerprint = fingerprint_md5(attrs.public_key)
        except InputValidationError as e:
            return self._failure(desired, "invalid public key", detail=str(e), validation=True)

        if observed is None:
            return self._created(desired)

        current_fingerprint = observed.attributes.get("fingerprint")
        if current_fingerprint:
            identical = current_fingerprint.lower() == wanted_fingerprint
        else:
            current_key = observed.attributes.get("public_key") or ""
            try:
                identical = same_key(current_key, attrs.public_key)
            except InputValidationError:
                identical = False

        if not identical:
            return self._failure(
                desired,
                f"SSH key {desired.name} exists with a different fingerprint; "
                "choose a different name",
                detail=f"registered {current_fingerprint}, local {wanted_fingerprint}",
                validation=True,
            )

        return ReconciliationOutcome(
            status=OutcomeStatus.NO_OP,
            kind=desired.kind,
            name=desired.name,
            resource_id=observed.id,
        )
