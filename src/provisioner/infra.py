"""Infrastructure workflow: SSH key, firewall, server, SSH config.

Resources are reconciled in dependency order and the workflow stops at the
first hard failure. Nothing is deleted on failure; the report lists what
this run created so the operator can clean up or simply re-run, since every
step is idempotent.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import UTC, datetime

from .config import Config
from .credentials import CredentialBackend, CredentialNotFound
from .errors import ExternalAPIFailure
from .hcloud import CloudProvider
from .models import (
    MANAGED_BY_LABEL,
    DeploymentSpec,
    DesiredResourceSpec,
    FirewallAttributes,
    ResourceKind,
    ServerAttributes,
    SshKeyAttributes,
)
from .polling import wait_until
from .reconciler import OutcomeStatus, ReconciliationOutcome, Reconciler
from .ssh_config import HostUpdate, upsert_host

logger = logging.getLogger(__name__)

SERVER_NAME_PREFIX = "netbird-selfhosted"
RUNNING = "running"


def base_labels(project: str, purpose: str) -> dict[str, str]:
    return {"managed-by": MANAGED_BY_LABEL, "customer": project, "purpose": purpose}


def project_selector(project: str) -> str:
    """hcloud label selector matching everything this tool created for a project."""
    return f"managed-by={MANAGED_BY_LABEL},customer={project}"


def server_name(config: Config, spec: DeploymentSpec) -> str:
    return spec.server.name or f"{SERVER_NAME_PREFIX}-{config.project}"


def firewall_name(config: Config, spec: DeploymentSpec) -> str:
    return spec.firewall.name or f"{config.project}-netbird-firewall"


def desired_ssh_key(config: Config, public_key: str) -> DesiredResourceSpec:
    return DesiredResourceSpec(
        kind=ResourceKind.SSH_KEY,
        name=config.key_title,
        attributes=SshKeyAttributes(
            public_key=public_key, labels=base_labels(config.project, "netbird-ssh")
        ),
    )


def desired_firewall(config: Config, spec: DeploymentSpec) -> DesiredResourceSpec:
    return DesiredResourceSpec(
        kind=ResourceKind.FIREWALL,
        name=firewall_name(config, spec),
        attributes=FirewallAttributes(
            rules=spec.firewall.rules,
            labels={**spec.labels, **base_labels(config.project, "netbird-ports")},
        ),
    )


def desired_server(config: Config, spec: DeploymentSpec) -> DesiredResourceSpec:
    labels = {
        **spec.labels,
        **spec.server.labels,
        **base_labels(config.project, "netbird-server"),
        "created": datetime.now(UTC).strftime("%Y-%m-%d"),
    }
    return DesiredResourceSpec(
        kind=ResourceKind.SERVER,
        name=server_name(config, spec),
        attributes=ServerAttributes(
            server_type=spec.server.server_type or config.server_type,
            image=spec.server.image or config.image,
            location=spec.server.location or config.location,
            ssh_keys=[config.key_title],
            firewall=firewall_name(config, spec),
            labels=labels,
        ),
    )


@dataclass
class InfraReport:
    """Result of one infrastructure run."""

    outcomes: list[ReconciliationOutcome] = field(default_factory=list)
    server_ip: str | None = None
    server_ready: bool = False
    ssh_config: HostUpdate | None = None
    failure: str | None = None

    @property
    def ok(self) -> bool:
        return self.failure is None

    @property
    def created(self) -> list[str]:
        return [
            f"{o.kind.value} {o.name} (id {o.resource_id or 'unknown'})"
            for o in self.outcomes
            if o.status == OutcomeStatus.CREATED or o.left_behind
        ]


class InfrastructureProvisioner:
    """Reconciles the project's Hetzner resources in order."""

    def __init__(
        self,
        config: Config,
        spec: DeploymentSpec,
        reconciler: Reconciler,
        provider: CloudProvider,
        backend: CredentialBackend,
    ) -> None:
        self._config = config
        self._spec = spec
        self._reconciler = reconciler
        self._provider = provider
        self._backend = backend

    def run(self) -> InfraReport:
        report = InfraReport()
        project = self._config.project

        self._backend.init(project)
        public_key = self._backend.get_public_key(project)

        for desired in (
            desired_ssh_key(self._config, public_key),
            desired_firewall(self._config, self._spec),
            desired_server(self._config, self._spec),
        ):
            outcome = self._reconciler.reconcile(desired.name, desired)
            report.outcomes.append(outcome)
            if not outcome.ok:
                report.failure = f"{desired.kind.value} {desired.name}: {outcome.reason}"
                logger.error(
                    "Infrastructure run stopped",
                    extra={"failure": report.failure, "left_behind": report.created},
                )
                return report

        server = report.outcomes[-1]
        try:
            self._finish_server(report, server)
        except (ExternalAPIFailure, CredentialNotFound) as e:
            report.failure = f"server {server.name}: {e}"
            logger.error(
                "Infrastructure run stopped after reconciliation",
                extra={"failure": report.failure, "left_behind": report.created},
            )
            return report

        logger.info(
            "Infrastructure run finished",
            extra={"server": server.name, "ip": report.server_ip, "ready": report.server_ready},
        )
        return report

    def _finish_server(self, report: InfraReport, server: ReconciliationOutcome) -> None:
        report.server_ready = self.wait_for_running(server.name)
        observed = self._provider.describe(ResourceKind.SERVER, server.name)
        report.server_ip = (observed.attributes.get("ipv4") if observed else None) or server.ipv4

        if report.server_ip:
            report.ssh_config = upsert_host(
                self._config.ssh_config_path,
                server.name,
                report.server_ip,
                self._backend.get_private_key_reference(self._config.project),
                known_hosts=self._config.known_hosts_path,
            )
        else:
            logger.warning("Server has no public IPv4 yet", extra={"server": server.name})

    def wait_for_running(self, name: str) -> bool:
        """Poll until the server reports status ``running``."""

        def is_running() -> bool:
            observed = self._provider.describe(ResourceKind.SERVER, name)
            return observed is not None and observed.attributes.get("status") == RUNNING

        return wait_until(
            is_running,
            timeout=self._config.server_ready_timeout_seconds,
            interval=self._config.poll_interval_seconds,
            description=f"server {name} running",
        )
