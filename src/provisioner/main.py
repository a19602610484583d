"""Run entry points for the provisioner.

Each ``run_*`` function wires the collaborators for one workflow, runs it,
prints an operator summary and returns a process exit code:

    0  success (possibly with warnings)
    1  provisioning failure
    2  invalid input or conflicting key material
    3  aborted by the operator
"""

from __future__ import annotations

import json
import logging
import sys
from dataclasses import dataclass
from datetime import UTC, datetime

import click

from .commands import CommandRunner, Runner
from .config import Config
from .consent import (
    ConsentGate,
    ConsentKind,
    ConsentRequest,
    InteractiveConsentGate,
    StaticConsentGate,
)
from .credentials import (
    AppCredentialStore,
    BackendResolver,
    CredentialBackend,
    CredentialNotFound,
    build_key_backend,
)
from .entra import (
    CREDENTIAL_BACKEND,
    MGMT_APP_ID,
    MGMT_OBJECT_ID,
    MGMT_SECRET,
    SPA_APP_ID,
    TENANT_ID,
    IdentitySetup,
)
from .errors import ExternalAPIFailure, InputValidationError, UserAbort
from .graph import GraphClient, IdentityProvider
from .hcloud import HcloudClient
from .infra import InfrastructureProvisioner, firewall_name, project_selector, server_name
from .models import DeploymentSpec, ResourceKind
from .onepassword import OnePasswordClient
from .orchestrator import RunReport
from .reconciler import Reconciler
from .rollback import ProvisioningContext
from .security import (
    RedactingFilter,
    get_cli_credential,
    log_security_audit_event,
    mask,
    register_environment_secrets,
)
from .spec_loader import SpecLoadError, load_deployment_spec

EXIT_OK = 0
EXIT_FAILURE = 1
EXIT_VALIDATION = 2
EXIT_ABORTED = 3

# LogRecord attributes that are not user-supplied extra fields
_RESERVED_ATTRS = frozenset(
    (
        "name", "msg", "args", "created", "filename", "funcName", "levelname", "levelno",
        "lineno", "module", "msecs", "pathname", "process", "processName",
        "relativeCreated", "stack_info", "exc_info", "exc_text", "thread", "threadName",
        "taskName", "message",
    )
)


class JsonFormatter(logging.Formatter):
    """Format logs as JSON for structured logging."""

    def format(self, record: logging.LogRecord) -> str:
        log_data = {
            "timestamp": datetime.now(UTC).isoformat().replace("+00:00", "Z"),
            "level": record.levelname,
            "message": record.getMessage(),
            "logger": record.name,
        }
        for key, value in record.__dict__.items():
            if key not in _RESERVED_ATTRS:
                log_data[key] = value

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        return json.dumps(log_data, default=str)


def setup_logging(*, json_output: bool = False, verbose: bool = False) -> None:
    """Configure logging on stderr with secret redaction."""
    handler = logging.StreamHandler(sys.stderr)
    if json_output:
        handler.setFormatter(JsonFormatter())
    else:
        handler.setFormatter(logging.Formatter("%(levelname)-7s %(name)s: %(message)s"))
    handler.addFilter(RedactingFilter())

    root_logger = logging.getLogger()
    for existing in list(root_logger.handlers):
        root_logger.removeHandler(existing)
    root_logger.addHandler(handler)
    root_logger.setLevel(logging.DEBUG if verbose else logging.INFO)

    # Reduce noise from Azure SDK
    logging.getLogger("azure").setLevel(logging.WARNING)
    logging.getLogger("urllib3").setLevel(logging.WARNING)

    register_environment_secrets()


@dataclass
class Services:
    """Collaborators shared by all workflows of one run."""

    runner: Runner
    op: OnePasswordClient
    resolver: BackendResolver
    consent: ConsentGate

    def key_backend(self, config: Config) -> CredentialBackend:
        return build_key_backend(self.resolver, self.op, config, self.consent)

    def app_credential_store(self, config: Config) -> AppCredentialStore:
        return AppCredentialStore(
            self.resolver.resolve(), self.op, config.vault, config.credentials_dir
        )


def build_services(
    config: Config,
    *,
    runner: Runner | None = None,
    consent: ConsentGate | None = None,
) -> Services:
    runner = runner or CommandRunner(timeout=config.command_timeout_seconds)
    if consent is None:
        if config.assume_yes:
            consent = StaticConsentGate(approve=True)
        else:
            consent = InteractiveConsentGate()
    op = OnePasswordClient(runner)
    return Services(runner=runner, op=op, resolver=BackendResolver(op), consent=consent)


def run_infrastructure(config: Config, services: Services) -> int:
    """Reconcile SSH key, firewall and server, then write the SSH config."""
    logger = logging.getLogger(__name__)

    try:
        spec = load_deployment_spec(config.spec_file)
    except SpecLoadError as e:
        click.secho(str(e), fg="red", err=True)
        return EXIT_VALIDATION

    provider = HcloudClient(services.runner)
    if not provider.available():
        click.secho(
            "hcloud CLI not found; install it and create a context first", fg="red", err=True
        )
        return EXIT_FAILURE

    provisioner = InfrastructureProvisioner(
        config,
        spec,
        Reconciler(provider, services.consent),
        provider,
        services.key_backend(config),
    )

    try:
        report = provisioner.run()
    except UserAbort as e:
        click.secho(f"Aborted: {e}", fg="yellow", err=True)
        return EXIT_ABORTED
    except (InputValidationError, CredentialNotFound) as e:
        click.secho(str(e), fg="red", err=True)
        return EXIT_VALIDATION
    except ExternalAPIFailure as e:
        logger.error("Infrastructure run failed", extra={"error": str(e)})
        click.secho(f"External API failure: {e}", fg="red", err=True)
        return EXIT_FAILURE

    for outcome in report.outcomes:
        color = "green" if outcome.ok else "red"
        click.secho(f"  {outcome.kind.value:8} {outcome.name:40} {outcome.status.value}", fg=color)

    if not report.ok:
        click.secho(f"Failed: {report.failure}", fg="red", err=True)
        if report.created:
            click.echo("Resources created by this run (not removed):", err=True)
            for line in report.created:
                click.echo(f"  - {line}", err=True)
        else:
            click.echo("No resources were created by this run.", err=True)
        return EXIT_VALIDATION if report.outcomes[-1].validation else EXIT_FAILURE

    click.echo("")
    click.echo(f"Server IP:   {report.server_ip or 'unknown'}")
    click.echo(f"Running:     {'yes' if report.server_ready else 'no (timed out)'}")
    if report.ssh_config is not None:
        click.echo(f"SSH config:  {config.ssh_config_path} ({report.ssh_config.value})")
    return EXIT_OK


def _load_spec_and_provider(
    config: Config, services: Services
) -> tuple[DeploymentSpec, HcloudClient]:
    spec = load_deployment_spec(config.spec_file)
    provider = HcloudClient(services.runner)
    if not provider.available():
        raise ExternalAPIFailure(
            "hcloud CLI not found; install it and create a context first", provider="hetzner"
        )
    return spec, provider


def run_infra_status(config: Config, services: Services) -> int:
    """Show the project's server, firewall and SSH key as Hetzner sees them."""
    try:
        spec, provider = _load_spec_and_provider(config, services)
        resources = [
            (ResourceKind.SERVER, server_name(config, spec)),
            (ResourceKind.FIREWALL, firewall_name(config, spec)),
            (ResourceKind.SSH_KEY, config.key_title),
        ]
        observed = {kind: provider.describe(kind, name) for kind, name in resources}
        labelled = provider.list_resources(
            ResourceKind.SERVER, label_selector=project_selector(config.project)
        )
    except SpecLoadError as e:
        click.secho(str(e), fg="red", err=True)
        return EXIT_VALIDATION
    except ExternalAPIFailure as e:
        click.secho(str(e), fg="red", err=True)
        return EXIT_FAILURE

    for kind, name in resources:
        resource = observed[kind]
        if resource is None:
            click.secho(f"  {kind.value:8} {name:40} not found", fg="yellow")
            continue
        attrs = resource.attributes
        match kind:
            case ResourceKind.SERVER:
                detail = (
                    f"{attrs.get('status')}  {attrs.get('ipv4') or 'no IPv4'}  "
                    f"{attrs.get('server_type')}  {attrs.get('location')}"
                )
            case ResourceKind.FIREWALL:
                detail = f"{len(attrs.get('rules') or [])} rules"
            case ResourceKind.SSH_KEY:
                detail = attrs.get("fingerprint") or ""
        click.echo(f"  {kind.value:8} {name:40} id {resource.id}  {detail}")

    others = [s for s in labelled if s.name != resources[0][1]]
    if others:
        click.echo(f"Other servers labelled for {config.project}:")
        for other in others:
            ipv4 = other.attributes.get("ipv4") or "no IPv4"
            click.echo(f"  {other.name:49} id {other.id}  {ipv4}")

    return EXIT_OK if observed[ResourceKind.SERVER] is not None else EXIT_FAILURE


def run_infra_destroy(config: Config, services: Services) -> int:
    """Delete the project server after explicit confirmation.

    The firewall and SSH key are kept; they cost nothing and are reused by
    the next ``infra up``.
    """
    logger = logging.getLogger(__name__)

    try:
        spec, provider = _load_spec_and_provider(config, services)
        name = server_name(config, spec)
        observed = provider.describe(ResourceKind.SERVER, name)
    except SpecLoadError as e:
        click.secho(str(e), fg="red", err=True)
        return EXIT_VALIDATION
    except ExternalAPIFailure as e:
        click.secho(str(e), fg="red", err=True)
        return EXIT_FAILURE

    if observed is None:
        click.secho(f"Server {name} not found", fg="red", err=True)
        return EXIT_FAILURE

    request = services.consent.request(
        ConsentRequest(
            kind=ConsentKind.DESTROY,
            resource=name,
            prompt=(
                f"Permanently delete server {name} (id {observed.id}, "
                f"IP {observed.attributes.get('ipv4') or 'unknown'})? "
                "All NetBird data on it will be lost."
            ),
            default=False,
        )
    )
    if not request.approved:
        log_security_audit_event(
            "server_destroy", config.project, target_resource=name, result="declined"
        )
        click.secho("Aborted: server kept", fg="yellow", err=True)
        return EXIT_ABORTED

    try:
        provider.delete(ResourceKind.SERVER, observed.id)
    except ExternalAPIFailure as e:
        logger.error("Server deletion failed", extra={"server": name, "error": str(e)})
        log_security_audit_event(
            "server_destroy", config.project, target_resource=name, result="failure"
        )
        click.secho(f"External API failure: {e}", fg="red", err=True)
        return EXIT_FAILURE

    log_security_audit_event(
        "server_destroy", config.project, target_resource=name, action="delete", result="success"
    )
    click.secho(f"Deleted server {name} (id {observed.id})", fg="green")
    click.echo("Firewall and SSH key were kept.")
    return EXIT_OK



def print_identity_summary(report: RunReport, domain: str) -> None:
    outputs = report.outputs
    click.echo("")
    click.secho("Entra ID configuration", bold=True)
    click.echo(f"  Tenant ID:              {outputs.get(TENANT_ID)}")
    click.echo(f"  Dashboard client ID:    {outputs.get(SPA_APP_ID)}")
    click.echo(f"  Management client ID:   {outputs.get(MGMT_APP_ID)}")
    click.echo(f"  Management object ID:   {outputs.get(MGMT_OBJECT_ID)}")
    click.echo(f"  Management secret:      {mask(outputs.get(MGMT_SECRET))}")
    click.echo(f"  Secret stored in:       {outputs.get(CREDENTIAL_BACKEND)}")
    click.echo(f"  Dashboard URL:          https://{domain}")
    for warning in report.warnings:
        click.secho(f"  warning: {warning.message}", fg="yellow")


def run_identity(
    config: Config,
    services: Services,
    *,
    idp: IdentityProvider | None = None,
) -> int:
    """Create the Entra ID registrations with rollback on failure."""
    if not config.domain:
        click.secho("NETBIRD_DOMAIN is required for identity setup", fg="red", err=True)
        return EXIT_VALIDATION

    idp = idp or GraphClient(get_cli_credential())
    setup = IdentitySetup(
        idp=idp,
        store=services.app_credential_store(config),
        project=config.project,
        domain=config.domain,
    )

    context = ProvisioningContext()
    report = setup.orchestrator().run(context)

    if report.succeeded:
        print_identity_summary(report, config.domain)
        return EXIT_OK

    click.secho(
        f"Identity setup failed at '{report.failed_step}': {report.error}", fg="red", err=True
    )
    if report.compensated:
        click.echo("Rolled back:", err=True)
        for description in report.compensated:
            click.echo(f"  - {description}", err=True)
    if report.uncompensated:
        click.secho("Left behind (remove manually):", fg="red", err=True)
        for description in report.uncompensated:
            click.echo(f"  - {description}", err=True)
    else:
        click.echo("No resources were left behind.", err=True)

    if report.aborted:
        return EXIT_ABORTED
    return EXIT_VALIDATION if report.validation else EXIT_FAILURE
