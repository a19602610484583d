"""NetBird provisioner CLI (nbprov).

Usage:
    nbprov infra up                 # SSH key, firewall, server, SSH config
    nbprov infra status             # What exists in Hetzner Cloud
    nbprov infra destroy            # Delete the server (asks first)
    nbprov identity setup           # Entra ID app registrations
    nbprov keys init                # Create or migrate the project SSH key
    nbprov keys show                # Public key and fingerprint
    nbprov keys ref                 # Where the private key lives
    nbprov keys agent-config        # 1Password SSH agent entry
    nbprov ssh-config export        # Host block for the project server
    nbprov ssh-config set-user      # Change the login user of a Host block

Configuration comes from the environment (see Config.from_env); options
override it.
"""

from __future__ import annotations

import logging
from pathlib import Path

import click

from .config import Config, ConfigurationError
from .credentials import BackendKind, CredentialNotFound, VaultBackend, describe_key
from .errors import ExternalAPIFailure, InputValidationError, UserAbort
from .hcloud import HcloudClient
from .infra import server_name
from .main import (
    EXIT_ABORTED,
    EXIT_FAILURE,
    EXIT_OK,
    EXIT_VALIDATION,
    Services,
    build_services,
    run_identity,
    run_infra_destroy,
    run_infra_status,
    run_infrastructure,
    setup_logging,
)
from .models import ResourceKind
from .spec_loader import SpecLoadError, load_deployment_spec
from .ssh_config import agent_toml_snippet, ensure_agent_toml_entry, set_host_user, upsert_host

logger = logging.getLogger(__name__)

VERSION = "0.1.0"


def load_config(ctx: click.Context, **overrides: object) -> Config:
    """Build Config from the environment plus global and command options."""
    options = dict(ctx.find_root().obj or {})
    options.update({k: v for k, v in overrides.items() if v is not None})
    try:
        return Config.from_env(**options)
    except ConfigurationError as e:
        click.secho(str(e), fg="red", err=True)
        raise click.exceptions.Exit(EXIT_VALIDATION) from e


def services_for(config: Config) -> Services:
    return build_services(config)


@click.group()
@click.version_option(version=VERSION, prog_name="nbprov")
@click.option("--project", "-p", help="Project slug (NETBIRD_PROJECT)")
@click.option(
    "--root",
    "root_dir",
    type=click.Path(file_okay=False, path_type=Path),
    help="Directory for local key and credential state (PROVISIONER_ROOT)",
)
@click.option("--vault", help="1Password vault name (OP_VAULT)")
@click.option("--yes", "-y", "assume_yes", is_flag=True, default=None, help="Approve all prompts")
@click.option("--json-logs", is_flag=True, help="Emit logs as JSON")
@click.option("--verbose", "-v", is_flag=True, help="Debug logging")
@click.pass_context
def cli(
    ctx: click.Context,
    project: str | None,
    root_dir: Path | None,
    vault: str | None,
    assume_yes: bool | None,
    json_logs: bool,
    verbose: bool,
) -> None:
    """NetBird self-hosted provisioner (nbprov).

    Provisions Hetzner infrastructure, SSH trust material and Entra ID
    application registrations for a self-hosted NetBird deployment.

    \b
    Quick Start:
        nbprov -p acme keys init
        nbprov -p acme infra up
        nbprov -p acme identity setup --domain netbird.acme.example
    """
    setup_logging(json_output=json_logs, verbose=verbose)
    ctx.obj = {
        "project": project,
        "root_dir": root_dir,
        "vault": vault,
        "assume_yes": assume_yes,
    }


# =============================================================================
# Infrastructure
# =============================================================================


@cli.group()
def infra() -> None:
    """Hetzner Cloud resources."""
    pass


@infra.command("up")
@click.option(
    "--spec",
    "spec_file",
    type=click.Path(exists=True, dir_okay=False, path_type=Path),
    help="Deployment spec YAML (DEPLOYMENT_SPEC)",
)
@click.option("--server-type", help="Hetzner server type (HCLOUD_SERVER_TYPE)")
@click.option("--image", help="Hetzner image (HCLOUD_IMAGE)")
@click.option("--location", help="Hetzner location (HCLOUD_LOCATION)")
@click.pass_context
def infra_up(
    ctx: click.Context,
    spec_file: Path | None,
    server_type: str | None,
    image: str | None,
    location: str | None,
) -> None:
    """Reconcile SSH key, firewall and server for the project."""
    config = load_config(
        ctx, spec_file=spec_file, server_type=server_type, image=image, location=location
    )
    ctx.exit(run_infrastructure(config, services_for(config)))


@infra.command("status")
@click.option(
    "--spec",
    "spec_file",
    type=click.Path(exists=True, dir_okay=False, path_type=Path),
    help="Deployment spec YAML (DEPLOYMENT_SPEC)",
)
@click.pass_context
def infra_status(ctx: click.Context, spec_file: Path | None) -> None:
    """Show the project's server, firewall and SSH key."""
    config = load_config(ctx, spec_file=spec_file)
    ctx.exit(run_infra_status(config, services_for(config)))


@infra.command("destroy")
@click.option(
    "--spec",
    "spec_file",
    type=click.Path(exists=True, dir_okay=False, path_type=Path),
    help="Deployment spec YAML (DEPLOYMENT_SPEC)",
)
@click.pass_context
def infra_destroy(ctx: click.Context, spec_file: Path | None) -> None:
    """Delete the project server after confirmation.

    The firewall and SSH key are kept.
    """
    config = load_config(ctx, spec_file=spec_file)
    ctx.exit(run_infra_destroy(config, services_for(config)))



# =============================================================================
# Identity
# =============================================================================


@cli.group()
def identity() -> None:
    """Entra ID application registrations."""
    pass


@identity.command("setup")
@click.option("--domain", "-d", help="Dashboard domain (NETBIRD_DOMAIN)")
@click.pass_context
def identity_setup(ctx: click.Context, domain: str | None) -> None:
    """Create the dashboard and management app registrations.

    Everything created is deleted again if a step fails.
    """
    config = load_config(ctx, domain=domain)
    ctx.exit(run_identity(config, services_for(config)))


# =============================================================================
# Keys
# =============================================================================


@cli.group()
def keys() -> None:
    """Project SSH key (1Password vault or local files)."""
    pass


def _key_error_exit(ctx: click.Context, error: Exception) -> None:
    match error:
        case UserAbort():
            click.secho(f"Aborted: {error}", fg="yellow", err=True)
            ctx.exit(EXIT_ABORTED)
        case InputValidationError():
            click.secho(str(error), fg="red", err=True)
            ctx.exit(EXIT_VALIDATION)
        case _:
            click.secho(str(error), fg="red", err=True)
            ctx.exit(EXIT_FAILURE)


@keys.command("init")
@click.pass_context
def keys_init(ctx: click.Context) -> None:
    """Create the project key, or migrate a local key into 1Password."""
    config = load_config(ctx)
    backend = services_for(config).key_backend(config)
    try:
        result = backend.init(config.project)
    except (UserAbort, InputValidationError, ExternalAPIFailure, CredentialNotFound) as e:
        _key_error_exit(ctx, e)
        return

    if result.migrated:
        click.secho(f"Migrated local key for {config.project} into 1Password", fg="green")
    elif result.regenerated:
        click.secho(f"Generated a new 1Password key for {config.project}", fg="yellow")
    elif result.created:
        click.secho(f"Created SSH key for {config.project} ({result.backend.value})", fg="green")
    else:
        click.echo(f"SSH key for {config.project} already exists ({result.backend.value})")


@keys.command("show")
@click.pass_context
def keys_show(ctx: click.Context) -> None:
    """Print the public key and its fingerprint."""
    config = load_config(ctx)
    backend = services_for(config).key_backend(config)
    try:
        info = describe_key(backend, config.project)
    except (InputValidationError, ExternalAPIFailure, CredentialNotFound) as e:
        _key_error_exit(ctx, e)
        return

    click.echo(f"Backend:     {info['backend']}")
    click.echo(f"Fingerprint: {info['fingerprint']}")
    click.echo(info["public_key"])


@keys.command("ref")
@click.pass_context
def keys_ref(ctx: click.Context) -> None:
    """Print the private key reference and the SSH directives it implies."""
    config = load_config(ctx)
    backend = services_for(config).key_backend(config)
    try:
        reference = backend.get_private_key_reference(config.project)
    except (ExternalAPIFailure, CredentialNotFound) as e:
        _key_error_exit(ctx, e)
        return

    click.echo(f"{reference.kind.value}: {reference.locator}")
    for directive in reference.ssh_directives():
        click.echo(f"    {directive}")


@keys.command("agent-config")
@click.option("--write", is_flag=True, help="Append the entry to the 1Password agent.toml")
@click.option(
    "--agent-toml",
    type=click.Path(dir_okay=False, path_type=Path),
    help="Path of agent.toml (default: ~/.config/1Password/ssh/agent.toml)",
)
@click.pass_context
def keys_agent_config(ctx: click.Context, write: bool, agent_toml: Path | None) -> None:
    """Show (or write) the 1Password SSH agent entry for the project key."""
    config = load_config(ctx)
    item = VaultBackend.item_title(config.project)

    if not write:
        click.echo(agent_toml_snippet(item, config.vault), nl=False)
        return

    if ensure_agent_toml_entry(item, config.vault, agent_toml):
        click.secho(f"Added {item} to the 1Password SSH agent config", fg="green")
    else:
        click.echo(f"{item} is already listed in the 1Password SSH agent config")


# =============================================================================
# SSH config
# =============================================================================


@cli.group("ssh-config")
def ssh_config() -> None:
    """Managed SSH client configuration (.ssh-keys/ssh-config)."""
    pass


@ssh_config.command("export")
@click.option("--ip", help="Server IP (default: looked up in Hetzner Cloud)")
@click.option(
    "--spec",
    "spec_file",
    type=click.Path(exists=True, dir_okay=False, path_type=Path),
    help="Deployment spec YAML (DEPLOYMENT_SPEC)",
)
@click.pass_context
def ssh_config_export(ctx: click.Context, ip: str | None, spec_file: Path | None) -> None:
    """Write or refresh the Host block for the project server."""
    config = load_config(ctx, spec_file=spec_file)
    services = services_for(config)

    try:
        spec = load_deployment_spec(config.spec_file)
    except SpecLoadError as e:
        click.secho(str(e), fg="red", err=True)
        ctx.exit(EXIT_VALIDATION)
        return

    host = server_name(config, spec)
    try:
        if ip is None:
            observed = HcloudClient(services.runner).describe(ResourceKind.SERVER, host)
            ip = observed.attributes.get("ipv4") if observed else None
        if not ip:
            click.secho(f"No IP known for server {host}", fg="red", err=True)
            ctx.exit(EXIT_FAILURE)
            return
        reference = services.key_backend(config).get_private_key_reference(config.project)
    except (ExternalAPIFailure, CredentialNotFound) as e:
        _key_error_exit(ctx, e)
        return

    update = upsert_host(
        config.ssh_config_path, host, ip, reference, known_hosts=config.known_hosts_path
    )
    click.echo(f"{host}: {update.value} ({config.ssh_config_path})")
    if reference.kind == BackendKind.VAULT:
        click.echo("Key is served by the 1Password SSH agent; see 'nbprov keys agent-config'.")
    click.echo(f"Connect with: ssh -F {config.ssh_config_path} {host}")


@ssh_config.command("set-user")
@click.argument("host")
@click.argument("user")
@click.pass_context
def ssh_config_set_user(ctx: click.Context, host: str, user: str) -> None:
    """Change the login user of an existing Host block."""
    config = load_config(ctx)
    if not set_host_user(config.ssh_config_path, host, user):
        click.secho(f"No Host block for {host} in {config.ssh_config_path}", fg="red", err=True)
        ctx.exit(EXIT_FAILURE)
        return
    click.echo(f"{host}: login user is now {user}")
    ctx.exit(EXIT_OK)


def run() -> None:
    """Entry point for the nbprov console script."""
    cli()


if __name__ == "__main__":
    run()
