"""Configuration management with validation.

All inputs are validated at load time so a run never starts half-configured.
"""

from __future__ import annotations

import os
import re
from dataclasses import dataclass, field
from pathlib import Path


class ConfigurationError(Exception):
    """Raised when configuration validation fails."""

    pass


# Hetzner defaults used by the original deployment (ARM 2 vCPU, 4GB RAM in Nuremberg)
DEFAULT_SERVER_TYPE = "cax11"
DEFAULT_IMAGE = "ubuntu-24.04"
DEFAULT_LOCATION = "nbg1"

DEFAULT_VAULT_NAME = "Netbird"

# Timing
DEFAULT_SERVER_READY_TIMEOUT_SECONDS = 300
DEFAULT_POLL_INTERVAL_SECONDS = 5
DEFAULT_COMMAND_TIMEOUT_SECONDS = 120
MIN_POLL_INTERVAL_SECONDS = 1
MAX_SERVER_READY_TIMEOUT_SECONDS = 3600

# Size limits
MAX_SPEC_FILE_SIZE_BYTES = 256 * 1024
MAX_PROJECT_NAME_LENGTH = 48

# Input validation patterns
VALID_PROJECT_PATTERN = r"^[a-z0-9][a-z0-9-]{0,46}[a-z0-9]$|^[a-z0-9]$"
VALID_DOMAIN_PATTERN = r"^(?=.{1,253}$)([a-z0-9]([a-z0-9-]{0,61}[a-z0-9])?\.)+[a-z]{2,63}$"
VALID_LOCATION_PATTERN = r"^[a-z]{3}[0-9]$"

# Directory names below the provisioner root
SSH_KEYS_DIRNAME = ".ssh-keys"
CREDENTIALS_DIRNAME = ".entra-credentials"


@dataclass(frozen=True)
class Config:
    """Provisioner configuration.

    All fields are validated at construction time. Invalid configurations
    raise ConfigurationError immediately rather than failing mid-run.
    """

    # Required
    project: str

    # Public domain of the NetBird dashboard; only needed for identity setup
    domain: str | None = None

    # Local state root; key files, SSH config and fallback credentials live here
    root_dir: Path = field(default_factory=Path.cwd)

    # 1Password vault used when the vault backend is active
    vault: str = DEFAULT_VAULT_NAME

    # Compute
    server_type: str = DEFAULT_SERVER_TYPE
    image: str = DEFAULT_IMAGE
    location: str = DEFAULT_LOCATION

    # Timing
    server_ready_timeout_seconds: int = DEFAULT_SERVER_READY_TIMEOUT_SECONDS
    poll_interval_seconds: int = DEFAULT_POLL_INTERVAL_SECONDS
    command_timeout_seconds: int = DEFAULT_COMMAND_TIMEOUT_SECONDS

    # Behavior
    assume_yes: bool = False
    spec_file: Path | None = None

    def __post_init__(self) -> None:
        """Validate configuration after initialization."""
        errors: list[str] = []

        if not self.project:
            errors.append("NETBIRD_PROJECT is required")
        elif len(self.project) > MAX_PROJECT_NAME_LENGTH or not re.match(
            VALID_PROJECT_PATTERN, self.project
        ):
            errors.append(
                "NETBIRD_PROJECT must be lowercase letters, digits and dashes "
                f"(max {MAX_PROJECT_NAME_LENGTH} chars): {self.project}"
            )

        if self.domain is not None and not re.match(VALID_DOMAIN_PATTERN, self.domain.lower()):
            errors.append(f"NETBIRD_DOMAIN must be a fully qualified domain name: {self.domain}")

        if not self.vault.strip():
            errors.append("OP_VAULT must not be empty")

        if not re.match(VALID_LOCATION_PATTERN, self.location):
            errors.append(f"HCLOUD_LOCATION must look like 'nbg1': {self.location}")

        if not self.server_type or not self.image:
            errors.append("HCLOUD_SERVER_TYPE and HCLOUD_IMAGE are required")

        if not (0 < self.server_ready_timeout_seconds <= MAX_SERVER_READY_TIMEOUT_SECONDS):
            errors.append(
                "SERVER_READY_TIMEOUT must be between 1 and "
                f"{MAX_SERVER_READY_TIMEOUT_SECONDS} seconds"
            )

        if self.poll_interval_seconds < MIN_POLL_INTERVAL_SECONDS:
            errors.append(f"POLL_INTERVAL must be at least {MIN_POLL_INTERVAL_SECONDS} second")
        elif self.poll_interval_seconds > self.server_ready_timeout_seconds:
            errors.append("POLL_INTERVAL cannot exceed SERVER_READY_TIMEOUT")

        if self.command_timeout_seconds < 1:
            errors.append("COMMAND_TIMEOUT must be at least 1 second")

        if not self.root_dir.is_dir():
            errors.append(f"Provisioner root directory does not exist: {self.root_dir}")

        if self.spec_file is not None and not self.spec_file.is_file():
            errors.append(f"Deployment spec file does not exist: {self.spec_file}")

        if errors:
            error_msg = "Configuration validation failed:\n  - " + "\n  - ".join(errors)
            raise ConfigurationError(error_msg)

    @property
    def ssh_keys_dir(self) -> Path:
        return self.root_dir / SSH_KEYS_DIRNAME

    @property
    def credentials_dir(self) -> Path:
        return self.root_dir / CREDENTIALS_DIRNAME

    @property
    def ssh_config_path(self) -> Path:
        return self.ssh_keys_dir / "ssh-config"

    @property
    def known_hosts_path(self) -> Path:
        return self.ssh_keys_dir / "known_hosts"

    @property
    def key_title(self) -> str:
        """Name used for the project key in the vault and in the Hetzner registry."""
        return f"netbird-{self.project}"

    @classmethod
    def from_env(cls, **overrides: object) -> Config:
        """Load configuration from environment variables.

        Environment Variables:
            NETBIRD_PROJECT: Project (customer) slug, e.g. "acme-corp"
            NETBIRD_DOMAIN: Dashboard domain, required for identity setup
            PROVISIONER_ROOT: Directory holding local key and credential state (default: cwd)
            OP_VAULT: 1Password vault name (default: Netbird)
            HCLOUD_SERVER_TYPE: Hetzner server type (default: cax11)
            HCLOUD_IMAGE: Hetzner image (default: ubuntu-24.04)
            HCLOUD_LOCATION: Hetzner location (default: nbg1)
            SERVER_READY_TIMEOUT: Seconds to wait for the server to run (default: 300)
            POLL_INTERVAL: Seconds between readiness checks (default: 5)
            COMMAND_TIMEOUT: Timeout for each CLI call in seconds (default: 120)
            ASSUME_YES: If "true", approve every drift/reuse prompt (default: false)
            DEPLOYMENT_SPEC: Optional YAML deployment spec

        Keyword overrides (e.g. from CLI options) win over the environment;
        None values are ignored.
        """

        def get_int(key: str, default: int) -> int:
            value = os.environ.get(key)
            if value is None:
                return default
            try:
                return int(value)
            except ValueError as e:
                raise ConfigurationError(f"{key} must be an integer: {value}") from e

        def get_bool(key: str, default: bool) -> bool:
            value = os.environ.get(key, "").lower()
            if not value:
                return default
            return value in ("true", "1", "yes")

        spec_file = os.environ.get("DEPLOYMENT_SPEC")
        values: dict[str, object] = {
            "project": os.environ.get("NETBIRD_PROJECT", ""),
            "domain": os.environ.get("NETBIRD_DOMAIN") or None,
            "root_dir": Path(os.environ.get("PROVISIONER_ROOT", str(Path.cwd()))),
            "vault": os.environ.get("OP_VAULT", DEFAULT_VAULT_NAME),
            "server_type": os.environ.get("HCLOUD_SERVER_TYPE", DEFAULT_SERVER_TYPE),
            "image": os.environ.get("HCLOUD_IMAGE", DEFAULT_IMAGE),
            "location": os.environ.get("HCLOUD_LOCATION", DEFAULT_LOCATION),
            "server_ready_timeout_seconds": get_int(
                "SERVER_READY_TIMEOUT", DEFAULT_SERVER_READY_TIMEOUT_SECONDS
            ),
            "poll_interval_seconds": get_int("POLL_INTERVAL", DEFAULT_POLL_INTERVAL_SECONDS),
            "command_timeout_seconds": get_int("COMMAND_TIMEOUT", DEFAULT_COMMAND_TIMEOUT_SECONDS),
            "assume_yes": get_bool("ASSUME_YES", False),
            "spec_file": Path(spec_file) if spec_file else None,
        }
        values.update({k: v for k, v in overrides.items() if v is not None})
        return cls(**values)  # type: ignore[arg-type]
