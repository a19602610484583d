"""Credential backends: 1Password vault or local files.

The backend is resolved once per run and injected into every consumer:

    resolver = BackendResolver(op)
    backend = build_key_backend(resolver, op, config, consent)
    backend.init(project)

Resolution picks the vault when the op CLI is installed and signed in,
otherwise local files under ``<root>/.ssh-keys``. The result is cached; a
vault session that expires mid-run does not flip the run to files.

Migration: when the vault is active and a file key exists for the project,
``init`` imports the private key into the vault and deletes the local files.
If the import fails, a new vault key is generated only after the operator
confirms, because servers that trust the old key will reject the new one.
"""

from __future__ import annotations

import logging
import sys
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Protocol

from .config import Config
from .consent import ConsentGate, ConsentKind, ConsentRequest
from .errors import ExternalAPIFailure, ProvisionerError, UserAbort
from .keys import (
    KEY_DIR_MODE,
    fingerprint_sha256,
    generate_keypair,
    public_key_from_private,
    same_key,
    write_keypair,
    write_private_file,
)
from .onepassword import OnePasswordClient
from .security import log_security_audit_event

logger = logging.getLogger(__name__)

SSH_KEY_CATEGORY = "sshkey"
API_CREDENTIAL_CATEGORY = "API Credential"
PRIVATE_KEY_FIELD = "private key"
PUBLIC_KEY_FIELD = "public key"

MACOS_AGENT_SOCKET = "~/Library/Group Containers/2BUA8C4S2C.com.1password/t/agent.sock"
LINUX_AGENT_SOCKET = "~/.1password/agent.sock"


def onepassword_agent_socket() -> str:
    return MACOS_AGENT_SOCKET if sys.platform == "darwin" else LINUX_AGENT_SOCKET


class CredentialNotFound(ProvisionerError):
    """Raised when no key material exists for a project."""

    pass


def ensure_vault(op: OnePasswordClient, vault: str) -> None:
    """Create the vault on first use."""
    if op.vault_get(vault) is None:
        logger.info("Vault missing, creating it", extra={"vault": vault})
        op.vault_create(vault)


class BackendKind(str, Enum):
    """Where key material lives."""

    VAULT = "vault"
    FILE = "file"


class BackendResolver:
    """Decides the backend once and remembers the answer."""

    def __init__(self, op: OnePasswordClient) -> None:
        self._op = op
        self._resolved: BackendKind | None = None

    @property
    def resolved(self) -> BackendKind | None:
        return self._resolved

    def resolve(self) -> BackendKind:
        if self._resolved is not None:
            return self._resolved

        if not self._op.available():
            kind = BackendKind.FILE
            reason = "op CLI not installed"
        elif not self._op.whoami():
            kind = BackendKind.FILE
            reason = "op CLI not signed in"
        else:
            kind = BackendKind.VAULT
            reason = "op CLI signed in"

        self._resolved = kind
        logger.info("Credential backend resolved", extra={"backend": kind.value, "reason": reason})
        return kind


@dataclass(frozen=True)
class PrivateKeyReference:
    """Where the private key lives, and how an SSH client should reach it.

    ``locator`` is a filesystem path for the file backend and an ``op://``
    reference for the vault backend. The vault private key never leaves
    1Password; SSH uses the 1Password agent and the exported public key to
    select it.
    """

    kind: BackendKind
    locator: str
    public_key_path: Path | None = None

    @property
    def uses_agent(self) -> bool:
        return self.kind == BackendKind.VAULT

    def ssh_directives(self) -> list[str]:
        if self.kind == BackendKind.FILE:
            return [f"IdentityFile {self.locator}", "IdentitiesOnly yes"]
        directives = [f'IdentityAgent "{onepassword_agent_socket()}"']
        if self.public_key_path is not None:
            directives.append(f"IdentityFile {self.public_key_path}")
        directives.append("IdentitiesOnly yes")
        return directives


@dataclass(frozen=True)
class InitResult:
    """Outcome of ``init``."""

    project: str
    backend: BackendKind
    created: bool = False
    migrated: bool = False
    regenerated: bool = False

    @property
    def changed(self) -> bool:
        return self.created or self.migrated or self.regenerated


class CredentialBackend(Protocol):
    """Key material interface injected into the reconciler and SSH config."""

    kind: BackendKind

    def init(self, project: str) -> InitResult: ...

    def get_public_key(self, project: str) -> str: ...

    def get_private_key_reference(self, project: str) -> PrivateKeyReference: ...


class FileBackend:
    """Ed25519 key pairs stored as ``<keys_dir>/<project>`` and ``.pub``."""

    kind = BackendKind.FILE

    def __init__(self, keys_dir: Path) -> None:
        self.keys_dir = keys_dir

    def private_key_path(self, project: str) -> Path:
        return self.keys_dir / project

    def public_key_path(self, project: str) -> Path:
        return self.keys_dir / f"{project}.pub"

    def has_key(self, project: str) -> bool:
        return self.private_key_path(project).is_file()

    def init(self, project: str) -> InitResult:
        private_path = self.private_key_path(project)
        if private_path.is_file():
            if not self.public_key_path(project).is_file():
                public_line = public_key_from_private(
                    private_path.read_bytes(), comment=f"netbird-{project}"
                )
                self.public_key_path(project).write_text(public_line + "\n", encoding="ascii")
            logger.info("SSH key already exists", extra={"project": project, "backend": "file"})
            return InitResult(project=project, backend=self.kind)

        keypair = generate_keypair(comment=f"netbird-{project}")
        write_keypair(private_path, keypair)
        return InitResult(project=project, backend=self.kind, created=True)

    def get_public_key(self, project: str) -> str:
        path = self.public_key_path(project)
        if not path.is_file():
            raise CredentialNotFound(f"No SSH key for project {project} (expected {path})")
        return path.read_text(encoding="ascii").strip()

    def get_private_key_reference(self, project: str) -> PrivateKeyReference:
        path = self.private_key_path(project)
        if not path.is_file():
            raise CredentialNotFound(f"No SSH key for project {project} (expected {path})")
        return PrivateKeyReference(
            kind=self.kind,
            locator=str(path),
            public_key_path=self.public_key_path(project),
        )

    def remove(self, project: str) -> None:
        for path in (self.private_key_path(project), self.public_key_path(project)):
            path.unlink(missing_ok=True)
        logger.info("Removed local SSH key files", extra={"project": project})


class VaultBackend:
    """SSH keys stored as 1Password ``sshkey`` items named ``netbird-<project>``."""

    kind = BackendKind.VAULT

    def __init__(
        self,
        op: OnePasswordClient,
        vault: str,
        files: FileBackend,
        consent: ConsentGate,
    ) -> None:
        self._op = op
        self.vault = vault
        self._files = files
        self._consent = consent

    @staticmethod
    def item_title(project: str) -> str:
        return f"netbird-{project}"

    def locator(self, project: str) -> str:
        return f"op://{self.vault}/{self.item_title(project)}/{PRIVATE_KEY_FIELD}"

    def init(self, project: str) -> InitResult:
        title = self.item_title(project)

        ensure_vault(self._op, self.vault)

        if self._op.item_get(title, self.vault) is not None:
            logger.info("SSH key already exists", extra={"project": project, "backend": "vault"})
            self._cleanup_leftover_files(project)
            return InitResult(project=project, backend=self.kind)

        if self._files.has_key(project):
            return self._migrate(project)

        self._generate(project)
        return InitResult(project=project, backend=self.kind, created=True)

    def _generate(self, project: str) -> None:
        self._op.item_create(
            SSH_KEY_CATEGORY,
            self.item_title(project),
            self.vault,
            extra_args=["--ssh-generate-key", "ed25519"],
        )

    def _migrate(self, project: str) -> InitResult:
        title = self.item_title(project)
        private_key = self._files.private_key_path(project).read_text(encoding="ascii")

        logger.info("Migrating local SSH key into 1Password", extra={"project": project})
        try:
            self._op.item_create(
                SSH_KEY_CATEGORY,
                title,
                self.vault,
                {PRIVATE_KEY_FIELD: private_key},
            )
        except ExternalAPIFailure as e:
            logger.error(
                "Importing the local SSH key into 1Password failed",
                extra={"project": project, "error": str(e)},
            )
            request = self._consent.request(
                ConsentRequest(
                    kind=ConsentKind.DESTRUCTIVE_FALLBACK,
                    resource=title,
                    prompt=(
                        f"Importing the existing key for {project} failed. Generate a NEW key "
                        "in 1Password instead? Servers that trust the current key will not "
                        "accept the new one."
                    ),
                    default=False,
                )
            )
            if not request.approved:
                raise UserAbort(
                    f"Key migration for {project} aborted; local key files left in place"
                ) from e
            self._generate(project)
            logger.warning(
                "Generated a new vault key; the local key is no longer used",
                extra={"project": project},
            )
            return InitResult(project=project, backend=self.kind, regenerated=True)

        self._files.remove(project)
        logger.info("Migrated SSH key into 1Password", extra={"project": project})
        log_security_audit_event(
            "key_migrated", project, target_resource=title, action="import", result="success"
        )
        return InitResult(project=project, backend=self.kind, migrated=True)

    def _cleanup_leftover_files(self, project: str) -> None:
        if not self._files.has_key(project):
            return
        local_public = public_key_from_private(
            self._files.private_key_path(project).read_bytes()
        )
        if same_key(local_public, self.get_public_key(project)):
            self._files.remove(project)
        else:
            logger.warning(
                "Local key differs from the vault key; leaving local files untouched",
                extra={"project": project, "path": str(self._files.private_key_path(project))},
            )

    def get_public_key(self, project: str) -> str:
        title = self.item_title(project)
        if self._op.item_get(title, self.vault) is None:
            raise CredentialNotFound(f"No SSH key item {title} in vault {self.vault}")
        return self._op.item_field(title, self.vault, PUBLIC_KEY_FIELD)

    def export_public_key(self, project: str) -> Path:
        """Write the vault public key next to the file-backend keys for SSH to use."""
        public_key = self.get_public_key(project)
        path = self._files.public_key_path(project)
        path.parent.mkdir(mode=KEY_DIR_MODE, parents=True, exist_ok=True)
        path.write_text(public_key + "\n", encoding="ascii")
        return path

    def get_private_key_reference(self, project: str) -> PrivateKeyReference:
        return PrivateKeyReference(
            kind=self.kind,
            locator=self.locator(project),
            public_key_path=self.export_public_key(project),
        )


def build_key_backend(
    resolver: BackendResolver,
    op: OnePasswordClient,
    config: Config,
    consent: ConsentGate,
) -> CredentialBackend:
    """Instantiate the backend matching the (cached) resolution."""
    files = FileBackend(config.ssh_keys_dir)
    if resolver.resolve() == BackendKind.VAULT:
        return VaultBackend(op, config.vault, files, consent)
    return files


def describe_key(backend: CredentialBackend, project: str) -> dict[str, str]:
    """Public, non-secret facts about a project's key."""
    public_key = backend.get_public_key(project)
    return {
        "backend": backend.kind.value,
        "public_key": public_key,
        "fingerprint": fingerprint_sha256(public_key),
    }


# =============================================================================
# Application credentials (identity provider client secrets)
# =============================================================================


@dataclass(frozen=True)
class Credential:
    """An application credential. ``secret`` is never rendered."""

    principal_id: str
    object_id: str
    secret: str | None = None
    backend_kind: BackendKind | None = None

    def __repr__(self) -> str:
        masked = "<redacted>" if self.secret else None
        return (
            f"Credential(principal_id={self.principal_id!r}, object_id={self.object_id!r}, "
            f"secret={masked!r}, backend_kind={self.backend_kind!r})"
        )


class AppCredentialStore:
    """Persists client secrets with the same backend choice as SSH keys.

    Vault: ``API Credential`` item ``netbird-<project>-mgmt``.
    File (or vault failure): ``<root>/.entra-credentials/<project>.env`` (0600).
    """

    def __init__(
        self,
        backend_kind: BackendKind,
        op: OnePasswordClient,
        vault: str,
        credentials_dir: Path,
    ) -> None:
        self.backend_kind = backend_kind
        self._op = op
        self.vault = vault
        self.credentials_dir = credentials_dir

    @staticmethod
    def item_title(project: str) -> str:
        return f"netbird-{project}-mgmt"

    def file_path(self, project: str) -> Path:
        return self.credentials_dir / f"{project}.env"

    def save(self, project: str, credential: Credential) -> Credential:
        """Store the credential and return it tagged with where it went."""
        if credential.secret is None:
            raise ValueError("Credential has no secret to store")

        if self.backend_kind == BackendKind.VAULT:
            try:
                self._save_vault(project, credential)
                return Credential(
                    principal_id=credential.principal_id,
                    object_id=credential.object_id,
                    secret=credential.secret,
                    backend_kind=BackendKind.VAULT,
                )
            except ExternalAPIFailure as e:
                logger.warning(
                    "Storing the client secret in 1Password failed, writing a local file",
                    extra={"project": project, "error": str(e)},
                )

        self._save_file(project, credential)
        return Credential(
            principal_id=credential.principal_id,
            object_id=credential.object_id,
            secret=credential.secret,
            backend_kind=BackendKind.FILE,
        )

    def _save_vault(self, project: str, credential: Credential) -> None:
        assert credential.secret is not None
        title = self.item_title(project)
        fields = {"username": credential.principal_id, "credential": credential.secret}
        ensure_vault(self._op, self.vault)
        if self._op.item_get(title, self.vault) is None:
            self._op.item_create(API_CREDENTIAL_CATEGORY, title, self.vault, fields)
        else:
            self._op.item_edit(title, self.vault, fields)

    def _save_file(self, project: str, credential: Credential) -> None:
        self.credentials_dir.mkdir(mode=KEY_DIR_MODE, parents=True, exist_ok=True)
        self.credentials_dir.chmod(KEY_DIR_MODE)
        lines = [
            f"MGMT_CLIENT_ID={credential.principal_id}",
            f"MGMT_CLIENT_SECRET={credential.secret}",
            f"MGMT_OBJECT_ID={credential.object_id}",
        ]
        path = self.file_path(project)
        write_private_file(path, ("\n".join(lines) + "\n").encode("utf-8"))
        log_security_audit_event(
            "credential_stored",
            project,
            target_resource=str(path),
            action="write",
            result="success",
        )
        logger.info("Wrote client credential file", extra={"project": project, "path": str(path)})

    def load_file(self, project: str) -> Credential | None:
        """Read a previously written credential file, if any."""
        path = self.file_path(project)
        if not path.is_file():
            return None
        values: dict[str, str] = {}
        for line in path.read_text(encoding="utf-8").splitlines():
            key, sep, value = line.partition("=")
            if sep:
                values[key.strip()] = value.strip()
        return Credential(
            principal_id=values.get("MGMT_CLIENT_ID", ""),
            object_id=values.get("MGMT_OBJECT_ID", ""),
            secret=values.get("MGMT_CLIENT_SECRET"),
            backend_kind=BackendKind.FILE,
        )
