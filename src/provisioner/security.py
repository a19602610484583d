"""Secret handling for logs and identity-provider credentials.

SECURITY INVARIANTS:
1. Client secrets and private keys never reach a log record or stdout
2. Every secret obtained during a run is registered with the redaction filter
3. Graph access uses the operator's own ``az login`` session, no stored secrets
"""

from __future__ import annotations

import logging
import os
import re
from collections.abc import Iterable

from azure.identity import AzureCliCredential

logger = logging.getLogger(__name__)

REDACTED = "***REDACTED***"

# Secrets shorter than this are not masked; they would match too much text
MIN_SECRET_LENGTH = 8

PRIVATE_KEY_PATTERN = re.compile(
    r"-----BEGIN [A-Z ]*PRIVATE KEY-----.*?-----END [A-Z ]*PRIVATE KEY-----",
    re.DOTALL,
)

# Environment variables that, if set, should never appear in output
SENSITIVE_ENV_VARS: tuple[str, ...] = (
    "HCLOUD_TOKEN",
    "OP_SESSION",
    "OP_SERVICE_ACCOUNT_TOKEN",
    "AZURE_CLIENT_SECRET",
    "MGMT_CLIENT_SECRET",
)

_registered_secrets: set[str] = set()


def register_secret(secret: str | None) -> None:
    """Mask ``secret`` in every log record emitted from now on."""
    if secret and len(secret) >= MIN_SECRET_LENGTH:
        _registered_secrets.add(secret)


def register_environment_secrets(env: dict[str, str] | None = None) -> None:
    source = os.environ if env is None else env
    for name in SENSITIVE_ENV_VARS:
        register_secret(source.get(name))


def clear_registered_secrets() -> None:
    _registered_secrets.clear()


def redact(text: str, secrets: Iterable[str] | None = None) -> str:
    """Replace registered secrets and private key blocks in ``text``."""
    text = PRIVATE_KEY_PATTERN.sub(REDACTED, text)
    candidates = _registered_secrets if secrets is None else secrets
    for secret in sorted(candidates, key=len, reverse=True):
        text = text.replace(secret, REDACTED)
    return text


def mask(secret: str | None) -> str:
    """Display form of a secret for summaries; reveals nothing but presence."""
    return "********" if secret else "<none>"


class RedactingFilter(logging.Filter):
    """Logging filter that masks secrets in messages, args and extra fields."""

    def filter(self, record: logging.LogRecord) -> bool:
        record.msg = redact(str(record.msg))
        if record.args:
            if isinstance(record.args, dict):
                record.args = {k: self._clean(v) for k, v in record.args.items()}
            else:
                record.args = tuple(self._clean(a) for a in record.args)

        for key, value in list(record.__dict__.items()):
            if isinstance(value, str) and key not in ("msg", "name", "levelname", "pathname"):
                record.__dict__[key] = redact(value)
        return True

    @staticmethod
    def _clean(value: object) -> object:
        return redact(value) if isinstance(value, str) else value


def get_cli_credential(tenant_id: str | None = None) -> AzureCliCredential:
    """Credential backed by the operator's ``az login`` session.

    Args:
        tenant_id: Optional tenant to request tokens for.

    Returns:
        AzureCliCredential for Microsoft Graph calls.
    """
    if tenant_id:
        logger.info("Using Azure CLI credential", extra={"tenant_id": tenant_id})
        return AzureCliCredential(tenant_id=tenant_id)
    logger.info("Using Azure CLI credential")
    return AzureCliCredential()


def log_security_audit_event(
    event_type: str,
    project: str,
    target_resource: str | None = None,
    action: str | None = None,
    result: str | None = None,
) -> None:
    """Log a security-relevant audit event.

    Args:
        event_type: Type of event (credential_stored, key_migrated, consent, ...).
        project: Project the event belongs to.
        target_resource: Resource being touched.
        action: Action being performed.
        result: Result of the action (success, failure, declined).
    """
    logger.info(
        f"Security audit: {event_type}",
        extra={
            "security_audit": True,
            "event_type": event_type,
            "project": project,
            "target_resource": target_resource,
            "action": action,
            "result": result,
        },
    )
