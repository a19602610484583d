"""Error taxonomy for provisioning runs.

Callers react differently to each class:
- UserAbort: the operator declined a confirmation. Stop, take no further action.
- ExternalAPIFailure: a provider (Hetzner, Graph, 1Password) failed or answered
  with something we could not parse. Triggers rollback inside a transactional run.
- InputValidationError: malformed input or a key fingerprint mismatch. Never
  retried, never auto-resolved.

Verification drift after a successful run is not an exception; it is reported
as a PartialSuccess warning by verification.py.
"""

from __future__ import annotations


class ProvisionerError(Exception):
    """Base class for all provisioner exceptions."""


class UserAbort(ProvisionerError):
    """Raised when the operator explicitly declines to continue."""


class ExternalAPIFailure(ProvisionerError):
    """Raised when a provider call fails or returns a malformed response."""

    def __init__(self, message: str, *, provider: str = "", operation: str = "") -> None:
        super().__init__(message)
        self.provider = provider
        self.operation = operation


class IncompleteCreate(ExternalAPIFailure):
    """Raised when a create call succeeded but a follow-up call failed.

    The resource exists remotely and must be reported as left behind.
    """


class InputValidationError(ProvisionerError):
    """Raised for malformed input or conflicting key material."""
