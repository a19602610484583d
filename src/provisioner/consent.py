"""Operator consent for drift updates, resource reuse and destructive fallbacks.

Every decision that changes or adopts existing remote state goes through a
ConsentGate:
1. Drift on an existing resource (apply desired attributes?)
2. Reuse of an existing compute instance under the requested name
3. Fallbacks that abandon existing key material
4. Explicit deletion of a resource the operator asked to destroy

DESIGN:
- Decisions are requested per resource, never globally
- Declining is a normal outcome, not an error
- Every decision is logged for the audit trail
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Protocol

import click

from .diff import AttributeDiff

logger = logging.getLogger(__name__)


class ConsentStatus(str, Enum):
    """Status of a consent request."""

    PENDING = "pending"
    APPROVED = "approved"
    DECLINED = "declined"
    NOT_REQUIRED = "not_required"


class ConsentKind(str, Enum):
    """Why the operator is being asked."""

    APPLY_DRIFT = "apply_drift"
    REUSE_EXISTING = "reuse_existing"
    DESTRUCTIVE_FALLBACK = "destructive_fallback"
    DESTROY = "destroy"


@dataclass
class ConsentRequest:
    """A single question put to the operator."""

    kind: ConsentKind
    resource: str
    prompt: str
    default: bool = False
    diff: AttributeDiff | None = None
    created_at: datetime = field(default_factory=lambda: datetime.now(UTC))
    status: ConsentStatus = ConsentStatus.PENDING
    decided_by: str | None = None
    decided_at: datetime | None = None

    @property
    def approved(self) -> bool:
        return self.status in (ConsentStatus.APPROVED, ConsentStatus.NOT_REQUIRED)

    def resolve(self, approved: bool, decided_by: str) -> ConsentRequest:
        """Record the decision and emit an audit log line."""
        self.status = ConsentStatus.APPROVED if approved else ConsentStatus.DECLINED
        self.decided_by = decided_by
        self.decided_at = datetime.now(UTC)

        logger.info(
            "Operator decision recorded",
            extra={
                "consent_kind": self.kind.value,
                "resource": self.resource,
                "status": self.status.value,
                "decided_by": decided_by,
            },
        )
        return self


class ConsentGate(Protocol):
    """Anything that can decide a ConsentRequest."""

    def request(self, request: ConsentRequest) -> ConsentRequest: ...


class InteractiveConsentGate:
    """Asks the operator on the terminal via click."""

    def __init__(self, *, show_diff: bool = True) -> None:
        self._show_diff = show_diff
        self.history: list[ConsentRequest] = []

    def request(self, request: ConsentRequest) -> ConsentRequest:
        if self._show_diff and request.diff is not None and request.diff.unified:
            click.echo("")
            for line in request.diff.unified:
                if line.startswith("+") and not line.startswith("+++"):
                    click.secho(line, fg="green")
                elif line.startswith("-") and not line.startswith("---"):
                    click.secho(line, fg="red")
                else:
                    click.echo(line)
            click.echo("")

        approved = click.confirm(request.prompt, default=request.default)
        self.history.append(request)
        return request.resolve(approved, decided_by="operator")


class StaticConsentGate:
    """Answers every request with a fixed decision.

    Used for --yes runs and in tests. ``answers`` can override the default per
    ConsentKind.
    """

    def __init__(
        self,
        approve: bool,
        *,
        answers: dict[ConsentKind, bool] | None = None,
    ) -> None:
        self._approve = approve
        self._answers = answers or {}
        self.history: list[ConsentRequest] = []

    def request(self, request: ConsentRequest) -> ConsentRequest:
        approved = self._answers.get(request.kind, self._approve)
        self.history.append(request)
        return request.resolve(approved, decided_by="policy")

    def count(self, kind: ConsentKind) -> int:
        """Number of requests of a kind seen so far."""
        return sum(1 for r in self.history if r.kind == kind)
