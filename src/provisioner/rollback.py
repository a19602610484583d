"""Compensating-action stack and the per-run provisioning context.

The context is created by whoever starts a run and passed by reference into
every step. Nothing here is module-level state; two contexts never share a
stack.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RollbackEntry:
    """Undo action for one created remote object."""

    description: str
    compensate: Callable[[], None]
    resource: str | None = None


@dataclass
class RollbackReport:
    """What an unwind did."""

    compensated: list[str] = field(default_factory=list)
    failed: list[tuple[str, str]] = field(default_factory=list)

    @property
    def complete(self) -> bool:
        return not self.failed

    @property
    def uncompensated(self) -> list[str]:
        return [description for description, _ in self.failed]


class RollbackStack:
    """LIFO stack of compensating actions.

    Entries are only read by ``unwind``, which pops every entry once, in
    reverse push order, and keeps going when a compensation raises.
    """

    def __init__(self) -> None:
        self._entries: list[RollbackEntry] = []

    def __len__(self) -> int:
        return len(self._entries)

    @property
    def is_empty(self) -> bool:
        return not self._entries

    def push(
        self,
        description: str,
        compensate: Callable[[], None],
        *,
        resource: str | None = None,
    ) -> None:
        self._entries.append(RollbackEntry(description, compensate, resource))
        logger.debug(
            "Rollback action registered",
            extra={"description": description, "depth": len(self._entries)},
        )

    def pending(self) -> list[str]:
        """Descriptions of entries not yet compensated, newest first."""
        return [entry.description for entry in reversed(self._entries)]

    def clear(self) -> None:
        """Drop every entry without compensating (successful run)."""
        self._entries.clear()

    def unwind(self) -> RollbackReport:
        """Run every compensation in reverse order, best effort, single pass."""
        report = RollbackReport()
        while self._entries:
            entry = self._entries.pop()
            logger.info("Rolling back", extra={"description": entry.description})
            try:
                entry.compensate()
            except Exception as e:
                logger.error(
                    "Compensation failed, continuing rollback",
                    extra={"description": entry.description, "error": str(e)},
                )
                report.failed.append((entry.description, str(e)))
                continue
            report.compensated.append(entry.description)
        return report


@dataclass
class ProvisioningContext:
    """State owned by one orchestrator run.

    ``values`` carries ids and other outputs between steps (e.g. the app id a
    later step patches).
    """

    rollback: RollbackStack = field(default_factory=RollbackStack)
    values: dict[str, Any] = field(default_factory=dict)
    step_index: int | None = None

    def require(self, key: str) -> Any:
        """Fetch an output of an earlier step."""
        try:
            return self.values[key]
        except KeyError as e:
            raise KeyError(f"No earlier step produced '{key}'") from e
