"""1Password access over the op CLI.

Only the calls the credential backend needs: session check, vault lookup and
creation, item lookup/creation and single-field reads. Field values passed to
``item create`` can be private keys or client secrets; CommandRunner only
logs the leading argv entries, never the assignments.
"""

from __future__ import annotations

import json
import logging
from typing import Any

from .commands import CommandError, CommandResult, Runner
from .errors import ExternalAPIFailure

logger = logging.getLogger(__name__)

OP_BINARY = "op"
PROVIDER = "1password"

ITEM_MISSING_MARKERS = ("isn't an item", "not found", "no item")
VAULT_MISSING_MARKERS = ("isn't a vault", "not found", "no vault")


class OnePasswordClient:
    """Thin wrapper around the op CLI."""

    def __init__(self, runner: Runner) -> None:
        self._runner = runner

    def _run(self, operation: str, args: list[str]) -> CommandResult:
        try:
            return self._runner.run([OP_BINARY, *args])
        except CommandError as e:
            raise ExternalAPIFailure(str(e), provider=PROVIDER, operation=operation) from e

    @staticmethod
    def _missing(result: CommandResult, markers: tuple[str, ...]) -> bool:
        text = result.stderr.lower()
        return any(marker in text for marker in markers)

    def _fail(self, operation: str, result: CommandResult) -> ExternalAPIFailure:
        return ExternalAPIFailure(
            f"op {operation} failed: {result.stderr.strip() or 'no output'}",
            provider=PROVIDER,
            operation=operation,
        )

    def available(self) -> bool:
        return self._runner.available(OP_BINARY)

    def whoami(self) -> bool:
        """True when the CLI has an authenticated session."""
        try:
            result = self._runner.run([OP_BINARY, "whoami"])
        except CommandError:
            logger.debug("op whoami could not run")
            return False
        return result.ok

    def vault_get(self, name: str) -> dict[str, Any] | None:
        result = self._run("vault get", ["vault", "get", name, "--format", "json"])
        if not result.ok:
            if self._missing(result, VAULT_MISSING_MARKERS):
                return None
            raise self._fail("vault get", result)
        return self._parse(result, "vault get")

    def vault_create(self, name: str) -> None:
        result = self._run("vault create", ["vault", "create", name])
        if not result.ok:
            raise self._fail("vault create", result)
        logger.info("Created 1Password vault", extra={"vault": name})

    def item_get(self, title: str, vault: str) -> dict[str, Any] | None:
        """Return the item as JSON, or None if the item or its vault does not exist."""
        result = self._run(
            "item get", ["item", "get", title, "--vault", vault, "--format", "json"]
        )
        if not result.ok:
            if self._missing(result, ITEM_MISSING_MARKERS + VAULT_MISSING_MARKERS):
                return None
            raise self._fail("item get", result)
        return self._parse(result, "item get")

    def item_create(
        self,
        category: str,
        title: str,
        vault: str,
        fields: dict[str, str] | None = None,
        *,
        extra_args: list[str] | None = None,
    ) -> None:
        """Create an item with ``label=value`` assignment statements."""
        args = ["item", "create", "--category", category, "--title", title, "--vault", vault]
        args.extend(extra_args or [])
        for label, value in (fields or {}).items():
            args.append(f"{label}={value}")

        result = self._run("item create", args)
        if not result.ok:
            raise self._fail("item create", result)
        logger.info(
            "Created 1Password item",
            extra={"item": title, "vault": vault, "category": category},
        )

    def item_edit(self, title: str, vault: str, fields: dict[str, str]) -> None:
        args = ["item", "edit", title, "--vault", vault]
        args.extend(f"{label}={value}" for label, value in fields.items())
        result = self._run("item edit", args)
        if not result.ok:
            raise self._fail("item edit", result)
        logger.info("Updated 1Password item", extra={"item": title, "vault": vault})

    def item_field(self, title: str, vault: str, field: str) -> str:
        """Read one field of an item.

        Raises:
            ExternalAPIFailure: If the item or field cannot be read.
        """
        result = self._run(
            "item get", ["item", "get", title, "--vault", vault, "--fields", field]
        )
        if not result.ok:
            raise self._fail("item get", result)
        value = result.stdout.strip()
        if not value:
            raise ExternalAPIFailure(
                f"Field '{field}' of {title} is empty",
                provider=PROVIDER,
                operation="item get",
            )
        return value

    def _parse(self, result: CommandResult, operation: str) -> dict[str, Any]:
        if not result.stdout.strip():
            return {}
        try:
            payload = json.loads(result.stdout)
        except json.JSONDecodeError as e:
            raise ExternalAPIFailure(
                f"op {operation} returned invalid JSON", provider=PROVIDER, operation=operation
            ) from e
        if not isinstance(payload, dict):
            raise ExternalAPIFailure(
                f"op {operation} returned a non-object payload",
                provider=PROVIDER,
                operation=operation,
            )
        return payload
