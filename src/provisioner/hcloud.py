"""Hetzner Cloud access over the hcloud CLI.

The reconciler only needs a small surface: describe/create/delete by
name, label-filtered listing and firewall rule edits. Everything goes
through ``hcloud ... -o json`` so responses parse into the same pydantic
models used for desired state.

Describe classification:
- stderr says "not found"  -> absent
- exit 0 with empty output -> absent, logged as an ambiguous lookup
- any other failure        -> ExternalAPIFailure
"""

from __future__ import annotations

import json
import logging
from typing import Any, Protocol, assert_never

from pydantic import ValidationError

from .commands import CommandError, CommandResult, Runner
from .errors import ExternalAPIFailure, IncompleteCreate
from .models import (
    DesiredResourceSpec,
    FirewallAttributes,
    FirewallRule,
    ObservedResource,
    ResourceKind,
    ServerAttributes,
    SshKeyAttributes,
)

logger = logging.getLogger(__name__)

HCLOUD_BINARY = "hcloud"
PROVIDER = "hetzner"

# hcloud subcommand per resource kind
SUBCOMMANDS: dict[ResourceKind, str] = {
    ResourceKind.FIREWALL: "firewall",
    ResourceKind.SERVER: "server",
    ResourceKind.SSH_KEY: "ssh-key",
}

NOT_FOUND_MARKERS = ("not found",)


class CloudProvider(Protocol):
    """Compute/firewall/key operations the reconciler consumes."""

    def describe(self, kind: ResourceKind, name: str) -> ObservedResource | None: ...

    def create(self, spec: DesiredResourceSpec) -> str | None: ...

    def delete(self, kind: ResourceKind, resource_id: str) -> None: ...

    def list_resources(
        self, kind: ResourceKind, *, label_selector: str | None = None
    ) -> list[ObservedResource]: ...

    def add_rule(self, firewall: str, rule: FirewallRule) -> None: ...

    def delete_rule(self, firewall: str, rule: FirewallRule) -> None: ...


def _label_args(labels: dict[str, str]) -> list[str]:
    args: list[str] = []
    for key, value in sorted(labels.items()):
        args.extend(["--label", f"{key}={value}"])
    return args


def _rule_args(rule: FirewallRule) -> list[str]:
    args = ["--direction", rule.direction, "--protocol", rule.protocol]
    if rule.port:
        args.extend(["--port", rule.port])
    for ip in rule.source_ips:
        args.extend(["--source-ips", ip])
    for ip in rule.destination_ips:
        args.extend(["--destination-ips", ip])
    if rule.description:
        args.extend(["--description", rule.description])
    return args


def _is_not_found(result: CommandResult) -> bool:
    text = f"{result.stderr}\n{result.stdout}".lower()
    return any(marker in text for marker in NOT_FOUND_MARKERS)


def parse_observed(kind: ResourceKind, payload: dict[str, Any]) -> ObservedResource:
    """Convert an hcloud JSON object into an ObservedResource.

    Raises:
        ExternalAPIFailure: If the payload is missing required fields.
    """
    try:
        resource_id = str(payload["id"])
        name = str(payload["name"])
    except (KeyError, TypeError) as e:
        raise ExternalAPIFailure(
            f"Malformed {kind.value} response: missing id or name",
            provider=PROVIDER,
            operation="describe",
        ) from e

    labels = payload.get("labels") or {}
    attributes: dict[str, Any]

    match kind:
        case ResourceKind.FIREWALL:
            try:
                rules = [FirewallRule.model_validate(r) for r in payload.get("rules") or []]
            except ValidationError as e:
                raise ExternalAPIFailure(
                    f"Malformed firewall rules for {name}: {e.error_count()} errors",
                    provider=PROVIDER,
                    operation="describe",
                ) from e
            attributes = {"rules": rules, "labels": labels}
        case ResourceKind.SERVER:
            public_net = payload.get("public_net") or {}
            ipv4 = (public_net.get("ipv4") or {}).get("ip")
            datacenter = payload.get("datacenter") or {}
            attributes = {
                "status": payload.get("status"),
                "ipv4": ipv4,
                "server_type": (payload.get("server_type") or {}).get("name"),
                "image": (payload.get("image") or {}).get("name"),
                "location": (datacenter.get("location") or {}).get("name"),
                "labels": labels,
            }
        case ResourceKind.SSH_KEY:
            attributes = {
                "fingerprint": payload.get("fingerprint"),
                "public_key": (payload.get("public_key") or "").strip(),
                "labels": labels,
            }

    return ObservedResource(kind=kind, name=name, id=resource_id, attributes=attributes)


class HcloudClient:
    """CloudProvider backed by the hcloud CLI.

    Authentication comes from the active hcloud context (``hcloud context
    create``) or HCLOUD_TOKEN in the environment.
    """

    def __init__(self, runner: Runner) -> None:
        self._runner = runner

    def _run(self, operation: str, args: list[str]) -> CommandResult:
        try:
            return self._runner.run([HCLOUD_BINARY, *args])
        except CommandError as e:
            raise ExternalAPIFailure(str(e), provider=PROVIDER, operation=operation) from e

    def _check(self, operation: str, result: CommandResult) -> CommandResult:
        if not result.ok:
            raise ExternalAPIFailure(
                f"hcloud {operation} failed: {result.stderr.strip() or 'no output'}",
                provider=PROVIDER,
                operation=operation,
            )
        return result

    def _parse_json(self, operation: str, text: str) -> Any:
        try:
            return json.loads(text)
        except json.JSONDecodeError as e:
            raise ExternalAPIFailure(
                f"hcloud {operation} returned invalid JSON",
                provider=PROVIDER,
                operation=operation,
            ) from e

    def available(self) -> bool:
        return self._runner.available(HCLOUD_BINARY)

    def describe(self, kind: ResourceKind, name: str) -> ObservedResource | None:
        """Fetch a resource by name; None when it does not exist."""
        sub = SUBCOMMANDS[kind]
        result = self._run("describe", [sub, "describe", name, "-o", "json"])

        if not result.ok:
            if _is_not_found(result):
                return None
            self._check(f"{sub} describe", result)

        if not result.stdout.strip():
            logger.warning(
                "Empty describe response treated as absent",
                extra={"kind": kind.value, "resource": name, "ambiguous_lookup": True},
            )
            return None

        payload = self._parse_json(f"{sub} describe", result.stdout)
        if not isinstance(payload, dict):
            raise ExternalAPIFailure(
                f"hcloud {sub} describe returned a non-object payload",
                provider=PROVIDER,
                operation="describe",
            )
        return parse_observed(kind, payload)

    def create(self, spec: DesiredResourceSpec) -> str | None:
        """Create a resource and return its provider id.

        Returns None when the resource was created but could not be read
        back; it exists all the same.

        Raises:
            ExternalAPIFailure: If the create call itself fails.
            IncompleteCreate: If the firewall was created but its rules were not.
        """
        rules: list[FirewallRule] = []
        match spec.attributes:
            case FirewallAttributes() as attrs:
                args = ["firewall", "create", "--name", spec.name, *_label_args(attrs.labels)]
                rules = list(attrs.rules)
            case ServerAttributes() as attrs:
                args = [
                    "server", "create",
                    "--name", spec.name,
                    "--type", attrs.server_type,
                    "--image", attrs.image,
                    "--location", attrs.location,
                ]
                for key in attrs.ssh_keys:
                    args.extend(["--ssh-key", key])
                if attrs.firewall:
                    args.extend(["--firewall", attrs.firewall])
                args.extend(_label_args(attrs.labels))
            case SshKeyAttributes() as attrs:
                args = [
                    "ssh-key", "create",
                    "--name", spec.name,
                    "--public-key", attrs.public_key,
                    *_label_args(attrs.labels),
                ]
            case _:
                assert_never(spec.attributes)

        sub = SUBCOMMANDS[spec.kind]
        self._check(f"{sub} create", self._run("create", args))
        logger.info("Created resource", extra={"kind": spec.kind.value, "resource": spec.name})

        try:
            for rule in rules:
                self.add_rule(spec.name, rule)
        except ExternalAPIFailure as e:
            raise IncompleteCreate(
                f"firewall {spec.name} created without all rules: {e}",
                provider=PROVIDER,
                operation="create",
            ) from e

        try:
            created = self.describe(spec.kind, spec.name)
        except ExternalAPIFailure as e:
            logger.warning(
                "Created resource could not be read back",
                extra={"kind": spec.kind.value, "resource": spec.name, "error": str(e)},
            )
            return None
        if created is None:
            logger.warning(
                "Created resource not visible yet",
                extra={"kind": spec.kind.value, "resource": spec.name},
            )
            return None
        return created.id

    def delete(self, kind: ResourceKind, resource_id: str) -> None:
        sub = SUBCOMMANDS[kind]
        self._check(f"{sub} delete", self._run("delete", [sub, "delete", resource_id]))
        logger.info("Deleted resource", extra={"kind": kind.value, "resource_id": resource_id})

    def list_resources(
        self, kind: ResourceKind, *, label_selector: str | None = None
    ) -> list[ObservedResource]:
        """All resources of a kind, optionally filtered by a label selector."""
        sub = SUBCOMMANDS[kind]
        args = [sub, "list", "-o", "json"]
        if label_selector:
            args.extend(["--selector", label_selector])
        result = self._check(f"{sub} list", self._run("list", args))
        if not result.stdout.strip():
            return []
        payload = self._parse_json(f"{sub} list", result.stdout)
        if not isinstance(payload, list):
            raise ExternalAPIFailure(
                f"hcloud {sub} list returned a non-array payload",
                provider=PROVIDER,
                operation="list",
            )
        return [parse_observed(kind, item) for item in payload]

    def add_rule(self, firewall: str, rule: FirewallRule) -> None:
        self._check(
            "firewall add-rule",
            self._run("add_rule", ["firewall", "add-rule", firewall, *_rule_args(rule)]),
        )
        logger.debug("Added firewall rule", extra={"firewall": firewall, "rule": rule.label()})

    def delete_rule(self, firewall: str, rule: FirewallRule) -> None:
        self._check(
            "firewall delete-rule",
            self._run("delete_rule", ["firewall", "delete-rule", firewall, *_rule_args(rule)]),
        )
        logger.debug("Deleted firewall rule", extra={"firewall": firewall, "rule": rule.label()})
