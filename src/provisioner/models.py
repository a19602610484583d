"""Pydantic models for desired resources and the deployment spec.

These models provide:
1. Type-safe YAML parsing of the optional deployment spec
2. Validation at the boundary (fail fast, fail loudly)
3. Canonical, order-insensitive forms used for drift comparison
"""

from __future__ import annotations

import json
import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Annotated, Any, Literal

from pydantic import BaseModel, Field, field_validator, model_validator

# =============================================================================
# Resource kinds
# =============================================================================


class ResourceKind(str, Enum):
    """Closed set of resource kinds the reconciler knows how to converge."""

    FIREWALL = "firewall"
    SERVER = "server"
    SSH_KEY = "ssh_key"


MANAGED_BY_LABEL = "netbird-selfhosted"

PORT_PATTERN = re.compile(r"^\d{1,5}(-\d{1,5})?$")
ANY_IPV4 = "0.0.0.0/0"
ANY_IPV6 = "::/0"


# =============================================================================
# Firewall
# =============================================================================


class FirewallRule(BaseModel):
    """A single Hetzner firewall rule.

    Field names follow the hcloud JSON output so that observed rules parse
    with the same model as desired ones.
    """

    model_config = {"extra": "ignore", "populate_by_name": True, "frozen": True}

    direction: Literal["in", "out"] = "in"
    protocol: Literal["tcp", "udp", "icmp", "esp", "gre"]
    port: str | None = None
    source_ips: list[str] = Field(default_factory=list, alias="sourceIps")
    destination_ips: list[str] = Field(default_factory=list, alias="destinationIps")
    description: str | None = None

    @field_validator("port", mode="before")
    @classmethod
    def validate_port(cls, v: Any) -> str | None:
        if v is None or v == "":
            return None
        port = str(v)
        if not PORT_PATTERN.match(port):
            raise ValueError("port must be a number or a range like 49152-65535")
        bounds = [int(p) for p in port.split("-")]
        if any(not 1 <= p <= 65535 for p in bounds) or bounds != sorted(bounds):
            raise ValueError(f"port out of range: {port}")
        return port

    @model_validator(mode="after")
    def validate_port_required(self) -> FirewallRule:
        if self.protocol in ("tcp", "udp") and self.port is None:
            raise ValueError(f"{self.protocol} rules require a port")
        if self.direction == "in" and not self.source_ips:
            raise ValueError("inbound rules require at least one source IP")
        if self.direction == "out" and not self.destination_ips:
            raise ValueError("outbound rules require at least one destination IP")
        return self

    def canonical(self) -> dict[str, Any]:
        """Key-sorted form with IP lists sorted and empty fields dropped."""
        data: dict[str, Any] = {
            "description": self.description or None,
            "destination_ips": sorted(self.destination_ips),
            "direction": self.direction,
            "port": self.port,
            "protocol": self.protocol,
            "source_ips": sorted(self.source_ips),
        }
        return {k: v for k, v in sorted(data.items()) if v not in (None, [])}

    def label(self) -> str:
        port = f" port {self.port}" if self.port else ""
        return f"{self.direction} {self.protocol}{port}"


def canonical_rules(rules: list[FirewallRule]) -> list[dict[str, Any]]:
    """Order-insensitive canonical form of a rule set."""
    return sorted(
        (rule.canonical() for rule in rules),
        key=lambda r: json.dumps(r, sort_keys=True),
    )


def _open_rule(protocol: Literal["tcp", "udp"], port: str, description: str) -> FirewallRule:
    return FirewallRule(
        direction="in",
        protocol=protocol,
        port=port,
        source_ips=[ANY_IPV4, ANY_IPV6],
        description=description,
    )


def default_firewall_rules() -> list[FirewallRule]:
    """Ports a self-hosted NetBird server needs open."""
    return [
        _open_rule("tcp", "22", "SSH access"),
        _open_rule("tcp", "80", "HTTP - Let's Encrypt & Dashboard"),
        _open_rule("tcp", "443", "HTTPS - NetBird Dashboard"),
        _open_rule("tcp", "33073", "NetBird Management gRPC API"),
        _open_rule("tcp", "10000", "NetBird Signal HTTP API"),
        _open_rule("tcp", "33080", "NetBird Relay gRPC API"),
        _open_rule("udp", "3478", "Coturn STUN server"),
        _open_rule("udp", "49152-65535", "Coturn TURN dynamic ports"),
    ]


class FirewallAttributes(BaseModel):
    """Desired attributes of a firewall."""

    model_config = {"extra": "ignore", "populate_by_name": True}

    rules: list[FirewallRule] = Field(default_factory=default_firewall_rules)
    labels: dict[str, str] = Field(default_factory=dict)


# =============================================================================
# Compute
# =============================================================================


class ServerAttributes(BaseModel):
    """Desired attributes of a compute instance."""

    model_config = {"extra": "ignore", "populate_by_name": True}

    server_type: Annotated[str, Field(min_length=1, alias="serverType")]
    image: Annotated[str, Field(min_length=1)]
    location: Annotated[str, Field(min_length=1)]
    ssh_keys: list[str] = Field(default_factory=list, alias="sshKeys", validate_default=True)
    firewall: str | None = None
    labels: dict[str, str] = Field(default_factory=dict)

    @field_validator("ssh_keys")
    @classmethod
    def validate_ssh_keys(cls, v: list[str]) -> list[str]:
        if not v:
            raise ValueError("at least one SSH key is required to reach the server")
        return v


# =============================================================================
# SSH keys
# =============================================================================


class SshKeyAttributes(BaseModel):
    """Desired attributes of a registered SSH public key."""

    model_config = {"extra": "ignore", "populate_by_name": True}

    public_key: Annotated[str, Field(min_length=1, alias="publicKey")]
    labels: dict[str, str] = Field(default_factory=dict)

    @field_validator("public_key")
    @classmethod
    def strip_key(cls, v: str) -> str:
        return v.strip()


ResourceAttributes = FirewallAttributes | ServerAttributes | SshKeyAttributes


# =============================================================================
# Desired / observed
# =============================================================================


@dataclass(frozen=True)
class DesiredResourceSpec:
    """What the caller wants to exist under a name. Built per invocation."""

    kind: ResourceKind
    name: str
    attributes: ResourceAttributes

    def __post_init__(self) -> None:
        expected = {
            ResourceKind.FIREWALL: FirewallAttributes,
            ResourceKind.SERVER: ServerAttributes,
            ResourceKind.SSH_KEY: SshKeyAttributes,
        }[self.kind]
        if not isinstance(self.attributes, expected):
            raise TypeError(
                f"{self.kind.value} spec needs {expected.__name__}, "
                f"got {type(self.attributes).__name__}"
            )
        if not self.name:
            raise ValueError("resource name cannot be empty")


@dataclass
class ObservedResource:
    """The provider's current view of a named resource. Never cached."""

    kind: ResourceKind
    name: str
    id: str
    attributes: dict[str, Any] = field(default_factory=dict)


# =============================================================================
# Deployment spec (optional YAML)
# =============================================================================


class ServerConfig(BaseModel):
    """Server section of the deployment spec."""

    model_config = {"extra": "ignore", "populate_by_name": True}

    name: str | None = None
    server_type: str | None = Field(None, alias="serverType")
    image: str | None = None
    location: str | None = None
    labels: dict[str, str] = Field(default_factory=dict)


class FirewallConfig(BaseModel):
    """Firewall section of the deployment spec."""

    model_config = {"extra": "ignore", "populate_by_name": True}

    name: str | None = None
    rules: list[FirewallRule] = Field(default_factory=default_firewall_rules)

    @field_validator("rules")
    @classmethod
    def validate_unique(cls, v: list[FirewallRule]) -> list[FirewallRule]:
        seen: set[str] = set()
        for rule in v:
            key = json.dumps(rule.canonical(), sort_keys=True)
            if key in seen:
                raise ValueError(f"duplicate firewall rule: {rule.label()}")
            seen.add(key)
        return v


class DeploymentSpec(BaseModel):
    """Infrastructure desired state for one project."""

    model_config = {"extra": "ignore", "populate_by_name": True}

    server: ServerConfig = Field(default_factory=ServerConfig)
    firewall: FirewallConfig = Field(default_factory=FirewallConfig)
    labels: dict[str, str] = Field(default_factory=dict)
