"""Tests for idempotent resource reconciliation."""

from __future__ import annotations

import pytest
from provider_mock import FakeCloudProvider

from provisioner.consent import ConsentKind, StaticConsentGate
from provisioner.keys import generate_keypair
from provisioner.models import (
    DesiredResourceSpec,
    FirewallAttributes,
    FirewallRule,
    ResourceKind,
    ServerAttributes,
    SshKeyAttributes,
)
from provisioner.reconciler import EXTERNAL_API_FAILURE, OutcomeStatus, Reconciler

FIREWALL = "acme-netbird-firewall"
SERVER = "netbird-selfhosted-acme"
KEY = "netbird-acme"

RULE_SSH = FirewallRule(protocol="tcp", port="22", source_ips=["0.0.0.0/0", "::/0"])
RULE_HTTPS = FirewallRule(protocol="tcp", port="443", source_ips=["0.0.0.0/0", "::/0"])


def firewall_spec(*rules: FirewallRule) -> DesiredResourceSpec:
    return DesiredResourceSpec(
        kind=ResourceKind.FIREWALL, name=FIREWALL, attributes=FirewallAttributes(rules=list(rules))
    )


def server_spec(server_type: str = "cax11", location: str = "nbg1") -> DesiredResourceSpec:
    return DesiredResourceSpec(
        kind=ResourceKind.SERVER,
        name=SERVER,
        attributes=ServerAttributes(
            server_type=server_type,
            image="ubuntu-24.04",
            location=location,
            ssh_keys=[KEY],
            firewall=FIREWALL,
        ),
    )


def key_spec(public_key: str) -> DesiredResourceSpec:
    return DesiredResourceSpec(
        kind=ResourceKind.SSH_KEY, name=KEY, attributes=SshKeyAttributes(public_key=public_key)
    )


@pytest.fixture
def provider() -> FakeCloudProvider:
    return FakeCloudProvider()


@pytest.fixture
def public_key() -> str:
    return generate_keypair(comment="netbird-acme").public_openssh


class TestReconcilerGeneral:
    """Behavior shared by every resource kind."""

    def test_name_mismatch(self, provider: FakeCloudProvider) -> None:
        """Test that a spec for another name is rejected without provider calls."""
        outcome = Reconciler(provider, StaticConsentGate(True)).reconcile(
            "other", firewall_spec(RULE_SSH)
        )

        assert outcome.status == OutcomeStatus.HARD_FAILURE
        assert outcome.validation is True
        assert provider.describe_calls == 0

    def test_describe_failure(self, provider: FakeCloudProvider) -> None:
        """Test that a provider error becomes an outcome, not an exception."""
        provider.fail("describe")

        outcome = Reconciler(provider, StaticConsentGate(True)).reconcile(
            FIREWALL, firewall_spec(RULE_SSH)
        )

        assert outcome.status == OutcomeStatus.HARD_FAILURE
        assert outcome.reason == EXTERNAL_API_FAILURE
        assert "simulated provider outage" in (outcome.detail or "")
        assert outcome.validation is False
        assert provider.mutation_count == 0

    def test_create_failure(self, provider: FakeCloudProvider) -> None:
        """Test that a failed create is reported as an external API failure."""
        provider.fail("create")

        outcome = Reconciler(provider, StaticConsentGate(True)).reconcile(
            FIREWALL, firewall_spec(RULE_SSH)
        )

        assert outcome.reason == EXTERNAL_API_FAILURE
        assert not outcome.ok
        assert not outcome.left_behind

    def test_incomplete_create_is_left_behind(self, provider: FakeCloudProvider) -> None:
        """Test that a resource created but left unconfigured is flagged."""
        provider.leave_incomplete(ResourceKind.FIREWALL)

        outcome = Reconciler(provider, StaticConsentGate(True)).reconcile(
            FIREWALL, firewall_spec(RULE_SSH)
        )

        assert outcome.status == OutcomeStatus.HARD_FAILURE
        assert outcome.reason == EXTERNAL_API_FAILURE
        assert outcome.left_behind
        assert (ResourceKind.FIREWALL, FIREWALL) in provider.resources

    def test_outcome_to_dict(self, provider: FakeCloudProvider) -> None:
        """Test the log form of an outcome."""
        outcome = Reconciler(provider, StaticConsentGate(True)).reconcile(
            FIREWALL, firewall_spec(RULE_SSH)
        )

        assert outcome.to_dict()["status"] == "created"
        assert outcome.to_dict()["resource"] == FIREWALL


class TestFirewallReconciliation:
    """Tests for firewall reconciliation."""

    def test_creates_absent_firewall(self, provider: FakeCloudProvider) -> None:
        """Test that a missing firewall is created with its rules."""
        outcome = Reconciler(provider, StaticConsentGate(True)).reconcile(
            FIREWALL, firewall_spec(RULE_SSH, RULE_HTTPS)
        )

        assert outcome.status == OutcomeStatus.CREATED
        assert outcome.changed
        assert outcome.resource_id is not None
        assert provider.rules(FIREWALL) == [RULE_SSH, RULE_HTTPS]

    def test_second_run_is_noop(self, provider: FakeCloudProvider) -> None:
        """Test idempotence: reconcile twice, mutate once."""
        gate = StaticConsentGate(True)
        reconciler = Reconciler(provider, gate)
        first = reconciler.reconcile(FIREWALL, firewall_spec(RULE_SSH, RULE_HTTPS))
        mutations = provider.mutation_count

        second = reconciler.reconcile(FIREWALL, firewall_spec(RULE_SSH, RULE_HTTPS))

        assert second.status == OutcomeStatus.NO_OP
        assert second.resource_id == first.resource_id
        assert provider.mutation_count == mutations
        assert gate.history == []

    def test_rule_order_is_not_drift(self, provider: FakeCloudProvider) -> None:
        """Test that the same rules in another order need no consent."""
        provider.seed_firewall(FIREWALL, [RULE_HTTPS, RULE_SSH])
        gate = StaticConsentGate(False)

        desired = firewall_spec(RULE_SSH, RULE_HTTPS)
        outcome = Reconciler(provider, gate).reconcile(FIREWALL, desired)

        assert outcome.status == OutcomeStatus.NO_OP
        assert gate.history == []

    def test_ip_order_is_not_drift(self, provider: FakeCloudProvider) -> None:
        """Test that source IP ordering is ignored."""
        swapped = FirewallRule(protocol="tcp", port="22", source_ips=["::/0", "0.0.0.0/0"])
        provider.seed_firewall(FIREWALL, [swapped])

        outcome = Reconciler(provider, StaticConsentGate(False)).reconcile(
            FIREWALL, firewall_spec(RULE_SSH)
        )

        assert outcome.status == OutcomeStatus.NO_OP

    def test_declined_drift_keeps_rules(self, provider: FakeCloudProvider) -> None:
        """Test that declining leaves the firewall exactly as it was."""
        provider.seed_firewall(FIREWALL, [RULE_SSH, RULE_HTTPS])
        gate = StaticConsentGate(False)

        outcome = Reconciler(provider, gate).reconcile(FIREWALL, firewall_spec(RULE_SSH))

        assert outcome.status == OutcomeStatus.KEPT_DESPITE_DRIFT
        assert outcome.ok
        assert provider.rules(FIREWALL) == [RULE_SSH, RULE_HTTPS]
        assert provider.mutation_count == 0
        assert gate.count(ConsentKind.APPLY_DRIFT) == 1
        assert gate.history[0].diff is not None
        assert gate.history[0].diff.has_changes

    def test_approved_drift_replaces_rules(self, provider: FakeCloudProvider) -> None:
        """Test that approval leaves exactly the desired rule set."""
        provider.seed_firewall(FIREWALL, [RULE_SSH, RULE_HTTPS])

        outcome = Reconciler(provider, StaticConsentGate(True)).reconcile(
            FIREWALL, firewall_spec(RULE_SSH)
        )

        assert outcome.status == OutcomeStatus.UPDATED_WITH_CONSENT
        assert provider.rules(FIREWALL) == [RULE_SSH]

    def test_partial_update_is_drift_next_time(self, provider: FakeCloudProvider) -> None:
        """Test that a rule update interrupted midway is seen as drift again."""
        provider.seed_firewall(FIREWALL, [RULE_SSH])
        provider.fail("add_rule")
        reconciler = Reconciler(provider, StaticConsentGate(True))

        failed = reconciler.reconcile(FIREWALL, firewall_spec(RULE_HTTPS))
        provider.recover()
        retried = reconciler.reconcile(FIREWALL, firewall_spec(RULE_HTTPS))

        assert failed.reason == EXTERNAL_API_FAILURE
        assert retried.status == OutcomeStatus.UPDATED_WITH_CONSENT
        assert provider.rules(FIREWALL) == [RULE_HTTPS]


class TestServerReconciliation:
    """Tests for server reconciliation."""

    def test_creates_absent_server(self, provider: FakeCloudProvider) -> None:
        """Test that a missing server is created and its IP reported."""
        outcome = Reconciler(provider, StaticConsentGate(True)).reconcile(SERVER, server_spec())

        assert outcome.status == OutcomeStatus.CREATED
        assert outcome.ipv4 is not None

    def test_new_server_read_back_failure(self, provider: FakeCloudProvider) -> None:
        """Test that a created server stays CREATED when it cannot be described."""
        provider.fail("describe", after=1)

        outcome = Reconciler(provider, StaticConsentGate(True)).reconcile(SERVER, server_spec())

        assert outcome.status == OutcomeStatus.CREATED
        assert outcome.resource_id is not None
        assert outcome.ipv4 is None
        assert outcome.detail is not None
        assert outcome.detail.startswith("address unknown")

    def test_reuse_returns_same_server(self, provider: FakeCloudProvider) -> None:
        """Test that an approved reuse is a no-op on the same instance."""
        reconciler = Reconciler(provider, StaticConsentGate(True))
        first = reconciler.reconcile(SERVER, server_spec())

        second = reconciler.reconcile(SERVER, server_spec())

        assert second.status == OutcomeStatus.NO_OP
        assert second.resource_id == first.resource_id
        assert second.ipv4 == first.ipv4
        assert provider.mutation_count == 1

    def test_reuse_asks_with_default_yes(self, provider: FakeCloudProvider) -> None:
        """Test that reuse is offered with a default of yes."""
        provider.seed_server(SERVER)
        gate = StaticConsentGate(True)

        Reconciler(provider, gate).reconcile(SERVER, server_spec())

        assert gate.count(ConsentKind.REUSE_EXISTING) == 1
        assert gate.history[0].default is True

    def test_declined_reuse_is_terminal(self, provider: FakeCloudProvider) -> None:
        """Test that declining reuse fails without creating or deleting."""
        provider.seed_server(SERVER)

        outcome = Reconciler(provider, StaticConsentGate(False)).reconcile(SERVER, server_spec())

        assert outcome.status == OutcomeStatus.HARD_FAILURE
        assert "already exists" in (outcome.reason or "")
        assert provider.mutation_count == 0

    def test_reused_server_with_different_type(self, provider: FakeCloudProvider) -> None:
        """Test that a reused server of another type is kept, not recreated."""
        existing = provider.seed_server(SERVER, server_type="cx22")

        outcome = Reconciler(provider, StaticConsentGate(True)).reconcile(SERVER, server_spec())

        assert outcome.status == OutcomeStatus.KEPT_DESPITE_DRIFT
        assert outcome.resource_id == existing.id
        assert provider.mutation_count == 0


class TestSshKeyReconciliation:
    """Tests for SSH key reconciliation."""

    def test_registers_absent_key(self, provider: FakeCloudProvider, public_key: str) -> None:
        """Test that a missing key is registered."""
        outcome = Reconciler(provider, StaticConsentGate(True)).reconcile(KEY, key_spec(public_key))

        assert outcome.status == OutcomeStatus.CREATED

    def test_same_key_is_noop(self, provider: FakeCloudProvider, public_key: str) -> None:
        """Test that an identical registered key is left alone."""
        provider.seed_ssh_key(KEY, public_key)

        outcome = Reconciler(provider, StaticConsentGate(True)).reconcile(KEY, key_spec(public_key))

        assert outcome.status == OutcomeStatus.NO_OP
        assert provider.mutation_count == 0

    def test_comment_is_ignored(self, provider: FakeCloudProvider, public_key: str) -> None:
        """Test that only the key material is compared."""
        provider.seed_ssh_key(KEY, public_key.rsplit(" ", 1)[0] + " someone@laptop")

        outcome = Reconciler(provider, StaticConsentGate(True)).reconcile(KEY, key_spec(public_key))

        assert outcome.status == OutcomeStatus.NO_OP

    def test_fingerprint_mismatch_changes_nothing(
        self, provider: FakeCloudProvider, public_key: str
    ) -> None:
        """Test that a different registered key is a hard validation failure."""
        provider.seed_ssh_key(KEY, generate_keypair(comment="other").public_openssh)
        gate = StaticConsentGate(True)

        outcome = Reconciler(provider, gate).reconcile(KEY, key_spec(public_key))

        assert outcome.status == OutcomeStatus.HARD_FAILURE
        assert outcome.validation is True
        assert "different fingerprint" in (outcome.reason or "")
        assert provider.mutation_count == 0
        assert gate.history == []

    def test_invalid_local_key(self, provider: FakeCloudProvider) -> None:
        """Test that an unparsable key never reaches the provider."""
        outcome = Reconciler(provider, StaticConsentGate(True)).reconcile(
            KEY, key_spec("ssh-ed25519 not-base64!")
        )

        assert outcome.status == OutcomeStatus.HARD_FAILURE
        assert outcome.validation is True
        assert provider.describe_calls == 1
        assert provider.mutation_count == 0
