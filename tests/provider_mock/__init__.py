"""In-memory providers for testing.

Stand-ins for the external systems the provisioner talks to, so workflows
run end to end without Hetzner, Microsoft Graph or 1Password:

- FakeCloudProvider: CloudProvider with firewalls, servers and SSH keys
- FakeIdentityProvider: IdentityProvider holding app registrations
- FakeOpRunner: Runner that answers ``op`` CLI calls from an in-memory vault
- ScriptedRunner: Runner returning canned results by argv prefix

Every fake records its calls and supports failure injection.

Usage:
    from provider_mock import FakeCloudProvider

    provider = FakeCloudProvider()
    provider.seed_firewall("acme-netbird-firewall", rules)
    outcome = Reconciler(provider, StaticConsentGate(True)).reconcile(name, desired)

    assert provider.mutation_count == 0
"""

from .cloud import FakeCloudProvider
from .identity import FakeIdentityProvider
from .runner import FakeOpRunner, ScriptedRunner

__all__ = [
    "FakeCloudProvider",
    "FakeIdentityProvider",
    "FakeOpRunner",
    "ScriptedRunner",
]
