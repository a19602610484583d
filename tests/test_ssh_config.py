"""Tests for the managed SSH client configuration."""

from __future__ import annotations

import base64
import hashlib
import hmac
import os
import stat
from pathlib import Path

import pytest

from provisioner.credentials import BackendKind, PrivateKeyReference
from provisioner.ssh_config import (
    HostUpdate,
    agent_toml_snippet,
    ensure_agent_toml_entry,
    get_host_ip,
    remove_known_host,
    render_host_block,
    set_host_user,
    upsert_host,
)

HOST = "netbird-selfhosted-acme"


@pytest.fixture
def file_reference(tmp_path: Path) -> PrivateKeyReference:
    return PrivateKeyReference(
        kind=BackendKind.FILE,
        locator=str(tmp_path / ".ssh-keys" / "acme"),
        public_key_path=tmp_path / ".ssh-keys" / "acme.pub",
    )


@pytest.fixture
def paths(tmp_path: Path) -> tuple[Path, Path]:
    keys_dir = tmp_path / ".ssh-keys"
    return keys_dir / "ssh-config", keys_dir / "known_hosts"


def hashed_entry(host: str, salt: bytes = b"0123456789abcdef0123") -> str:
    digest = hmac.new(salt, host.encode(), hashlib.sha1).digest()
    return f"|1|{base64.b64encode(salt).decode()}|{base64.b64encode(digest).decode()}"


class TestRenderHostBlock:
    """Tests for render_host_block."""

    def test_file_backend(self, file_reference: PrivateKeyReference, tmp_path: Path) -> None:
        """Test that file keys are referenced by path."""
        block = render_host_block(
            HOST, "203.0.113.10", file_reference, known_hosts=tmp_path / "known_hosts"
        )

        lines = block.splitlines()
        assert lines[0] == f"Host {HOST}"
        assert "    HostName 203.0.113.10" in lines
        assert "    User root" in lines
        assert f"    IdentityFile {file_reference.locator}" in lines
        assert "    IdentitiesOnly yes" in lines
        assert "    StrictHostKeyChecking accept-new" in lines
        assert f"    UserKnownHostsFile {tmp_path / 'known_hosts'}" in lines

    def test_vault_backend(self, tmp_path: Path) -> None:
        """Test that vault keys go through the 1Password agent."""
        reference = PrivateKeyReference(
            kind=BackendKind.VAULT,
            locator="op://Netbird/netbird-acme/private key",
            public_key_path=tmp_path / "acme.pub",
        )

        block = render_host_block(HOST, "203.0.113.10", reference, known_hosts=tmp_path / "kh")

        assert "IdentityAgent" in block
        assert f"IdentityFile {tmp_path / 'acme.pub'}" in block
        assert "op://" not in block

    def test_custom_user(self, file_reference: PrivateKeyReference, tmp_path: Path) -> None:
        """Test rendering a non-root login."""
        block = render_host_block(
            HOST, "203.0.113.10", file_reference, known_hosts=tmp_path / "kh", user="ubuntu"
        )

        assert "    User ubuntu" in block.splitlines()


class TestUpsertHost:
    """Tests for upsert_host."""

    def test_adds_block(
        self, file_reference: PrivateKeyReference, paths: tuple[Path, Path]
    ) -> None:
        """Test the first export of a host."""
        config_path, known_hosts = paths

        result = upsert_host(
            config_path, HOST, "203.0.113.10", file_reference, known_hosts=known_hosts
        )

        assert result == HostUpdate.ADDED
        assert get_host_ip(config_path, HOST) == "203.0.113.10"

    def test_private_permissions(
        self, file_reference: PrivateKeyReference, paths: tuple[Path, Path]
    ) -> None:
        """Test that the config file is owner-only."""
        config_path, known_hosts = paths

        upsert_host(config_path, HOST, "203.0.113.10", file_reference, known_hosts=known_hosts)

        assert stat.S_IMODE(os.stat(config_path).st_mode) == 0o600
        assert stat.S_IMODE(os.stat(config_path.parent).st_mode) == 0o700

    def test_same_ip_is_unchanged(
        self, file_reference: PrivateKeyReference, paths: tuple[Path, Path]
    ) -> None:
        """Test that re-exporting the same IP does not touch the file."""
        config_path, known_hosts = paths
        upsert_host(config_path, HOST, "203.0.113.10", file_reference, known_hosts=known_hosts)
        before = config_path.read_text()

        result = upsert_host(
            config_path, HOST, "203.0.113.10", file_reference, known_hosts=known_hosts
        )

        assert result == HostUpdate.UNCHANGED
        assert config_path.read_text() == before

    def test_ip_change_rewrites_hostname_only(
        self, file_reference: PrivateKeyReference, paths: tuple[Path, Path]
    ) -> None:
        """Test that hand edits in the block survive an IP change."""
        config_path, known_hosts = paths
        upsert_host(config_path, HOST, "203.0.113.10", file_reference, known_hosts=known_hosts)
        config_path.write_text(
            config_path.read_text() + "    ForwardAgent no\n\nHost other\n    HostName 10.0.0.1\n"
        )

        result = upsert_host(
            config_path, HOST, "203.0.113.20", file_reference, known_hosts=known_hosts
        )

        assert result == HostUpdate.UPDATED
        content = config_path.read_text()
        assert "203.0.113.10" not in content
        assert "    ForwardAgent no" in content
        assert get_host_ip(config_path, HOST) == "203.0.113.20"
        assert get_host_ip(config_path, "other") == "10.0.0.1"

    def test_ip_change_forgets_old_host_key(
        self, file_reference: PrivateKeyReference, paths: tuple[Path, Path]
    ) -> None:
        """Test that known_hosts entries for the old IP are removed."""
        config_path, known_hosts = paths
        upsert_host(config_path, HOST, "203.0.113.10", file_reference, known_hosts=known_hosts)
        known_hosts.write_text(
            "203.0.113.10 ssh-ed25519 AAAAold\n"
            "203.0.113.99 ssh-ed25519 AAAAkeep\n"
        )

        upsert_host(config_path, HOST, "203.0.113.20", file_reference, known_hosts=known_hosts)

        assert known_hosts.read_text() == "203.0.113.99 ssh-ed25519 AAAAkeep\n"

    def test_appends_after_existing_blocks(
        self, file_reference: PrivateKeyReference, paths: tuple[Path, Path]
    ) -> None:
        """Test that other hosts in the file are preserved."""
        config_path, known_hosts = paths
        config_path.parent.mkdir(parents=True)
        config_path.write_text("Host bastion\n    HostName 198.51.100.1\n")

        upsert_host(config_path, HOST, "203.0.113.10", file_reference, known_hosts=known_hosts)

        content = config_path.read_text()
        assert content.startswith("Host bastion\n    HostName 198.51.100.1\n\n")
        assert get_host_ip(config_path, HOST) == "203.0.113.10"


class TestSetHostUser:
    """Tests for set_host_user."""

    def test_changes_user(
        self, file_reference: PrivateKeyReference, paths: tuple[Path, Path]
    ) -> None:
        """Test switching the login user after hardening."""
        config_path, known_hosts = paths
        upsert_host(config_path, HOST, "203.0.113.10", file_reference, known_hosts=known_hosts)

        assert set_host_user(config_path, HOST, "netbird") is True

        lines = config_path.read_text().splitlines()
        assert "    User netbird" in lines
        assert "    User root" not in lines

    def test_missing_host(self, paths: tuple[Path, Path]) -> None:
        """Test that an unknown host reports False."""
        config_path, _ = paths

        assert set_host_user(config_path, HOST, "netbird") is False

    def test_adds_user_line(self, paths: tuple[Path, Path]) -> None:
        """Test a hand-written block without a User line."""
        config_path, _ = paths
        config_path.parent.mkdir(parents=True)
        config_path.write_text(f"Host {HOST}\n    HostName 203.0.113.10\n")

        assert set_host_user(config_path, HOST, "netbird") is True
        assert config_path.read_text().splitlines()[1] == "    User netbird"


class TestRemoveKnownHost:
    """Tests for remove_known_host."""

    def test_missing_file(self, tmp_path: Path) -> None:
        """Test that a missing known_hosts is a no-op."""
        assert remove_known_host(tmp_path / "known_hosts", "203.0.113.10") == 0

    def test_entry_forms(self, tmp_path: Path) -> None:
        """Test plain, bracketed, hashed, marker and list entries."""
        known_hosts = tmp_path / "known_hosts"
        known_hosts.write_text(
            "\n".join(
                [
                    "# managed by netbird",
                    "203.0.113.10 ssh-ed25519 AAAA1",
                    "[203.0.113.10]:22 ssh-ed25519 AAAA2",
                    f"{hashed_entry('203.0.113.10')} ssh-ed25519 AAAA3",
                    "@cert-authority 203.0.113.10 ssh-ed25519 AAAA4",
                    "bastion,203.0.113.10 ssh-ed25519 AAAA5",
                    f"{hashed_entry('203.0.113.11')} ssh-ed25519 AAAA6",
                    "203.0.113.100 ssh-ed25519 AAAA7",
                ]
            )
            + "\n"
        )

        removed = remove_known_host(known_hosts, "203.0.113.10")

        assert removed == 5
        remaining = known_hosts.read_text().splitlines()
        assert remaining[0] == "# managed by netbird"
        assert [line.split()[-1] for line in remaining[1:]] == ["AAAA6", "AAAA7"]

    def test_nothing_matches(self, tmp_path: Path) -> None:
        """Test that an unrelated file is left alone."""
        known_hosts = tmp_path / "known_hosts"
        known_hosts.write_text("198.51.100.1 ssh-ed25519 AAAA\n")

        assert remove_known_host(known_hosts, "203.0.113.10") == 0
        assert known_hosts.read_text() == "198.51.100.1 ssh-ed25519 AAAA\n"


class TestAgentToml:
    """Tests for the 1Password SSH agent configuration."""

    def test_snippet(self) -> None:
        """Test the rendered agent.toml entry."""
        assert agent_toml_snippet("netbird-acme", "Netbird") == (
            '[[ssh-keys]]\nitem = "netbird-acme"\nvault = "Netbird"\n'
        )

    def test_added_once(self, tmp_path: Path) -> None:
        """Test that an item is registered only once."""
        path = tmp_path / "1Password" / "ssh" / "agent.toml"

        assert ensure_agent_toml_entry("netbird-acme", "Netbird", path) is True
        assert ensure_agent_toml_entry("netbird-acme", "Netbird", path) is False
        assert path.read_text().count("[[ssh-keys]]") == 1

    def test_keeps_existing_entries(self, tmp_path: Path) -> None:
        """Test appending to an agent.toml that lists other keys."""
        path = tmp_path / "agent.toml"
        path.write_text('[[ssh-keys]]\nvault = "Private"')

        ensure_agent_toml_entry("netbird-acme", "Netbird", path)

        content = path.read_text()
        assert content.startswith('[[ssh-keys]]\nvault = "Private"\n\n[[ssh-keys]]\n')
        assert content.endswith('item = "netbird-acme"\nvault = "Netbird"\n')
