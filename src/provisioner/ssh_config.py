"""Managed SSH client configuration.

One ``Host`` block per server in ``<root>/.ssh-keys/ssh-config``. Existing
blocks are edited line by line (``HostName``, ``User``), never re-serialized,
so hand edits elsewhere in the file survive. Use it with
``ssh -F .ssh-keys/ssh-config <server>``.
"""

from __future__ import annotations

import base64
import binascii
import hashlib
import hmac
import logging
import re
from enum import Enum
from pathlib import Path

from .credentials import PrivateKeyReference
from .keys import write_private_file

logger = logging.getLogger(__name__)

DEFAULT_USER = "root"
AGENT_TOML_PATH = Path("~/.config/1Password/ssh/agent.toml")

HOST_LINE = re.compile(r"^Host\s+(?P<name>\S+)\s*$")
HOSTNAME_LINE = re.compile(r"^(?P<indent>\s+)HostName\s+(?P<value>\S+)\s*$")
USER_LINE = re.compile(r"^(?P<indent>\s+)User\s+(?P<value>\S+)\s*$")


class HostUpdate(str, Enum):
    """What upsert_host did."""

    ADDED = "added"
    UPDATED = "updated"
    UNCHANGED = "unchanged"


def render_host_block(
    host: str,
    ip: str,
    reference: PrivateKeyReference,
    *,
    known_hosts: Path,
    user: str = DEFAULT_USER,
) -> str:
    lines = [
        f"Host {host}",
        f"    HostName {ip}",
        f"    User {user}",
        *(f"    {directive}" for directive in reference.ssh_directives()),
        "    StrictHostKeyChecking accept-new",
        f"    UserKnownHostsFile {known_hosts}",
        "    LogLevel ERROR",
    ]
    return "\n".join(lines) + "\n"


def _read_lines(path: Path) -> list[str]:
    if not path.is_file():
        return []
    return path.read_text(encoding="utf-8").splitlines()


def _write_lines(path: Path, lines: list[str]) -> None:
    path.parent.mkdir(mode=0o700, parents=True, exist_ok=True)
    content = "\n".join(lines).rstrip("\n") + "\n" if lines else ""
    write_private_file(path, content.encode("utf-8"))


def _block_range(lines: list[str], host: str) -> tuple[int, int] | None:
    """Line index range [start, end) of the block for ``host``."""
    start = None
    for index, line in enumerate(lines):
        match = HOST_LINE.match(line)
        if match is None:
            continue
        if start is not None:
            return start, index
        if match.group("name") == host:
            start = index
    if start is None:
        return None
    return start, len(lines)


def _block_value(lines: list[str], host: str, pattern: re.Pattern[str]) -> tuple[int, str] | None:
    block = _block_range(lines, host)
    if block is None:
        return None
    for index in range(*block):
        match = pattern.match(lines[index])
        if match:
            return index, match.group("value")
    return None


def get_host_ip(config_path: Path, host: str) -> str | None:
    found = _block_value(_read_lines(config_path), host, HOSTNAME_LINE)
    return found[1] if found else None


def upsert_host(
    config_path: Path,
    host: str,
    ip: str,
    reference: PrivateKeyReference,
    *,
    known_hosts: Path,
    user: str = DEFAULT_USER,
) -> HostUpdate:
    """Add a Host block, or point an existing one at a new IP.

    When the IP changes, known_hosts entries for the old IP are removed so
    ``accept-new`` can record the new host key.
    """
    lines = _read_lines(config_path)

    if _block_range(lines, host) is None:
        if lines and lines[-1].strip():
            lines.append("")
        block = render_host_block(host, ip, reference, known_hosts=known_hosts, user=user)
        lines.extend(block.rstrip("\n").splitlines())
        _write_lines(config_path, lines)
        logger.info("Added SSH config entry", extra={"host": host, "ip": ip})
        return HostUpdate.ADDED

    found = _block_value(lines, host, HOSTNAME_LINE)
    if found is not None and found[1] == ip:
        return HostUpdate.UNCHANGED

    if found is None:
        start, _ = _block_range(lines, host)  # type: ignore[misc]
        lines.insert(start + 1, f"    HostName {ip}")
        old_ip = None
    else:
        index, old_ip = found
        indent = HOSTNAME_LINE.match(lines[index]).group("indent")  # type: ignore[union-attr]
        lines[index] = f"{indent}HostName {ip}"

    _write_lines(config_path, lines)
    if old_ip:
        remove_known_host(known_hosts, old_ip)
    logger.info("Updated SSH config entry", extra={"host": host, "old_ip": old_ip, "ip": ip})
    return HostUpdate.UPDATED


def set_host_user(config_path: Path, host: str, user: str) -> bool:
    """Rewrite the User line of an existing block. False if the block is missing."""
    lines = _read_lines(config_path)
    block = _block_range(lines, host)
    if block is None:
        return False

    found = _block_value(lines, host, USER_LINE)
    if found is None:
        lines.insert(block[0] + 1, f"    User {user}")
    else:
        index, current = found
        if current == user:
            return True
        indent = USER_LINE.match(lines[index]).group("indent")  # type: ignore[union-attr]
        lines[index] = f"{indent}User {user}"

    _write_lines(config_path, lines)
    logger.info("Updated SSH login user", extra={"host": host, "user": user})
    return True


def _hashed_host_matches(entry: str, host: str) -> bool:
    # |1|<salt>|<hmac-sha1(salt, host)>
    parts = entry.split("|")
    if len(parts) != 4 or parts[1] != "1":
        return False
    try:
        salt = base64.b64decode(parts[2])
        expected = base64.b64decode(parts[3])
    except (binascii.Error, ValueError):
        return False
    digest = hmac.new(salt, host.encode("utf-8"), hashlib.sha1).digest()
    return hmac.compare_digest(digest, expected)


def _entry_matches(hosts_field: str, host: str) -> bool:
    for pattern in hosts_field.split(","):
        if pattern.startswith("|"):
            if _hashed_host_matches(pattern, host):
                return True
        elif pattern == host or re.fullmatch(rf"\[{re.escape(host)}\]:\d+", pattern):
            return True
    return False


def remove_known_host(known_hosts: Path, host: str) -> int:
    """Drop every known_hosts line for ``host``. Returns the number removed."""
    if not known_hosts.is_file():
        return 0
    kept: list[str] = []
    removed = 0
    for line in known_hosts.read_text(encoding="utf-8").splitlines():
        fields = line.split()
        if fields and not line.startswith("#"):
            hosts_field = fields[1] if fields[0].startswith("@") and len(fields) > 1 else fields[0]
            if _entry_matches(hosts_field, host):
                removed += 1
                continue
        kept.append(line)
    if removed:
        _write_lines(known_hosts, kept)
        logger.info("Removed stale known_hosts entries", extra={"host": host, "removed": removed})
    return removed


def agent_toml_snippet(item: str, vault: str) -> str:
    return f'[[ssh-keys]]\nitem = "{item}"\nvault = "{vault}"\n'


def ensure_agent_toml_entry(item: str, vault: str, path: Path | None = None) -> bool:
    """Let the 1Password SSH agent offer ``item``. False if already listed."""
    path = (path or AGENT_TOML_PATH).expanduser()
    path.parent.mkdir(parents=True, exist_ok=True)
    existing = path.read_text(encoding="utf-8") if path.is_file() else ""

    if f'item = "{item}"' in existing:
        return False

    separator = "\n" if existing and not existing.endswith("\n\n") else ""
    if existing and not existing.endswith("\n"):
        separator = "\n\n"
    path.write_text(existing + separator + agent_toml_snippet(item, vault), encoding="utf-8")
    logger.info("Registered key with 1Password SSH agent", extra={"item": item, "path": str(path)})
    return True
