"""Command runners for testing the CLI wrappers."""

from __future__ import annotations

import json
from typing import Any

from provisioner.commands import CommandResult
from provisioner.keys import generate_keypair, public_key_from_private

OPTIONS_WITH_VALUE = ("--category", "--title", "--vault", "--ssh-generate-key", "--format")


def _result(
    cmd: list[str], returncode: int = 0, stdout: str = "", stderr: str = ""
) -> CommandResult:
    return CommandResult(args=tuple(cmd), returncode=returncode, stdout=stdout, stderr=stderr)


def _option(args: list[str], name: str) -> str | None:
    if name in args:
        index = args.index(name)
        if index + 1 < len(args):
            return args[index + 1]
    return None


def _assignments(args: list[str]) -> dict[str, str]:
    """``label=value`` arguments, skipping options and their values."""
    fields: dict[str, str] = {}
    skip = False
    for arg in args:
        if skip:
            skip = False
            continue
        if arg in OPTIONS_WITH_VALUE:
            skip = True
            continue
        if arg.startswith("--") or "=" not in arg:
            continue
        label, _, value = arg.partition("=")
        fields[label] = value
    return fields


class FakeOpRunner:
    """Runner that answers ``op`` calls from an in-memory 1Password account.

    Items are stored as ``items[(vault, title)] = {"category": ..., "fields": {...}}``.
    SSH key items get a real Ed25519 key so public keys and fingerprints
    behave like the real thing.
    """

    def __init__(
        self,
        *,
        installed: bool = True,
        signed_in: bool = True,
        vaults: tuple[str, ...] = ("Netbird",),
    ) -> None:
        self.installed = installed
        self.signed_in = signed_in
        self.vaults = set(vaults)
        self.items: dict[tuple[str, str], dict[str, Any]] = {}
        self.calls: list[list[str]] = []
        self._failures: dict[str, tuple[str, int | None]] = {}

    def fail(
        self,
        operation: str,
        stderr: str = "[ERROR] simulated failure",
        *,
        times: int | None = None,
    ) -> None:
        """Fail calls of ``operation`` (e.g. "item create") with ``stderr``.

        ``times`` limits the failure to the next n calls; None fails them all.
        """
        self._failures[operation] = (stderr, times)

    def recover(self, operation: str) -> None:
        self._failures.pop(operation, None)

    def add_ssh_key_item(self, vault: str, title: str, private_key: str | None = None) -> str:
        """Seed an sshkey item and return its public key."""
        if private_key is None:
            keypair = generate_keypair(comment=title)
            private_key = keypair.private_openssh.decode("ascii")
            public_key = keypair.public_openssh
        else:
            public_key = public_key_from_private(private_key.encode("ascii"))
        self.vaults.add(vault)
        self.items[(vault, title)] = {
            "category": "sshkey",
            "fields": {"private key": private_key, "public key": public_key},
        }
        return public_key

    def count(self, *prefix: str) -> int:
        return sum(1 for call in self.calls if tuple(call[1 : 1 + len(prefix)]) == prefix)

    # -- Runner ---------------------------------------------------------------

    def available(self, binary: str) -> bool:
        return self.installed and binary == "op"

    def run(self, cmd: list[str]) -> CommandResult:
        self.calls.append(list(cmd))
        args = cmd[1:]

        if args == ["whoami"]:
            if self.signed_in:
                return _result(cmd, stdout="URL: https://my.1password.com\n")
            return _result(cmd, 1, stderr="[ERROR] account is not signed in")

        operation = " ".join(args[:2])
        if operation in self._failures:
            stderr, times = self._failures[operation]
            if times is not None:
                if times <= 1:
                    del self._failures[operation]
                else:
                    self._failures[operation] = (stderr, times - 1)
            return _result(cmd, 1, stderr=stderr)

        match args[:2]:
            case ["vault", "get"]:
                name = args[2]
                if name not in self.vaults:
                    message = f'[ERROR] "{name}" isn\'t a vault in this account'
                    return _result(cmd, 1, stderr=message)
                return _result(cmd, stdout=json.dumps({"id": f"v-{name}", "name": name}))
            case ["vault", "create"]:
                self.vaults.add(args[2])
                return _result(cmd)
            case ["item", "get"]:
                return self._item_get(cmd, args)
            case ["item", "create"]:
                return self._item_create(cmd, args)
            case ["item", "edit"]:
                key = (_option(args, "--vault") or "", args[2])
                if key not in self.items:
                    return _result(cmd, 1, stderr=f'[ERROR] "{args[2]}" isn\'t an item')
                self.items[key]["fields"].update(_assignments(args[3:]))
                return _result(cmd)
        return _result(cmd, 1, stderr=f"[ERROR] unknown command {operation}")

    def _item_get(self, cmd: list[str], args: list[str]) -> CommandResult:
        title = args[2]
        vault = _option(args, "--vault") or ""
        if vault not in self.vaults:
            return _result(cmd, 1, stderr=f'[ERROR] "{vault}" isn\'t a vault in this account')
        item = self.items.get((vault, title))
        if item is None:
            message = f'[ERROR] "{title}" isn\'t an item in the "{vault}" vault'
            return _result(cmd, 1, stderr=message)
        field = _option(args, "--fields")
        if field is not None:
            return _result(cmd, stdout=item["fields"].get(field, "") + "\n")
        # Like the real CLI's JSON, but without field values
        payload = {"title": title, "category": item["category"].upper(), "vault": {"name": vault}}
        return _result(cmd, stdout=json.dumps(payload))

    def _item_create(self, cmd: list[str], args: list[str]) -> CommandResult:
        category = _option(args, "--category") or ""
        title = _option(args, "--title") or ""
        vault = _option(args, "--vault") or ""
        if vault not in self.vaults:
            return _result(cmd, 1, stderr=f'[ERROR] "{vault}" isn\'t a vault in this account')

        fields = _assignments(args[2:])
        if category == "sshkey":
            if _option(args, "--ssh-generate-key"):
                keypair = generate_keypair(comment=title)
                fields["private key"] = keypair.private_openssh.decode("ascii")
                fields["public key"] = keypair.public_openssh
            elif "private key" in fields:
                fields["public key"] = public_key_from_private(
                    fields["private key"].encode("ascii")
                )
        self.items[(vault, title)] = {"category": category, "fields": fields}
        return _result(cmd, stdout=json.dumps({"title": title}))


class ScriptedRunner:
    """Runner returning canned results chosen by the longest matching argv prefix.

    Several results registered for one prefix are returned in order; the
    last one repeats. Unmatched commands succeed with empty output.
    """

    def __init__(self, *, binaries: tuple[str, ...] = ("hcloud", "op")) -> None:
        self.binaries = set(binaries)
        self.calls: list[list[str]] = []
        self._responses: dict[tuple[str, ...], list[tuple[int, str, str]]] = {}

    def on(
        self,
        *prefix: str,
        stdout: str | dict[str, Any] | list[Any] = "",
        stderr: str = "",
        returncode: int = 0,
    ) -> ScriptedRunner:
        if not isinstance(stdout, str):
            stdout = json.dumps(stdout)
        self._responses.setdefault(tuple(prefix), []).append((returncode, stdout, stderr))
        return self

    def available(self, binary: str) -> bool:
        return binary in self.binaries

    def run(self, cmd: list[str]) -> CommandResult:
        self.calls.append(list(cmd))
        best: tuple[str, ...] | None = None
        for prefix in self._responses:
            if tuple(cmd[: len(prefix)]) == prefix and (best is None or len(prefix) > len(best)):
                best = prefix
        if best is None:
            return _result(cmd)
        queue = self._responses[best]
        returncode, stdout, stderr = queue.pop(0) if len(queue) > 1 else queue[0]
        return _result(cmd, returncode, stdout, stderr)
