"""SSH key material: Ed25519 generation, parsing and fingerprints."""

from __future__ import annotations

import base64
import binascii
import hashlib
import logging
import os
from dataclasses import dataclass
from pathlib import Path

from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import ed25519

from .errors import InputValidationError

logger = logging.getLogger(__name__)

PRIVATE_KEY_MODE = 0o600
PUBLIC_KEY_MODE = 0o644
KEY_DIR_MODE = 0o700


@dataclass(frozen=True)
class KeyPair:
    """A freshly generated key pair. ``private_openssh`` is secret."""

    private_openssh: bytes
    public_openssh: str

    def __repr__(self) -> str:
        return f"KeyPair(public_openssh={self.public_openssh!r}, private_openssh=<redacted>)"


def generate_keypair(comment: str) -> KeyPair:
    """Generate an Ed25519 key pair in OpenSSH formats."""
    private_key = ed25519.Ed25519PrivateKey.generate()
    private_bytes = private_key.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.OpenSSH,
        encryption_algorithm=serialization.NoEncryption(),
    )
    public_bytes = private_key.public_key().public_bytes(
        encoding=serialization.Encoding.OpenSSH,
        format=serialization.PublicFormat.OpenSSH,
    )
    public_line = f"{public_bytes.decode('ascii')} {comment}".strip()
    return KeyPair(private_openssh=private_bytes, public_openssh=public_line)


def public_key_from_private(private_openssh: bytes, comment: str = "") -> str:
    """Derive the OpenSSH public key line from a private key."""
    try:
        private_key = serialization.load_ssh_private_key(private_openssh, password=None)
    except (ValueError, TypeError) as e:
        raise InputValidationError(f"Unreadable private key: {e}") from e
    public_bytes = private_key.public_key().public_bytes(
        encoding=serialization.Encoding.OpenSSH,
        format=serialization.PublicFormat.OpenSSH,
    )
    return f"{public_bytes.decode('ascii')} {comment}".strip()


def _key_blob(public_key: str) -> bytes:
    parts = public_key.strip().split()
    if len(parts) < 2:
        raise InputValidationError("Public key must look like '<type> <base64> [comment]'")
    try:
        blob = base64.b64decode(parts[1], validate=True)
    except (binascii.Error, ValueError) as e:
        raise InputValidationError("Public key body is not valid base64") from e
    try:
        serialization.load_ssh_public_key(f"{parts[0]} {parts[1]}".encode("ascii"))
    except (ValueError, UnicodeEncodeError) as e:
        raise InputValidationError(f"Unsupported public key: {e}") from e
    return blob


def fingerprint_sha256(public_key: str) -> str:
    """OpenSSH-style ``SHA256:<base64>`` fingerprint (no padding)."""
    digest = hashlib.sha256(_key_blob(public_key)).digest()
    return "SHA256:" + base64.b64encode(digest).decode("ascii").rstrip("=")


def fingerprint_md5(public_key: str) -> str:
    """Colon-separated MD5 fingerprint, the form Hetzner reports."""
    digest = hashlib.md5(_key_blob(public_key), usedforsecurity=False).hexdigest()
    return ":".join(digest[i : i + 2] for i in range(0, len(digest), 2))


def same_key(left: str, right: str) -> bool:
    """True when two public key lines carry the same key, comments ignored."""
    return _key_blob(left) == _key_blob(right)


def write_keypair(private_path: Path, keypair: KeyPair) -> Path:
    """Write the pair as ``private_path`` (0600) and ``private_path.pub`` (0644).

    Returns:
        Path of the public key file.
    """
    private_path.parent.mkdir(mode=KEY_DIR_MODE, parents=True, exist_ok=True)
    write_private_file(private_path, keypair.private_openssh)

    public_path = private_path.with_name(private_path.name + ".pub")
    public_path.write_text(keypair.public_openssh + "\n", encoding="ascii")
    public_path.chmod(PUBLIC_KEY_MODE)

    fingerprint = fingerprint_sha256(keypair.public_openssh)
    logger.info("Wrote SSH key pair", extra={"path": str(private_path), "fingerprint": fingerprint})
    return public_path


def write_private_file(path: Path, content: bytes) -> None:
    """Write secret content readable and writable by the owner only.

    The file is opened with mode 0600 before any content is written.
    """
    fd = os.open(path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, PRIVATE_KEY_MODE)
    with os.fdopen(fd, "wb") as f:
        f.write(content)
    path.chmod(PRIVATE_KEY_MODE)
