"""
Artifact encryption.

Every nested artifact in a snapshot is encrypted on its own, so a
partially transferred snapshot still decrypts file by file. The key is
derived from a passphrase with PBKDF2-HMAC-SHA256 and a random salt per
artifact; the payload is a Fernet token (AES-128-CBC + HMAC-SHA256).

File format:
    b"CSENC1" | salt (16 bytes) | Fernet token
"""

from __future__ import annotations

import base64
import logging
import os
from pathlib import Path
from typing import Optional

from cryptography.fernet import Fernet, InvalidToken
from cryptography.hazmat.primitives.hashes import SHA256
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

from .errors import ConfigError, DecryptionError
from .models import PeerCredentials

logger = logging.getLogger("casesync.crypto")

MAGIC = b"CSENC1"
SALT_LENGTH = 16
ITERATIONS = 100_000


def derive_key(passphrase: str, salt: bytes) -> bytes:
    """Derive a Fernet key from a passphrase.

    Args:
        passphrase: Shared secret.
        salt: Random salt stored next to the ciphertext.

    Returns:
        URL-safe base64 encoded 32-byte key.
    """
    kdf = PBKDF2HMAC(
        algorithm=SHA256(),
        length=32,
        salt=salt,
        iterations=ITERATIONS,
    )
    return base64.urlsafe_b64encode(kdf.derive(passphrase.encode("utf-8")))


def encrypt_bytes(data: bytes, passphrase: str) -> bytes:
    """Encrypt bytes with a passphrase-derived key."""
    salt = os.urandom(SALT_LENGTH)
    token = Fernet(derive_key(passphrase, salt)).encrypt(data)
    return MAGIC + salt + token


def decrypt_bytes(data: bytes, passphrase: str) -> bytes:
    """Decrypt bytes produced by ``encrypt_bytes``.

    Raises:
        DecryptionError: Wrong passphrase, tampered or non-encrypted data.
    """
    if not data.startswith(MAGIC):
        raise DecryptionError("Data is not an encrypted artifact")
    salt = data[len(MAGIC):len(MAGIC) + SALT_LENGTH]
    token = data[len(MAGIC) + SALT_LENGTH:]
    try:
        return Fernet(derive_key(passphrase, salt)).decrypt(token)
    except InvalidToken:
        raise DecryptionError("Invalid passphrase or corrupted artifact") from None


def is_encrypted(path: Path) -> bool:
    """Whether a file starts with the encrypted artifact header."""
    with open(path, "rb") as fh:
        return fh.read(len(MAGIC)) == MAGIC


def encrypt_file(path: Path, passphrase: str) -> Path:
    """Encrypt a file in place. Returns the same path."""
    path = Path(path)
    path.write_bytes(encrypt_bytes(path.read_bytes(), passphrase))
    return path


def decrypt_file(path: Path, passphrase: str, output: Optional[Path] = None) -> Path:
    """Decrypt a file, in place unless ``output`` is given.

    Raises:
        DecryptionError: If the file cannot be decrypted.
    """
    path = Path(path)
    plain = decrypt_bytes(path.read_bytes(), passphrase)
    target = Path(output) if output else path
    target.write_bytes(plain)
    return target


def peer_passphrase(credentials: PeerCredentials) -> str:
    """Passphrase shared with a peer: its credential fields concatenated.

    Raises:
        ConfigError: If the peer has no credentials configured.
    """
    passphrase = f"{credentials.client_id}{credentials.client_secret}"
    if not passphrase:
        raise ConfigError("Peer credentials are required to derive an encryption passphrase")
    return passphrase
