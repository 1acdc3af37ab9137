"""AES-256-GCM encrypted store for printer access codes and other secrets.

File format::

    [8 bytes:  magic "PPSECRET"]
    [1 byte:   version = 0x01]
    [16 bytes: salt]             ← bound to the ciphertext as associated data
    [12 bytes: nonce]
    [N bytes:  ciphertext + 16-byte GCM tag]

The plaintext is a JSON object mapping secret names to values.  Names are
what ``${VAR}`` placeholders in the config refer to.
"""

from __future__ import annotations

import os
from pathlib import Path

import orjson
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

MAGIC = b"PPSECRET"
VERSION = 0x01
SALT_LEN = 16
NONCE_LEN = 12
KEY_LEN = 32

_HEADER_LEN = len(MAGIC) + 1


class SecretStore:
    """Encrypted name → value map persisted in a single file.

    Parameters
    ----------
    path:
        Location of the encrypted store.
    key_file:
        Location of the raw 32-byte master key.
    """

    def __init__(self, path: str | Path, key_file: str | Path) -> None:
        self.path = Path(path)
        self.key_file = Path(key_file)

    @classmethod
    def init(cls, path: str | Path, key_file: str | Path) -> "SecretStore":
        """Create an empty store, generating the key file if it is missing."""
        store = cls(path, key_file)
        if not store.key_file.exists():
            _write_key(store.key_file)
        store._write({})
        return store

    def load(self) -> dict[str, str]:
        """Decrypt and return every secret."""
        return self._read()

    def get(self, name: str) -> str | None:
        return self._read().get(name)

    def set(self, name: str, value: str) -> None:
        """Add or replace one secret."""
        secrets = self._read()
        secrets[name] = value
        self._write(secrets)

    def remove(self, name: str) -> bool:
        """Delete *name*; return False if it was not stored."""
        secrets = self._read()
        if secrets.pop(name, None) is None:
            return False
        self._write(secrets)
        return True

    def names(self) -> list[str]:
        """Sorted secret names; values are never listed."""
        return sorted(self._read())

    def rekey(self, new_key_file: str | Path) -> None:
        """Re-encrypt the store under *new_key_file* (created if missing)."""
        secrets = self._read()
        self.key_file = Path(new_key_file)
        if not self.key_file.exists():
            _write_key(self.key_file)
        self._write(secrets)

    # ── internal ────────────────────────────────────────────────────

    def _key(self) -> bytes:
        if not self.key_file.exists():
            raise FileNotFoundError(f"Key file not found: {self.key_file}")
        key = self.key_file.read_bytes()
        if len(key) != KEY_LEN:
            raise ValueError(f"Key file must be exactly {KEY_LEN} bytes, got {len(key)}")
        return key

    def _read(self) -> dict[str, str]:
        data = self.path.read_bytes()
        if data[: len(MAGIC)] != MAGIC:
            raise ValueError("Invalid secrets file (bad magic)")
        if len(data) <= _HEADER_LEN or data[len(MAGIC)] != VERSION:
            raise ValueError("Unsupported secrets file version")

        salt = data[_HEADER_LEN:_HEADER_LEN + SALT_LEN]
        nonce = data[_HEADER_LEN + SALT_LEN:_HEADER_LEN + SALT_LEN + NONCE_LEN]
        ciphertext = data[_HEADER_LEN + SALT_LEN + NONCE_LEN:]

        plaintext = AESGCM(self._key()).decrypt(nonce, ciphertext, salt)
        return orjson.loads(plaintext)

    def _write(self, secrets: dict[str, str]) -> None:
        salt = os.urandom(SALT_LEN)
        nonce = os.urandom(NONCE_LEN)
        ciphertext = AESGCM(self._key()).encrypt(nonce, orjson.dumps(secrets), salt)

        self.path.parent.mkdir(parents=True, exist_ok=True)
        with open(self.path, "wb") as fh:
            fh.write(MAGIC)
            fh.write(bytes([VERSION]))
            fh.write(salt)
            fh.write(nonce)
            fh.write(ciphertext)
        os.chmod(self.path, 0o600)


def _write_key(path: Path) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_bytes(AESGCM.generate_key(bit_length=KEY_LEN * 8))
    os.chmod(path, 0o600)
