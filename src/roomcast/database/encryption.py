"""Encryption of provider credentials at rest.

Calendar credentials (client secrets, refresh tokens, passwords, feed auth
headers) are stored as an opaque blob produced by `CredentialCodec`.

## Security Model

1. A 256-bit key is derived from the configured secret with scrypt
2. Each credential object is serialized to JSON and sealed with AES-256-GCM
3. A fresh random nonce is drawn for every encryption
4. Secrets can be rotated by re-encrypting every blob with a new codec

## Key Derivation

- KDF: scrypt (memory-hard), N=2**14, r=8, p=1
- Salt: fixed application-level salt (`roomcast-credential-salt`)
- Key length: 32 bytes

## Blob Layout

```
+-------------+--------------+--------------------+
| nonce (16)  | auth tag (16)| ciphertext (n)     |
+-------------+--------------+--------------------+
```

## Usage

```python
from roomcast.database.encryption import encrypt_credentials, decrypt_credentials

blob = encrypt_credentials({"feedUrl": "https://example.com/cal.ics"})
credentials = decrypt_credentials(blob)
```
"""

from __future__ import annotations

import json
import logging
import os
from typing import Any

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.scrypt import Scrypt

logger = logging.getLogger(__name__)

CREDENTIAL_SALT = b"roomcast-credential-salt"
NONCE_SIZE = 16
TAG_SIZE = 16
KEY_SIZE = 32

SCRYPT_N = 2**14
SCRYPT_R = 8
SCRYPT_P = 1


class DecryptionError(ValueError):
    """Raised when a credential blob cannot be authenticated or decoded."""


def derive_key(secret: str, salt: bytes = CREDENTIAL_SALT) -> bytes:
    """Derive the symmetric key from the configured secret."""
    kdf = Scrypt(salt=salt, length=KEY_SIZE, n=SCRYPT_N, r=SCRYPT_R, p=SCRYPT_P)
    return kdf.derive(secret.encode("utf-8"))


class CredentialCodec:
    """Authenticated encryption of JSON-serializable credential objects.

    The key is derived once per codec; construct one per process and share it.

    Example:
        ```python
        codec = CredentialCodec("my-secret")
        blob = codec.encrypt({"username": "alice", "password": "s3cret"})
        assert codec.decrypt(blob) == {"username": "alice", "password": "s3cret"}
        ```
    """

    def __init__(self, secret: str, salt: bytes = CREDENTIAL_SALT):
        if not secret:
            raise ValueError("Encryption secret must not be empty")
        self._aead = AESGCM(derive_key(secret, salt))

    def encrypt(self, credentials: Any) -> bytes:
        """Serialize and seal a credential object.

        Args:
            credentials: Any JSON-serializable value

        Returns:
            nonce || tag || ciphertext
        """
        plaintext = json.dumps(credentials, separators=(",", ":")).encode("utf-8")
        nonce = os.urandom(NONCE_SIZE)
        # AESGCM appends the tag to the ciphertext
        sealed = self._aead.encrypt(nonce, plaintext, None)
        ciphertext, tag = sealed[:-TAG_SIZE], sealed[-TAG_SIZE:]
        return nonce + tag + ciphertext

    def decrypt(self, blob: bytes) -> Any:
        """Authenticate, decrypt and deserialize a credential blob.

        Raises:
            DecryptionError: If the blob is truncated, was tampered with,
                was sealed with another key, or does not hold JSON
        """
        data = bytes(blob)
        if len(data) < NONCE_SIZE + TAG_SIZE:
            raise DecryptionError("Credential blob is truncated")

        nonce = data[:NONCE_SIZE]
        tag = data[NONCE_SIZE : NONCE_SIZE + TAG_SIZE]
        ciphertext = data[NONCE_SIZE + TAG_SIZE :]

        try:
            plaintext = self._aead.decrypt(nonce, ciphertext + tag, None)
        except InvalidTag as e:
            logger.error("Failed to decrypt credentials: authentication tag mismatch")
            raise DecryptionError("Failed to decrypt credentials") from e

        try:
            return json.loads(plaintext.decode("utf-8"))
        except (UnicodeDecodeError, json.JSONDecodeError) as e:
            raise DecryptionError("Decrypted credentials are not valid JSON") from e


# Module-level codec instance (initialized on first use)
_codec: CredentialCodec | None = None


def get_codec() -> CredentialCodec:
    """Get or create the process-wide codec from settings."""
    global _codec

    if _codec is None:
        from roomcast.config import get_settings

        _codec = CredentialCodec(get_settings().encryption_secret)

    return _codec


def encrypt_credentials(credentials: Any) -> bytes:
    """Encrypt a credential object with the configured codec."""
    return get_codec().encrypt(credentials)


def decrypt_credentials(blob: bytes) -> Any:
    """Decrypt a credential blob with the configured codec."""
    return get_codec().decrypt(blob)


def rotate_encryption_secret(old_secret: str, new_secret: str, blob: bytes) -> bytes:
    """Re-encrypt a blob under a new secret.

    Used during secret rotation to migrate stored credentials.

    Raises:
        DecryptionError: If the blob was not sealed with `old_secret`
    """
    credentials = CredentialCodec(old_secret).decrypt(blob)
    return CredentialCodec(new_secret).encrypt(credentials)


def reset_codec() -> None:
    """Reset the cached codec instance.

    Call this if the configuration changes (e.g., in tests).
    """
    global _codec
    _codec = None
