"""Authenticated encryption of custodial private keys.

Uses AES-256-GCM with a per-user key derived (PBKDF2-HMAC-SHA256) from the
process master secret. The user id is also bound as associated data, so a
blob moved to another user's record fails authentication instead of
decrypting.
"""

import base64
import binascii
import hashlib
import json
import logging
import os
import secrets
from dataclasses import dataclass

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

from custodex.errors import ConfigurationError, DecryptionError, MalformedKeyError

logger = logging.getLogger(__name__)

ALGORITHM = "aes-256-gcm"
KEY_LENGTH = 32
IV_LENGTH = 12
TAG_LENGTH = 16

_SALT_LABEL = "custodex_wallet_salt_"


@dataclass(frozen=True)
class EncryptedKey:
    """Encrypted private key as stored in the wallet record."""

    algorithm: str
    iv: bytes
    tag: bytes
    ciphertext: bytes


def generate_master_key() -> str:
    """Generate a new master encryption secret.

    Returns:
        64 hex characters (32 random bytes) suitable for WALLET_ENCRYPTION_KEY
    """
    return secrets.token_hex(KEY_LENGTH)


class KeyEncryptionService:
    """Encrypts and decrypts private key bytes per user.

    Usage:
        service = KeyEncryptionService(master_key_hex)
        blob = service.serialize_encrypted_key(service.encrypt_private_key(raw, user_id))
        raw = service.decrypt_private_key(service.deserialize_encrypted_key(blob), user_id)
    """

    def __init__(self, master_key: str, iterations: int = 100_000):
        """Initialize with the master secret.

        Args:
            master_key: 64 hex characters (32 bytes)
            iterations: PBKDF2 iteration count for per-user key derivation

        Raises:
            ConfigurationError: If the master secret is missing or malformed
        """
        if not master_key:
            raise ConfigurationError("WALLET_ENCRYPTION_KEY is required for key custody")
        if len(master_key) != KEY_LENGTH * 2:
            raise ConfigurationError("WALLET_ENCRYPTION_KEY must be 64 hex characters (32 bytes)")
        try:
            self._master_key = bytes.fromhex(master_key)
        except ValueError as e:
            raise ConfigurationError("WALLET_ENCRYPTION_KEY must be hex encoded") from e
        self._iterations = iterations

    def encrypt_private_key(self, raw_key: bytes, user_id: str) -> EncryptedKey:
        """Encrypt private key bytes for a user.

        A fresh random nonce is generated on every call.
        """
        iv = os.urandom(IV_LENGTH)
        sealed = AESGCM(self._derive_user_key(user_id)).encrypt(
            iv, bytes(raw_key), self._associated_data(user_id)
        )
        return EncryptedKey(
            algorithm=ALGORITHM,
            iv=iv,
            tag=sealed[-TAG_LENGTH:],
            ciphertext=sealed[:-TAG_LENGTH],
        )

    def decrypt_private_key(self, encrypted: EncryptedKey, user_id: str) -> bytes:
        """Decrypt private key bytes for a user.

        Raises:
            DecryptionError: If the tag does not verify (tampering, wrong user
                context, corrupted data) or the algorithm is unsupported
        """
        if encrypted.algorithm != ALGORITHM:
            raise DecryptionError(f"Unsupported encryption algorithm: {encrypted.algorithm}")
        if len(encrypted.tag) != TAG_LENGTH:
            raise DecryptionError("Authentication tag has wrong length")

        try:
            return AESGCM(self._derive_user_key(user_id)).decrypt(
                encrypted.iv,
                encrypted.ciphertext + encrypted.tag,
                self._associated_data(user_id),
            )
        except (InvalidTag, ValueError) as e:
            logger.warning(f"Private key decryption failed for user {user_id}")
            raise DecryptionError(
                "Failed to decrypt private key - possibly corrupted or wrong key"
            ) from e

    def serialize_encrypted_key(self, encrypted: EncryptedKey) -> str:
        """Serialize an encrypted key to JSON text for storage."""
        return json.dumps(
            {
                "algorithm": encrypted.algorithm,
                "iv": base64.b64encode(encrypted.iv).decode(),
                "tag": base64.b64encode(encrypted.tag).decode(),
                "ciphertext": base64.b64encode(encrypted.ciphertext).decode(),
            },
            sort_keys=True,
        )

    def deserialize_encrypted_key(self, serialized: str) -> EncryptedKey:
        """Parse stored JSON text back into an EncryptedKey.

        Accepts the legacy field name ``encryptedData`` for the ciphertext.

        Raises:
            MalformedKeyError: If the input is not a valid encrypted key structure
        """
        try:
            parsed = json.loads(serialized)
        except (TypeError, ValueError) as e:
            raise MalformedKeyError("Encrypted key is not valid JSON") from e

        if not isinstance(parsed, dict):
            raise MalformedKeyError("Encrypted key must be a JSON object")

        if "ciphertext" not in parsed and "encryptedData" in parsed:
            parsed["ciphertext"] = parsed["encryptedData"]

        fields = {}
        for name in ("algorithm", "iv", "tag", "ciphertext"):
            value = parsed.get(name)
            if not isinstance(value, str) or not value:
                raise MalformedKeyError(f"Encrypted key field '{name}' is missing or invalid")
            fields[name] = value

        try:
            return EncryptedKey(
                algorithm=fields["algorithm"],
                iv=base64.b64decode(fields["iv"], validate=True),
                tag=base64.b64decode(fields["tag"], validate=True),
                ciphertext=base64.b64decode(fields["ciphertext"], validate=True),
            )
        except (binascii.Error, ValueError) as e:
            raise MalformedKeyError("Encrypted key contains invalid base64") from e

    def validate_master_key(self) -> bool:
        """Check the master secret with an encrypt/decrypt round trip."""
        sample = bytes([1, 2, 3, 4, 5])
        try:
            encrypted = self.encrypt_private_key(sample, "master_key_check")
            return self.decrypt_private_key(encrypted, "master_key_check") == sample
        except DecryptionError:
            return False

    def _derive_user_key(self, user_id: str) -> bytes:
        """Derive the AES key for one user from the master secret."""
        salt = hashlib.sha256(f"{_SALT_LABEL}{user_id}".encode()).digest()
        kdf = PBKDF2HMAC(
            algorithm=hashes.SHA256(),
            length=KEY_LENGTH,
            salt=salt,
            iterations=self._iterations,
        )
        return kdf.derive(self._master_key)

    @staticmethod
    def _associated_data(user_id: str) -> bytes:
        return f"custodex:user:{user_id}".encode()
