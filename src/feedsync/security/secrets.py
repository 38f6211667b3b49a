from __future__ import annotations

import base64
import binascii
import os

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.hkdf import HKDF

MASTER_KEY_ENV = "FS_MASTER_KEY"
KEY_ID_ENV = "FS_KEY_ID"

DEFAULT_KEY_ID = "v1"
HKDF_INFO = b"feedsync:credentials:v1"
NONCE_SIZE = 12


class CryptoError(ValueError):
    pass


def derive_key(master_b64: str) -> bytes:
    """Turn the base64url master key into the AES-256 key used for credentials."""
    if not master_b64:
        raise CryptoError(f"Master key is not set. Set {MASTER_KEY_ENV}.")
    master = _b64decode(master_b64, "Master key is not valid base64url")
    if len(master) != 32:
        raise CryptoError("Master key must be 32 bytes (base64url encoded)")
    return HKDF(algorithm=hashes.SHA256(), length=32, salt=None, info=HKDF_INFO).derive(master)


class CredentialCodec:
    """Encrypts source credentials with AES-GCM, bound to the provider type.

    Stored values look like ``<key_id>:<base64url(nonce + ciphertext)>``. The
    master key is read from the environment on each call, so a process
    without ``FS_MASTER_KEY`` can still run sources that carry no credential.
    """

    def __init__(
        self,
        master_key: str | None = None,
        key_id: str | None = None,
        aad_prefix: bytes = b"source-credential",
    ) -> None:
        self._master_key = master_key
        self._key_id = key_id
        self._aad_prefix = aad_prefix

    @property
    def key_id(self) -> str:
        return self._key_id or os.environ.get(KEY_ID_ENV) or DEFAULT_KEY_ID

    def encrypt(self, plaintext: str, provider_type: str) -> str:
        aesgcm = self._cipher()
        nonce = os.urandom(NONCE_SIZE)
        sealed = aesgcm.encrypt(nonce, plaintext.encode("utf-8"), self._aad(provider_type))
        return f"{self.key_id}:{base64.urlsafe_b64encode(nonce + sealed).decode('ascii')}"

    def decrypt(self, stored: str, provider_type: str) -> str:
        if not stored:
            raise CryptoError("credential is empty")
        _, _, blob = stored.rpartition(":")
        data = _b64decode(blob, "credential blob is not valid base64url")
        if len(data) <= NONCE_SIZE:
            raise CryptoError("credential blob is truncated")
        aesgcm = self._cipher()
        try:
            plaintext = aesgcm.decrypt(data[:NONCE_SIZE], data[NONCE_SIZE:], self._aad(provider_type))
        except InvalidTag as exc:
            raise CryptoError("credential could not be decrypted") from exc
        return plaintext.decode("utf-8")

    def _cipher(self) -> AESGCM:
        master = self._master_key if self._master_key is not None else os.environ.get(MASTER_KEY_ENV, "")
        return AESGCM(derive_key(master))

    def _aad(self, provider_type: str) -> bytes:
        return self._aad_prefix + b":" + provider_type.encode("utf-8")


def _b64decode(value: str, message: str) -> bytes:
    try:
        return base64.urlsafe_b64decode(value + "=" * (-len(value) % 4))
    except (binascii.Error, ValueError) as exc:
        raise CryptoError(message) from exc
