"""
Trade Pipeline - Secret Store.

============================================================
PURPOSE
============================================================
Scoped access to encrypted agent keys and exchange
credentials.

FORMAT:
    iv:tag:ciphertext, each hex, AES-256-GCM, 12-byte IV,
    16-byte tag.

SECURITY REQUIREMENTS:
1. Plaintext only exists inside a reveal() block
2. The plaintext buffer is zeroed when the block exits
3. Plaintext never appears in repr(), logs or the store

============================================================
"""

import base64
import binascii
import json
import logging
import os
import re
from contextlib import contextmanager
from typing import Any, Dict, Iterator, Optional

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from .config import SecretsConfig
from .types import SecretError


logger = logging.getLogger(__name__)

IV_LENGTH = 12
TAG_LENGTH = 16
_HEX_KEY = re.compile(r"^[0-9a-fA-F]{64}$")


def parse_encryption_key(raw: Optional[str]) -> bytes:
    """Accept 64 hex chars or base64 for a 32-byte key."""
    if not raw:
        raise SecretError("AGENT_ENCRYPTION_KEY is not set")
    if _HEX_KEY.match(raw):
        return bytes.fromhex(raw)
    try:
        key = base64.b64decode(raw, validate=True)
    except binascii.Error as e:
        raise SecretError("AGENT_ENCRYPTION_KEY is neither hex nor base64") from e
    if len(key) != 32:
        raise SecretError("AGENT_ENCRYPTION_KEY must be 32 bytes (64 hex chars or base64)")
    return key


# ============================================================
# PLAINTEXT HANDLE
# ============================================================

class Plaintext:
    """
    Revealed secret, valid only inside its reveal() block.

    Access after release raises SecretError.
    """

    __slots__ = ("_buffer", "_released")

    def __init__(self, buffer: bytearray):
        self._buffer = buffer
        self._released = False

    def _check(self) -> None:
        if self._released:
            raise SecretError("Secret accessed after release")

    def as_bytes(self) -> bytes:
        self._check()
        return bytes(self._buffer)

    def as_text(self) -> str:
        self._check()
        return self._buffer.decode("utf-8")

    def as_json(self) -> Dict[str, Any]:
        self._check()
        try:
            return json.loads(self._buffer.decode("utf-8"))
        except ValueError as e:
            raise SecretError("Secret is not valid JSON") from e

    def release(self) -> None:
        for i in range(len(self._buffer)):
            self._buffer[i] = 0
        self._released = True

    @property
    def released(self) -> bool:
        return self._released

    def __repr__(self) -> str:
        return "Plaintext(***)"

    __str__ = __repr__


# ============================================================
# SECRET STORE
# ============================================================

class SecretStore:
    """AES-256-GCM encryption at rest with scoped reveal."""

    def __init__(self, key: bytes):
        if len(key) != 32:
            raise SecretError("Encryption key must be 32 bytes")
        self._aead = AESGCM(key)

    @classmethod
    def from_config(cls, config: SecretsConfig) -> "SecretStore":
        return cls(parse_encryption_key(config.encryption_key))

    def encrypt(self, plaintext: str) -> str:
        """Encrypt to iv:tag:ciphertext hex."""
        iv = os.urandom(IV_LENGTH)
        sealed = self._aead.encrypt(iv, plaintext.encode("utf-8"), None)
        ciphertext, tag = sealed[:-TAG_LENGTH], sealed[-TAG_LENGTH:]
        return f"{iv.hex()}:{tag.hex()}:{ciphertext.hex()}"

    def _decrypt(self, ref: str) -> bytearray:
        parts = (ref or "").split(":")
        if len(parts) != 3 or not all(parts):
            raise SecretError("Invalid encrypted secret format")
        try:
            iv, tag, ciphertext = (bytes.fromhex(p) for p in parts)
        except ValueError as e:
            raise SecretError("Encrypted secret is not hex") from e
        try:
            return bytearray(self._aead.decrypt(iv, ciphertext + tag, None))
        except InvalidTag as e:
            raise SecretError("Secret failed authentication") from e

    @contextmanager
    def reveal(self, ref: str) -> Iterator[Plaintext]:
        """
        Decrypt for the duration of a with-block.

        Usage:
            with store.reveal(agent.encrypted_private_key) as key:
                sign(key.as_text())
        """
        plaintext = Plaintext(self._decrypt(ref))
        try:
            yield plaintext
        finally:
            plaintext.release()
