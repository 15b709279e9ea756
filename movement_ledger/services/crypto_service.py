"""
Crypto Service - authenticated encryption of the sensitive movement payload

Blob layout: nonce (12 bytes) || ciphertext || tag (16 bytes), base64 encoded
for storage in a text column.
"""
import base64
import binascii
import json
import os
from typing import Any, Dict

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from movement_ledger.core.exceptions import IntegrityError

KEY_SIZE = 32
NONCE_SIZE = 12
TAG_SIZE = 16


class PayloadCipher:
    """AES-256-GCM with a fresh random nonce per call"""

    def __init__(self, key: bytes):
        if len(key) != KEY_SIZE:
            raise ValueError(f"Encryption key must be {KEY_SIZE} bytes, got {len(key)}")
        self._aead = AESGCM(key)

    @classmethod
    def from_base64(cls, encoded_key: str) -> "PayloadCipher":
        if not encoded_key:
            raise ValueError("ENCRYPTION_KEY is not configured")
        try:
            key = base64.b64decode(encoded_key, validate=True)
        except (binascii.Error, ValueError) as e:
            raise ValueError(f"ENCRYPTION_KEY is not valid base64: {e}")
        return cls(key)

    def encrypt(self, plaintext: bytes) -> bytes:
        nonce = os.urandom(NONCE_SIZE)
        return nonce + self._aead.encrypt(nonce, plaintext, None)

    def decrypt(self, blob: bytes) -> bytes:
        if len(blob) < NONCE_SIZE + TAG_SIZE:
            raise IntegrityError("Encrypted payload is truncated")
        nonce, ciphertext = blob[:NONCE_SIZE], blob[NONCE_SIZE:]
        try:
            return self._aead.decrypt(nonce, ciphertext, None)
        except InvalidTag:
            raise IntegrityError("Encrypted payload failed authentication")

    def encrypt_payload(self, payload: Dict[str, Any]) -> str:
        plaintext = json.dumps(payload, sort_keys=True, default=str).encode("utf-8")
        return base64.b64encode(self.encrypt(plaintext)).decode("ascii")

    def decrypt_payload(self, encoded: str) -> Dict[str, Any]:
        try:
            blob = base64.b64decode(encoded, validate=True)
        except (binascii.Error, ValueError, TypeError):
            raise IntegrityError("Encrypted payload is not valid base64")
        plaintext = self.decrypt(blob)
        try:
            return json.loads(plaintext)
        except ValueError:
            raise IntegrityError("Decrypted payload is not valid JSON")
