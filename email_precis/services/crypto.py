"""
Field-level encryption for personal data stored in Firestore.

AES-256-GCM with a fresh 96-bit nonce per value. The nonce is stored next to
the ciphertext; the authentication tag is split off and stored separately
so any change to either part fails decryption.
"""

import base64
import json
import os
from typing import Any, Optional

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from email_precis.config import CFG
from email_precis.errors import EncryptionError
from email_precis.models.storage import EncryptedField
from email_precis.utils.logger import logger

KEY_SIZE = 32
NONCE_SIZE = 12
TAG_SIZE = 16


def _b64(raw: bytes) -> str:
    return base64.b64encode(raw).decode("ascii")


def _unb64(value: str, name: str) -> bytes:
    try:
        return base64.b64decode(value, validate=True)
    except ValueError:
        raise EncryptionError(f"Encrypted field has a malformed {name}")


class FieldCipher:
    """
    Encrypts and decrypts single string values.

    ``legacy_nonce`` is only used to read fields that were stored without
    their own nonce; it is never used to encrypt.
    """

    def __init__(self, key: bytes, legacy_nonce: Optional[bytes] = None):
        if len(key) != KEY_SIZE:
            raise EncryptionError(f"Encryption key must be {KEY_SIZE} bytes, got {len(key)}")
        if legacy_nonce is not None and len(legacy_nonce) != NONCE_SIZE:
            raise EncryptionError(
                f"Legacy nonce must be {NONCE_SIZE} bytes, got {len(legacy_nonce)}"
            )
        self._aead = AESGCM(key)
        self._legacy_nonce = legacy_nonce

    def encrypt(self, plaintext: str) -> EncryptedField:
        nonce = os.urandom(NONCE_SIZE)
        sealed = self._aead.encrypt(nonce, plaintext.encode("utf-8"), None)
        return EncryptedField(
            ciphertext=_b64(sealed[:-TAG_SIZE]),
            auth_tag=_b64(sealed[-TAG_SIZE:]),
            nonce=_b64(nonce),
        )

    def decrypt(self, field: EncryptedField) -> str:
        if field.nonce is not None:
            nonce = _unb64(field.nonce, "nonce")
        elif self._legacy_nonce is not None:
            nonce = self._legacy_nonce
        else:
            raise EncryptionError("Encrypted field has no nonce and no legacy nonce is configured")

        tag = _unb64(field.auth_tag, "auth tag")
        if len(nonce) != NONCE_SIZE or len(tag) != TAG_SIZE:
            raise EncryptionError("Encrypted field has a nonce or auth tag of the wrong length")

        try:
            plaintext = self._aead.decrypt(nonce, _unb64(field.ciphertext, "ciphertext") + tag, None)
        except InvalidTag:
            raise EncryptionError("Authentication failed, encrypted field was tampered with or the key is wrong")
        return plaintext.decode("utf-8")

    def encrypt_json(self, value: Any) -> EncryptedField:
        """Encrypts any JSON-serialisable value (lists, entity objects)."""
        return self.encrypt(json.dumps(value, ensure_ascii=False, default=str))

    def decrypt_json(self, field: EncryptedField) -> Any:
        return json.loads(self.decrypt(field))


cipher: Optional[FieldCipher] = None


def get_cipher() -> FieldCipher:
    """
    Returns the process-wide cipher built from ``CFG``. Called once at
    startup so a bad key stops the service before any request is served.
    """
    global cipher
    if cipher is None:
        cipher = FieldCipher(CFG.key_bytes, CFG.legacy_nonce_bytes)
        logger.info("Field encryption initialized")
    return cipher


def encrypt_field(plaintext: str) -> EncryptedField:
    return get_cipher().encrypt(plaintext)


def decrypt_field(field: EncryptedField) -> str:
    return get_cipher().decrypt(field)
