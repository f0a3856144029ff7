"""
Unit tests for field-level encryption.
"""
import base64
import os

import pytest
from pydantic import ValidationError

from email_precis.config import Config
from email_precis.errors import EncryptionError
from email_precis.models.storage import EncryptedField
from email_precis.services.crypto import FieldCipher, get_cipher, encrypt_field, decrypt_field


def _flip_first_byte(value: str) -> str:
    raw = bytearray(base64.b64decode(value))
    raw[0] ^= 0x01
    return base64.b64encode(bytes(raw)).decode("ascii")


class TestFieldCipher:
    """AES-GCM encrypt/decrypt"""

    @pytest.mark.parametrize("plaintext", ["", "a", "Jane Doe <jane@example.com>", "ünïcødé ✉", "x" * 10_000])
    def test_round_trip(self, cipher, plaintext):
        assert cipher.decrypt(cipher.encrypt(plaintext)) == plaintext

    def test_fresh_nonce_per_encryption(self, cipher):
        first = cipher.encrypt("same value")
        second = cipher.encrypt("same value")

        assert first.nonce != second.nonce
        assert first.ciphertext != second.ciphertext

    def test_field_layout(self, cipher):
        field = cipher.encrypt("hello")

        assert len(base64.b64decode(field.nonce)) == 12
        assert len(base64.b64decode(field.auth_tag)) == 16
        assert len(base64.b64decode(field.ciphertext)) == len("hello")
        assert set(field.model_dump(by_alias=True)) == {"ciphertext", "authTag", "nonce"}

    def test_tampered_ciphertext_fails(self, cipher):
        field = cipher.encrypt("sensitive")
        tampered = field.model_copy(update={"ciphertext": _flip_first_byte(field.ciphertext)})

        with pytest.raises(EncryptionError):
            cipher.decrypt(tampered)

    def test_tampered_tag_fails(self, cipher):
        field = cipher.encrypt("sensitive")
        tampered = field.model_copy(update={"auth_tag": _flip_first_byte(field.auth_tag)})

        with pytest.raises(EncryptionError):
            cipher.decrypt(tampered)

    def test_truncated_tag_fails(self, cipher):
        field = cipher.encrypt("sensitive")
        tampered = field.model_copy(update={"auth_tag": base64.b64encode(b"short").decode()})

        with pytest.raises(EncryptionError):
            cipher.decrypt(tampered)

    def test_wrong_key_fails(self, cipher):
        field = cipher.encrypt("sensitive")

        with pytest.raises(EncryptionError):
            FieldCipher(os.urandom(32)).decrypt(field)

    def test_malformed_base64_fails(self, cipher):
        field = cipher.encrypt("sensitive")

        with pytest.raises(EncryptionError):
            cipher.decrypt(field.model_copy(update={"ciphertext": "***"}))

    def test_json_round_trip(self, cipher):
        value = {"senderName": "Acme", "recipientNames": ["Jane", "Bob"]}

        assert cipher.decrypt_json(cipher.encrypt_json(value)) == value

    @pytest.mark.parametrize("size", [0, 16, 31, 33])
    def test_bad_key_length_rejected(self, size):
        with pytest.raises(EncryptionError):
            FieldCipher(os.urandom(size))


class TestLegacyNonce:
    """Fields stored without their own nonce"""

    def test_legacy_field_decrypts_with_configured_nonce(self):
        from cryptography.hazmat.primitives.ciphers.aead import AESGCM

        key, nonce = os.urandom(32), os.urandom(12)
        sealed = AESGCM(key).encrypt(nonce, b"old record", None)
        legacy = EncryptedField(
            ciphertext=base64.b64encode(sealed[:-16]).decode(),
            auth_tag=base64.b64encode(sealed[-16:]).decode(),
        )

        assert FieldCipher(key, legacy_nonce=nonce).decrypt(legacy) == "old record"

    def test_legacy_field_without_configured_nonce_fails(self, cipher):
        field = cipher.encrypt("value")
        legacy = field.model_copy(update={"nonce": None})

        with pytest.raises(EncryptionError):
            cipher.decrypt(legacy)

    def test_new_encryptions_never_use_legacy_nonce(self):
        nonce = os.urandom(12)
        field = FieldCipher(os.urandom(32), legacy_nonce=nonce).encrypt("value")

        assert base64.b64decode(field.nonce) != nonce

    def test_bad_legacy_nonce_length_rejected(self):
        with pytest.raises(EncryptionError):
            FieldCipher(os.urandom(32), legacy_nonce=os.urandom(16))


class TestConfiguredCipher:
    """Process-wide cipher built from settings"""

    def test_module_helpers_round_trip(self):
        assert decrypt_field(encrypt_field("configured")) == "configured"
        assert get_cipher() is get_cipher()

    @pytest.mark.parametrize("key", ["abcd", "zz" * 32, "00" * 16, "00" * 33])
    def test_invalid_key_fails_at_startup(self, monkeypatch, key):
        monkeypatch.setenv("ENCRYPTION_KEY", key)

        with pytest.raises(ValidationError):
            Config()

    def test_invalid_legacy_nonce_fails_at_startup(self, monkeypatch):
        monkeypatch.setenv("LEGACY_NONCE", "00" * 8)

        with pytest.raises(ValidationError):
            Config()

    def test_valid_material_accepted(self, monkeypatch):
        monkeypatch.setenv("ENCRYPTION_KEY", "ab" * 32)
        monkeypatch.setenv("LEGACY_NONCE", "cd" * 12)

        cfg = Config()

        assert cfg.key_bytes == bytes.fromhex("ab" * 32)
        assert cfg.legacy_nonce_bytes == bytes.fromhex("cd" * 12)
        assert "abab" not in str(cfg)
