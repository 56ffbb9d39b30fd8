"""
Tests for the AES-GCM token key ring.
"""

import base64

import pytest

from publishing.crypto import TokenCipher, parse_enc_keys


class TestParseEncKeys:

    def test_orders_by_version(self):
        k = base64.b64encode(b"k" * 32).decode()
        keys = parse_enc_keys(f"v10:{k},v2:{k}")
        assert list(keys) == ["v2", "v10"]

    def test_rejects_short_key(self):
        short = base64.b64encode(b"short").decode()
        with pytest.raises(RuntimeError, match="32 bytes"):
            parse_enc_keys(f"v1:{short}")

    def test_rejects_empty(self):
        with pytest.raises(RuntimeError):
            parse_enc_keys("")
        with pytest.raises(RuntimeError):
            parse_enc_keys("no-colon-here")


class TestTokenCipher:

    def test_encrypts_with_newest_key(self, enc_keys):
        cipher = TokenCipher.from_env_value(enc_keys)
        blob = cipher.encrypt({"access_token": "abc"})
        assert blob["kid"] == "v2"
        assert "abc" not in blob["data"]

    def test_old_key_still_decrypts_after_rotation(self, enc_keys):
        old_only = TokenCipher.from_env_value(enc_keys.split(",")[0])
        blob = old_only.encrypt({"access_token": "abc", "refresh_token": "r"})

        rotated = TokenCipher.from_env_value(enc_keys)
        assert rotated.decrypt(blob) == {"access_token": "abc", "refresh_token": "r"}

    def test_unknown_kid(self, enc_keys):
        cipher = TokenCipher.from_env_value(enc_keys)
        blob = cipher.encrypt({"x": 1})
        blob["kid"] = "v9"
        with pytest.raises(ValueError, match="Unknown key ID"):
            cipher.decrypt(blob)
