"""
Crosspost Token Encryption
==========================
AES-GCM envelope for OAuth tokens at rest.

Key ring format (TOKEN_ENC_KEYS):
  v1:BASE64_32_BYTES_KEY,v2:BASE64_32_BYTES_KEY
Newest should be last. Old keys remain to decrypt.
"""

import base64
import json
import secrets
from typing import Dict

from cryptography.hazmat.primitives.ciphers.aead import AESGCM


def parse_enc_keys(raw: str) -> Dict[str, bytes]:
    if not raw:
        raise RuntimeError("TOKEN_ENC_KEYS is required")

    keys: Dict[str, bytes] = {}
    clean = raw.strip().strip('"').replace("\\n", "")
    parts = [p.strip() for p in clean.split(",") if p.strip()]

    for part in parts:
        if ":" not in part:
            continue
        kid, b64key = part.split(":", 1)
        key = base64.b64decode(b64key.strip())
        if len(key) != 32:
            raise RuntimeError(f"TOKEN_ENC_KEYS invalid: {kid} must decode to 32 bytes")
        keys[kid.strip()] = key

    if not keys:
        raise RuntimeError("TOKEN_ENC_KEYS parsed empty/invalid; fix env var.")

    def _ver(k: str) -> int:
        try:
            return int(k.lstrip("v"))
        except ValueError:
            return 0

    ordered = sorted(keys.keys(), key=_ver)
    return {k: keys[k] for k in ordered}


class TokenCipher:
    """Encrypts dicts with the newest key; decrypts with whichever key the blob names."""

    def __init__(self, keys: Dict[str, bytes]):
        if not keys:
            raise ValueError("At least one encryption key is required")
        self.keys = keys
        self.current_kid = list(keys.keys())[-1]

    @classmethod
    def from_env_value(cls, raw: str) -> "TokenCipher":
        return cls(parse_enc_keys(raw))

    def encrypt(self, data: dict) -> dict:
        aesgcm = AESGCM(self.keys[self.current_kid])
        nonce = secrets.token_bytes(12)
        plaintext = json.dumps(data).encode("utf-8")
        ciphertext = aesgcm.encrypt(nonce, plaintext, None)
        return {
            "kid": self.current_kid,
            "nonce": base64.b64encode(nonce).decode("utf-8"),
            "data": base64.b64encode(ciphertext).decode("utf-8"),
        }

    def decrypt(self, blob: dict) -> dict:
        kid = blob.get("kid", self.current_kid)
        if kid not in self.keys:
            raise ValueError(f"Unknown key ID: {kid}")
        aesgcm = AESGCM(self.keys[kid])
        nonce = base64.b64decode(blob["nonce"])
        ciphertext = base64.b64decode(blob["data"])
        return json.loads(aesgcm.decrypt(nonce, ciphertext, None))
