"""
Signed OAuth state tokens

State format: "<timestamp_ms>.<nonce_hex>.<hmac_sha256_hex(timestamp_ms.nonce_hex)>"
"""

import hashlib
import hmac
import secrets
import time
from typing import Callable

from .encryption import CredentialVault

STATE_TTL_SECONDS = 10 * 60


class OAuthStateSigner:
    def __init__(
        self,
        key: bytes,
        ttl_seconds: int = STATE_TTL_SECONDS,
        clock: Callable[[], float] = time.time,
    ):
        self._key = key
        self._ttl_ms = ttl_seconds * 1000
        self._clock = clock

    @classmethod
    def from_vault(cls, vault: CredentialVault, **kwargs) -> "OAuthStateSigner":
        return cls(vault.key, **kwargs)

    def _sign(self, payload: str) -> str:
        return hmac.new(self._key, payload.encode("utf-8"), hashlib.sha256).hexdigest()

    def _now_ms(self) -> int:
        return int(self._clock() * 1000)

    def issue(self) -> str:
        payload = f"{self._now_ms()}.{secrets.token_hex(16)}"
        return f"{payload}.{self._sign(payload)}"

    def validate(self, state: str | None) -> bool:
        """Never raises - every malformed or stale state is simply invalid."""
        if not state or not isinstance(state, str):
            return False
        parts = state.split(".")
        if len(parts) != 3:
            return False
        timestamp_raw, nonce, signature = parts
        if not (timestamp_raw.isascii() and timestamp_raw.isdigit()) or not nonce:
            return False
        age = self._now_ms() - int(timestamp_raw)
        if age > self._ttl_ms:
            return False
        expected = self._sign(f"{timestamp_raw}.{nonce}")
        if len(expected) != len(signature):
            return False
        return hmac.compare_digest(expected.encode("ascii"), signature.encode("utf-8", "replace"))
