"""Encrypted request envelope: AES-256-CBC payloads, HMAC signatures, replay window.

Clients encrypt the JSON request body with a key shared with the server,
sign ``ciphertext_hex + timestamp`` with HMAC-SHA256 and send::

    headers: X-Encrypted-Request: true, X-IV, X-Signature, X-Timestamp
    body:    {"encrypted": <hex>, "iv": <hex>, "timestamp": <ms>}

The ciphertext travels in the body because payloads (conversation history,
inline images) can exceed practical header sizes.

The key string is used as raw key bytes when it is 64 hex characters,
otherwise it is hashed with SHA-256.  There is a single key for the process
lifetime and no key-version field in the envelope.
"""
from __future__ import annotations

import hashlib
import hmac
import json
import math
import os
import re
from dataclasses import dataclass
from typing import Any, Dict, Optional, Tuple, Union

from cryptography.hazmat.primitives import padding
from cryptography.hazmat.primitives.ciphers import Cipher, algorithms, modes

from gatekeeper.clock import Clock, SystemClock
from gatekeeper.errors import DecryptionError

IV_SIZE = 16
DEFAULT_MAX_AGE_MS = 300_000

_HEX_KEY_RE = re.compile(r"^[0-9a-f]{64}$", re.IGNORECASE)


def derive_key(key: str) -> bytes:
    """Turn the configured key string into 32 bytes of AES/HMAC key material."""
    if not key:
        raise ValueError("encryption key must not be empty")
    if _HEX_KEY_RE.match(key):
        return bytes.fromhex(key)
    return hashlib.sha256(key.encode("utf-8")).digest()


@dataclass(frozen=True)
class EncryptedEnvelope:
    ciphertext_hex: str
    iv_hex: str
    timestamp_ms: int

    def to_dict(self) -> Dict[str, Any]:
        """Wire form used as the request body."""
        return {"encrypted": self.ciphertext_hex, "iv": self.iv_hex, "timestamp": self.timestamp_ms}


class PayloadCipher:
    """AES-256-CBC with PKCS#7 padding over compact JSON."""

    def __init__(self, key: str, clock: Optional[Clock] = None):
        self._key = derive_key(key)
        self.clock = clock or SystemClock()

    def encrypt(self, data: Any) -> EncryptedEnvelope:
        # A fresh IV per call; never reuse one with the same key
        iv = os.urandom(IV_SIZE)
        plaintext = json.dumps(data, separators=(",", ":"), ensure_ascii=False).encode("utf-8")

        padder = padding.PKCS7(algorithms.AES.block_size).padder()
        padded = padder.update(plaintext) + padder.finalize()

        encryptor = Cipher(algorithms.AES(self._key), modes.CBC(iv)).encryptor()
        ciphertext = encryptor.update(padded) + encryptor.finalize()

        return EncryptedEnvelope(
            ciphertext_hex=ciphertext.hex(),
            iv_hex=iv.hex(),
            timestamp_ms=self.clock.now_ms(),
        )

    def decrypt(self, ciphertext_hex: str, iv_hex: str) -> Any:
        """Decrypt and parse the payload.  Raises DecryptionError on any failure."""
        try:
            ciphertext = bytes.fromhex(ciphertext_hex)
            iv = bytes.fromhex(iv_hex)
        except (TypeError, ValueError) as exc:
            raise DecryptionError(f"malformed hex input: {exc}") from exc

        if len(iv) != IV_SIZE:
            raise DecryptionError(f"IV must be {IV_SIZE} bytes, got {len(iv)}")
        if not ciphertext or len(ciphertext) % IV_SIZE != 0:
            raise DecryptionError("ciphertext length is not a multiple of the block size")

        decryptor = Cipher(algorithms.AES(self._key), modes.CBC(iv)).decryptor()
        padded = decryptor.update(ciphertext) + decryptor.finalize()

        try:
            unpadder = padding.PKCS7(algorithms.AES.block_size).unpadder()
            plaintext = unpadder.update(padded) + unpadder.finalize()
        except ValueError as exc:
            raise DecryptionError("invalid padding") from exc

        try:
            return json.loads(plaintext.decode("utf-8"))
        except (UnicodeDecodeError, ValueError) as exc:
            raise DecryptionError(f"payload is not valid UTF-8 JSON: {exc}") from exc


class RequestSigner:
    """HMAC-SHA256 over ``ciphertext_hex`` immediately followed by the timestamp."""

    def __init__(self, key: str):
        self._key = derive_key(key)

    def _digest(self, ciphertext_hex: str, timestamp_ms: Union[int, str]) -> bytes:
        message = f"{ciphertext_hex}{timestamp_ms}".encode("utf-8")
        return hmac.new(self._key, message, hashlib.sha256).digest()

    def sign(self, ciphertext_hex: str, timestamp_ms: Union[int, str]) -> str:
        return self._digest(ciphertext_hex, timestamp_ms).hex()

    def verify(self, ciphertext_hex: str, timestamp_ms: Union[int, str], signature_hex: str) -> bool:
        try:
            supplied = bytes.fromhex(signature_hex)
        except (TypeError, ValueError):
            return False
        return hmac.compare_digest(supplied, self._digest(ciphertext_hex, timestamp_ms))


def parse_timestamp(value: Union[int, float, str, None]) -> Optional[int]:
    """Parse a millisecond timestamp from a header or body value.

    Returns None for anything that is not a finite number (including
    ``"1e400"``, ``Infinity`` and ``NaN``).
    """
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, float):
        return int(value) if math.isfinite(value) else None
    text = str(value).strip()
    try:
        return int(text)
    except ValueError:
        pass
    try:
        parsed = float(text)
    except (ValueError, OverflowError):
        return None
    return int(parsed) if math.isfinite(parsed) else None


class ReplayGuard:
    """Symmetric freshness window: rejects stale and future-dated timestamps."""

    def __init__(self, clock: Optional[Clock] = None, max_age_ms: int = DEFAULT_MAX_AGE_MS):
        self.clock = clock or SystemClock()
        self.max_age_ms = int(max_age_ms)

    def is_timestamp_valid(
        self,
        timestamp_ms: Union[int, float, str, None],
        max_age_ms: Optional[int] = None,
    ) -> bool:
        ts = parse_timestamp(timestamp_ms)
        if ts is None:
            return False
        window = self.max_age_ms if max_age_ms is None else int(max_age_ms)
        return abs(self.clock.now_ms() - ts) <= window


def build_encrypted_request(
    cipher: PayloadCipher,
    signer: RequestSigner,
    data: Any,
) -> Tuple[Dict[str, str], Dict[str, Any]]:
    """Produce the headers and body an encrypting client sends."""
    envelope = cipher.encrypt(data)
    signature = signer.sign(envelope.ciphertext_hex, envelope.timestamp_ms)
    headers = {
        "X-Encrypted-Request": "true",
        "X-IV": envelope.iv_hex,
        "X-Signature": signature,
        "X-Timestamp": str(envelope.timestamp_ms),
        "Content-Type": "application/json",
    }
    return headers, envelope.to_dict()


__all__ = [
    "EncryptedEnvelope",
    "PayloadCipher",
    "RequestSigner",
    "ReplayGuard",
    "build_encrypted_request",
    "derive_key",
    "parse_timestamp",
]
