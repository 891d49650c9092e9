"""Authenticated encryption for chat turns stored at rest.

Plaintext is XORed with an HMAC-SHA256 keystream and sealed with an
HMAC-SHA256 tag computed over the associated data, the IV and the
ciphertext (encrypt-then-MAC). Encryption and MAC keys are derived from the
master key so the two never share material.

Security note: the associated data binds a ciphertext to its owner. A
payload copied to another owner, or tampered with in any byte, fails tag
verification and raises `IntegrityError` instead of returning wrong text.
Keep the master key out of version control.
"""

from __future__ import annotations

import base64
import hmac
import os
import struct
from dataclasses import dataclass
from hashlib import sha256

from .errors import IntegrityError

IV_BYTES = 12
TAG_BYTES = 16


@dataclass(frozen=True)
class EncryptedPayload:
    cipher_text: str
    iv: str
    auth_tag: str


def _subkey(key: bytes, label: bytes) -> bytes:
    return hmac.new(key, b"companion:" + label, sha256).digest()


def _keystream(key: bytes, nonce: bytes, length: int) -> bytes:
    out = bytearray()
    counter = 0
    while len(out) < length:
        msg = nonce + struct.pack(">I", counter)
        block = hmac.new(key, msg, sha256).digest()
        out.extend(block)
        counter += 1
    return bytes(out[:length])


def _tag(key: bytes, aad: bytes, iv: bytes, ct: bytes) -> bytes:
    mac = hmac.new(_subkey(key, b"mac"), digestmod=sha256)
    mac.update(struct.pack(">Q", len(aad)))
    mac.update(aad)
    mac.update(iv)
    mac.update(ct)
    return mac.digest()[:TAG_BYTES]


def encrypt(plaintext: str, key: bytes, aad: str = "") -> EncryptedPayload:
    data = plaintext.encode("utf-8")
    iv = os.urandom(IV_BYTES)
    ks = _keystream(_subkey(key, b"enc"), iv, len(data))
    ct = bytes([a ^ b for a, b in zip(data, ks)])
    tag = _tag(key, aad.encode("utf-8"), iv, ct)
    return EncryptedPayload(
        cipher_text=base64.b64encode(ct).decode("ascii"),
        iv=base64.b64encode(iv).decode("ascii"),
        auth_tag=base64.b64encode(tag).decode("ascii"),
    )


def decrypt(payload: EncryptedPayload, key: bytes, aad: str = "") -> str:
    try:
        ct = base64.b64decode(payload.cipher_text.encode("ascii"), validate=True)
        iv = base64.b64decode(payload.iv.encode("ascii"), validate=True)
        tag = base64.b64decode(payload.auth_tag.encode("ascii"), validate=True)
    except (ValueError, UnicodeEncodeError) as exc:
        raise IntegrityError("Encrypted payload is malformed.") from exc

    if len(iv) != IV_BYTES or len(tag) != TAG_BYTES:
        raise IntegrityError("Encrypted payload is malformed.")

    expected = _tag(key, aad.encode("utf-8"), iv, ct)
    if not hmac.compare_digest(expected, tag):
        raise IntegrityError("Encrypted payload failed authentication.")

    ks = _keystream(_subkey(key, b"enc"), iv, len(ct))
    pt = bytes([a ^ b for a, b in zip(ct, ks)])
    return pt.decode("utf-8")


def owner_aad(owner_id: str) -> str:
    return f"companion:{owner_id}"


def encrypt_for_owner(owner_id: str, plaintext: str, key: bytes) -> EncryptedPayload:
    return encrypt(plaintext, key, owner_aad(owner_id))


def decrypt_for_owner(owner_id: str, payload: EncryptedPayload, key: bytes) -> str:
    return decrypt(payload, key, owner_aad(owner_id))


def content_hash(value: str) -> str:
    return sha256(value.encode("utf-8")).hexdigest()
