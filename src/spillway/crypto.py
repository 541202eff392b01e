"""Encryption keys and the block ciphers applied to spilled payloads."""

from abc import ABC, abstractmethod
from dataclasses import dataclass
import os
from typing import Any

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from typing_extensions import override

from spillway.exceptions import DecryptionError

KEY_BYTES = 32
NONCE_BYTES = 12
TAG_BYTES = 16


@dataclass(frozen=True)
class EncryptionKey:
    """AES-256 key plus a nonce identifying the key pair of one split or scan."""

    key: bytes
    nonce: bytes

    def __post_init__(self) -> None:
        if len(self.key) != KEY_BYTES:
            raise ValueError(f"key must be {KEY_BYTES} bytes")
        if len(self.nonce) != NONCE_BYTES:
            raise ValueError(f"nonce must be {NONCE_BYTES} bytes")

    def to_dict(self) -> dict[str, str]:
        return {"key": self.key.hex(), "nonce": self.nonce.hex()}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "EncryptionKey":
        return cls(bytes.fromhex(data["key"]), bytes.fromhex(data["nonce"]))

    def __repr__(self) -> str:
        return "EncryptionKey(<redacted>)"


class KeyFactory(ABC):
    """Source of fresh encryption keys."""

    @abstractmethod
    def create(self) -> EncryptionKey:
        ...


class LocalKeyFactory(KeyFactory):
    """Generate keys in-process from the OS random source."""

    @override
    def create(self) -> EncryptionKey:
        return EncryptionKey(AESGCM.generate_key(bit_length=256), os.urandom(NONCE_BYTES))


class BlockCrypto(ABC):
    """Symmetric transform applied to serialized Blocks before they are stored."""

    #: Bytes ``encrypt`` adds on top of its input.
    overhead = 0

    @abstractmethod
    def encrypt(self, data: bytes) -> bytes:
        ...

    @abstractmethod
    def decrypt(self, data: bytes) -> bytes:
        ...


class AesGcmBlockCrypto(BlockCrypto):
    """
    AES-GCM with a fresh random nonce per payload.

    A payload is ``nonce || ciphertext || tag``. The key's own nonce is bound
    as associated data, so a payload only authenticates under the exact
    key/nonce pair it was spilled with.
    """

    overhead = NONCE_BYTES + TAG_BYTES

    def __init__(self, key: EncryptionKey) -> None:
        self.key = key
        self._aead = AESGCM(key.key)

    @override
    def encrypt(self, data: bytes) -> bytes:
        nonce = os.urandom(NONCE_BYTES)
        return nonce + self._aead.encrypt(nonce, data, self.key.nonce)

    @override
    def decrypt(self, data: bytes) -> bytes:
        if len(data) < self.overhead:
            raise DecryptionError(f"Payload of {len(data)} bytes is too short to be encrypted")
        nonce, ciphertext = data[:NONCE_BYTES], data[NONCE_BYTES:]
        try:
            return self._aead.decrypt(nonce, ciphertext, self.key.nonce)
        except InvalidTag as e:
            raise DecryptionError("Payload failed authentication; wrong key or corrupted data") from e


class NoOpBlockCrypto(BlockCrypto):
    """Pass-through used when spilling without an encryption key."""

    @override
    def encrypt(self, data: bytes) -> bytes:
        return data

    @override
    def decrypt(self, data: bytes) -> bytes:
        return data


def crypto_for(key: EncryptionKey | None) -> BlockCrypto:
    """Pick the cipher for a key; None means payloads are stored in the clear."""
    if key is None:
        return NoOpBlockCrypto()
    return AesGcmBlockCrypto(key)
