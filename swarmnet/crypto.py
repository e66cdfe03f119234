# Copyright (c) Microsoft Corporation. All rights reserved.
# Licensed under the Apache 2.0 License.

from typing import Optional
import base64
import hashlib
import secrets

from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives.asymmetric import ed25519
from cryptography.hazmat.primitives.serialization import (
    Encoding,
    PrivateFormat,
    PublicFormat,
    NoEncryption,
)

ADDRESS_LENGTH = 20
PRIVATE_KEY_LENGTH = 32


def b64encode(data: bytes) -> str:
    return base64.b64encode(data).decode("ascii")


def b64decode(data: str) -> bytes:
    return base64.b64decode(data.encode("ascii"), validate=True)


def address_from_public_key(public_key: bytes) -> str:
    return "0x" + hashlib.sha3_256(public_key).digest()[:ADDRESS_LENGTH].hex()


def digest(data: bytes) -> str:
    return hashlib.sha3_256(data).hexdigest()


def derive_seed(seed: int, label: str, index: int) -> bytes:
    """
    Derive the 32 bytes of private key material for the ``index``-th key of
    family ``label`` from an integer seed, so that a seeded genesis always
    produces the same keys.
    """
    material = f"{seed}:{label}:{index}".encode()
    return hashlib.sha256(material).digest()


class KeyPair:
    """
    Ed25519 signing keypair identifying an account or a node.
    """

    def __init__(self, private_key: ed25519.Ed25519PrivateKey):
        self._private_key = private_key
        self.public_key = private_key.public_key().public_bytes(
            Encoding.Raw, PublicFormat.Raw
        )
        self.address = address_from_public_key(self.public_key)

    @staticmethod
    def generate(seed: Optional[bytes] = None) -> "KeyPair":
        if seed is None:
            seed = secrets.token_bytes(PRIVATE_KEY_LENGTH)
        return KeyPair(ed25519.Ed25519PrivateKey.from_private_bytes(seed))

    @staticmethod
    def from_private_bytes(raw: bytes) -> "KeyPair":
        if len(raw) != PRIVATE_KEY_LENGTH:
            raise ValueError(
                f"Ed25519 private key must be {PRIVATE_KEY_LENGTH} bytes, got {len(raw)}"
            )
        return KeyPair(ed25519.Ed25519PrivateKey.from_private_bytes(raw))

    def private_bytes(self) -> bytes:
        return self._private_key.private_bytes(
            Encoding.Raw, PrivateFormat.Raw, NoEncryption()
        )

    def public_key_b64(self) -> str:
        return b64encode(self.public_key)

    def sign(self, data: bytes) -> bytes:
        return self._private_key.sign(data)

    def copy(self) -> "KeyPair":
        return KeyPair.from_private_bytes(self.private_bytes())

    def __eq__(self, other):
        return isinstance(other, KeyPair) and self.private_bytes() == other.private_bytes()

    def __hash__(self):
        return hash(self.public_key)

    def __repr__(self):
        return f"KeyPair({self.address})"


def verify_signature(signature: bytes, data: bytes, public_key: bytes) -> bool:
    try:
        ed25519.Ed25519PublicKey.from_public_bytes(public_key).verify(signature, data)
        return True
    except (InvalidSignature, ValueError):
        return False
