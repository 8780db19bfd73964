"""Threshold ECDSA over secp256k1 and a local stand-in for the signing service."""

from __future__ import annotations

import hashlib
import os
from dataclasses import dataclass, field
from typing import Any

from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.asymmetric import ec
from cryptography.hazmat.primitives.asymmetric.utils import Prehashed, decode_dss_signature
from cryptography.hazmat.primitives.serialization import Encoding, PublicFormat

from .runtime import CallError

DEFAULT_KEY_NAMES = frozenset({"dfx_test_key", "test_key_1", "key_1"})

_CURVE_ORDER = 0xFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFEBAAEDCE6AF48A03BBFD25E8CD0364141


class EcdsaError(Exception):
    """Signing or public key retrieval failed."""


def _length_prefixed(data: bytes) -> bytes:
    return len(data).to_bytes(4, "big") + data


@dataclass
class LocalEcdsaService:
    """Derives secp256k1 keys from a seed, a key name and a derivation path.

    Rejections are raised as :class:`CallError`, as a remote service would.
    """

    seed: bytes = field(default_factory=lambda: os.urandom(32))
    key_names: frozenset[str] = DEFAULT_KEY_NAMES

    def _material(self, key_name: str, derivation_path: list[bytes]) -> bytes:
        if key_name not in self.key_names:
            raise CallError(4, f"Requested unknown threshold key: {key_name}")
        parts = [self.seed, _length_prefixed(key_name.encode())]
        parts.extend(_length_prefixed(bytes(p)) for p in derivation_path)
        return b"".join(parts)

    def _private_key(self, material: bytes) -> ec.EllipticCurvePrivateKey:
        digest = hashlib.sha256(b"key" + material).digest()
        scalar = int.from_bytes(digest, "big") % (_CURVE_ORDER - 1) + 1
        return ec.derive_private_key(scalar, ec.SECP256K1())

    async def sign_with_ecdsa(
        self, key_name: str, derivation_path: list[bytes], message_hash: bytes
    ) -> dict[str, bytes]:
        material = self._material(key_name, derivation_path)
        if len(message_hash) != 32:
            raise CallError(4, "message hash must be 32 bytes")
        key = self._private_key(material)
        der = key.sign(bytes(message_hash), ec.ECDSA(Prehashed(hashes.SHA256())))
        r, s = decode_dss_signature(der)
        if s > _CURVE_ORDER // 2:
            s = _CURVE_ORDER - s
        return {"signature": r.to_bytes(32, "big") + s.to_bytes(32, "big")}

    async def ecdsa_public_key(
        self, key_name: str, derivation_path: list[bytes]
    ) -> dict[str, bytes]:
        material = self._material(key_name, derivation_path)
        public_key = self._private_key(material).public_key().public_bytes(
            Encoding.X962, PublicFormat.CompressedPoint
        )
        chain_code = hashlib.sha256(b"chain" + material).digest()
        return {"public_key": public_key, "chain_code": chain_code}


def _describe(err: CallError) -> str:
    return f'({err.code_name}, "{err.message}")'


async def sign_with(
    service: Any, key_name: str, derivation_path: list[bytes], message_hash: bytes
) -> bytes:
    """Sign a 32-byte hash; return the 64-byte ``r || s`` signature."""
    try:
        response = await service.sign_with_ecdsa(
            key_name, list(derivation_path), bytes(message_hash)
        )
    except CallError as err:
        raise EcdsaError(f"sign_with_ecdsa failed {_describe(err)}") from err
    return response["signature"]


async def public_key_with(
    service: Any, key_name: str, derivation_path: list[bytes]
) -> dict[str, bytes]:
    """Return the ``public_key`` and ``chain_code`` for a derivation path."""
    try:
        return await service.ecdsa_public_key(key_name, list(derivation_path))
    except CallError as err:
        raise EcdsaError(f"ecdsa_public_key failed {_describe(err)}") from err