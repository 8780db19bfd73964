import hashlib

import pytest
from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.asymmetric import ec
from cryptography.hazmat.primitives.asymmetric.utils import Prehashed, encode_dss_signature

from idempotent_proxy.ecdsa import EcdsaError, LocalEcdsaService, public_key_with, sign_with

PATH = [b"sign_proxy_token"]
SECP256K1_ORDER = 0xFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFEBAAEDCE6AF48A03BBFD25E8CD0364141


def verifier(public_key):
    return ec.EllipticCurvePublicKey.from_encoded_point(ec.SECP256K1(), public_key)


def split(signature):
    return int.from_bytes(signature[:32], "big"), int.from_bytes(signature[32:], "big")


@pytest.mark.asyncio
async def test_public_key_shape():
    service = LocalEcdsaService(seed=b"\x01" * 32)
    response = await public_key_with(service, "dfx_test_key", PATH)
    assert len(response["public_key"]) == 33
    assert response["public_key"][0] in (2, 3)
    assert len(response["chain_code"]) == 32


@pytest.mark.asyncio
async def test_keys_are_deterministic_per_seed_and_path():
    first = LocalEcdsaService(seed=b"\x01" * 32)
    second = LocalEcdsaService(seed=b"\x01" * 32)
    other_seed = LocalEcdsaService(seed=b"\x02" * 32)
    a = await public_key_with(first, "test_key_1", PATH)
    b = await public_key_with(second, "test_key_1", PATH)
    c = await public_key_with(first, "test_key_1", [b"other"])
    d = await public_key_with(other_seed, "test_key_1", PATH)
    assert a == b
    assert a["public_key"] != c["public_key"]
    assert a["public_key"] != d["public_key"]


@pytest.mark.asyncio
async def test_signature_verifies_against_public_key():
    service = LocalEcdsaService()
    digest = hashlib.sha256(b"message").digest()
    signature = await sign_with(service, "key_1", PATH, digest)
    public_key = (await public_key_with(service, "key_1", PATH))["public_key"]
    r, s = split(signature)
    assert len(signature) == 64
    assert s <= SECP256K1_ORDER // 2
    algorithm = ec.ECDSA(Prehashed(hashes.SHA256()))
    verifier(public_key).verify(encode_dss_signature(r, s), digest, algorithm)
    other = hashlib.sha256(b"other").digest()
    with pytest.raises(InvalidSignature):
        verifier(public_key).verify(encode_dss_signature(r, s), other, algorithm)


@pytest.mark.asyncio
async def test_sign_rejects_bad_hash_length():
    with pytest.raises(EcdsaError) as info:
        await sign_with(LocalEcdsaService(), "key_1", PATH, b"short")
    assert str(info.value).startswith("sign_with_ecdsa failed (CanisterReject,")


@pytest.mark.asyncio
async def test_unknown_key_name():
    with pytest.raises(EcdsaError) as info:
        await public_key_with(LocalEcdsaService(), "missing_key", PATH)
    assert str(info.value).startswith("ecdsa_public_key failed")
    assert "missing_key" in str(info.value)


@pytest.mark.asyncio
async def test_service_accepts_custom_key_names():
    service = LocalEcdsaService(key_names=frozenset({"custom"}))
    response = await public_key_with(service, "custom", PATH)
    assert len(response["public_key"]) == 33
    with pytest.raises(EcdsaError):
        await public_key_with(service, "key_1", PATH)