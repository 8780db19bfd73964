import base64
import hashlib

import cbor2
import pytest
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.asymmetric import ec
from cryptography.hazmat.primitives.asymmetric.utils import Prehashed, encode_dss_signature

from idempotent_proxy.agent import Agent
from idempotent_proxy.cose import CoseClient
from idempotent_proxy.ecdsa import EcdsaError, LocalEcdsaService, public_key_with
from idempotent_proxy.runtime import Runtime, Trap
from idempotent_proxy.store import (
    SIGN_PROXY_TOKEN_PATH,
    Signer,
    State,
    StateStore,
    decode_state,
    encode_state,
)


def _b64decode(text: str) -> bytes:
    return base64.urlsafe_b64decode(text + "=" * (-len(text) % 4))


def _sample_state() -> State:
    return State(
        ecdsa_key_name="dfx_test_key",
        proxy_token_public_key="pk",
        proxy_token_refresh_interval=3600,
        agents=[Agent("alpha", "https://proxy.example.com", 100, "token")],
        managers={"manager-b", "manager-a"},
        allowed_callers={"old-caller"},
        callers={"caller-a": (2**100, 7)},
        subnet_size=13,
        service_fee=100_000_000,
        incoming_cycles=2**127,
        uncollectible_cycles=5,
        cose=CoseClient("cose-id", "ns"),
    )


def test_state_signer_uses_key_name_and_cose():
    state = _sample_state()
    signer = state.signer()
    assert signer.key_name == "dfx_test_key"
    assert signer.cose == CoseClient("cose-id", "ns")


def test_encode_decode_round_trip():
    state = _sample_state()
    assert decode_state(encode_state(state)) == state


def test_encoded_state_is_cbor_map_with_field_names():
    raw = cbor2.loads(encode_state(_sample_state()))
    assert raw["managers"] == ["manager-a", "manager-b"]
    assert raw["agents"][0]["name"] == "alpha"
    assert raw["cose"] == {"id": "cose-id", "namespace": "ns"}


def test_decode_defaults_optional_fields():
    data = cbor2.dumps(
        {
            "ecdsa_key_name": "k",
            "proxy_token_public_key": "",
            "proxy_token_refresh_interval": 60,
            "agents": [],
            "managers": [],
            "allowed_callers": ["x"],
        }
    )
    state = decode_state(data)
    assert state.callers == {}
    assert state.subnet_size == 0
    assert state.cose is None
    assert state.allowed_callers == {"x"}


def test_decode_rejects_missing_required_field():
    with pytest.raises(ValueError):
        decode_state(cbor2.dumps({"ecdsa_key_name": "k"}))


def test_decode_rejects_garbage():
    with pytest.raises(ValueError):
        decode_state(b"\xff\xff")


@pytest.mark.asyncio
async def test_sign_proxy_token_verifies_with_public_key():
    service = LocalEcdsaService(seed=b"s" * 32)
    runtime = Runtime()
    signer = Signer("dfx_test_key")
    token = await signer.sign_proxy_token(runtime, service, 1000, "alpha")
    expire_at, message, sig = cbor2.loads(_b64decode(token))
    assert (expire_at, message) == (1000, "alpha")
    assert len(sig) == 64

    public = await public_key_with(service, "dfx_test_key", [SIGN_PROXY_TOKEN_PATH])
    key = ec.EllipticCurvePublicKey.from_encoded_point(ec.SECP256K1(), public["public_key"])
    digest = hashlib.sha3_256(cbor2.dumps([1000, "alpha"])).digest()
    der = encode_dss_signature(int.from_bytes(sig[:32], "big"), int.from_bytes(sig[32:], "big"))
    key.verify(der, digest, ec.ECDSA(Prehashed(hashes.SHA256())))
    assert "=" not in token


@pytest.mark.asyncio
async def test_sign_proxy_token_through_cose():
    seen = []

    def sign(req):
        seen.append(req)
        return {"Ok": b"sig"}

    runtime = Runtime(canisters={"cose-id": {"ecdsa_sign": sign}})
    signer = Signer("unused", CoseClient("cose-id", "ns"))
    token = await signer.sign_proxy_token(runtime, None, 42, "beta")
    assert cbor2.loads(_b64decode(token)) == [42, "beta", b"sig"]
    assert seen[0]["derivation_path"] == [SIGN_PROXY_TOKEN_PATH]
    assert seen[0]["message"] == hashlib.sha3_256(cbor2.dumps([42, "beta"])).digest()


@pytest.mark.asyncio
async def test_signer_unknown_key_raises():
    signer = Signer("no_such_key")
    with pytest.raises(EcdsaError):
        await signer.sign_proxy_token(Runtime(), LocalEcdsaService(), 1, "m")


@pytest.mark.asyncio
async def test_signer_public_key_through_cose_is_base64url():
    key = b"\x02" + b"\xfb" * 32
    runtime = Runtime(
        canisters={"cose-id": {"ecdsa_public_key": lambda req: {"Ok": {"public_key": key}}}}
    )
    signer = Signer("unused", CoseClient("cose-id", "ns"))
    encoded = await signer.ecdsa_public_key(runtime, None)
    assert _b64decode(encoded) == key
    assert "=" not in encoded and "+" not in encoded


def test_store_membership_checks():
    store = StateStore(State(managers={"m"}, callers={"c": (0, 0)}))
    assert store.is_manager("m")
    assert not store.is_manager("c")
    assert store.is_allowed("c")
    assert not store.is_allowed("m")


def test_get_agents_returns_copies():
    store = StateStore(State(agents=[Agent("a", "e", 1)]))
    agents = store.get_agents()
    agents[0].proxy_token = "token"
    assert store.state.agents[0].proxy_token is None


def test_cycles_calculator_reflects_state():
    calc = StateStore(State(subnet_size=13, service_fee=7)).cycles_calculator()
    assert (calc.subnet_size, calc.service_fee) == (13, 7)


def test_update_caller_state_saturates_and_ignores_unknown():
    store = StateStore(State(callers={"c": (2**128 - 10, 0)}))
    store.update_caller_state("c", 100, 55)
    store.update_caller_state("unknown", 100, 55)
    assert store.state.callers == {"c": (2**128 - 1, 55)}


def test_receive_cycles_accepts_available():
    runtime = Runtime(cycles_available=1000)
    store = StateStore()
    store.receive_cycles(runtime, 600, False)
    assert store.state.incoming_cycles == 600
    assert store.state.uncollectible_cycles == 0
    assert runtime.cycles_available == 400


def test_receive_cycles_zero_is_noop():
    runtime = Runtime(cycles_available=10)
    store = StateStore()
    store.receive_cycles(runtime, 0, False)
    assert runtime.cycles_available == 10
    assert store.state.incoming_cycles == 0


def test_receive_cycles_insufficient_traps():
    runtime = Runtime(cycles_available=100)
    store = StateStore()
    with pytest.raises(Trap, match="insufficient cycles"):
        store.receive_cycles(runtime, 300, False)
    assert store.state.uncollectible_cycles == 200


def test_receive_cycles_insufficient_ignored():
    runtime = Runtime(cycles_available=100)
    store = StateStore()
    store.receive_cycles(runtime, 300, True)
    assert store.state.incoming_cycles == 100
    assert store.state.uncollectible_cycles == 200


def test_save_and_load_round_trip_migrates_allowed_callers():
    state = _sample_state()
    store = StateStore(state)
    store.save()
    store.state = State()
    store.load()
    assert store.state.allowed_callers == set()
    assert store.state.callers == {"caller-a": (2**100, 7), "old-caller": (0, 0)}
    assert store.state.agents == state.agents


def test_load_without_saved_state_gives_default():
    store = StateStore(State(ecdsa_key_name="k"))
    store.load()
    assert store.state == State()


@pytest.mark.asyncio
async def test_init_ecdsa_public_key_success():
    service = LocalEcdsaService(seed=b"q" * 32)
    runtime = Runtime()
    store = StateStore(State(ecdsa_key_name="dfx_test_key"))
    await store.init_ecdsa_public_key(runtime, service)
    expected = await Signer("dfx_test_key").ecdsa_public_key(runtime, service)
    assert store.state.proxy_token_public_key == expected
    assert runtime.logs == ["successfully retrieved ECDSA public key"]


@pytest.mark.asyncio
async def test_init_ecdsa_public_key_failure_logs():
    runtime = Runtime()
    store = StateStore(State(ecdsa_key_name="bad", proxy_token_public_key="old"))
    await store.init_ecdsa_public_key(runtime, LocalEcdsaService())
    assert store.state.proxy_token_public_key == "old"
    assert runtime.logs[0].startswith("failed to retrieve ECDSA public key: ")