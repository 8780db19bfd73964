"""Proxy state, its stable-memory encoding, and the proxy-token signer."""

from __future__ import annotations

import base64
import hashlib
from dataclasses import dataclass, field, replace
from typing import Any

import cbor2

from .agent import Agent
from .cose import CoseClient
from .cycles import Calculator
from .ecdsa import EcdsaError, public_key_with, sign_with
from .runtime import Runtime, Trap

SIGN_PROXY_TOKEN_PATH = b"sign_proxy_token"

_U128_MAX = 2**128 - 1

_REQUIRED_FIELDS = (
    "ecdsa_key_name",
    "proxy_token_public_key",
    "proxy_token_refresh_interval",
    "agents",
    "managers",
    "allowed_callers",
)


def _saturating_add(a: int, b: int) -> int:
    return min(a + b, _U128_MAX)


def _base64_url(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).rstrip(b"=").decode()


@dataclass
class Signer:
    """Signs proxy tokens with a threshold key or through a COSE canister."""

    key_name: str
    cose: CoseClient | None = None

    async def ecdsa_public_key(self, runtime: Runtime, ecdsa_service: Any) -> str:
        """Return the base64url (unpadded) public key used for proxy tokens."""
        if self.cose is not None:
            key = await self.cose.ecdsa_public_key(runtime, [SIGN_PROXY_TOKEN_PATH])
            return _base64_url(key)
        response = await public_key_with(
            ecdsa_service, self.key_name, [SIGN_PROXY_TOKEN_PATH]
        )
        return _base64_url(response["public_key"])

    async def sign_proxy_token(
        self, runtime: Runtime, ecdsa_service: Any, expire_at: int, message: str
    ) -> str:
        """Sign a token ``(expire_at, message, signature)`` and return it base64url-encoded.

        ``expire_at`` is a UNIX timestamp in seconds; ``message`` is the agent name.
        """
        digest = hashlib.sha3_256(cbor2.dumps([expire_at, message])).digest()
        if self.cose is not None:
            sig = await self.cose.ecdsa_sign(runtime, [SIGN_PROXY_TOKEN_PATH], digest)
        else:
            sig = await sign_with(
                ecdsa_service, self.key_name, [SIGN_PROXY_TOKEN_PATH], digest
            )
        return _base64_url(cbor2.dumps([expire_at, message, bytes(sig)]))


@dataclass
class State:
    ecdsa_key_name: str = ""
    proxy_token_public_key: str = ""
    proxy_token_refresh_interval: int = 0  # seconds
    agents: list[Agent] = field(default_factory=list)
    managers: set[str] = field(default_factory=set)
    allowed_callers: set[str] = field(default_factory=set)  # deprecated
    callers: dict[str, tuple[int, int]] = field(default_factory=dict)
    subnet_size: int = 0
    service_fee: int = 0  # in cycles
    incoming_cycles: int = 0
    uncollectible_cycles: int = 0
    cose: CoseClient | None = None

    def signer(self) -> Signer:
        return Signer(key_name=self.ecdsa_key_name, cose=self.cose)


def encode_state(state: State) -> bytes:
    """Encode ``state`` as a CBOR map keyed by field name."""
    data = {
        "ecdsa_key_name": state.ecdsa_key_name,
        "proxy_token_public_key": state.proxy_token_public_key,
        "proxy_token_refresh_interval": state.proxy_token_refresh_interval,
        "agents": [
            {
                "name": a.name,
                "endpoint": a.endpoint,
                "max_cycles": a.max_cycles,
                "proxy_token": a.proxy_token,
            }
            for a in state.agents
        ],
        "managers": sorted(state.managers),
        "allowed_callers": sorted(state.allowed_callers),
        "callers": {p: list(v) for p, v in sorted(state.callers.items())},
        "subnet_size": state.subnet_size,
        "service_fee": state.service_fee,
        "incoming_cycles": state.incoming_cycles,
        "uncollectible_cycles": state.uncollectible_cycles,
        "cose": (
            None
            if state.cose is None
            else {"id": state.cose.id, "namespace": state.cose.namespace}
        ),
    }
    return cbor2.dumps(data)


def decode_state(data: bytes) -> State:
    """Decode bytes written by :func:`encode_state`; raise ValueError if malformed."""
    try:
        raw = cbor2.loads(data)
    except Exception as exc:
        raise ValueError(f"failed to decode State data: {exc}") from exc
    if not isinstance(raw, dict):
        raise ValueError("failed to decode State data: expected a map")
    missing = [name for name in _REQUIRED_FIELDS if name not in raw]
    if missing:
        raise ValueError(f"failed to decode State data: missing field {missing[0]}")
    try:
        cose = raw.get("cose")
        return State(
            ecdsa_key_name=raw["ecdsa_key_name"],
            proxy_token_public_key=raw["proxy_token_public_key"],
            proxy_token_refresh_interval=raw["proxy_token_refresh_interval"],
            agents=[
                Agent(
                    name=a["name"],
                    endpoint=a["endpoint"],
                    max_cycles=a["max_cycles"],
                    proxy_token=a.get("proxy_token"),
                )
                for a in raw["agents"]
            ],
            managers=set(raw["managers"]),
            allowed_callers=set(raw["allowed_callers"]),
            callers={p: (v[0], v[1]) for p, v in (raw.get("callers") or {}).items()},
            subnet_size=raw.get("subnet_size", 0),
            service_fee=raw.get("service_fee", 0),
            incoming_cycles=raw.get("incoming_cycles", 0),
            uncollectible_cycles=raw.get("uncollectible_cycles", 0),
            cose=None if cose is None else CoseClient(cose["id"], cose["namespace"]),
        )
    except (KeyError, TypeError, IndexError) as exc:
        raise ValueError(f"failed to decode State data: {exc}") from exc


@dataclass
class StateStore:
    """Live state plus its saved copy in stable memory."""

    state: State = field(default_factory=State)
    stable: bytes | None = None

    def get_agents(self) -> list[Agent]:
        return [replace(a) for a in self.state.agents]

    def cycles_calculator(self) -> Calculator:
        return Calculator(
            subnet_size=self.state.subnet_size, service_fee=self.state.service_fee
        )

    def is_manager(self, caller: str) -> bool:
        return caller in self.state.managers

    def is_allowed(self, caller: str) -> bool:
        return caller in self.state.callers

    def update_caller_state(self, caller: str, cycles: int, now_ms: int) -> None:
        """Add spent cycles and record the last call time for a known caller."""
        current = self.state.callers.get(caller)
        if current is not None:
            self.state.callers[caller] = (_saturating_add(current[0], cycles), now_ms)

    def receive_cycles(
        self, runtime: Runtime, cycles: int, ignore_insufficient: bool
    ) -> None:
        """Accept ``cycles`` from the message; trap on shortfall unless ignored."""
        if cycles == 0:
            return
        received = runtime.msg_cycles_accept(cycles)
        s = self.state
        s.incoming_cycles = _saturating_add(s.incoming_cycles, received)
        if cycles > received:
            s.uncollectible_cycles = _saturating_add(
                s.uncollectible_cycles, cycles - received
            )
            if not ignore_insufficient:
                raise Trap("insufficient cycles")

    def load(self) -> None:
        """Restore state from stable memory, migrating deprecated allowed callers."""
        s = decode_state(self.stable) if self.stable is not None else State()
        if s.allowed_callers:
            for p in s.allowed_callers:
                s.callers.setdefault(p, (0, 0))
            s.allowed_callers.clear()
        self.state = s

    def save(self) -> None:
        self.stable = encode_state(self.state)

    async def init_ecdsa_public_key(self, runtime: Runtime, ecdsa_service: Any) -> None:
        """Fetch the proxy-token public key and store it; log the outcome."""
        signer = self.state.signer()
        try:
            public_key = await signer.ecdsa_public_key(runtime, ecdsa_service)
        except EcdsaError as err:
            runtime.print(f"failed to retrieve ECDSA public key: {err}")
            return
        runtime.print("successfully retrieved ECDSA public key")
        self.state.proxy_token_public_key = public_key