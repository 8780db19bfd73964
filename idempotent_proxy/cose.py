"""Client for a remote COSE canister that holds signing keys."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any

from .ecdsa import EcdsaError
from .runtime import CallError, Runtime


def _unwrap(result: Any) -> Any:
    """Take the value out of an ``{"Ok": ...}`` / ``{"Err": ...}`` reply."""
    if isinstance(result, dict):
        if "Err" in result:
            raise EcdsaError(str(result["Err"]))
        if "Ok" in result:
            return result["Ok"]
    raise EcdsaError(f"unexpected reply: {result!r}")


async def call(
    runtime: Runtime, canister_id: str, method: str, args: tuple, cycles: int
) -> Any:
    """Call another canister, turning a rejection into :class:`EcdsaError`."""
    try:
        return await runtime.call(canister_id, method, args, cycles)
    except CallError as err:
        raise EcdsaError(
            f"failed to call {method} on {canister_id}, "
            f"code: {err.code}, message: {err.message}"
        ) from err


@dataclass
class CoseClient:
    id: str
    namespace: str

    async def ecdsa_public_key(
        self, runtime: Runtime, derivation_path: list[bytes]
    ) -> bytes:
        request = {"ns": self.namespace, "derivation_path": list(derivation_path)}
        output = _unwrap(await call(runtime, self.id, "ecdsa_public_key", (request,), 0))
        return bytes(output["public_key"])

    async def ecdsa_sign(
        self, runtime: Runtime, derivation_path: list[bytes], message: bytes
    ) -> bytes:
        request = {
            "ns": self.namespace,
            "derivation_path": list(derivation_path),
            "message": bytes(message),
        }
        return bytes(_unwrap(await call(runtime, self.id, "ecdsa_sign", (request,), 0)))