"""Periodic refresh of the proxy tokens that agents present."""

from __future__ import annotations

from dataclasses import replace
from typing import Any

from .agent import Agent
from .ecdsa import EcdsaError
from .runtime import Runtime, Trap
from .store import Signer, StateStore

SECONDS = 1_000_000_000


async def refresh_proxy_token(
    store: StateStore, runtime: Runtime, ecdsa_service: Any
) -> None:
    """Re-sign tokens for the agents currently in ``store``."""
    s = store.state
    await update_proxy_token(
        store,
        runtime,
        ecdsa_service,
        s.signer(),
        s.proxy_token_refresh_interval,
        store.get_agents(),
    )


async def update_proxy_token(
    store: StateStore,
    runtime: Runtime,
    ecdsa_service: Any,
    signer: Signer,
    proxy_token_refresh_interval: int,
    agents: list[Agent],
) -> None:
    """Sign one token per agent name and store ``agents`` with their tokens.

    Does nothing for an empty list. A signing failure raises :class:`Trap`.
    """
    if not agents:
        return

    tokens: dict[str, str] = {}
    updated: list[Agent] = []
    for agent in agents:
        token = tokens.get(agent.name)
        if token is None:
            expire_at = runtime.time() // SECONDS + proxy_token_refresh_interval + 120
            try:
                token = await signer.sign_proxy_token(
                    runtime, ecdsa_service, expire_at, agent.name
                )
            except EcdsaError as err:
                raise Trap(f"failed to sign proxy token: {err}") from err
            tokens[agent.name] = token
        updated.append(replace(agent, proxy_token=token))

    store.state.agents = updated