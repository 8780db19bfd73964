"""Installation and upgrade hooks of the proxy."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any

from .cose import CoseClient
from .runtime import Runtime, Trap
from .store import StateStore
from .tasks import refresh_proxy_token

MIN_REFRESH_INTERVAL = 10
DEFAULT_REFRESH_INTERVAL = 3600
DEFAULT_SERVICE_FEE = 100_000_000


@dataclass
class InitArgs:
    # "dfx_test_key" on a local replica, "test_key_1" for a testing key
    ecdsa_key_name: str
    proxy_token_refresh_interval: int  # seconds
    subnet_size: int  # 0 disables receiving cycles
    service_fee: int  # in cycles
    cose: CoseClient | None = None


@dataclass
class UpgradeArgs:
    proxy_token_refresh_interval: int | None = None  # seconds
    subnet_size: int | None = None
    service_fee: int | None = None  # in cycles
    cose: CoseClient | None = None


def _schedule(store: StateStore, runtime: Runtime, ecdsa_service: Any) -> None:
    async def bootstrap() -> None:
        await store.init_ecdsa_public_key(runtime, ecdsa_service)
        await refresh_proxy_token(store, runtime, ecdsa_service)

    def refresh():
        return refresh_proxy_token(store, runtime, ecdsa_service)

    runtime.set_timer(0, bootstrap)
    runtime.set_timer_interval(store.state.proxy_token_refresh_interval, refresh)


def init(
    store: StateStore, runtime: Runtime, ecdsa_service: Any, args: InitArgs | UpgradeArgs | None
) -> None:
    """Set up a fresh installation and schedule the token refresh timers."""
    if args is None:
        raise Trap("init args is missing")
    if isinstance(args, UpgradeArgs):
        raise Trap(
            "cannot initialize the canister with an Upgrade args. Please provide an Init args."
        )

    s = store.state
    s.ecdsa_key_name = args.ecdsa_key_name
    s.subnet_size = args.subnet_size
    s.proxy_token_refresh_interval = (
        args.proxy_token_refresh_interval
        if args.proxy_token_refresh_interval >= MIN_REFRESH_INTERVAL
        else DEFAULT_REFRESH_INTERVAL
    )
    s.service_fee = args.service_fee if args.service_fee > 0 else DEFAULT_SERVICE_FEE
    s.cose = args.cose

    _schedule(store, runtime, ecdsa_service)


def pre_upgrade(store: StateStore) -> None:
    store.save()


def post_upgrade(
    store: StateStore, runtime: Runtime, ecdsa_service: Any, args: InitArgs | UpgradeArgs | None
) -> None:
    """Restore saved state, apply upgrade settings and reschedule the timers."""
    store.load()

    if isinstance(args, InitArgs):
        raise Trap(
            "cannot upgrade the canister with an Init args. Please provide an Upgrade args."
        )
    if isinstance(args, UpgradeArgs):
        s = store.state
        if args.proxy_token_refresh_interval is not None:
            if args.proxy_token_refresh_interval < MIN_REFRESH_INTERVAL:
                raise Trap("proxy_token_refresh_interval must be at least 10 seconds")
            s.proxy_token_refresh_interval = args.proxy_token_refresh_interval
        if args.subnet_size is not None:
            s.subnet_size = args.subnet_size
        if args.service_fee is not None:
            s.service_fee = args.service_fee
        if args.cose is not None:
            s.cose = args.cose

    _schedule(store, runtime, ecdsa_service)