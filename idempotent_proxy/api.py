"""Public and administrative entry points of the proxy."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, replace
from typing import Any, Iterable

import cbor2

from .agent import Agent, HttpRequest, HttpResponse
from .cose import CoseClient
from .runtime import ANONYMOUS, Runtime
from .store import StateStore
from .tasks import update_proxy_token

MILLISECONDS = 1_000_000
DEFAULT_MAX_RESPONSE_BYTES = 10240


@dataclass
class StateInfo:
    """Public view of the proxy state; agents carry no proxy tokens."""

    ecdsa_key_name: str
    proxy_token_public_key: str
    proxy_token_refresh_interval: int  # seconds
    agents: list[Agent]
    managers: set[str]
    callers: int
    subnet_size: int
    service_fee: int  # in cycles
    incoming_cycles: int
    uncollectible_cycles: int
    cose: CoseClient | None


def is_controller(runtime: Runtime) -> None:
    """Raise PermissionError unless the caller controls the canister."""
    if not runtime.is_controller(runtime.caller()):
        raise PermissionError("user is not a controller")


def is_controller_or_manager(store: StateStore, runtime: Runtime) -> None:
    """Raise PermissionError unless the caller is a controller or a manager."""
    caller = runtime.caller()
    if not (runtime.is_controller(caller) or store.is_manager(caller)):
        raise PermissionError("user is not a controller or manager")


def validate_principals(args: Iterable[str]) -> None:
    """Reject an empty set of principals or one that holds the anonymous principal."""
    principals = set(args)
    if not principals:
        raise ValueError("principals cannot be empty")
    if ANONYMOUS in principals:
        raise ValueError("anonymous user is not allowed")


def state_info(store: StateStore) -> StateInfo:
    s = store.state
    return StateInfo(
        ecdsa_key_name=s.ecdsa_key_name,
        proxy_token_public_key=s.proxy_token_public_key,
        proxy_token_refresh_interval=s.proxy_token_refresh_interval,
        agents=[replace(a, proxy_token=None) for a in s.agents],
        managers=set(s.managers),
        callers=len(s.callers),
        subnet_size=s.subnet_size,
        service_fee=s.service_fee,
        incoming_cycles=s.incoming_cycles,
        uncollectible_cycles=s.uncollectible_cycles,
        cose=s.cose,
    )


def caller_info(store: StateStore, principal: str) -> tuple[int, int] | None:
    """Return ``(cycles spent, last call in ms)`` for a known caller."""
    return store.state.callers.get(principal)


def _call_cost(store: StateStore, runtime: Runtime, req: HttpRequest, duplicates: int) -> int:
    calc = store.cycles_calculator()
    max_bytes = req.max_response_bytes
    if max_bytes is None:
        max_bytes = DEFAULT_MAX_RESPONSE_BYTES
    return (
        calc.ingress_cost(runtime.arg_data_raw_size())
        + calc.http_outcall_request_cost(calc.count_request_bytes(req), duplicates)
        + calc.http_outcall_response_cost(max_bytes, duplicates)
    )


def proxy_http_request_cost(store: StateStore, runtime: Runtime, req: HttpRequest) -> int:
    return _call_cost(store, runtime, req, 1)


def parallel_call_cost(store: StateStore, runtime: Runtime, req: HttpRequest) -> int:
    return _call_cost(store, runtime, req, len(store.state.agents))


def _reply(status: int, message: str) -> HttpResponse:
    return HttpResponse(status=status, headers=[], body=message.encode())


def _succeeded(res: HttpResponse) -> bool:
    return res.status <= 500


def _precheck(store: StateStore, caller: str) -> HttpResponse | None:
    if not store.is_allowed(caller):
        return _reply(403, "caller is not allowed")
    if not store.state.agents:
        return _reply(503, "no agents available")
    return None


def _record_caller(store: StateStore, runtime: Runtime, caller: str, balance: int) -> None:
    store.update_caller_state(
        caller,
        balance - runtime.msg_cycles_available(),
        runtime.time() // MILLISECONDS,
    )


def _encode_responses(responses: list[HttpResponse]) -> bytes:
    return cbor2.dumps(
        [
            {
                "status": r.status,
                "headers": [{"name": h.name, "value": h.value} for h in r.headers],
                "body": bytes(r.body),
            }
            for r in responses
        ]
    )


async def proxy_http_request(
    store: StateStore, runtime: Runtime, req: HttpRequest
) -> HttpResponse:
    """Try the agents in turn until one answers with a status of 500 or below."""
    caller = runtime.caller()
    rejection = _precheck(store, caller)
    if rejection is not None:
        return rejection

    agents = store.get_agents()
    balance = runtime.msg_cycles_available()
    calc = store.cycles_calculator()
    store.receive_cycles(runtime, calc.ingress_cost(runtime.arg_data_raw_size()), False)

    req_size = calc.count_request_bytes(req)
    last_err: HttpResponse | None = None
    for agent in agents:
        store.receive_cycles(runtime, calc.http_outcall_request_cost(req_size, 1), False)
        res = await agent.call(runtime, req)
        if _succeeded(res):
            cycles = calc.http_outcall_response_cost(calc.count_response_bytes(res), 1)
            store.receive_cycles(runtime, cycles, True)
            _record_caller(store, runtime, caller, balance)
            return res
        last_err = res

    _record_caller(store, runtime, caller, balance)
    assert last_err is not None
    return last_err


async def _join_all_ok(
    runtime: Runtime, agents: list[Agent], req: HttpRequest
) -> tuple[list[HttpResponse] | None, HttpResponse | None]:
    """Return all results in agent order, or the first failure to arrive."""
    tasks = [asyncio.ensure_future(a.call(runtime, req)) for a in agents]
    try:
        for fut in asyncio.as_completed(tasks):
            res = await fut
            if not _succeeded(res):
                return None, res
    finally:
        for task in tasks:
            task.cancel()
    return [t.result() for t in tasks], None


async def _select_ok(
    runtime: Runtime, agents: list[Agent], req: HttpRequest
) -> tuple[HttpResponse, bool]:
    """Return the first success, or the last failure when none succeeds."""
    tasks = [asyncio.ensure_future(a.call(runtime, req)) for a in agents]
    last: HttpResponse | None = None
    try:
        for fut in asyncio.as_completed(tasks):
            res = await fut
            if _succeeded(res):
                return res, True
            last = res
    finally:
        for task in tasks:
            task.cancel()
    assert last is not None
    return last, False


async def parallel_call_all_ok(
    store: StateStore, runtime: Runtime, req: HttpRequest
) -> HttpResponse:
    """Call every agent at once; return the shared result, or a 500 holding all
    differing results CBOR-encoded with the first agent's result last."""
    caller = runtime.caller()
    rejection = _precheck(store, caller)
    if rejection is not None:
        return rejection

    agents = store.get_agents()
    balance = runtime.msg_cycles_available()
    calc = store.cycles_calculator()
    cycles = calc.ingress_cost(runtime.arg_data_raw_size()) + calc.http_outcall_request_cost(
        calc.count_request_bytes(req), len(agents)
    )
    store.receive_cycles(runtime, cycles, False)

    results, failure = await _join_all_ok(runtime, agents, req)
    if results is None:
        assert failure is not None
        result = failure
    else:
        base, *rest = results
        cycles = calc.http_outcall_response_cost(calc.count_response_bytes(base), len(agents))
        store.receive_cycles(runtime, cycles, True)
        inconsistent = [r for r in rest if r != base]
        if inconsistent:
            inconsistent.append(base)
            result = HttpResponse(status=500, headers=[], body=_encode_responses(inconsistent))
        else:
            result = base

    _record_caller(store, runtime, caller, balance)
    return result


async def parallel_call_any_ok(
    store: StateStore, runtime: Runtime, req: HttpRequest
) -> HttpResponse:
    """Call every agent at once and return the first result with status <= 500."""
    caller = runtime.caller()
    rejection = _precheck(store, caller)
    if rejection is not None:
        return rejection

    agents = store.get_agents()
    balance = runtime.msg_cycles_available()
    calc = store.cycles_calculator()
    cycles = calc.ingress_cost(runtime.arg_data_raw_size()) + calc.http_outcall_request_cost(
        calc.count_request_bytes(req), len(agents)
    )
    store.receive_cycles(runtime, cycles, False)

    result, ok = await _select_ok(runtime, agents, req)
    if ok:
        cycles = calc.http_outcall_response_cost(calc.count_response_bytes(result), len(agents))
        store.receive_cycles(runtime, cycles, True)

    _record_caller(store, runtime, caller, balance)
    return result


def admin_add_managers(store: StateStore, runtime: Runtime, args: Iterable[str]) -> None:
    is_controller(runtime)
    principals = set(args)
    validate_principals(principals)
    store.state.managers |= principals


def admin_remove_managers(store: StateStore, runtime: Runtime, args: Iterable[str]) -> None:
    is_controller(runtime)
    principals = set(args)
    validate_principals(principals)
    store.state.managers -= principals


def admin_add_caller(store: StateStore, runtime: Runtime, principal: str) -> bool:
    """Allow ``principal`` to call the proxy; return True if it was new."""
    is_controller_or_manager(store, runtime)
    if principal == ANONYMOUS:
        raise ValueError("anonymous caller cannot be added")
    callers = store.state.callers
    has = principal in callers
    callers.setdefault(principal, (0, 0))
    return not has


def admin_add_callers(store: StateStore, runtime: Runtime, args: Iterable[str]) -> None:
    is_controller_or_manager(store, runtime)
    principals = set(args)
    validate_principals(principals)
    for p in sorted(principals):
        store.state.callers.setdefault(p, (0, 0))


def admin_remove_callers(store: StateStore, runtime: Runtime, args: Iterable[str]) -> None:
    is_controller_or_manager(store, runtime)
    principals = set(args)
    validate_principals(principals)
    for p in principals:
        store.state.callers.pop(p, None)


async def admin_set_agents(
    store: StateStore, runtime: Runtime, ecdsa_service: Any, agents: list[Agent]
) -> None:
    """Replace the agents, signing a fresh proxy token for each."""
    is_controller_or_manager(store, runtime)
    agents = list(agents)
    validate_admin_set_agents(agents)
    s = store.state
    await update_proxy_token(
        store, runtime, ecdsa_service, s.signer(), s.proxy_token_refresh_interval, agents
    )


def validate_admin_add_managers(args: Iterable[str]) -> None:
    validate_principals(args)


def validate_admin_remove_managers(args: Iterable[str]) -> None:
    validate_principals(args)


def validate_admin_set_agents(agents: list[Agent]) -> None:
    if not agents:
        raise ValueError("agents cannot be empty")