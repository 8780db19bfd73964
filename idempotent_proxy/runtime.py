"""Execution environment that the proxy's entry points run against.

A :class:`Runtime` holds everything the proxy learns from its host: who is
calling, the current time, the cycles attached to the message, outbound HTTP
and calls to other canisters, timers and the debug log.
"""

from __future__ import annotations

import inspect
from dataclasses import dataclass, field
from typing import Any, Callable

ANONYMOUS = "2vxsx-fae"
DEFAULT_MAX_RESPONSE_BYTES = 2_000_000

_REJECTION_CODES = {
    0: "NoError",
    1: "SysFatal",
    2: "SysTransient",
    3: "DestinationInvalid",
    4: "CanisterReject",
    5: "CanisterError",
}


class Trap(Exception):
    """Aborts the current call; its state changes are to be discarded."""


class CallError(Exception):
    """A rejected outbound call, carrying the host's rejection code."""

    def __init__(self, code: int, message: str) -> None:
        super().__init__(code, message)
        self.code = code
        self.message = message

    @property
    def code_name(self) -> str:
        return _REJECTION_CODES.get(self.code, "Unknown")

    def __str__(self) -> str:
        return f"{self.code_name}: {self.message}"


async def _resolve(value: Any) -> Any:
    if inspect.isawaitable(value):
        return await value
    return value


@dataclass
class _Timer:
    id: int
    delay: float
    callback: Callable[[], Any]
    repeating: bool


@dataclass
class Runtime:
    """In-process host: holds message context and dispatches outbound calls."""

    caller_id: str = ANONYMOUS
    now_ns: int = 0
    controllers: set[str] = field(default_factory=set)
    cycles_available: int = 0
    cycles_accepted: int = 0
    arg_size: int = 0
    http_handler: Callable[[Any], Any] | None = None
    transforms: dict[str, Callable[[Any], Any]] = field(default_factory=dict)
    canisters: dict[str, dict[str, Callable[..., Any]]] = field(default_factory=dict)
    http_requests: list[tuple[Any, int]] = field(default_factory=list)
    calls: list[tuple[str, str, tuple, int]] = field(default_factory=list)
    timers: list[_Timer] = field(default_factory=list)
    logs: list[str] = field(default_factory=list)

    def caller(self) -> str:
        return self.caller_id

    def time(self) -> int:
        """Current time in nanoseconds since the UNIX epoch."""
        return self.now_ns

    def is_controller(self, principal: str) -> bool:
        return principal in self.controllers

    def msg_cycles_available(self) -> int:
        return self.cycles_available

    def msg_cycles_accept(self, cycles: int) -> int:
        """Accept up to ``cycles`` from the message; return how many were taken."""
        if cycles < 0:
            raise ValueError("cannot accept a negative amount of cycles")
        accepted = min(cycles, self.cycles_available)
        self.cycles_available -= accepted
        self.cycles_accepted += accepted
        return accepted

    def arg_data_raw_size(self) -> int:
        return self.arg_size

    async def http_request(self, req: Any, cycles: int) -> Any:
        """Send an outbound HTTP request and apply its transform, if registered."""
        self.http_requests.append((req, cycles))
        if self.http_handler is None:
            raise CallError(2, "no HTTP handler is available")
        try:
            response = await _resolve(self.http_handler(req))
        except OSError as exc:
            raise CallError(2, f"connection failed: {exc}") from exc

        limit = req.max_response_bytes
        if limit is None:
            limit = DEFAULT_MAX_RESPONSE_BYTES
        if len(response.body) > limit:
            raise CallError(1, f"Http body exceeds size limit of {limit} bytes.")

        transform = req.transform
        if transform is not None and (func := self.transforms.get(transform.function)):
            response = func(response)
        return response

    async def call(self, canister_id: str, method: str, args: tuple, cycles: int) -> Any:
        """Call ``method`` on another canister with positional ``args``."""
        self.calls.append((canister_id, method, args, cycles))
        methods = self.canisters.get(canister_id)
        if methods is None:
            raise CallError(3, f"Canister {canister_id} not found")
        handler = methods.get(method)
        if handler is None:
            raise CallError(5, f"Canister {canister_id} has no update method '{method}'")
        return await _resolve(handler(*args))

    def set_timer(self, delay: float, callback: Callable[[], Any]) -> int:
        return self._add_timer(delay, callback, repeating=False)

    def set_timer_interval(self, interval: float, callback: Callable[[], Any]) -> int:
        return self._add_timer(interval, callback, repeating=True)

    def _add_timer(self, delay: float, callback: Callable[[], Any], repeating: bool) -> int:
        if delay < 0:
            raise ValueError("timer delay cannot be negative")
        timer = _Timer(len(self.timers) + 1, delay, callback, repeating)
        self.timers.append(timer)
        return timer.id

    def print(self, message: str) -> None:
        self.logs.append(message)