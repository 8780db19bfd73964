# idempotent_proxy

A library that routes HTTP requests through one or more idempotent proxy
agents. Each agent carries a signed proxy token. The library keeps track of
which callers may use it and how many cycles each request costs.

All entry points run against a `Runtime` object. The runtime supplies the
caller, the current time, the cycles attached to the message, outbound HTTP,
calls to other canisters and timers.

## Install

```
pip install .
pip install ".[test]"   # with pytest and pytest-asyncio
```

## Example

```python
import asyncio

from idempotent_proxy import api
from idempotent_proxy.agent import Agent, HttpHeader, HttpRequest, HttpResponse, transform_response
from idempotent_proxy.ecdsa import LocalEcdsaService
from idempotent_proxy.runtime import Runtime
from idempotent_proxy.store import StateStore

runtime = Runtime(
    caller_id="aaaaa-aa",
    controllers={"aaaaa-aa"},
    http_handler=lambda req: HttpResponse(200, [], b"ok"),
    transforms={"inner_transform_response": transform_response},
)
store = StateStore()
store.state.ecdsa_key_name = "dfx_test_key"
signing = LocalEcdsaService()


async def main():
    await api.admin_set_agents(
        store, runtime, signing,
        [Agent(name="proxy", endpoint="https://proxy.example.com", max_cycles=30_000_000_000)],
    )
    api.admin_add_caller(store, runtime, "aaaaa-aa")
    req = HttpRequest(
        url="https://api.example.com/v1/items?x=1",
        headers=[HttpHeader("idempotency-key", "idem-1")],
    )
    res = await api.proxy_http_request(store, runtime, req)
    print(res.status, res.body)


asyncio.run(main())
```

## Modules

- `idempotent_proxy.runtime`: `Runtime` is the in-process host. HTTP requests go
  to its `http_handler` callable, which may be sync or async. The transform
  registered under the request's transform name in `transforms` is applied to
  the response. A response body larger than `max_response_bytes` (2,000,000 by
  default) is rejected. Canister calls are dispatched to the handlers in
  `canisters`. Every request, call, timer and log line is recorded on the
  runtime. A rejected call raises `CallError`, and `Trap` aborts a call.
- `idempotent_proxy.agent`: `HttpRequest`, `HttpResponse`, `HttpHeader`,
  `TransformContext` and `Agent`.
  - `Agent.build_request` requires an `idempotency-key` header. A URL that
    starts with `URL_` is appended to the endpoint after a `/`. Any other URL
    has its host sent as `x-forwarded-host` and its path and query appended to
    the endpoint.
  - It adds `response-headers: date` when no `response-headers` header is
    given, and `proxy-authorization: Bearer <token>` when the agent has a
    token. It also sets the `inner_transform_response` transform.
  - `Agent.call` returns a 400 response for a request that cannot be built. It
    returns a 503 response when the runtime rejects the HTTP call.
  - `transform_response` removes all headers from a response.
- `idempotent_proxy.cycles`: `Calculator` computes request and response byte
  counts, ingress costs and HTTP outcall costs from `subnet_size` and
  `service_fee`. A subnet size of 0 makes everything cost 0.
- `idempotent_proxy.ecdsa`: `sign_with` and `public_key_with` wrap an ECDSA
  service and raise `EcdsaError` on failure. `LocalEcdsaService` derives
  secp256k1 keys from a seed, a key name and a derivation path. By default it
  knows the key names `dfx_test_key`, `test_key_1` and `key_1`.
- `idempotent_proxy.cose`: `CoseClient` asks a COSE canister, through the
  runtime, for a public key or a signature.
- `idempotent_proxy.store`:
  - `State` holds the agents, managers, callers and cycle counters.
  - `StateStore.save` and `StateStore.load` copy the state to and from
    `StateStore.stable` as CBOR, using `encode_state` and `decode_state`.
  - `Signer.sign_proxy_token` signs the SHA3-256 digest of the CBOR pair
    `(expire_at, name)`. It returns the base64url (unpadded) CBOR encoding of
    `(expire_at, name, signature)`.
- `idempotent_proxy.tasks`: `refresh_proxy_token` and `update_proxy_token` sign
  one token per agent name and store the agents with their tokens. A token
  expires `proxy_token_refresh_interval + 120` seconds from now.
- `idempotent_proxy.api`: the entry points listed below.
- `idempotent_proxy.init`:
  - `init` applies `InitArgs`. A refresh interval below 10 becomes 3600, and a
    service fee of 0 becomes 100,000,000.
  - `pre_upgrade` saves the state.
  - `post_upgrade` restores the state and applies `UpgradeArgs`.
  - Both `init` and `post_upgrade` schedule the token refresh timers.

## Entry points

These request functions take a `StateStore`, a `Runtime` and an `HttpRequest`:

- `proxy_http_request` tries the agents one after another until one of them
  answers with a status of 500 or below.
- `parallel_call_all_ok` calls every agent at once. If all the results are
  equal, it returns that result. If they differ, it returns a 500 response whose
  body is a CBOR list of the differing responses, with the first agent's
  response last.
- `parallel_call_any_ok` calls every agent at once and returns the first
  response with a status of 500 or below.
- `proxy_http_request_cost` and `parallel_call_cost` give the cycles a request
  will cost. When `max_response_bytes` is not set, they assume 10240 response
  bytes.

A caller that is not registered gets a 403 response. When no agents are set,
the response is 503.

The following functions raise `PermissionError` when the caller is not allowed
to use them:

- `admin_add_managers` and `admin_remove_managers` require a controller.
- `admin_add_caller`, `admin_add_callers`, `admin_remove_callers` and
  `admin_set_agents` require a controller or a manager.

The `validate_*` functions and `validate_principals` raise `ValueError` in these
cases:

- an empty set of principals;
- a set that includes the anonymous principal;
- an empty agent list.

`state_info` and `caller_info` report on the state. `state_info` never includes
agent tokens.

## What this package does not do

- It has no HTTP server and no command-line program. It is used as a library.
- It makes no network connections of its own. Outbound HTTP goes to whatever
  `Runtime.http_handler` you provide.
- Timers are only recorded in `Runtime.timers`. Nothing runs them on a schedule.
- `LocalEcdsaService` signs with keys derived locally. It is not a threshold
  signing service.
- Stable memory is the `StateStore.stable` bytes attribute. Nothing writes it to
  disk.

## Tests

```
pytest
```