"""Proxy agents and the HTTP request and response types they carry."""

from __future__ import annotations

import re
from dataclasses import dataclass, field, replace

from .runtime import CallError, Runtime

TRANSFORM_FUNCTION = "inner_transform_response"

_SCHEME = re.compile(r"^[A-Za-z][A-Za-z0-9+.\-]*://")


@dataclass(frozen=True)
class HttpHeader:
    name: str
    value: str


@dataclass(frozen=True)
class TransformContext:
    function: str
    context: bytes = b""


@dataclass
class HttpRequest:
    url: str
    method: str = "GET"
    headers: list[HttpHeader] = field(default_factory=list)
    body: bytes | None = None
    max_response_bytes: int | None = None
    transform: TransformContext | None = None


@dataclass
class HttpResponse:
    status: int
    headers: list[HttpHeader] = field(default_factory=list)
    body: bytes = b""


def _host_of(authority: str) -> str:
    hostport = authority.rpartition("@")[2]
    if hostport.startswith("["):
        end = hostport.find("]")
        return hostport[: end + 1] if end != -1 else ""
    return hostport.partition(":")[0]


def _split_url(url: str) -> tuple[str, str]:
    """Return the host and the path-and-query of ``url``."""
    if not url:
        raise ValueError(f"parse url {url} error: empty string")
    if any(ch.isspace() or ord(ch) < 0x20 or ord(ch) == 0x7F for ch in url):
        raise ValueError(f"parse url {url} error: invalid uri character")

    match = _SCHEME.match(url)
    if match:
        rest = url[match.end():]
        cut = min((i for i in (rest.find(c) for c in "/?#") if i != -1), default=len(rest))
        authority, tail = rest[:cut], rest[cut:]
    elif url.startswith("/"):
        authority, tail = "", url
    else:
        if any(c in url for c in "/?#"):
            raise ValueError(f"parse url {url} error: invalid format")
        authority, tail = url, ""

    host = _host_of(authority)
    if not host:
        raise ValueError(f"url host is empty: {url}")

    path_query = tail.split("#", 1)[0]
    if not path_query:
        path_query = "/"
    elif path_query.startswith("?"):
        path_query = "/" + path_query
    return host, path_query


def transform_response(response: HttpResponse) -> HttpResponse:
    """Drop headers, which may hold timestamps, so replicas agree on the reply."""
    return HttpResponse(status=response.status, headers=[], body=response.body)


@dataclass
class Agent:
    """An idempotent proxy endpoint that requests are routed through.

    ``name`` prefixes idempotency keys and is the message of the signed proxy
    token, separating different business processes.
    """

    name: str = ""
    endpoint: str = ""
    max_cycles: int = 0
    proxy_token: str | None = None

    def build_request(self, req: HttpRequest) -> HttpRequest:
        """Return ``req`` rewritten to go through this agent's endpoint."""
        headers = list(req.headers)
        if not any(h.name == "idempotency-key" for h in headers):
            raise ValueError("idempotency-key header is missing")

        if req.url.startswith("URL_"):
            url = f"{self.endpoint}/{req.url}"
        else:
            host, path_query = _split_url(req.url)
            headers.append(HttpHeader("x-forwarded-host", host))
            url = f"{self.endpoint}{path_query}"

        if not any(h.name == "response-headers" for h in headers):
            headers.append(HttpHeader("response-headers", "date"))

        if self.proxy_token is not None:
            headers.append(HttpHeader("proxy-authorization", f"Bearer {self.proxy_token}"))

        return replace(
            req,
            url=url,
            headers=headers,
            transform=TransformContext(TRANSFORM_FUNCTION, b""),
        )

    async def call(self, runtime: Runtime, req: HttpRequest) -> HttpResponse:
        """Send ``req`` through this agent.

        A status above 500 marks a failed call; anything else is a usable
        answer, including the 400 returned for a request that cannot be built.
        """
        try:
            req = self.build_request(req)
        except ValueError as exc:
            return HttpResponse(status=400, headers=[], body=str(exc).encode())

        try:
            return await runtime.http_request(req, self.max_cycles)
        except CallError as err:
            message = (
                f"http_request resulted into error. code: {err.code_name}, "
                f"error: {err.message}"
            )
            return HttpResponse(status=503, headers=[], body=message.encode())