"""Cycle cost accounting for ingress messages and HTTP outcalls."""

from __future__ import annotations

from dataclasses import dataclass
from typing import ClassVar

from .agent import HttpRequest, HttpResponse


def _header_bytes(headers) -> int:
    return sum(len(h.name.encode()) + len(h.value.encode()) + 3 for h in headers)


@dataclass
class Calculator:
    """Computes cycle costs; a subnet size of 0 makes everything free."""

    subnet_size: int
    service_fee: int

    INGRESS_MESSAGE_RECEIVED_COST: ClassVar[int] = 1_200_000
    INGRESS_MESSAGE_BYTE_RECEIVED_COST: ClassVar[int] = 2_000
    HTTP_OUTCALL_REQUEST_BASE_COST: ClassVar[int] = 3_000_000
    HTTP_OUTCALL_REQUEST_PER_NODE_COST: ClassVar[int] = 60_000
    HTTP_OUTCALL_REQUEST_COST_PER_BYTE: ClassVar[int] = 400
    HTTP_OUTCALL_RESPONSE_COST_PER_BYTE: ClassVar[int] = 800
    # Additional headers added to the request
    HTTP_OUTCALL_REQUEST_OVERHEAD_BYTES: ClassVar[int] = 150
    # Additional cost of operating the canister per subnet node
    CANISTER_OVERHEAD: ClassVar[int] = 1_000_000

    def count_request_bytes(self, req: HttpRequest) -> int:
        if self.subnet_size == 0:
            return 0
        return len(req.url.encode()) + len(req.body or b"") + _header_bytes(req.headers)

    def count_response_bytes(self, res: HttpResponse) -> int:
        if self.subnet_size == 0:
            return 0
        return 4 + len(res.body) + _header_bytes(res.headers)

    def ingress_cost(self, ingress_bytes: int) -> int:
        if self.subnet_size == 0:
            return 0
        cost_per_node = (
            self.INGRESS_MESSAGE_RECEIVED_COST
            + self.INGRESS_MESSAGE_BYTE_RECEIVED_COST * ingress_bytes
        )
        return cost_per_node * self.subnet_size

    def http_outcall_request_cost(self, request_bytes: int, duplicates: int) -> int:
        if self.subnet_size == 0:
            return 0
        cost_per_node = (
            self.HTTP_OUTCALL_REQUEST_BASE_COST
            + self.HTTP_OUTCALL_REQUEST_PER_NODE_COST * self.subnet_size
            + self.HTTP_OUTCALL_REQUEST_COST_PER_BYTE
            * (self.HTTP_OUTCALL_REQUEST_OVERHEAD_BYTES + request_bytes)
            + self.CANISTER_OVERHEAD
        )
        return self.service_fee + cost_per_node * self.subnet_size * duplicates

    def http_outcall_response_cost(self, response_bytes: int, duplicates: int) -> int:
        if self.subnet_size == 0:
            return 0
        cost_per_node = self.HTTP_OUTCALL_RESPONSE_COST_PER_BYTE * response_bytes
        return cost_per_node * self.subnet_size * duplicates