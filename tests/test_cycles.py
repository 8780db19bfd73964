import pytest

from idempotent_proxy.agent import HttpHeader, HttpRequest, HttpResponse
from idempotent_proxy.cycles import Calculator


def test_zero_subnet_is_free():
    calc = Calculator(subnet_size=0, service_fee=100_000_000)
    req = HttpRequest(url="https://a.example.com", body=b"xyz")
    assert calc.count_request_bytes(req) == 0
    assert calc.count_response_bytes(HttpResponse(200, [], b"abc")) == 0
    assert calc.ingress_cost(100) == 0
    assert calc.http_outcall_request_cost(100, 3) == 0
    assert calc.http_outcall_response_cost(100, 3) == 0


def test_count_request_bytes():
    calc = Calculator(subnet_size=1, service_fee=0)
    req = HttpRequest(url="abc", body=b"xy", headers=[HttpHeader("k", "v")])
    assert calc.count_request_bytes(req) == 10


def test_count_request_bytes_is_utf8_length():
    calc = Calculator(subnet_size=1, service_fee=0)
    assert calc.count_request_bytes(HttpRequest(url="é")) == 2


def test_count_response_bytes_of_empty_response():
    calc = Calculator(subnet_size=1, service_fee=0)
    assert calc.count_response_bytes(HttpResponse(200)) == 4


def test_ingress_base_cost():
    calc = Calculator(subnet_size=1, service_fee=0)
    assert calc.ingress_cost(0) == Calculator.INGRESS_MESSAGE_RECEIVED_COST


@pytest.mark.parametrize("nbytes", [0, 1, 1000])
def test_ingress_cost_scales_with_subnet(nbytes):
    one = Calculator(subnet_size=1, service_fee=0)
    thirteen = Calculator(subnet_size=13, service_fee=0)
    assert thirteen.ingress_cost(nbytes) == 13 * one.ingress_cost(nbytes)


def test_http_outcall_request_cost_pinned():
    calc = Calculator(subnet_size=13, service_fee=0)
    assert calc.http_outcall_request_cost(0, 1) == 62_920_000


@pytest.mark.parametrize("duplicates", [1, 2, 5])
def test_request_cost_fee_charged_once(duplicates):
    fee = 100_000_000
    calc = Calculator(subnet_size=13, service_fee=fee)
    single = calc.http_outcall_request_cost(500, 1) - fee
    assert calc.http_outcall_request_cost(500, duplicates) - fee == duplicates * single


def test_request_cost_grows_with_bytes():
    calc = Calculator(subnet_size=13, service_fee=0)
    assert calc.http_outcall_request_cost(1, 1) > calc.http_outcall_request_cost(0, 1)


def test_response_cost_properties():
    calc = Calculator(subnet_size=13, service_fee=100_000_000)
    assert calc.http_outcall_response_cost(0, 4) == 0
    assert calc.http_outcall_response_cost(1024, 4) == 4 * calc.http_outcall_response_cost(1024, 1)
    assert calc.http_outcall_response_cost(2048, 1) == 2 * calc.http_outcall_response_cost(1024, 1)