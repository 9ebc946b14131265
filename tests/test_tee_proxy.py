"""
TEE oracle proxy: single egress point to the enclave (scenario C).
"""

import json

import httpx
import pytest

from relay.utils.errors import EndpointNotAllowed, RateLimited, UpstreamError, UpstreamUnavailable
from relay.utils.rate_limiter import RateLimiter
from relay.utils.tee_proxy import TeeOracleProxy


async def test_post_wraps_payload(proxy, enclave):
    body = await proxy.forward("process_data", {"pool_id": 7, "amount": 50})

    request = enclave.requests[-1]
    assert request.method == "POST"
    assert request.url.path == "/process_data"
    assert json.loads(request.content) == {"payload": {"pool_id": 7, "amount": 50}}
    assert body["endpoint"] == "process_data"


async def test_reads_are_no_body_gets(proxy, enclave, enclave_pk):
    body = await proxy.forward("health_check", {"ignored": True})

    request = enclave.requests[-1]
    assert request.method == "GET"
    assert request.content == b""
    assert body["pk"] == enclave_pk


async def test_positions_passes_pool_id_as_query(proxy, enclave):
    await proxy.forward("positions", {"pool_id": 3})
    request = enclave.requests[-1]
    assert request.method == "GET"
    assert request.url.params["pool_id"] == "3"


async def test_enclave_body_is_returned_untouched(proxy, enclave):
    signed = {"response": {"intent": 0, "timestamp_ms": 1, "data": {"x": 1}}, "signature": "ab" * 64}
    enclave.responses["process_data"] = httpx.Response(200, json=signed)
    assert await proxy.forward("process_data", {}) == signed


async def test_non_json_body_is_wrapped_as_raw(proxy, enclave):
    enclave.responses["resolve"] = httpx.Response(200, text="resolved")
    assert await proxy.forward("resolve", {}) == {"raw": "resolved"}


async def test_unlisted_endpoint_never_leaves_the_relay(proxy, enclave):
    with pytest.raises(EndpointNotAllowed):
        await proxy.forward("admin/shutdown", {})
    assert enclave.requests == []


async def test_timeout_is_upstream_unavailable(proxy, enclave, replay_window):
    """Scenario C: enclave times out → UpstreamUnavailable, nothing spent."""
    enclave.raise_on["process_data"] = httpx.ReadTimeout("enclave too slow")

    with pytest.raises(UpstreamUnavailable) as exc:
        await proxy.forward("process_data", {"pool_id": 7})
    assert exc.value.retryable
    assert len(replay_window) == 0


async def test_connection_refused_is_upstream_unavailable(proxy, enclave):
    enclave.raise_on["deposit"] = httpx.ConnectError("connection refused")
    with pytest.raises(UpstreamUnavailable):
        await proxy.forward("deposit", {})


async def test_non_2xx_is_upstream_error_with_body(proxy, enclave):
    enclave.responses["withdraw"] = httpx.Response(500, json={"error": "insufficient balance"})

    with pytest.raises(UpstreamError) as exc:
        await proxy.forward("withdraw", {})
    assert exc.value.extra["upstream_status"] == 500
    assert exc.value.extra["upstream_body"] == {"error": "insufficient balance"}


async def test_rate_limit_is_checked_before_network(enclave):
    proxy = TeeOracleProxy(
        base_url="http://enclave.test",
        rate_limiter=RateLimiter(max_requests=1),
        transport=enclave.transport,
    )
    await proxy.forward("process_data", {}, client_id="10.0.0.9")
    with pytest.raises(RateLimited):
        await proxy.forward("process_data", {}, client_id="10.0.0.9")
    assert len(enclave.requests) == 1
