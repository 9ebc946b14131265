"""
TEE Oracle Proxy

Single egress point between callers and the enclave's network address.

The proxy forwards a named operation to the enclave and returns its body
UNMODIFIED (including the signature). It makes no trust decisions - that
is QuoteVerifier's job.

Enclave wire convention:
- Read-only operations (health_check, positions, get_attestation) are a
  no-body GET; positions takes its pool id as a query parameter.
- Every other operation is a POST with body {"payload": <payload>}.
- A non-JSON response body is returned as {"raw": <text>}.
"""

import logging
import time
from typing import Any, Dict, Iterable, Optional

import httpx

from relay.config import TEE_ALLOWED_ENDPOINTS, TEE_GET_ENDPOINTS, TEE_TIMEOUT_SECONDS, TEE_URL
from relay.utils import metrics
from relay.utils.errors import EndpointNotAllowed, RateLimited, UpstreamError, UpstreamUnavailable
from relay.utils.rate_limiter import RateLimiter

logger = logging.getLogger(__name__)


class TeeOracleProxy:
    """Forwards allow-listed operations to the enclave over HTTP."""

    def __init__(
        self,
        base_url: str = TEE_URL,
        timeout: float = TEE_TIMEOUT_SECONDS,
        allowed_endpoints: Iterable[str] = TEE_ALLOWED_ENDPOINTS,
        get_endpoints: Iterable[str] = TEE_GET_ENDPOINTS,
        rate_limiter: Optional[RateLimiter] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.allowed_endpoints = frozenset(allowed_endpoints)
        self.get_endpoints = frozenset(get_endpoints)
        self.rate_limiter = rate_limiter
        self._transport = transport

    async def forward(
        self,
        endpoint: str,
        payload: Optional[Dict[str, Any]] = None,
        client_id: str = "anonymous",
    ) -> Dict[str, Any]:
        """
        Forward one operation to the enclave.

        Args:
            endpoint: Enclave operation name (e.g. "process_data")
            payload: Operation payload (ignored for no-body reads, except
                     positions which sends pool_id as a query parameter)
            client_id: Caller identity for rate limiting

        Returns:
            The enclave's JSON body, untouched

        Raises:
            EndpointNotAllowed: Operation not on the allowlist
            RateLimited: Caller exceeded its per-minute budget
            UpstreamUnavailable: Enclave unreachable or timed out
            UpstreamError: Enclave answered with a non-2xx status
        """
        if endpoint not in self.allowed_endpoints:
            metrics.tee_requests.labels(endpoint="other", outcome="rejected").inc()
            raise EndpointNotAllowed(f"Enclave operation '{endpoint}' is not allowed through the proxy")

        if self.rate_limiter is not None:
            allowed, reason, stats = self.rate_limiter.check(client_id)
            if not allowed:
                metrics.tee_requests.labels(endpoint=endpoint, outcome="rejected").inc()
                raise RateLimited(reason, extra={"rate_limit": stats})

        url = f"{self.base_url}/{endpoint}"
        started = time.perf_counter()

        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
                if endpoint in self.get_endpoints:
                    params = None
                    if endpoint == "positions" and payload and "pool_id" in payload:
                        params = {"pool_id": payload["pool_id"]}
                    response = await client.get(url, params=params)
                else:
                    response = await client.post(
                        url,
                        json={"payload": payload if payload is not None else {}},
                        headers={"Content-Type": "application/json"},
                    )
        except httpx.TimeoutException as e:
            metrics.tee_requests.labels(endpoint=endpoint, outcome="upstream_unavailable").inc()
            logger.warning(f"⏱️  Enclave {endpoint} timed out after {self.timeout}s")
            raise UpstreamUnavailable(f"Enclave timed out on '{endpoint}': {e!r}")
        except httpx.TransportError as e:
            metrics.tee_requests.labels(endpoint=endpoint, outcome="upstream_unavailable").inc()
            logger.warning(f"🔌 Enclave unreachable for {endpoint}: {e}")
            raise UpstreamUnavailable(f"Enclave unreachable for '{endpoint}': {e!r}")
        finally:
            metrics.tee_duration.labels(endpoint=endpoint).observe(time.perf_counter() - started)

        body = _decode_body(response)

        if not response.is_success:
            metrics.tee_requests.labels(endpoint=endpoint, outcome="upstream_error").inc()
            logger.warning(f"❌ Enclave {endpoint} returned HTTP {response.status_code}")
            raise UpstreamError(
                f"Enclave returned HTTP {response.status_code} for '{endpoint}'",
                extra={"upstream_status": response.status_code, "upstream_body": body},
            )

        metrics.tee_requests.labels(endpoint=endpoint, outcome="ok").inc()
        return body

    # ------------------------------------------------------------------
    # Convenience reads used by enclave key binding
    # ------------------------------------------------------------------

    async def health_check(self) -> Dict[str, Any]:
        """GET health_check → {"pk": <hex ed25519 public key>, ...}"""
        return await self.forward("health_check", client_id="relay")

    async def get_attestation(self) -> Dict[str, Any]:
        """GET get_attestation → {"attestation": <hex Nitro document>}"""
        return await self.forward("get_attestation", client_id="relay")


def _decode_body(response: httpx.Response) -> Dict[str, Any]:
    try:
        body = response.json()
    except ValueError:
        return {"raw": response.text}
    if isinstance(body, dict):
        return body
    return {"raw": body}
