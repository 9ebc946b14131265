"""
POST /tee/proxy - Forward a request to the enclave
==================================================

Single egress point between clients and the enclave. The enclave's body
(including its signature) comes back untouched; nothing is verified here.
"""

from typing import Any, Dict

from fastapi import APIRouter, Request

from relay.models.requests import TeeProxyRequest

router = APIRouter(prefix="/tee", tags=["Enclave"])


@router.post("/proxy")
async def tee_proxy(body: TeeProxyRequest, request: Request) -> Dict[str, Any]:
    services = request.app.state.services
    client_id = request.client.host if request.client else "unknown"
    return await services.proxy.forward(body.endpoint, body.payload, client_id=client_id)
