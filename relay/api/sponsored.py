"""
Sponsored Transaction Endpoints
===============================

POST /sponsored/build
    Enclave quote + action parameters → sponsored transaction bytes,
    sponsor signature and digest. The sender signs the returned tx_bytes
    with their own key.

POST /sponsored/execute
    tx_bytes + sponsor signature + sender signature → digest + effects,
    once the ledger reports finality.

Flow for build:
1. Parse the enclave response into a quote
2. Resolve deposit funding coins through the ledger (if any)
3. Check parameters against the quote (nothing spent yet)
4. Verify the quote (signature, attestation, replay) - spends it
5. Build the payload, consuming the verified quote
6. Obtain the sponsor signature over the exact payload
"""

from typing import Annotated

from fastapi import APIRouter, Body, Request

from relay.models.requests import BuildSponsoredTxRequest, ExecuteSponsoredTxRequest
from relay.models.responses import BuildSponsoredTxResponse, ExecuteSponsoredTxResponse
from relay.services import deposit_params, params_from_request
from relay.utils.tx_builder import ACTION_DEPOSIT

router = APIRouter(prefix="/sponsored", tags=["Sponsored Transactions"])


@router.post("/build", response_model=BuildSponsoredTxResponse)
async def build_sponsored_tx(
    request: Request,
    body: Annotated[BuildSponsoredTxRequest, Body(discriminator="action")],
):
    services = request.app.state.services

    print(f"\n🧱 /sponsored/build: {body.action} for {body.sender[:10]}...")

    if body.action == ACTION_DEPOSIT:
        funding = await services.resolve_funding(body.sender, body.coin_ids)
        params = deposit_params(body, funding)
    else:
        params = params_from_request(body)

    outcome = await services.build_sponsored(body.action, params, body.tee_response, body.tee_signature)

    print(f"   ✅ Sponsored {outcome.sponsored.digest}")
    return BuildSponsoredTxResponse(
        action=outcome.payload.action,
        sender=outcome.payload.sender,
        tx_bytes=outcome.sponsored.tx_bytes_b64,
        sponsor_signature=outcome.sponsored.sponsor_signature,
        digest=outcome.sponsored.digest,
        quote_timestamp_ms=outcome.payload.quote_timestamp_ms,
    )


@router.post("/execute", response_model=ExecuteSponsoredTxResponse)
async def execute_sponsored_tx(body: ExecuteSponsoredTxRequest, request: Request):
    services = request.app.state.services

    print("\n📤 /sponsored/execute")
    result = await services.execute_sponsored(body.tx_bytes, body.sponsor_signature, body.sender_signature)
    print(f"   ✅ Final: {result.digest}")

    return ExecuteSponsoredTxResponse(
        digest=result.digest,
        effects=result.effects,
        events=result.events,
        object_changes=result.object_changes,
        checkpoint=result.checkpoint,
    )
