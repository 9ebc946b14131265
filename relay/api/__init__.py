"""
Relay API Endpoints

FastAPI routers:
- tee: Enclave proxy (POST /tee/proxy)
- sponsored: Build and execute sponsored transactions (POST /sponsored/build, /sponsored/execute)
- attestation: Attestation record state and rotation (GET /attestation/current, POST /attestation/rotate)
"""
