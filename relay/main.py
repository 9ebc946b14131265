"""
PM Sponsored Transaction Relay
==============================

FastAPI service that carries enclave-signed market quotes onto the ledger
with a sponsor paying gas.

Endpoints:
- POST /tee/proxy: Forward a request to the enclave (single egress point)
- POST /sponsored/build: Quote → verified, sponsored transaction bytes
- POST /sponsored/execute: Dual-signed bytes → ledger → finality
- GET  /attestation/current: Trusted enclave measurements + bound keys
- POST /attestation/rotate: Authority-signed measurement rotation
- GET  /, /health: Health check + build info
- GET  /metrics: Prometheus metrics
"""

import logging
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from http import HTTPStatus
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, Response
from starlette.exceptions import HTTPException as StarletteHTTPException

from relay.config import BUILD_ID, GITHUB_COMMIT, print_config_summary
from relay.models.responses import HealthResponse
from relay.services import RelayServices, create_services
from relay.utils.errors import RelayError
from relay.utils.ledger import LedgerRpcError
from relay.utils.metrics import render_latest

from relay.api import attestation, sponsored, tee

logger = logging.getLogger(__name__)


# ============================================================
# Lifespan Context Manager
# ============================================================

async def _startup_sync(services: RelayServices) -> None:
    """Pull chain state and bind the enclave key. Failures are reported, not fatal."""
    print("=" * 80)
    print("🔗 SYNCING LEDGER STATE")
    print("=" * 80)
    try:
        await services.resolve_shared_versions()
        record = await services.load_attestation_from_chain()
        print(f"✅ Attestation record v{record.version} loaded (PCR0 {record.pcr0[:16]}...)")
    except (RelayError, LedgerRpcError, KeyError, ValueError) as e:
        print(f"⚠️  WARNING: Could not sync ledger state: {e}")
        print("   Using attestation record and shared versions from configuration")
    print("=" * 80 + "\n")

    print("=" * 80)
    print("🔐 BINDING ENCLAVE KEY")
    print("=" * 80)
    try:
        key = await services.enclave_key()
        binding = services.registry.binding_for(key)
        print(f"✅ Enclave key {key[:16]}... trusted ({binding.trust_level})")
    except RelayError as e:
        print(f"⚠️  WARNING: Enclave key not bound yet ({e.code}): {e.detail}")
        print("   Binding will be retried on the first build request")
    print("=" * 80 + "\n")


def create_app(services: Optional[RelayServices] = None, sync_on_startup: bool = True) -> FastAPI:
    """
    Build the relay app.

    Args:
        services: Pre-built component graph (tests). Built from config if None.
        sync_on_startup: Load chain state and bind the enclave key at startup
                         (only when services are built here).
    """
    owns_services = services is None

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        print("\n" + "=" * 80)
        print("🚀 PM RELAY STARTING")
        print("=" * 80)
        print_config_summary()

        if owns_services:
            app.state.services = create_services()
            if sync_on_startup:
                await _startup_sync(app.state.services)
        else:
            app.state.services = services

        yield

        print("\n🛑 PM relay shutting down")
        if owns_services:
            await app.state.services.aclose()

    app = FastAPI(
        title="PM Sponsored Transaction Relay",
        description="TEE-attested, gas-sponsored transaction relay",
        version="1.0.0",
        lifespan=lifespan,
    )
    if services is not None:
        # Available before lifespan runs (TestClient without context manager)
        app.state.services = services

    # ============================================================
    # CORS Middleware
    # ============================================================

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # ============================================================
    # Error Handlers
    # ============================================================

    @app.exception_handler(RelayError)
    async def relay_error_handler(request: Request, exc: RelayError):
        return JSONResponse(status_code=exc.http_status, content=exc.to_dict())

    @app.exception_handler(LedgerRpcError)
    async def ledger_error_handler(request: Request, exc: LedgerRpcError):
        return JSONResponse(
            status_code=502,
            content={
                "error": "LedgerRpcError",
                "category": "ledger",
                "retryable": False,
                "detail": exc.message,
            },
        )

    @app.exception_handler(RequestValidationError)
    async def validation_error_handler(request: Request, exc: RequestValidationError):
        missing = []
        invalid = []
        for error in exc.errors():
            loc = [str(part) for part in error.get("loc", ()) if part != "body"]
            if error.get("type") == "missing":
                missing.append(loc[-1] if loc else "body")
            elif error.get("type") == "union_tag_not_found":
                missing.append("action")
            else:
                invalid.append({"field": ".".join(loc), "message": error.get("msg")})

        if missing:
            detail = f"Missing required fields: {', '.join(missing)}"
        else:
            detail = "Invalid request body"
        return JSONResponse(
            status_code=400,
            content={
                "error": "BadRequest",
                "category": "consistency",
                "retryable": False,
                "detail": detail,
                "missing_fields": missing,
                "invalid_fields": invalid,
            },
        )

    @app.exception_handler(StarletteHTTPException)
    async def http_error_handler(request: Request, exc: StarletteHTTPException):
        phrase = HTTPStatus(exc.status_code).phrase
        return JSONResponse(
            status_code=exc.status_code,
            content={
                "error": phrase.replace(" ", ""),
                "category": "request",
                "retryable": False,
                "detail": exc.detail if isinstance(exc.detail, str) else phrase,
            },
            headers=getattr(exc, "headers", None),
        )

    # ============================================================
    # Include API Routers
    # ============================================================

    app.include_router(tee.router)
    app.include_router(sponsored.router)
    app.include_router(attestation.router)

    # ============================================================
    # Health Check Endpoints
    # ============================================================

    @app.get("/", response_model=HealthResponse)
    async def root(request: Request):
        """Health check + build info."""
        registry = request.app.state.services.registry
        return HealthResponse(
            service="pm-relay",
            status="ok",
            build_id=BUILD_ID,
            github_commit=GITHUB_COMMIT,
            timestamp=datetime.now(timezone.utc).isoformat(),
            attestation_version=registry.current().version,
            enclave_key_bound=bool(registry.trusted_keys()),
        )

    @app.get("/health")
    async def health():
        """Simple endpoint for container orchestration health probes."""
        return {"status": "healthy"}

    @app.get("/metrics")
    async def metrics_endpoint():
        body, content_type = render_latest()
        return Response(content=body, media_type=content_type)

    return app


# ============================================================
# Entrypoint
# ============================================================

def main():
    import uvicorn

    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s: %(message)s")

    print("=" * 60)
    print("🚀 Starting PM Sponsored Transaction Relay")
    print("=" * 60)
    print(f"Build ID: {BUILD_ID}")
    print(f"GitHub Commit: {GITHUB_COMMIT}")
    print("=" * 60)

    uvicorn.run(
        create_app(),
        host="0.0.0.0",
        port=8000,
        log_level="info",
    )


if __name__ == "__main__":
    main()
