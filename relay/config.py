"""
Relay Configuration
===================

Loads all environment variables for the sponsored-transaction relay.

Environment variables should be set in .env file in project root.
Secrets (sponsor access key) are ONLY read from the environment and are
never echoed back in responses or logs.
"""

import os
from dataclasses import dataclass, field
from typing import Dict, List

from dotenv import load_dotenv

# Load environment variables from .env file
load_dotenv()


def _csv(name: str, default: str = "") -> List[str]:
    return [item.strip() for item in os.getenv(name, default).split(",") if item.strip()]


# ============================================================
# Relay Build Info
# ============================================================
BUILD_ID = os.getenv("BUILD_ID", "dev-local")
GITHUB_COMMIT = os.getenv("GITHUB_SHA", "unknown")

# ============================================================
# Enclave (TEE)
# ============================================================
TEE_URL = os.getenv("TEE_URL", "http://127.0.0.1:3000")
TEE_TIMEOUT_SECONDS = float(os.getenv("TEE_TIMEOUT_SECONDS", "10"))

# Operations the proxy may forward (single egress point)
TEE_ALLOWED_ENDPOINTS = _csv(
    "TEE_ALLOWED_ENDPOINTS",
    "process_data,resolve,deposit,withdraw,health_check,positions,get_attestation",
)
# Read-only operations: no-body GET
TEE_GET_ENDPOINTS = _csv("TEE_GET_ENDPOINTS", "health_check,positions,get_attestation")

# Debug mode: trust a pinned enclave key without a Nitro attestation document.
# Mirrors register_enclave_debug on-chain. NEVER enable in production.
ENCLAVE_DEBUG_MODE = os.getenv("ENCLAVE_DEBUG_MODE", "false").lower() == "true"
ENCLAVE_DEBUG_PUBLIC_KEY = os.getenv("ENCLAVE_DEBUG_PUBLIC_KEY", "")

# ============================================================
# Attestation Record (initial values; chain record wins when loaded)
# ============================================================
ATTESTATION_PCR0 = os.getenv("ATTESTATION_PCR0", "")
ATTESTATION_PCR1 = os.getenv("ATTESTATION_PCR1", "")
ATTESTATION_PCR2 = os.getenv("ATTESTATION_PCR2", "")

# Ledger addresses allowed to authorize a rotation (holders of the PCR update cap)
ATTESTATION_AUTHORITIES = _csv("ATTESTATION_AUTHORITIES")

# ============================================================
# Quote Replay Window
# ============================================================
QUOTE_VALIDITY_MS = int(os.getenv("QUOTE_VALIDITY_MS", "60000"))  # 1 minute
QUOTE_FUTURE_SKEW_MS = int(os.getenv("QUOTE_FUTURE_SKEW_MS", "5000"))  # ±5 seconds
REPLAY_WINDOW_CAPACITY = int(os.getenv("REPLAY_WINDOW_CAPACITY", "100000"))

# ============================================================
# Ledger (Sui)
# ============================================================
SUI_NETWORK = os.getenv("SUI_NETWORK", "testnet")
SUI_RPC_URL = os.getenv(
    "SUI_RPC_URL",
    "https://fullnode.mainnet.sui.io:443" if SUI_NETWORK == "mainnet" else "https://fullnode.testnet.sui.io:443",
)
LEDGER_TIMEOUT_SECONDS = float(os.getenv("LEDGER_TIMEOUT_SECONDS", "15"))
FINALITY_TIMEOUT_SECONDS = float(os.getenv("FINALITY_TIMEOUT_SECONDS", "30"))

# ============================================================
# Sponsor (Shinami Gas Station)
# ============================================================
SHINAMI_GAS_STATION_URL = os.getenv("SHINAMI_GAS_STATION_URL", "https://api.us1.shinami.com/sui/gas/v1")
SHINAMI_GAS_STATION_ACCESS_KEY = os.getenv("SHINAMI_GAS_STATION_ACCESS_KEY")
SPONSOR_TIMEOUT_SECONDS = float(os.getenv("SPONSOR_TIMEOUT_SECONDS", "10"))
SPONSOR_GAS_BUDGET = int(os.getenv("SPONSOR_GAS_BUDGET", "50000000"))

# Optional: expected gas owner. When set, sponsored transactions paid by
# anyone else are refused.
SPONSOR_ADDRESS = os.getenv("SPONSOR_ADDRESS") or None

# ============================================================
# On-chain Objects
# ============================================================
PM_PACKAGE = os.getenv("PM_PACKAGE", "0x327d01aa4fdc8cba53596b225510a6b5afc5d2266227654574fe6347a45d3973")
ENCLAVE_PACKAGE = os.getenv("ENCLAVE_PACKAGE", "0x3a0c541676d4844f1296e92b28163ea079f45b77867599724f141322ff3e8a41")
VAULT_PACKAGE = os.getenv("VAULT_PACKAGE", "0x376898554ee5778bccb1926e5203ab6f8608e0feb3a53b8b1b79873b50eefc51")
WORLD_PACKAGE = os.getenv("WORLD_PACKAGE", "")

ENCLAVE_CONFIG_ID = os.getenv("ENCLAVE_CONFIG_ID", "0x15a2d73dbecf428e2856ff88db6648bb7bb6716129b2c8347c9ff50e6b4163e5")
ENCLAVE_OBJECT_ID = os.getenv("ENCLAVE_OBJECT_ID", "0xa5e0d3ff6256301faaa11d640c30f28baa78217e80947f6fbec7faadeaf063a7")
PCR_UPDATE_CAP_ID = os.getenv("PCR_UPDATE_CAP_ID", "0x1f119c0a6c3e14d727e795c252d329b8f8468158d7bc723f757f70b04ca90132")
VAULT_ID = os.getenv("VAULT_ID", "0x15be8234404447fab9bbcc876e8eb66dd1000782332a8aeafe3f520ad7bb75e3")
LEDGER_ID = os.getenv("LEDGER_ID", "0x537654bf8d72f1fef3e036f2405efb3750f3d1d5ada3225f326abdfcf64ea214")
WORLD_ID = os.getenv("WORLD_ID", "")

# Initial shared versions (never change for a shared object)
ENCLAVE_CONFIG_INITIAL_VERSION = int(os.getenv("ENCLAVE_CONFIG_INITIAL_VERSION", "0"))
ENCLAVE_OBJECT_INITIAL_VERSION = int(os.getenv("ENCLAVE_OBJECT_INITIAL_VERSION", "0"))
VAULT_INITIAL_VERSION = int(os.getenv("VAULT_INITIAL_VERSION", "0"))
LEDGER_INITIAL_VERSION = int(os.getenv("LEDGER_INITIAL_VERSION", "0"))
WORLD_INITIAL_VERSION = int(os.getenv("WORLD_INITIAL_VERSION", "0"))

# ============================================================
# Rate Limiting (per client, on the enclave proxy)
# ============================================================
PROXY_MAX_REQUESTS_PER_MINUTE = int(os.getenv("PROXY_MAX_REQUESTS_PER_MINUTE", "60"))


# ============================================================
# Structured view (injected into components; tests build their own)
# ============================================================

@dataclass
class ChainObjects:
    """
    On-chain object ids and Move targets used by the transaction builder.

    All values have defaults from the environment but can be overridden
    by direct instantiation (for testing).
    """

    pm_package: str = PM_PACKAGE
    enclave_package: str = ENCLAVE_PACKAGE
    vault_package: str = VAULT_PACKAGE
    world_package: str = WORLD_PACKAGE

    enclave_config_id: str = ENCLAVE_CONFIG_ID
    enclave_object_id: str = ENCLAVE_OBJECT_ID
    pcr_update_cap_id: str = PCR_UPDATE_CAP_ID
    vault_id: str = VAULT_ID
    ledger_id: str = LEDGER_ID
    world_id: str = WORLD_ID

    initial_versions: Dict[str, int] = field(default_factory=lambda: {
        "enclave_config": ENCLAVE_CONFIG_INITIAL_VERSION,
        "enclave_object": ENCLAVE_OBJECT_INITIAL_VERSION,
        "vault": VAULT_INITIAL_VERSION,
        "ledger": LEDGER_INITIAL_VERSION,
        "world": WORLD_INITIAL_VERSION,
    })

    @property
    def pm_type(self) -> str:
        return f"{self.pm_package}::pm::PM"

    def allowed_packages(self) -> List[str]:
        """Packages a sponsored transaction may call into (plus the framework)."""
        packages = [self.pm_package, self.enclave_package, self.vault_package, self.world_package, "0x2"]
        return [p for p in packages if p]


# ============================================================
# Configuration Validation
# ============================================================

def validate_config() -> bool:
    """
    Validates that all required configuration is present.
    Called on application startup.
    """
    errors = []

    if not SHINAMI_GAS_STATION_ACCESS_KEY:
        errors.append("SHINAMI_GAS_STATION_ACCESS_KEY is not set")

    for name, value in (
        ("VAULT_PACKAGE", VAULT_PACKAGE),
        ("WORLD_PACKAGE", WORLD_PACKAGE),
        ("ENCLAVE_OBJECT_ID", ENCLAVE_OBJECT_ID),
        ("VAULT_ID", VAULT_ID),
        ("LEDGER_ID", LEDGER_ID),
        ("WORLD_ID", WORLD_ID),
    ):
        if not value:
            errors.append(f"{name} is not set")

    if ENCLAVE_DEBUG_MODE and not ENCLAVE_DEBUG_PUBLIC_KEY:
        errors.append("ENCLAVE_DEBUG_MODE is on but ENCLAVE_DEBUG_PUBLIC_KEY is not set")

    if not ATTESTATION_AUTHORITIES:
        errors.append("ATTESTATION_AUTHORITIES is empty (rotation will always be Unauthorized)")

    if errors:
        raise ValueError("Configuration errors:\n" + "\n".join(f"  - {e}" for e in errors))

    return True


def print_config_summary():
    """
    Prints a summary of the configuration (for debugging).
    NEVER prints secrets!
    """
    print("=" * 60)
    print("Relay Configuration Summary")
    print("=" * 60)
    print(f"Build ID: {BUILD_ID}")
    print(f"GitHub Commit: {GITHUB_COMMIT}")
    print(f"TEE URL: {TEE_URL} (timeout {TEE_TIMEOUT_SECONDS}s)")
    print(f"Enclave Debug Mode: {'ON ⚠️' if ENCLAVE_DEBUG_MODE else 'off'}")
    print(f"Sui Network: {SUI_NETWORK} ({SUI_RPC_URL})")
    print(f"Gas Station: {SHINAMI_GAS_STATION_URL} (key {'set' if SHINAMI_GAS_STATION_ACCESS_KEY else 'MISSING'})")
    print(f"Quote Validity: {QUOTE_VALIDITY_MS}ms (capacity {REPLAY_WINDOW_CAPACITY})")
    print(f"Finality Timeout: {FINALITY_TIMEOUT_SECONDS}s")
    print(f"Attestation Authorities: {len(ATTESTATION_AUTHORITIES)}")
    print("=" * 60)


# Validate configuration on import
try:
    validate_config()
except ValueError as e:
    print(f"⚠️  Configuration warning: {e}")
    print("⚠️  Some features may not work correctly.")
