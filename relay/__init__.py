"""
PM Sponsored Transaction Relay
==============================

Carries enclave-signed market quotes onto the ledger with a sponsor paying gas.

Features:
- Single egress proxy to the pricing enclave
- Quote verification (Ed25519 + Nitro attestation + replay window)
- Deterministic sponsored transaction building
- Dual signature merge over identical bytes
- Single-shot submission with bounded finality wait
- Authority-signed attestation record rotation
"""

__version__ = "1.0.0"
__author__ = "PM Relay Team"
