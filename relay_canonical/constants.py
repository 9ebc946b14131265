"""
PM Relay Canonical Constants

Shared between the relay and any auditor that re-checks its work.
Changing any value here changes signed bytes - treat as a protocol change.
"""

from enum import IntEnum


class IntentScope(IntEnum):
    """Enclave intent scopes - MUST match the enclave and the Move contract."""

    PLACE_BET = 0
    RESOLVE = 1
    DEPOSIT = 2
    WITHDRAW = 3


# Scopes that can be built into a sponsored transaction
BUILDABLE_SCOPES = (IntentScope.PLACE_BET, IntentScope.DEPOSIT, IntentScope.WITHDRAW)

# Probabilities travel as integers scaled by 10_000
PROBABILITY_SCALE = 10_000

# Domain separator for attestation rotation statements
ROTATION_STATEMENT_DOMAIN = "pm-relay::attestation-rotation::v1"

# Trust levels reported for enclave key bindings
TRUST_LEVEL_FULL_NITRO = "full_nitro"
TRUST_LEVEL_DEBUG = "debug_pinned_key"
