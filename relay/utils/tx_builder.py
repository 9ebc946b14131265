"""
Sponsored Transaction Builder

Deterministically encodes a VerifiedQuote plus action parameters into the
unsigned TransactionPayload that both the sponsor and the sender sign.

ACTIONS:
    place_bet  pm::submit_bet<PM>(enclave, <signed bet fields>, timestamp_ms, signature)
               vault::set_withdrawable_balance(ledger, user,  user_new_balance)
               vault::set_withdrawable_balance(ledger, maker, maker_new_balance)
               world::update_prob(world, pool_id, new_probs)
    deposit    merge funding coins → split exact amount → vault::deposit(vault, ledger, coin)
    withdraw   vault::withdraw(vault, ledger, amount)

The attestation rotation transaction (enclave::update_pcrs) is built here
too, but from an installed AttestationRecord rather than a quote.

CONSISTENCY:
    Every parameter that also appears in the quote MUST equal the quote's
    signed value, and the balances written on-chain MUST follow from the
    quote's settlement amounts. Any divergence is ParameterMismatch; the
    builder never substitutes the quote's value for the caller's.

DETERMINISM:
    No clock, randomness or network access. Identical (quote, action,
    params) always produce identical kind bytes. Object references the
    ledger would otherwise be asked for (coins, the PCR update cap) are
    resolved by the caller BEFORE build.

SEALING:
    Each payload carries an HMAC seal from the builder's secret. The
    sponsor signer only co-signs sealed payloads, so the sponsor credential
    cannot be pointed at bytes this builder did not produce.
"""

import hashlib
import hmac
import logging
import os
from dataclasses import dataclass, field
from typing import Optional, Tuple, Union

from relay_canonical.bcs import BcsError, normalize_address
from relay_canonical.constants import IntentScope
from relay_canonical.quotes import BalanceChangeData, PlaceBetData, Quote
from relay_canonical.transactions import ObjectRef, ProgrammableTransactionBuilder, SharedObject, nested_result
from relay.config import ChainObjects
from relay.utils import metrics
from relay.utils.errors import ParameterMismatch
from relay.utils.attestation_registry import AttestationRecord
from relay.utils.quote_verifier import VerifiedQuote

logger = logging.getLogger(__name__)

ACTION_PLACE_BET = "place_bet"
ACTION_DEPOSIT = "deposit"
ACTION_WITHDRAW = "withdraw"
ACTION_UPDATE_PCRS = "update_pcrs"

ACTION_SCOPES = {
    ACTION_PLACE_BET: IntentScope.PLACE_BET,
    ACTION_DEPOSIT: IntentScope.DEPOSIT,
    ACTION_WITHDRAW: IntentScope.WITHDRAW,
}


# ============================================================
# Action parameters
# ============================================================

@dataclass(frozen=True)
class BetParams:
    sender: str
    pool_id: int
    outcome: int
    amount: int
    current_probs: Tuple[int, ...]
    maker: str
    user_prior_balance: int
    user_new_balance: int
    maker_prior_balance: int
    maker_new_balance: int


@dataclass(frozen=True)
class FundingCoin:
    """A coin the sender owns, resolved to its current object reference."""

    ref: ObjectRef
    balance: int


@dataclass(frozen=True)
class DepositParams:
    sender: str
    amount: int
    funding: Tuple[FundingCoin, ...]


@dataclass(frozen=True)
class WithdrawParams:
    sender: str
    amount: int


ActionParams = Union[BetParams, DepositParams, WithdrawParams]


# ============================================================
# Payload
# ============================================================

@dataclass(frozen=True)
class TransactionPayload:
    """
    The exact bytes both signers commit to: sender + TransactionKind.

    The sponsor wraps kind_bytes into TransactionData (adding gas); the
    coordinator later checks that the kind bytes came back untouched.
    """

    action: str
    sender: str
    kind_bytes: bytes
    quote_timestamp_ms: Optional[int] = None
    seal: bytes = field(default=b"", repr=False, compare=False)


class PayloadSealer:
    """HMAC seal shared by the builder and the sponsor signer."""

    def __init__(self, secret: Optional[bytes] = None):
        self._secret = secret or os.urandom(32)

    def _mac(self, action: str, sender: str, kind_bytes: bytes) -> bytes:
        message = action.encode("utf-8") + b"\x00" + sender.encode("ascii") + b"\x00" + kind_bytes
        return hmac.new(self._secret, message, hashlib.sha256).digest()

    def seal(self, action: str, sender: str, kind_bytes: bytes, quote_timestamp_ms: Optional[int] = None) -> TransactionPayload:
        return TransactionPayload(
            action=action,
            sender=sender,
            kind_bytes=kind_bytes,
            quote_timestamp_ms=quote_timestamp_ms,
            seal=self._mac(action, sender, kind_bytes),
        )

    def is_sealed(self, payload: TransactionPayload) -> bool:
        expected = self._mac(payload.action, payload.sender, payload.kind_bytes)
        return hmac.compare_digest(expected, payload.seal)


# ============================================================
# Builder
# ============================================================

class SponsoredTxBuilder:
    """Builds sponsored transactions from verified quotes."""

    def __init__(self, chain: ChainObjects, sealer: PayloadSealer):
        self.chain = chain
        self.sealer = sealer

    # ---- shared object handles --------------------------------------------

    def _shared(self, object_id: str, version_key: str, mutable: bool) -> SharedObject:
        return SharedObject(object_id, self.chain.initial_versions[version_key], mutable)

    # ---- public API --------------------------------------------------------

    def check_parameters(self, quote: Quote, action: str, params: ActionParams) -> None:
        """
        Pure consistency check between a quote and action parameters.

        Raises:
            ParameterMismatch: On any divergence from the quote's signed values
        """
        expected_scope = ACTION_SCOPES.get(action)
        if expected_scope is None:
            raise ParameterMismatch(f"Unknown action '{action}' (expected one of {sorted(ACTION_SCOPES)})")
        if quote.scope != expected_scope:
            raise ParameterMismatch(
                f"Quote scope {quote.scope.name} cannot be built as action '{action}'"
            )

        try:
            if action == ACTION_PLACE_BET:
                self._check_bet(quote.data, params)
            elif action == ACTION_DEPOSIT:
                self._check_deposit(quote.data, params)
            else:
                self._check_withdraw(quote.data, params)
        except BcsError as e:
            raise ParameterMismatch(f"Malformed action parameters: {e}")

    def build(self, verified: VerifiedQuote, action: str, params: ActionParams) -> TransactionPayload:
        """
        Encode one action. Consumes the VerifiedQuote on success.

        Raises:
            ParameterMismatch: params diverge from the quote
            ReplayedQuote: the VerifiedQuote was already consumed
        """
        if not isinstance(verified, VerifiedQuote):
            raise TypeError("build() requires a VerifiedQuote from QuoteVerifier.verify()")

        quote = verified.quote
        try:
            self.check_parameters(quote, action, params)
            try:
                if action == ACTION_PLACE_BET:
                    kind_bytes = self._encode_bet(quote, params)
                elif action == ACTION_DEPOSIT:
                    kind_bytes = self._encode_deposit(params)
                else:
                    kind_bytes = self._encode_withdraw(params)
            except BcsError as e:
                raise ParameterMismatch(f"Cannot encode action parameters: {e}")

            # Spent only once the bytes exist
            verified.consume()
        except Exception as e:
            metrics.sponsored_builds.labels(action=action, outcome=getattr(e, "code", "error")).inc()
            raise

        metrics.sponsored_builds.labels(action=action, outcome="built").inc()
        sender = normalize_address(params.sender)
        logger.info(f"🧱 Built {action} for {sender[:10]}... ({len(kind_bytes)} bytes)")
        return self.sealer.seal(action, sender, kind_bytes, quote.timestamp_ms)

    def build_update_pcrs(self, record: AttestationRecord, sender: str, cap_ref: ObjectRef) -> TransactionPayload:
        """
        enclave::update_pcrs<PM>(config, cap, pcr0, pcr1, pcr2) for an installed record.

        The cap is an owned object, so ``sender`` must be its holder.
        """
        ptb = ProgrammableTransactionBuilder()
        ptb.move_call(
            f"{self.chain.enclave_package}::enclave::update_pcrs",
            [
                ptb.shared_object(self._shared(self.chain.enclave_config_id, "enclave_config", True)),
                ptb.owned_object(cap_ref),
                ptb.pure_bytes(bytes.fromhex(record.pcr0)),
                ptb.pure_bytes(bytes.fromhex(record.pcr1)),
                ptb.pure_bytes(bytes.fromhex(record.pcr2)),
            ],
            type_arguments=[self.chain.pm_type],
        )
        sender = normalize_address(sender)
        return self.sealer.seal(ACTION_UPDATE_PCRS, sender, ptb.finish())

    # ---- consistency checks ------------------------------------------------

    @staticmethod
    def _check_bet(data: PlaceBetData, params: BetParams) -> None:
        if not isinstance(params, BetParams):
            raise ParameterMismatch("place_bet requires bet parameters")

        mismatches = []
        if normalize_address(params.sender) != data.user:
            mismatches.append(f"sender {params.sender} is not the quoted user {data.user}")
        if normalize_address(params.maker) != data.maker:
            mismatches.append(f"maker {params.maker} is not the quoted maker {data.maker}")
        if params.pool_id != data.pool_id:
            mismatches.append(f"pool_id {params.pool_id} != quoted {data.pool_id}")
        if params.outcome != data.outcome:
            mismatches.append(f"outcome {params.outcome} != quoted {data.outcome}")
        if params.amount != data.debit_amount:
            mismatches.append(f"amount {params.amount} != quoted debit {data.debit_amount}")
        if tuple(params.current_probs) != data.current_probs:
            mismatches.append(f"current_probs {list(params.current_probs)} != quoted {list(data.current_probs)}")
        if params.user_prior_balance < data.debit_amount:
            mismatches.append(
                f"user balance {params.user_prior_balance} cannot cover debit {data.debit_amount}"
            )
        if params.user_new_balance != params.user_prior_balance - data.debit_amount:
            mismatches.append(
                f"user_new_balance {params.user_new_balance} != "
                f"{params.user_prior_balance} - {data.debit_amount}"
            )
        if params.maker_new_balance != params.maker_prior_balance + data.credit_amount:
            mismatches.append(
                f"maker_new_balance {params.maker_new_balance} != "
                f"{params.maker_prior_balance} + {data.credit_amount}"
            )

        if mismatches:
            raise ParameterMismatch("; ".join(mismatches), extra={"mismatches": mismatches})

    @staticmethod
    def _check_balance_change(data: BalanceChangeData, params, sign: int) -> None:
        """``sign`` is +1 for deposits, -1 for withdrawals."""
        mismatches = []
        if normalize_address(params.sender) != data.user:
            mismatches.append(f"sender {params.sender} is not the quoted user {data.user}")
        if params.amount != data.amount:
            mismatches.append(f"amount {params.amount} != quoted {data.amount}")
        if data.new_balance != data.prior_balance + sign * data.amount:
            op = "+" if sign > 0 else "-"
            mismatches.append(
                f"quoted new_balance {data.new_balance} != {data.prior_balance} {op} {data.amount}"
            )
        if mismatches:
            raise ParameterMismatch("; ".join(mismatches), extra={"mismatches": mismatches})

    def _check_deposit(self, data: BalanceChangeData, params: DepositParams) -> None:
        if not isinstance(params, DepositParams):
            raise ParameterMismatch("deposit requires deposit parameters")
        self._check_balance_change(data, params, 1)

        if not params.funding:
            raise ParameterMismatch("deposit requires at least one funding coin")
        ids = [normalize_address(c.ref.object_id) for c in params.funding]
        if len(set(ids)) != len(ids):
            raise ParameterMismatch("funding coins must be distinct")
        total = sum(c.balance for c in params.funding)
        if total < params.amount:
            raise ParameterMismatch(f"funding coins hold {total}, deposit needs {params.amount}")

    def _check_withdraw(self, data: BalanceChangeData, params: WithdrawParams) -> None:
        if not isinstance(params, WithdrawParams):
            raise ParameterMismatch("withdraw requires withdraw parameters")
        self._check_balance_change(data, params, -1)
        if data.prior_balance < data.amount:
            raise ParameterMismatch(f"quoted balance {data.prior_balance} cannot cover withdrawal {data.amount}")

    # ---- encoders ----------------------------------------------------------

    def _encode_bet(self, quote: Quote, params: BetParams) -> bytes:
        data: PlaceBetData = quote.data
        chain = self.chain
        ptb = ProgrammableTransactionBuilder()

        # 1. Submit the enclave-signed bet (the contract re-checks the signature)
        ptb.move_call(
            f"{chain.pm_package}::pm::submit_bet",
            [
                ptb.shared_object(self._shared(chain.enclave_object_id, "enclave_object", False)),
                ptb.pure_address(data.user),
                ptb.pure_address(data.maker),
                ptb.pure_u64(data.pool_id),
                ptb.pure_u8(data.outcome),
                ptb.pure_u64_vector(data.current_probs),
                ptb.pure_u64_vector(data.new_probs),
                ptb.pure_u64(data.shares),
                ptb.pure_u64(data.debit_amount),
                ptb.pure_u64(data.credit_amount),
                ptb.pure_u64(quote.timestamp_ms),
                ptb.pure_bytes(quote.signature),
            ],
            type_arguments=[chain.pm_type],
        )

        ledger = ptb.shared_object(self._shared(chain.ledger_id, "ledger", True))

        # 2. User balance (debit)
        ptb.move_call(
            f"{chain.vault_package}::vault::set_withdrawable_balance",
            [ledger, ptb.pure_address(data.user), ptb.pure_u64(params.user_new_balance)],
        )

        # 3. Maker balance (credit)
        ptb.move_call(
            f"{chain.vault_package}::vault::set_withdrawable_balance",
            [ledger, ptb.pure_address(data.maker), ptb.pure_u64(params.maker_new_balance)],
        )

        # 4. World probabilities
        ptb.move_call(
            f"{chain.world_package}::world::update_prob",
            [
                ptb.shared_object(self._shared(chain.world_id, "world", True)),
                ptb.pure_u64(data.pool_id),
                ptb.pure_u64_vector(data.new_probs),
            ],
        )
        return ptb.finish()

    def _encode_deposit(self, params: DepositParams) -> bytes:
        chain = self.chain
        ptb = ProgrammableTransactionBuilder()

        primary, *rest = params.funding
        coin = ptb.owned_object(primary.ref)
        if rest:
            ptb.merge_coins(coin, [ptb.owned_object(c.ref) for c in rest])
        split_index = ptb.split_coins(coin, [ptb.pure_u64(params.amount)])

        ptb.move_call(
            f"{chain.vault_package}::vault::deposit",
            [
                ptb.shared_object(self._shared(chain.vault_id, "vault", True)),
                ptb.shared_object(self._shared(chain.ledger_id, "ledger", True)),
                nested_result(split_index, 0),
            ],
        )
        return ptb.finish()

    def _encode_withdraw(self, params: WithdrawParams) -> bytes:
        chain = self.chain
        ptb = ProgrammableTransactionBuilder()
        ptb.move_call(
            f"{chain.vault_package}::vault::withdraw",
            [
                ptb.shared_object(self._shared(chain.vault_id, "vault", True)),
                ptb.shared_object(self._shared(chain.ledger_id, "ledger", True)),
                ptb.pure_u64(params.amount),
            ],
        )
        return ptb.finish()
